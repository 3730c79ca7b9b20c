from __future__ import annotations


class RefreshError(Exception):
    """Aborts one refresh cycle; the previous snapshot stays authoritative."""


class SourceUnavailable(RefreshError):
    pass


class DeadlineExceeded(RefreshError):
    pass


class AccountingError(RefreshError):
    pass
