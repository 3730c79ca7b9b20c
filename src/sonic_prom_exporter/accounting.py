from __future__ import annotations

import enum
import logging
from collections import Counter


LOGGER = logging.getLogger("sonic_prom_exporter.accounting")

_TRUTHY_STATUSES = frozenset({"up", "enabled", "selected", "active", "true", "ok"})


class SkipReason(str, enum.Enum):
    MALFORMED_KEY = "malformed_key"
    MISSING_FIELD = "missing_field"
    UNRESOLVED_REFERENCE = "unresolved_reference"
    UNKNOWN_PARENT = "unknown_parent"
    OVER_PARENT_CAP = "over_parent_cap"
    OVER_CHILD_CAP = "over_child_cap"
    OVER_ENTRY_CAP = "over_entry_cap"
    OVER_SERIES_CAP = "over_series_cap"
    EXCLUDED = "excluded"


class Ledger:
    """Double-entry bookkeeping for one refresh cycle.

    Every input seen in a namespace must end up either emitted or skipped
    exactly once. Namespaces are free-form strings chosen by the pipeline
    (``"vlan_key"``, ``"vlan_member"``, ``"fdb_entry"`` ...).
    """

    def __init__(self) -> None:
        self._seen: Counter[str] = Counter()
        self._emitted: Counter[str] = Counter()
        self._skipped: Counter[tuple[str, SkipReason]] = Counter()

    def seen(self, namespace: str, count: int = 1) -> None:
        self._seen[namespace] += count

    def emit(self, namespace: str, count: int = 1) -> None:
        self._emitted[namespace] += count

    def skip(self, namespace: str, reason: SkipReason, count: int = 1, *, detail: str = "") -> None:
        if count <= 0:
            return
        self._skipped[(namespace, reason)] += count
        if detail:
            LOGGER.debug("skipped %s entry (%s): %s", namespace, reason.value, detail)

    def seen_count(self, namespace: str) -> int:
        return self._seen[namespace]

    def emitted_count(self, namespace: str) -> int:
        return self._emitted[namespace]

    def skipped_count(self, namespace: str | None = None, reason: SkipReason | None = None) -> int:
        return sum(
            value
            for (skip_namespace, skip_reason), value in self._skipped.items()
            if (namespace is None or skip_namespace == namespace)
            and (reason is None or skip_reason == reason)
        )

    @property
    def skipped_total(self) -> int:
        return sum(self._skipped.values())

    def skipped_by_reason(self) -> dict[str, int]:
        totals: Counter[str] = Counter()
        for (_, reason), value in self._skipped.items():
            totals[reason.value] += value
        return dict(sorted(totals.items()))

    def namespaces(self) -> list[str]:
        names = set(self._seen) | set(self._emitted) | {namespace for namespace, _ in self._skipped}
        return sorted(names)

    def unbalanced(self) -> list[str]:
        return [
            namespace
            for namespace in self.namespaces()
            if self._emitted[namespace] + self.skipped_count(namespace) != self._seen[namespace]
        ]


def status_to_gauge(status: str | None) -> float:
    if status is None:
        return 0.0
    return 1.0 if status.strip().lower() in _TRUTHY_STATUSES else 0.0


def first_non_empty(*values: str | None) -> str:
    for value in values:
        if value is not None and value.strip():
            return value
    return ""


def strip_prefix(key: str, prefix: str) -> str:
    """Return the identifier after ``prefix``, or "" when the key is malformed."""
    if not key.startswith(prefix):
        return ""
    return key[len(prefix) :]


def split_member_path(path: str, separator: str) -> tuple[str, str] | None:
    parent, sep, child = path.partition(separator)
    if not sep or not parent or not child:
        return None
    return parent, child
