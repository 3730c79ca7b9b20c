from __future__ import annotations

import time
from typing import Callable

from sonic_prom_exporter.errors import DeadlineExceeded


class Deadline:
    def __init__(self, timeout_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._expires_at = clock() + timeout_seconds

    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, activity: str) -> None:
        if self.expired():
            raise DeadlineExceeded(f"deadline of {self.timeout_seconds:.3f}s exceeded while {activity}")
