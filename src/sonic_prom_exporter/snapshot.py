from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable

from sonic_prom_exporter.errors import RefreshError


LOGGER = logging.getLogger("sonic_prom_exporter.snapshot")


class MetricKind(str, enum.Enum):
    GAUGE = "gauge"
    COUNTER = "counter"


@dataclass(frozen=True)
class MetricRecord:
    name: str
    labels: tuple[tuple[str, str], ...] = ()
    value: float = 0.0
    kind: MetricKind = MetricKind.GAUGE

    def __post_init__(self) -> None:
        names = [name for name, _ in self.labels]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate label names for {self.name}: {names}")

    @property
    def label_values(self) -> tuple[str, ...]:
        return tuple(value for _, value in self.labels)


@dataclass(frozen=True)
class Snapshot:
    records: tuple[MetricRecord, ...] = ()
    generated_at: float = 0.0
    duration_seconds: float = 0.0
    skipped_count: int = 0
    skipped_by_reason: tuple[tuple[str, int], ...] = ()
    truncated: bool = False


@dataclass(frozen=True)
class CacheHealth:
    success: bool = False
    duration_seconds: float = 0.0
    refreshed_at: float | None = None
    attempted_at: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class CacheState:
    snapshot: Snapshot = field(default_factory=Snapshot)
    health: CacheHealth = field(default_factory=CacheHealth)
    version: int = 0

    def age_seconds(self, now: float) -> float:
        if self.health.refreshed_at is None:
            return 0.0
        return max(0.0, now - self.health.refreshed_at)


@dataclass(frozen=True)
class CycleResult:
    success: bool
    duration_seconds: float
    snapshot: Snapshot
    error: str | None = None


class SnapshotCache:
    """Holds the current snapshot of one domain.

    Readers get the whole ``CacheState`` through a single attribute load, so a
    reader always sees one complete cycle. Writers are serialised by a lock and
    publish by assigning a new immutable state.
    """

    def __init__(
        self,
        name: str,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self._clock = clock
        self._wall_clock = wall_clock
        self._writer_lock = threading.Lock()
        self._state = CacheState()

    def read(self) -> CacheState:
        return self._state

    def age_seconds(self, state: CacheState | None = None) -> float:
        if state is None:
            state = self._state
        return state.age_seconds(self._clock())

    def refresh(self, producer: Callable[[], Snapshot]) -> CycleResult:
        with self._writer_lock:
            started = self._clock()
            try:
                snapshot = producer()
            except RefreshError as error:
                return self._fail(started, str(error))
            except Exception as error:
                LOGGER.exception("unexpected error refreshing %s metrics", self.name)
                return self._fail(started, f"{type(error).__name__}: {error}")

            finished = self._clock()
            duration = finished - started
            committed = replace(snapshot, generated_at=self._wall_clock(), duration_seconds=duration)
            self._state = CacheState(
                snapshot=committed,
                health=CacheHealth(
                    success=True,
                    duration_seconds=duration,
                    refreshed_at=finished,
                    attempted_at=finished,
                ),
                version=self._state.version + 1,
            )
            LOGGER.debug(
                "%s snapshot committed: %d records, %d skipped in %.3fs",
                self.name,
                len(committed.records),
                committed.skipped_count,
                duration,
            )
            return CycleResult(success=True, duration_seconds=duration, snapshot=committed)

    def _fail(self, started: float, message: str) -> CycleResult:
        finished = self._clock()
        duration = finished - started
        previous = self._state
        self._state = CacheState(
            snapshot=previous.snapshot,
            health=replace(
                previous.health,
                success=False,
                duration_seconds=duration,
                attempted_at=finished,
                error=message,
            ),
            version=previous.version,
        )
        LOGGER.error("error refreshing %s metrics: %s", self.name, message)
        return CycleResult(success=False, duration_seconds=duration, snapshot=previous.snapshot, error=message)
