from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from sonic_prom_exporter.config import RefreshMode
from sonic_prom_exporter.deadline import Deadline
from sonic_prom_exporter.snapshot import CycleResult, Snapshot, SnapshotCache


LOGGER = logging.getLogger("sonic_prom_exporter.scheduler")

Producer = Callable[[Deadline], Snapshot]


class RefreshScheduler:
    """Drives one domain's ``SnapshotCache``.

    ``interval`` mode owns a single background thread that refreshes every
    ``interval_seconds`` until ``stop()``. ``on_demand`` mode refreshes from
    ``ensure_fresh()`` (called on scrape) once the last attempt is older than
    the freshness window; concurrent callers collapse into one refresh.
    """

    def __init__(
        self,
        cache: SnapshotCache,
        producer: Producer,
        *,
        mode: RefreshMode = RefreshMode.INTERVAL,
        interval_seconds: float = 30.0,
        timeout_seconds: float = 2.0,
        freshness_window_seconds: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.mode = mode
        self._producer = producer
        self._interval_seconds = interval_seconds
        self._timeout_seconds = timeout_seconds
        self._freshness_window_seconds = freshness_window_seconds
        self._clock = clock
        self._on_demand_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_cycle(self) -> CycleResult:
        deadline = Deadline(self._timeout_seconds, self._clock)

        def bounded_producer() -> Snapshot:
            snapshot = self._producer(deadline)
            # partial work finished after the deadline is discarded, not committed
            deadline.check("finishing refresh")
            return snapshot

        return self.cache.refresh(bounded_producer)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self.run_cycle()
        if self.mode is RefreshMode.INTERVAL:
            self._thread = threading.Thread(
                target=self._run_loop,
                name=f"refresh-{self.cache.name}",
                daemon=True,
            )
            self._thread.start()
            LOGGER.info("%s refresh loop started: every %.1fs", self.cache.name, self._interval_seconds)
        else:
            LOGGER.info(
                "%s refreshes on demand when older than %.1fs",
                self.cache.name,
                self._freshness_window_seconds,
            )

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def ensure_fresh(self) -> None:
        if self.mode is not RefreshMode.ON_DEMAND:
            return
        if not self._is_stale():
            return
        with self._on_demand_lock:
            # another scrape may have refreshed while this one waited
            if self._is_stale():
                self.run_cycle()

    def _is_stale(self) -> bool:
        attempted_at = self.cache.read().health.attempted_at
        if attempted_at is None:
            return True
        return self._clock() - attempted_at > self._freshness_window_seconds

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            self.run_cycle()
        LOGGER.debug("%s refresh loop stopped", self.cache.name)

