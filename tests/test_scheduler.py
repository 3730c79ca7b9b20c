import threading
import time

from conftest import gauge

from sonic_prom_exporter.config import RefreshMode
from sonic_prom_exporter.deadline import Deadline
from sonic_prom_exporter.errors import SourceUnavailable
from sonic_prom_exporter.scheduler import RefreshScheduler
from sonic_prom_exporter.snapshot import Snapshot, SnapshotCache


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _counting_producer(calls: list[int]):
    def produce(deadline: Deadline) -> Snapshot:
        calls.append(1)
        return Snapshot(records=(gauge("sonic_lldp_neighbors", len(calls)),))

    return produce


def test_on_demand_refreshes_only_when_stale() -> None:
    clock = FakeClock()
    calls: list[int] = []
    cache = SnapshotCache("lldp", clock=clock)
    scheduler = RefreshScheduler(
        cache,
        _counting_producer(calls),
        mode=RefreshMode.ON_DEMAND,
        freshness_window_seconds=15.0,
        clock=clock,
    )

    scheduler.ensure_fresh()
    scheduler.ensure_fresh()
    assert len(calls) == 1

    clock.now += 16.0
    scheduler.ensure_fresh()
    assert len(calls) == 2
    assert cache.read().version == 2


def test_on_demand_failure_is_not_retried_inside_window() -> None:
    clock = FakeClock()
    calls: list[int] = []

    def failing(deadline: Deadline) -> Snapshot:
        calls.append(1)
        raise SourceUnavailable("redis down")

    scheduler = RefreshScheduler(
        SnapshotCache("lldp", clock=clock),
        failing,
        mode=RefreshMode.ON_DEMAND,
        freshness_window_seconds=15.0,
        clock=clock,
    )
    scheduler.ensure_fresh()
    scheduler.ensure_fresh()
    assert len(calls) == 1
    assert scheduler.cache.read().health.success is False


def test_concurrent_on_demand_scrapes_collapse_into_one_refresh() -> None:
    calls: list[int] = []

    def slow(deadline: Deadline) -> Snapshot:
        calls.append(1)
        time.sleep(0.05)
        return Snapshot()

    scheduler = RefreshScheduler(
        SnapshotCache("lldp"),
        slow,
        mode=RefreshMode.ON_DEMAND,
        freshness_window_seconds=60.0,
    )
    barrier = threading.Barrier(8)

    def scrape() -> None:
        barrier.wait()
        scheduler.ensure_fresh()

    threads = [threading.Thread(target=scrape) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(calls) == 1


def test_interval_mode_ignores_scrapes() -> None:
    calls: list[int] = []
    scheduler = RefreshScheduler(SnapshotCache("vlan"), _counting_producer(calls))
    scheduler.ensure_fresh()
    assert calls == []


def test_interval_loop_refreshes_until_stopped() -> None:
    calls: list[int] = []
    scheduler = RefreshScheduler(SnapshotCache("vlan"), _counting_producer(calls), interval_seconds=0.01)

    scheduler.start()
    assert scheduler.running
    assert len(calls) >= 1

    waited = 0.0
    while len(calls) < 3 and waited < 5.0:
        time.sleep(0.01)
        waited += 0.01
    scheduler.stop(timeout=5.0)

    assert len(calls) >= 3
    assert not scheduler.running
    stopped_at = len(calls)
    time.sleep(0.05)
    assert len(calls) == stopped_at


def test_cycle_past_deadline_is_discarded() -> None:
    clock = FakeClock()
    cache = SnapshotCache("fdb", clock=clock)
    cache.refresh(lambda: Snapshot(records=(gauge("sonic_fdb_entries", 7),)))

    def overrunning(deadline: Deadline) -> Snapshot:
        clock.now += 5.0
        return Snapshot(records=(gauge("sonic_fdb_entries", 9),))

    scheduler = RefreshScheduler(cache, overrunning, timeout_seconds=2.0, clock=clock)
    result = scheduler.run_cycle()

    assert result.success is False
    assert "deadline of 2.000s exceeded" in result.error
    assert cache.read().snapshot.records[0].value == 7.0
