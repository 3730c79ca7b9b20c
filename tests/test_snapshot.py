import logging
import threading

import pytest

from conftest import gauge

from sonic_prom_exporter.errors import SourceUnavailable
from sonic_prom_exporter.snapshot import MetricKind, MetricRecord, Snapshot, SnapshotCache


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_empty_cache_reports_unsuccessful_health() -> None:
    cache = SnapshotCache("vlan")
    state = cache.read()
    assert state.version == 0
    assert state.snapshot.records == ()
    assert state.health.success is False
    assert state.health.refreshed_at is None
    assert cache.age_seconds() == 0.0


def test_refresh_commits_snapshot_and_stamps_timing() -> None:
    clock = FakeClock()
    cache = SnapshotCache("vlan", clock=clock, wall_clock=lambda: 1700000000.0)

    def produce() -> Snapshot:
        clock.now += 0.25
        return Snapshot(records=(gauge("sonic_vlan_members", 2, vlan="Vlan10"),), skipped_count=1)

    result = cache.refresh(produce)

    assert result.success is True
    assert result.duration_seconds == pytest.approx(0.25)
    state = cache.read()
    assert state.version == 1
    assert state.snapshot.generated_at == 1700000000.0
    assert state.snapshot.skipped_count == 1
    assert state.health.success is True
    assert state.health.refreshed_at == pytest.approx(100.25)
    clock.now += 10
    assert cache.age_seconds() == pytest.approx(10.0)


def test_failed_refresh_keeps_previous_snapshot(caplog) -> None:
    cache = SnapshotCache("lag", clock=FakeClock())
    first = Snapshot(records=(gauge("sonic_lag_members", 1, lag="PortChannel1"),))
    cache.refresh(lambda: first)
    before = cache.read()

    def failing() -> Snapshot:
        raise SourceUnavailable("connection refused")

    with caplog.at_level(logging.ERROR, logger="sonic_prom_exporter.snapshot"):
        result = cache.refresh(failing)

    after = cache.read()
    assert result.success is False
    assert result.error == "connection refused"
    assert after.snapshot == before.snapshot
    assert after.version == before.version
    assert after.health.success is False
    assert after.health.refreshed_at == before.health.refreshed_at
    assert "error refreshing lag metrics: connection refused" in caplog.text


def test_unexpected_producer_error_is_contained(caplog) -> None:
    cache = SnapshotCache("fdb")

    def broken() -> Snapshot:
        raise KeyError("SAI_FDB_ENTRY_ATTR_TYPE")

    with caplog.at_level(logging.ERROR, logger="sonic_prom_exporter.snapshot"):
        result = cache.refresh(broken)

    assert result.success is False
    assert result.error.startswith("KeyError")
    assert cache.read().health.success is False
    assert "unexpected error refreshing fdb metrics" in caplog.text


def test_metric_record_rejects_duplicate_labels() -> None:
    with pytest.raises(ValueError):
        MetricRecord(name="sonic_vlan_info", labels=(("vlan", "Vlan10"), ("vlan", "Vlan20")))
    assert MetricRecord(name="sonic_vlan_members", value=3.0).kind is MetricKind.GAUGE


def test_concurrent_readers_only_see_complete_cycles() -> None:
    cache = SnapshotCache("vlan")
    stop = threading.Event()
    inconsistent: list[tuple[int, int]] = []

    def produce(cycle: int) -> Snapshot:
        records = tuple(gauge("sonic_vlan_members", cycle, vlan=f"Vlan{index}") for index in range(cycle))
        return Snapshot(records=records, skipped_count=cycle)

    def reader() -> None:
        while not stop.is_set():
            state = cache.read()
            snapshot = state.snapshot
            if len(snapshot.records) != snapshot.skipped_count or len(snapshot.records) != state.version:
                inconsistent.append((len(snapshot.records), snapshot.skipped_count))
            if any(metric.value != snapshot.skipped_count for metric in snapshot.records):
                inconsistent.append((len(snapshot.records), snapshot.skipped_count))

    readers = [threading.Thread(target=reader) for _ in range(4)]
    for thread in readers:
        thread.start()
    for cycle in range(1, 200):
        cache.refresh(lambda cycle=cycle: produce(cycle))
    stop.set()
    for thread in readers:
        thread.join()

    assert inconsistent == []
    assert cache.read().version == 199
