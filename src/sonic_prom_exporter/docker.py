from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Callable

from sonic_prom_exporter.accounting import Ledger, SkipReason
from sonic_prom_exporter.config import DomainConfig
from sonic_prom_exporter.deadline import Deadline
from sonic_prom_exporter.pipeline import (
    CapGate,
    CycleStage,
    CycleTrace,
    DescriptorTable,
    KeySpace,
    PipelineOutput,
    record,
)
from sonic_prom_exporter.snapshot import MetricKind
from sonic_prom_exporter.store import SourceStore


LOGGER = logging.getLogger("sonic_prom_exporter.docker")

DOCKER_STATS = KeySpace("STATE_DB", "DOCKER_STATS|")
LAST_UPDATE_KEY = DOCKER_STATS.key("LastUpdateTime")

_LAST_UPDATE_FIELDS = ("lastupdate", "last_update", "LastUpdate", "LastUpdateTime")
_FRACTION = re.compile(r"\.(\d+)")
_NUMBER = re.compile(r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf|infinity|nan)", re.IGNORECASE)

# (source field, metric short name, help, kind)
_CONTAINER_FIELDS: tuple[tuple[str, str, str, MetricKind], ...] = (
    ("CPU%", "container_cpu_percent", "Container CPU usage percent", MetricKind.GAUGE),
    ("MEM_BYTES", "container_memory_usage_bytes", "Container memory usage bytes", MetricKind.GAUGE),
    ("MEM_LIMIT_BYTES", "container_memory_limit_bytes", "Container memory limit bytes", MetricKind.GAUGE),
    ("MEM%", "container_memory_percent", "Container memory usage percent", MetricKind.GAUGE),
    ("NET_IN_BYTES", "container_network_receive_bytes_total", "Container network receive bytes", MetricKind.COUNTER),
    ("NET_OUT_BYTES", "container_network_transmit_bytes_total", "Container network transmit bytes", MetricKind.COUNTER),
    ("BLOCK_IN_BYTES", "container_block_read_bytes_total", "Container block read bytes", MetricKind.COUNTER),
    ("BLOCK_OUT_BYTES", "container_block_write_bytes_total", "Container block write bytes", MetricKind.COUNTER),
    ("PIDS", "container_pids", "Container process count", MetricKind.GAUGE),
)


def resolve_last_update_value(fields: dict[str, str]) -> str:
    for name in _LAST_UPDATE_FIELDS:
        value = fields.get(name, "").strip()
        if value:
            return value
    for name, raw_value in fields.items():
        normalized = name.strip().replace("_", "").lower()
        if normalized in {"lastupdate", "lastupdatetime"} and raw_value.strip():
            return raw_value.strip()
    return ""


def parse_source_timestamp(value: str) -> float:
    """Parse the timestamps docker stats writers use; naive values are UTC."""
    normalized = _FRACTION.sub(lambda matched: "." + matched.group(1).ljust(6, "0")[:6], value.strip(), count=1)
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def parse_stat(fields: dict[str, str], name: str) -> float | None:
    raw = fields.get(name, "").strip()
    if not _NUMBER.fullmatch(raw):
        return None
    return float(raw)


class DockerPipeline:
    name = "docker"

    def __init__(self, config: DomainConfig, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self._clock = clock
        self.descriptors = DescriptorTable("docker", "docker")
        self.container_info = self.descriptors.add(
            "container_info", "Container metadata from SONiC DOCKER_STATS, value is always 1", ("container",)
        )
        self.container_stats = [
            (source_field, self.descriptors.add(short_name, documentation, ("container",), kind))
            for source_field, short_name, documentation, kind in _CONTAINER_FIELDS
        ]
        self.containers = self.descriptors.add("containers", "Number of containers with DOCKER_STATS entries")
        self.source_last_update = self.descriptors.add(
            "source_last_update_timestamp_seconds",
            "Unix timestamp of DOCKER_STATS|LastUpdateTime source update",
        )
        self.source_age = self.descriptors.add(
            "source_age_seconds", "Age in seconds of DOCKER_STATS source update, measured at the last refresh"
        )
        self.source_stale = self.descriptors.add(
            "source_stale", "Whether DOCKER_STATS source data is stale (1=yes, 0=no)"
        )

    def _source_freshness(self, store: SourceStore, deadline: Deadline) -> tuple[float, float, bool]:
        """Return (update timestamp, age seconds, stale); a missing timestamp counts as stale."""
        raw = resolve_last_update_value(store.get_all(DOCKER_STATS.db, LAST_UPDATE_KEY, deadline))
        if not raw:
            LOGGER.debug("DOCKER_STATS lastupdate field missing")
            return 0.0, 0.0, True
        try:
            updated_at = parse_source_timestamp(raw)
        except ValueError:
            LOGGER.debug("failed to parse DOCKER_STATS lastupdate timestamp %r", raw)
            return 0.0, 0.0, True
        age = max(0.0, self._clock() - updated_at)
        stale = age > self.config.source_stale_threshold_seconds
        if stale:
            LOGGER.debug(
                "DOCKER_STATS source is stale: age %.1fs > %.1fs",
                age,
                self.config.source_stale_threshold_seconds,
            )
        return updated_at, age, stale

    def _container_stat_records(self, container: str, fields: dict[str, str], ledger: Ledger) -> list:
        records = []
        for source_field, descriptor in self.container_stats:
            ledger.seen("docker_field")
            value = parse_stat(fields, source_field)
            if value is None:
                ledger.skip("docker_field", SkipReason.MISSING_FIELD, detail=f"{container} {source_field}")
                continue
            records.append(record(descriptor, value, container))
            ledger.emit("docker_field")
        return records

    def extract(self, store: SourceStore, deadline: Deadline, trace: CycleTrace) -> PipelineOutput:
        output = PipelineOutput()
        ledger = output.ledger
        namespace = "docker_entry"

        trace.enter(CycleStage.SCANNING)
        updated_at, age, stale = self._source_freshness(store, deadline)
        keys = [
            key
            for key in store.scan_keys(DOCKER_STATS.db, DOCKER_STATS.pattern, self.config.scan_count, deadline)
            if key != LAST_UPDATE_KEY
        ]

        trace.enter(CycleStage.BOUNDING)
        gate = CapGate(ledger, namespace, self.config.max_entities, SkipReason.OVER_ENTRY_CAP)
        for key in keys:
            ledger.seen(namespace)
            if not gate.admit(detail=key):
                continue
            fields = store.get_all(DOCKER_STATS.db, key, deadline)
            container = fields.get("NAME", "").strip()
            if not container:
                ledger.skip(namespace, SkipReason.MISSING_FIELD, detail=key)
                continue
            output.records.append(record(self.container_info, 1, container))
            output.records.extend(self._container_stat_records(container, fields, ledger))
            gate.emit()

        if gate.emitted == 0:
            LOGGER.debug("no DOCKER_STATS container entries found")

        trace.enter(CycleStage.EMITTING)
        output.records.append(record(self.containers, gate.emitted))
        output.records.append(record(self.source_last_update, updated_at))
        output.records.append(record(self.source_age, age))
        output.records.append(record(self.source_stale, 1 if stale else 0))
        output.truncated = ledger.skipped_count(namespace, SkipReason.OVER_ENTRY_CAP) > 0
        return output
