from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Callable, Iterable, Iterator

from prometheus_client import CollectorRegistry
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from sonic_prom_exporter.config import DomainConfig
from sonic_prom_exporter.docker import DockerPipeline
from sonic_prom_exporter.fdb import FdbPipeline
from sonic_prom_exporter.lag import LagPipeline
from sonic_prom_exporter.lldp import LldpPipeline
from sonic_prom_exporter.pipeline import MetricDescriptor, Pipeline, make_producer
from sonic_prom_exporter.scheduler import RefreshScheduler
from sonic_prom_exporter.snapshot import MetricKind, MetricRecord, SnapshotCache
from sonic_prom_exporter.store import SourceStore
from sonic_prom_exporter.vlan import VlanPipeline


LOGGER = logging.getLogger("sonic_prom_exporter.exporter")

PIPELINE_FACTORIES: dict[str, Callable[[DomainConfig], Pipeline]] = {
    "vlan": VlanPipeline,
    "lag": LagPipeline,
    "lldp": LldpPipeline,
    "fdb": FdbPipeline,
    "docker": DockerPipeline,
}


def _family(descriptor: MetricDescriptor) -> Metric:
    if descriptor.kind is MetricKind.COUNTER:
        return CounterMetricFamily(descriptor.name, descriptor.documentation, labels=list(descriptor.label_names))
    return GaugeMetricFamily(descriptor.name, descriptor.documentation, labels=list(descriptor.label_names))


class DomainCollector:
    """Serves one domain's cached snapshot to the Prometheus registry.

    ``collect()`` never talks to the source store itself; the only store
    access on the scrape path is the on-demand refresh done by the scheduler.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        cache: SnapshotCache,
        scheduler: RefreshScheduler,
        *,
        enabled: bool = True,
    ) -> None:
        self.pipeline = pipeline
        self.cache = cache
        self.scheduler = scheduler
        self._enabled = enabled

    @property
    def name(self) -> str:
        return self.pipeline.name

    def is_enabled(self) -> bool:
        return self._enabled

    def describe(self) -> Iterator[Metric]:
        for descriptor in self.pipeline.descriptors:
            yield _family(descriptor)

    def collect(self) -> Iterator[Metric]:
        self.scheduler.ensure_fresh()
        state = self.cache.read()
        snapshot = state.snapshot
        table = self.pipeline.descriptors

        grouped: dict[str, list[MetricRecord]] = defaultdict(list)
        for metric_record in snapshot.records:
            grouped[metric_record.name].append(metric_record)

        for descriptor in table.domain_descriptors():
            records = grouped.pop(descriptor.name, [])
            if not records:
                continue
            family = _family(descriptor)
            for metric_record in records:
                family.add_metric(list(metric_record.label_values), metric_record.value)
            yield family

        for name in grouped:
            LOGGER.warning("%s snapshot holds records for undeclared metric %s", self.name, name)

        skipped = _family(table.health("entries_skipped"))
        skipped.add_metric([], float(snapshot.skipped_count))
        yield skipped

        by_reason = _family(table.health("entries_skipped_by_reason"))
        for reason, count in snapshot.skipped_by_reason:
            by_reason.add_metric([reason], float(count))
        yield by_reason

        truncated = _family(table.health("entries_truncated"))
        truncated.add_metric([], 1.0 if snapshot.truncated else 0.0)
        yield truncated

        duration = _family(table.health("scrape_duration_seconds"))
        duration.add_metric([], state.health.duration_seconds)
        yield duration

        success = _family(table.health("collector_success"))
        success.add_metric([], 1.0 if state.health.success else 0.0)
        yield success

        cache_age = _family(table.health("cache_age_seconds"))
        cache_age.add_metric([], self.cache.age_seconds(state))
        yield cache_age


def build_collector(
    config: DomainConfig,
    store: SourceStore,
    *,
    clock: Callable[[], float] = time.monotonic,
) -> DomainCollector:
    pipeline = PIPELINE_FACTORIES[config.name](config)
    cache = SnapshotCache(config.name, clock=clock)
    scheduler = RefreshScheduler(
        cache,
        make_producer(pipeline, store),
        mode=config.refresh_mode,
        interval_seconds=config.refresh_interval_seconds,
        timeout_seconds=config.timeout_seconds,
        freshness_window_seconds=config.freshness_window_seconds,
        clock=clock,
    )
    return DomainCollector(pipeline, cache, scheduler, enabled=config.enabled)


class SonicMetricsPublisher:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry
        self.collectors: list[DomainCollector] = []

    def register(self, collector: DomainCollector) -> bool:
        if not collector.is_enabled():
            LOGGER.info("%s collector disabled", collector.name)
            return False
        self.registry.register(collector)
        self.collectors.append(collector)
        LOGGER.info("%s collector enabled", collector.name)
        return True

    def register_all(self, collectors: Iterable[DomainCollector]) -> None:
        for collector in collectors:
            self.register(collector)

    def start(self) -> None:
        for collector in self.collectors:
            collector.scheduler.start()

    def refresh_once(self) -> None:
        for collector in self.collectors:
            collector.scheduler.run_cycle()

    def stop(self) -> None:
        for collector in self.collectors:
            collector.scheduler.stop()
