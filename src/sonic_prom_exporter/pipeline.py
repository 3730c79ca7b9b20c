from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterator, Protocol

from sonic_prom_exporter.accounting import Ledger, SkipReason, split_member_path, strip_prefix
from sonic_prom_exporter.deadline import Deadline
from sonic_prom_exporter.errors import AccountingError
from sonic_prom_exporter.snapshot import MetricKind, MetricRecord, Snapshot
from sonic_prom_exporter.store import SourceStore


LOGGER = logging.getLogger("sonic_prom_exporter.pipeline")

NAMESPACE = "sonic"


class CycleStage(str, enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    JOINING = "joining"
    BOUNDING = "bounding"
    EMITTING = "emitting"
    COMMITTED = "committed"
    FAILED = "failed"


class CycleTrace:
    def __init__(self, domain: str) -> None:
        self.domain = domain
        self.stage = CycleStage.IDLE
        self.history: list[CycleStage] = [CycleStage.IDLE]

    def enter(self, stage: CycleStage) -> None:
        LOGGER.debug("%s cycle %s -> %s", self.domain, self.stage.value, stage.value)
        self.stage = stage
        self.history.append(stage)


@dataclass(frozen=True)
class MetricDescriptor:
    name: str
    documentation: str
    label_names: tuple[str, ...] = ()
    kind: MetricKind = MetricKind.GAUGE


class DescriptorTable:
    """Metric descriptors owned by one domain, in describe order."""

    def __init__(self, subsystem: str, display_name: str) -> None:
        self.subsystem = subsystem
        self.display_name = display_name
        self._descriptors: dict[str, MetricDescriptor] = {}
        self._health: dict[str, MetricDescriptor] = {}
        for short_name, documentation, labels in (
            ("entries_skipped", f"Number of {display_name} entries skipped during latest refresh", ()),
            (
                "entries_skipped_by_reason",
                f"Number of {display_name} entries skipped during latest refresh by reason",
                ("reason",),
            ),
            (
                "entries_truncated",
                f"Whether {display_name} collection hit an entry limit (1=yes, 0=no)",
                (),
            ),
            ("scrape_duration_seconds", f"Time it took for exporter to refresh {display_name} metrics", ()),
            ("collector_success", f"Whether {display_name} collector succeeded", ()),
            ("cache_age_seconds", f"Age of latest {display_name} cache refresh", ()),
        ):
            descriptor = MetricDescriptor(self.full_name(short_name), documentation, tuple(labels))
            self._health[short_name] = descriptor

    def full_name(self, short_name: str) -> str:
        return f"{NAMESPACE}_{self.subsystem}_{short_name}"

    def add(
        self,
        short_name: str,
        documentation: str,
        label_names: tuple[str, ...] = (),
        kind: MetricKind = MetricKind.GAUGE,
    ) -> MetricDescriptor:
        descriptor = MetricDescriptor(self.full_name(short_name), documentation, label_names, kind)
        if descriptor.name in self._descriptors:
            raise ValueError(f"descriptor {descriptor.name} already registered")
        self._descriptors[descriptor.name] = descriptor
        return descriptor

    def health(self, short_name: str) -> MetricDescriptor:
        return self._health[short_name]

    def domain_descriptors(self) -> list[MetricDescriptor]:
        return list(self._descriptors.values())

    def __iter__(self) -> Iterator[MetricDescriptor]:
        yield from self._descriptors.values()
        yield from self._health.values()


def record(descriptor: MetricDescriptor, value: float, *label_values: str) -> MetricRecord:
    if len(label_values) != len(descriptor.label_names):
        raise ValueError(
            f"{descriptor.name} expects labels {descriptor.label_names}, got {len(label_values)} values"
        )
    return MetricRecord(
        name=descriptor.name,
        labels=tuple(zip(descriptor.label_names, label_values)),
        value=float(value),
        kind=descriptor.kind,
    )


@dataclass
class PipelineOutput:
    records: list[MetricRecord] = field(default_factory=list)
    ledger: Ledger = field(default_factory=Ledger)
    truncated: bool = False

    def to_snapshot(self) -> Snapshot:
        unbalanced = self.ledger.unbalanced()
        if unbalanced:
            raise AccountingError(f"unbalanced entry accounting in namespaces: {', '.join(unbalanced)}")
        return Snapshot(
            records=tuple(self.records),
            skipped_count=self.ledger.skipped_total,
            skipped_by_reason=tuple(self.ledger.skipped_by_reason().items()),
            truncated=self.truncated,
        )


class Pipeline(Protocol):
    name: str
    descriptors: DescriptorTable

    def extract(self, store: SourceStore, deadline: Deadline, trace: CycleTrace) -> PipelineOutput:
        ...


def make_producer(pipeline: Pipeline, store: SourceStore) -> Callable[[Deadline], Snapshot]:
    def produce(deadline: Deadline) -> Snapshot:
        trace = CycleTrace(pipeline.name)
        try:
            snapshot = pipeline.extract(store, deadline, trace).to_snapshot()
        except Exception:
            trace.enter(CycleStage.FAILED)
            raise
        trace.enter(CycleStage.COMMITTED)
        return snapshot

    return produce


@dataclass(frozen=True)
class KeySpace:
    db: str
    prefix: str

    @property
    def pattern(self) -> str:
        return f"{self.prefix}*"

    def key(self, identifier: str) -> str:
        return f"{self.prefix}{identifier}"


@dataclass(frozen=True)
class ChildEntry:
    name: str
    fields: dict[str, str] = field(default_factory=dict)


class CapGate:
    """Admits at most ``cap`` emitted items; later items are skipped with ``reason``."""

    def __init__(self, ledger: Ledger, namespace: str, cap: int, reason: SkipReason) -> None:
        self._ledger = ledger
        self._namespace = namespace
        self._cap = cap
        self._reason = reason
        self.emitted = 0

    def admit(self, detail: str = "") -> bool:
        if self.emitted >= self._cap:
            self._ledger.skip(self._namespace, self._reason, detail=detail)
            return False
        return True

    def emit(self) -> None:
        self._ledger.emit(self._namespace)
        self.emitted += 1


def scan_identifiers(
    store: SourceStore,
    space: KeySpace,
    *,
    count: int,
    deadline: Deadline,
    ledger: Ledger,
    namespace: str,
) -> set[str]:
    identifiers: set[str] = set()
    for key in store.scan_keys(space.db, space.pattern, count, deadline):
        ledger.seen(namespace)
        identifier = strip_prefix(key, space.prefix)
        if not identifier:
            ledger.skip(namespace, SkipReason.MALFORMED_KEY, detail=key)
            continue
        ledger.emit(namespace)
        identifiers.add(identifier)
    return identifiers


def scan_children(
    store: SourceStore,
    space: KeySpace,
    separator: str,
    *,
    count: int,
    deadline: Deadline,
    ledger: Ledger,
    namespace: str,
) -> dict[str, list[ChildEntry]]:
    """Group ``<prefix><parent><separator><child>`` keys by parent.

    Children come back sorted by name within each parent. Every child is
    counted as seen here; the caller must emit or skip each one it receives.
    """
    grouped: dict[str, list[ChildEntry]] = {}
    for key in store.scan_keys(space.db, space.pattern, count, deadline):
        ledger.seen(namespace)
        path = strip_prefix(key, space.prefix)
        parts = split_member_path(path, separator) if path else None
        if parts is None:
            ledger.skip(namespace, SkipReason.MALFORMED_KEY, detail=key)
            continue
        parent, child = parts
        fields = store.get_all(space.db, key, deadline)
        grouped.setdefault(parent, []).append(ChildEntry(name=child, fields=fields))
    for children in grouped.values():
        children.sort(key=lambda entry: entry.name)
    return grouped


def discard_children(
    grouped: dict[str, list[ChildEntry]],
    parents: list[str],
    *,
    ledger: Ledger,
    namespace: str,
    reason: SkipReason,
) -> None:
    for parent in parents:
        children = grouped.pop(parent, [])
        ledger.skip(namespace, reason, len(children), detail=f"{len(children)} children of {parent}")


@dataclass(frozen=True)
class MembershipRecords:
    """Descriptors used by ``walk_membership`` for one parent/children domain."""

    members: MetricDescriptor
    members_discovered: MetricDescriptor
    child: Callable[[str, ChildEntry], MetricRecord]


def walk_membership(
    parents: list[str],
    grouped: dict[str, list[ChildEntry]],
    *,
    max_parents: int,
    max_children: int,
    ledger: Ledger,
    parent_namespace: str,
    child_namespace: str,
    deadline: Deadline,
    emit_parent: Callable[[str], list[MetricRecord]],
    membership: MembershipRecords,
) -> list[MetricRecord]:
    """Bounded walk over sorted parents and their sorted children.

    ``grouped`` is consumed: children of parents outside ``parents`` are
    skipped as ``unknown_parent``, children of parents beyond the cap as
    ``over_parent_cap``.
    """
    records: list[MetricRecord] = []
    parent_gate = CapGate(ledger, parent_namespace, max_parents, SkipReason.OVER_PARENT_CAP)
    ledger.seen(parent_namespace, len(parents))
    over_cap: list[str] = []

    for parent in parents:
        if not parent_gate.admit(detail=parent):
            over_cap.append(parent)
            continue
        deadline.check(f"reading {parent}")
        records.extend(emit_parent(parent))

        children = grouped.pop(parent, [])
        child_gate = CapGate(ledger, child_namespace, max_children, SkipReason.OVER_CHILD_CAP)
        for child in children:
            if not child_gate.admit(detail=f"{parent}/{child.name}"):
                continue
            records.append(membership.child(parent, child))
            child_gate.emit()

        records.append(record(membership.members, child_gate.emitted, parent))
        records.append(record(membership.members_discovered, len(children), parent))
        parent_gate.emit()

    discard_children(grouped, over_cap, ledger=ledger, namespace=child_namespace, reason=SkipReason.OVER_PARENT_CAP)
    discard_children(
        grouped,
        sorted(grouped),
        ledger=ledger,
        namespace=child_namespace,
        reason=SkipReason.UNKNOWN_PARENT,
    )
    return records
