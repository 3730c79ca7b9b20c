from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass

from sonic_prom_exporter.accounting import Ledger, SkipReason, strip_prefix
from sonic_prom_exporter.config import DomainConfig
from sonic_prom_exporter.deadline import Deadline
from sonic_prom_exporter.pipeline import (
    CycleStage,
    CycleTrace,
    DescriptorTable,
    KeySpace,
    MetricDescriptor,
    PipelineOutput,
    record,
)
from sonic_prom_exporter.snapshot import MetricRecord
from sonic_prom_exporter.store import SourceStore


LOGGER = logging.getLogger("sonic_prom_exporter.fdb")

FDB_ENTRIES = KeySpace("ASIC_DB", "ASIC_STATE:SAI_OBJECT_TYPE_FDB_ENTRY:")
VLAN_OBJECTS = KeySpace("ASIC_DB", "ASIC_STATE:SAI_OBJECT_TYPE_VLAN:")
BRIDGE_PORTS = KeySpace("ASIC_DB", "ASIC_STATE:SAI_OBJECT_TYPE_BRIDGE_PORT:")
PORT_NAME_MAPS = ("COUNTERS_PORT_NAME_MAP", "COUNTERS_LAG_NAME_MAP")

UNKNOWN = "unknown"
_FDB_TYPE_PREFIX = "sai_fdb_entry_type_"


class MalformedFdbKey(ValueError):
    pass


@dataclass(frozen=True)
class FdbEntryKey:
    mac: str
    bvid: str = ""
    vlan: str = ""


def parse_fdb_key(key: str) -> FdbEntryKey:
    """Decode the JSON payload after the FDB entry prefix.

    Raises ``MalformedFdbKey`` when the payload is missing, is not a JSON
    object of strings, or has no MAC address.
    """
    payload = strip_prefix(key, FDB_ENTRIES.prefix)
    if not payload:
        raise MalformedFdbKey("fdb key has invalid format")
    try:
        decoded = json.loads(payload)
    except ValueError as exc:
        raise MalformedFdbKey(f"fdb key payload is not json: {exc}") from exc
    if not isinstance(decoded, dict):
        raise MalformedFdbKey("fdb key payload is not an object")

    values = {}
    for name in ("mac", "bvid", "vlan"):
        value = decoded.get(name)
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise MalformedFdbKey(f"fdb key field {name} is not a string")
        values[name] = value
    if not values["mac"]:
        raise MalformedFdbKey("missing mac in fdb key")
    return FdbEntryKey(**values)


def resolve_vlan_label(entry: FdbEntryKey, bvid_to_vlan: dict[str, str]) -> tuple[str, bool]:
    """Return ``(label, unknown)``; an embedded VLAN wins over the bvid lookup."""
    label = entry.vlan.strip()
    if label:
        return label, False
    label = bvid_to_vlan.get(entry.bvid.strip(), "")
    if label:
        return label, False
    return UNKNOWN, True


def normalize_fdb_type(raw: str | None) -> str:
    entry_type = (raw or "").strip().lower().removeprefix(_FDB_TYPE_PREFIX)
    return entry_type or UNKNOWN


def port_oid_to_name(store: SourceStore, deadline: Deadline) -> dict[str, str]:
    oid_to_name: dict[str, str] = {}
    for map_key in PORT_NAME_MAPS:
        for name, oid in store.get_all("COUNTERS_DB", map_key, deadline).items():
            oid_to_name[oid] = name
    return oid_to_name


def bvid_to_vlan_map(
    store: SourceStore, *, count: int, deadline: Deadline, ledger: Ledger
) -> dict[str, str]:
    namespace = "fdb_vlan_object"
    mapping: dict[str, str] = {}
    for key in store.scan_keys(VLAN_OBJECTS.db, VLAN_OBJECTS.pattern, count, deadline):
        ledger.seen(namespace)
        bvid = strip_prefix(key, VLAN_OBJECTS.prefix)
        if not bvid:
            ledger.skip(namespace, SkipReason.MALFORMED_KEY, detail=key)
            continue
        vlan_id = store.get_all(VLAN_OBJECTS.db, key, deadline).get("SAI_VLAN_ATTR_VLAN_ID", "").strip()
        if not vlan_id:
            ledger.skip(namespace, SkipReason.MISSING_FIELD, detail=key)
            continue
        mapping[bvid] = vlan_id
        ledger.emit(namespace)
    return mapping


def bridge_port_to_port_map(
    store: SourceStore,
    oid_to_name: dict[str, str],
    *,
    count: int,
    deadline: Deadline,
    ledger: Ledger,
) -> dict[str, str]:
    namespace = "fdb_bridge_port"
    mapping: dict[str, str] = {}
    for key in store.scan_keys(BRIDGE_PORTS.db, BRIDGE_PORTS.pattern, count, deadline):
        ledger.seen(namespace)
        bridge_port = strip_prefix(key, BRIDGE_PORTS.prefix)
        if not bridge_port:
            ledger.skip(namespace, SkipReason.MALFORMED_KEY, detail=key)
            continue
        port_oid = store.get_all(BRIDGE_PORTS.db, key, deadline).get("SAI_BRIDGE_PORT_ATTR_PORT_ID", "")
        if not port_oid:
            # router and tunnel bridge ports carry no port id
            ledger.skip(namespace, SkipReason.MISSING_FIELD, detail=key)
            continue
        port_name = oid_to_name.get(port_oid, "")
        if not port_name:
            ledger.skip(namespace, SkipReason.UNRESOLVED_REFERENCE, detail=f"{key} -> {port_oid}")
            continue
        mapping[bridge_port] = port_name
        ledger.emit(namespace)
    return mapping


class FdbPipeline:
    name = "fdb"

    def __init__(self, config: DomainConfig) -> None:
        self.config = config
        self.descriptors = DescriptorTable("fdb", "FDB")
        self.entries = self.descriptors.add("entries", "Number of FDB entries exported")
        self.entries_unknown_vlan = self.descriptors.add(
            "entries_unknown_vlan", "Number of FDB entries whose VLAN could not be resolved"
        )
        self.entries_unknown_port = self.descriptors.add(
            "entries_unknown_port", "Number of FDB entries whose port could not be resolved"
        )
        self.entries_by_vlan = self.descriptors.add("entries_by_vlan", "Number of FDB entries per VLAN", ("vlan",))
        self.entries_by_port = self.descriptors.add("entries_by_port", "Number of FDB entries per port", ("port",))
        self.entries_by_type = self.descriptors.add(
            "entries_by_type", "Number of FDB entries per entry type", ("entry_type",)
        )

    def _series(
        self,
        descriptor: MetricDescriptor,
        counts: Counter,
        *,
        cap: int | None,
        ledger: Ledger,
        namespace: str,
    ) -> list[MetricRecord]:
        labels = sorted(counts)
        ledger.seen(namespace, len(labels))
        if cap is not None and len(labels) > cap:
            ledger.skip(namespace, SkipReason.OVER_SERIES_CAP, len(labels) - cap, detail=descriptor.name)
            labels = labels[:cap]
        ledger.emit(namespace, len(labels))
        return [record(descriptor, counts[label], label) for label in labels]

    def extract(self, store: SourceStore, deadline: Deadline, trace: CycleTrace) -> PipelineOutput:
        output = PipelineOutput()
        ledger = output.ledger
        count = self.config.scan_count
        namespace = "fdb_entry"

        trace.enter(CycleStage.SCANNING)
        oid_to_name = port_oid_to_name(store, deadline)
        bvid_to_vlan = bvid_to_vlan_map(store, count=count, deadline=deadline, ledger=ledger)
        bridge_port_to_port = bridge_port_to_port_map(
            store, oid_to_name, count=count, deadline=deadline, ledger=ledger
        )
        keys = store.scan_keys(FDB_ENTRIES.db, FDB_ENTRIES.pattern, count, deadline)
        ledger.seen(namespace, len(keys))

        trace.enter(CycleStage.JOINING)
        max_entries = self.config.max_entities
        if len(keys) > max_entries:
            output.truncated = True
            ledger.skip(namespace, SkipReason.OVER_ENTRY_CAP, len(keys) - max_entries, detail=f"{len(keys)} entries")
            keys = keys[:max_entries]

        unknown_vlan = 0
        unknown_port = 0
        by_vlan: Counter = Counter()
        by_port: Counter = Counter()
        by_type: Counter = Counter()
        for key in keys:
            try:
                entry = parse_fdb_key(key)
            except MalformedFdbKey as exc:
                ledger.skip(namespace, SkipReason.MALFORMED_KEY, detail=f"{key}: {exc}")
                continue
            fields = store.get_all(FDB_ENTRIES.db, key, deadline)
            if not fields:
                ledger.skip(namespace, SkipReason.MISSING_FIELD, detail=key)
                continue

            vlan_label, vlan_unknown = resolve_vlan_label(entry, bvid_to_vlan)
            if vlan_unknown:
                unknown_vlan += 1
            port_label = bridge_port_to_port.get(fields.get("SAI_FDB_ENTRY_ATTR_BRIDGE_PORT_ID", ""), "")
            if not port_label:
                port_label = UNKNOWN
                unknown_port += 1

            by_vlan[vlan_label] += 1
            by_port[port_label] += 1
            by_type[normalize_fdb_type(fields.get("SAI_FDB_ENTRY_ATTR_TYPE"))] += 1
            ledger.emit(namespace)

        trace.enter(CycleStage.BOUNDING)
        vlan_series = self._series(
            self.entries_by_vlan,
            by_vlan,
            cap=self.config.max_vlan_series,
            ledger=ledger,
            namespace="fdb_vlan_series",
        )
        port_series = self._series(
            self.entries_by_port,
            by_port,
            cap=self.config.max_port_series,
            ledger=ledger,
            namespace="fdb_port_series",
        )
        type_series = self._series(self.entries_by_type, by_type, cap=None, ledger=ledger, namespace="fdb_type_series")

        trace.enter(CycleStage.EMITTING)
        output.records.append(record(self.entries, ledger.emitted_count(namespace)))
        output.records.append(record(self.entries_unknown_vlan, unknown_vlan))
        output.records.append(record(self.entries_unknown_port, unknown_port))
        output.records.extend(vlan_series)
        output.records.extend(port_series)
        output.records.extend(type_series)
        if output.truncated:
            LOGGER.debug("FDB entries truncated at %d", max_entries)
        return output
