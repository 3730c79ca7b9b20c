from __future__ import annotations

from sonic_prom_exporter.accounting import SkipReason, strip_prefix
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
from sonic_prom_exporter.store import SourceStore


LLDP_ENTRIES = KeySpace("APPL_DB", "LLDP_ENTRY_TABLE:")
MANAGEMENT_INTERFACE = "eth0"

_REMOTE_FIELDS = (
    "lldp_rem_sys_name",
    "lldp_rem_port_id",
    "lldp_rem_port_desc",
    "lldp_rem_chassis_id",
    "lldp_rem_man_addr",
)
# port-id subtypes whose id is not meaningful to humans (local index, MAC)
_DESCRIPTIVE_SUBTYPES = {"7", "local", "3", "mac"}


def local_role(interface: str) -> str:
    if interface == MANAGEMENT_INTERFACE:
        return "management"
    if interface.startswith("Ethernet"):
        return "frontpanel"
    return "other"


def remote_port_display(port_id: str, port_desc: str, port_id_subtype: str) -> str:
    subtype = port_id_subtype.strip().lower()
    if port_desc and subtype in _DESCRIPTIVE_SUBTYPES:
        return port_desc
    if port_id:
        return port_id
    return port_desc


class LldpPipeline:
    name = "lldp"

    def __init__(self, config: DomainConfig) -> None:
        self.config = config
        self.descriptors = DescriptorTable("lldp", "LLDP")
        self.neighbor_info = self.descriptors.add(
            "neighbor_info",
            "Non-numeric data about LLDP neighbor, value is always 1",
            (
                "local_interface",
                "local_role",
                "remote_system_name",
                "remote_port_id",
                "remote_port_desc",
                "remote_port_id_subtype",
                "remote_port_display",
                "remote_chassis_id",
                "remote_mgmt_ip",
            ),
        )
        self.neighbors = self.descriptors.add("neighbors", "Number of LLDP neighbors exported")

    def extract(self, store: SourceStore, deadline: Deadline, trace: CycleTrace) -> PipelineOutput:
        output = PipelineOutput()
        ledger = output.ledger
        namespace = "lldp_entry"

        trace.enter(CycleStage.SCANNING)
        keys = store.scan_keys(LLDP_ENTRIES.db, LLDP_ENTRIES.pattern, self.config.scan_count, deadline)

        trace.enter(CycleStage.BOUNDING)
        gate = CapGate(ledger, namespace, self.config.max_entities, SkipReason.OVER_ENTRY_CAP)
        for key in keys:
            ledger.seen(namespace)
            interface = strip_prefix(key, LLDP_ENTRIES.prefix)
            if not interface:
                ledger.skip(namespace, SkipReason.MALFORMED_KEY, detail=key)
                continue
            if not self.config.include_mgmt and interface == MANAGEMENT_INTERFACE:
                ledger.skip(namespace, SkipReason.EXCLUDED, detail=key)
                continue
            if not gate.admit(detail=key):
                continue

            fields = store.get_all(LLDP_ENTRIES.db, key, deadline)
            if not fields or not any(fields.get(name) for name in _REMOTE_FIELDS):
                ledger.skip(namespace, SkipReason.MISSING_FIELD, detail=key)
                continue

            port_id = fields.get("lldp_rem_port_id", "")
            port_desc = fields.get("lldp_rem_port_desc", "")
            port_id_subtype = fields.get("lldp_rem_port_id_subtype", "")
            output.records.append(
                record(
                    self.neighbor_info,
                    1,
                    interface,
                    local_role(interface),
                    fields.get("lldp_rem_sys_name", ""),
                    port_id,
                    port_desc,
                    port_id_subtype,
                    remote_port_display(port_id, port_desc, port_id_subtype),
                    fields.get("lldp_rem_chassis_id", ""),
                    fields.get("lldp_rem_man_addr", ""),
                )
            )
            gate.emit()

        trace.enter(CycleStage.EMITTING)
        output.records.append(record(self.neighbors, gate.emitted))
        output.truncated = ledger.skipped_count(namespace, SkipReason.OVER_ENTRY_CAP) > 0
        return output
