from __future__ import annotations

from sonic_prom_exporter.accounting import SkipReason, first_non_empty, status_to_gauge
from sonic_prom_exporter.config import DomainConfig
from sonic_prom_exporter.deadline import Deadline
from sonic_prom_exporter.pipeline import (
    ChildEntry,
    CycleStage,
    CycleTrace,
    DescriptorTable,
    KeySpace,
    MembershipRecords,
    PipelineOutput,
    record,
    scan_children,
    scan_identifiers,
    walk_membership,
)
from sonic_prom_exporter.snapshot import MetricRecord
from sonic_prom_exporter.store import SourceStore


CONFIG_VLANS = KeySpace("CONFIG_DB", "VLAN|")
APPL_VLANS = KeySpace("APPL_DB", "VLAN_TABLE:")
CONFIG_VLAN_MEMBERS = KeySpace("CONFIG_DB", "VLAN_MEMBER|")


class VlanPipeline:
    name = "vlan"

    def __init__(self, config: DomainConfig) -> None:
        self.config = config
        self.descriptors = DescriptorTable("vlan", "VLAN")
        self.vlan_info = self.descriptors.add(
            "info", "Non-numeric data about VLAN, value is always 1", ("vlan", "vlan_id")
        )
        self.admin_status = self.descriptors.add(
            "admin_status", "Administrative state of VLAN (1=up, 0=down)", ("vlan",)
        )
        self.oper_status = self.descriptors.add(
            "oper_status", "Operational state of VLAN (1=up, 0=down)", ("vlan",)
        )
        self.members = self.descriptors.add("members", "Number of VLAN members exported", ("vlan",))
        self.members_discovered = self.descriptors.add(
            "members_discovered", "Number of VLAN members found, including members over the limit", ("vlan",)
        )
        self.member_info = self.descriptors.add(
            "member_info",
            "Non-numeric data about VLAN member, value is always 1",
            ("vlan", "member", "tagging_mode"),
        )

    def extract(self, store: SourceStore, deadline: Deadline, trace: CycleTrace) -> PipelineOutput:
        output = PipelineOutput()
        ledger = output.ledger
        count = self.config.scan_count

        trace.enter(CycleStage.SCANNING)
        vlans = scan_identifiers(
            store, CONFIG_VLANS, count=count, deadline=deadline, ledger=ledger, namespace="vlan_key"
        )
        vlans |= scan_identifiers(
            store, APPL_VLANS, count=count, deadline=deadline, ledger=ledger, namespace="vlan_key"
        )
        members = scan_children(
            store,
            CONFIG_VLAN_MEMBERS,
            "|",
            count=count,
            deadline=deadline,
            ledger=ledger,
            namespace="vlan_member",
        )

        trace.enter(CycleStage.BOUNDING)

        def emit_vlan(vlan_name: str) -> list[MetricRecord]:
            config_data = store.get_all(CONFIG_VLANS.db, CONFIG_VLANS.key(vlan_name), deadline)
            appl_data = store.get_all(APPL_VLANS.db, APPL_VLANS.key(vlan_name), deadline)
            vlan_id = first_non_empty(config_data.get("vlanid"), vlan_name.removeprefix("Vlan"))
            records = [record(self.vlan_info, 1, vlan_name, vlan_id)]
            admin_status = first_non_empty(appl_data.get("admin_status"), config_data.get("admin_status"))
            if admin_status:
                records.append(record(self.admin_status, status_to_gauge(admin_status), vlan_name))
            oper_status = appl_data.get("oper_status", "")
            if oper_status:
                records.append(record(self.oper_status, status_to_gauge(oper_status), vlan_name))
            return records

        def emit_member(vlan_name: str, member: ChildEntry) -> MetricRecord:
            tagging_mode = first_non_empty(member.fields.get("tagging_mode"), "unknown")
            return record(self.member_info, 1, vlan_name, member.name, tagging_mode)

        output.records = walk_membership(
            sorted(vlans),
            members,
            max_parents=self.config.max_entities,
            max_children=self.config.max_children,
            ledger=ledger,
            parent_namespace="vlan",
            child_namespace="vlan_member",
            deadline=deadline,
            emit_parent=emit_vlan,
            membership=MembershipRecords(
                members=self.members,
                members_discovered=self.members_discovered,
                child=emit_member,
            ),
        )
        output.truncated = ledger.skipped_count("vlan", SkipReason.OVER_PARENT_CAP) > 0
        trace.enter(CycleStage.EMITTING)
        return output
