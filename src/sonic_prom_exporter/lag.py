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


CONFIG_LAGS = KeySpace("CONFIG_DB", "PORTCHANNEL|")
APPL_LAGS = KeySpace("APPL_DB", "LAG_TABLE:")
APPL_LAG_MEMBERS = KeySpace("APPL_DB", "LAG_MEMBER_TABLE:")


class LagPipeline:
    name = "lag"

    def __init__(self, config: DomainConfig) -> None:
        self.config = config
        self.descriptors = DescriptorTable("lag", "LAG")
        self.lag_info = self.descriptors.add("info", "Non-numeric data about LAG, value is always 1", ("lag",))
        self.admin_status = self.descriptors.add(
            "admin_status", "Administrative state of LAG (1=up, 0=down)", ("lag",)
        )
        self.oper_status = self.descriptors.add("oper_status", "Operational state of LAG (1=up, 0=down)", ("lag",))
        self.members = self.descriptors.add("members", "Number of LAG member interfaces exported", ("lag",))
        self.members_discovered = self.descriptors.add(
            "members_discovered",
            "Number of LAG member interfaces found, including members over the limit",
            ("lag",),
        )
        self.member_status = self.descriptors.add(
            "member_status", "Status of LAG member interface (1=enabled, 0=disabled)", ("lag", "member")
        )

    def extract(self, store: SourceStore, deadline: Deadline, trace: CycleTrace) -> PipelineOutput:
        output = PipelineOutput()
        ledger = output.ledger
        count = self.config.scan_count

        trace.enter(CycleStage.SCANNING)
        lags = scan_identifiers(store, CONFIG_LAGS, count=count, deadline=deadline, ledger=ledger, namespace="lag_key")
        lags |= scan_identifiers(store, APPL_LAGS, count=count, deadline=deadline, ledger=ledger, namespace="lag_key")
        members = scan_children(
            store,
            APPL_LAG_MEMBERS,
            ":",
            count=count,
            deadline=deadline,
            ledger=ledger,
            namespace="lag_member",
        )

        trace.enter(CycleStage.BOUNDING)

        def emit_lag(lag_name: str) -> list[MetricRecord]:
            config_data = store.get_all(CONFIG_LAGS.db, CONFIG_LAGS.key(lag_name), deadline)
            appl_data = store.get_all(APPL_LAGS.db, APPL_LAGS.key(lag_name), deadline)
            records = [record(self.lag_info, 1, lag_name)]
            admin_status = first_non_empty(appl_data.get("admin_status"), config_data.get("admin_status"))
            if admin_status:
                records.append(record(self.admin_status, status_to_gauge(admin_status), lag_name))
            oper_status = appl_data.get("oper_status", "")
            if oper_status:
                records.append(record(self.oper_status, status_to_gauge(oper_status), lag_name))
            return records

        def emit_member(lag_name: str, member: ChildEntry) -> MetricRecord:
            return record(self.member_status, status_to_gauge(member.fields.get("status")), lag_name, member.name)

        output.records = walk_membership(
            sorted(lags),
            members,
            max_parents=self.config.max_entities,
            max_children=self.config.max_children,
            ledger=ledger,
            parent_namespace="lag",
            child_namespace="lag_member",
            deadline=deadline,
            emit_parent=emit_lag,
            membership=MembershipRecords(
                members=self.members,
                members_discovered=self.members_discovered,
                child=emit_member,
            ),
        )
        output.truncated = ledger.skipped_count("lag", SkipReason.OVER_PARENT_CAP) > 0
        trace.enter(CycleStage.EMITTING)
        return output
