from dataclasses import replace

from conftest import FakeSourceStore

from sonic_prom_exporter.config import DOMAIN_DEFAULTS
from sonic_prom_exporter.lag import LagPipeline
from sonic_prom_exporter.pipeline import CycleTrace


def _values(records, name: str) -> dict[tuple[str, ...], float]:
    return {record.label_values: record.value for record in records if record.name == name}


def test_lag_extract_reports_members_and_status(switch_store, deadline, trace) -> None:
    output = LagPipeline(DOMAIN_DEFAULTS["lag"]).extract(switch_store, deadline, trace)

    assert _values(output.records, "sonic_lag_info") == {("PortChannel1",): 1.0, ("PortChannel2",): 1.0}
    assert _values(output.records, "sonic_lag_admin_status") == {("PortChannel1",): 1.0, ("PortChannel2",): 1.0}
    assert _values(output.records, "sonic_lag_oper_status") == {("PortChannel1",): 1.0, ("PortChannel2",): 0.0}
    assert _values(output.records, "sonic_lag_members") == {("PortChannel1",): 2.0, ("PortChannel2",): 0.0}
    assert _values(output.records, "sonic_lag_member_status") == {
        ("PortChannel1", "Ethernet16"): 1.0,
        ("PortChannel1", "Ethernet20"): 0.0,
    }
    assert output.ledger.skipped_total == 0
    assert output.ledger.unbalanced() == []


def test_lag_member_status_is_case_insensitive(deadline) -> None:
    store = FakeSourceStore(
        {
            "APPL_DB": {
                "LAG_TABLE:PortChannel5": {"oper_status": "UP"},
                "LAG_MEMBER_TABLE:PortChannel5:Ethernet0": {"status": "SELECTED"},
                "LAG_MEMBER_TABLE:PortChannel5:Ethernet4": {"status": ""},
            }
        }
    )
    output = LagPipeline(DOMAIN_DEFAULTS["lag"]).extract(store, deadline, CycleTrace("lag"))

    assert _values(output.records, "sonic_lag_member_status") == {
        ("PortChannel5", "Ethernet0"): 1.0,
        ("PortChannel5", "Ethernet4"): 0.0,
    }
    assert _values(output.records, "sonic_lag_oper_status") == {("PortChannel5",): 1.0}
    assert _values(output.records, "sonic_lag_admin_status") == {}


def test_lag_parent_cap_discards_members_of_dropped_lags(switch_store, deadline) -> None:
    config = replace(DOMAIN_DEFAULTS["lag"], max_entities=1)
    store = FakeSourceStore(switch_store.tables)
    store.tables["APPL_DB"]["LAG_MEMBER_TABLE:PortChannel2:Ethernet24"] = {"status": "enabled"}

    output = LagPipeline(config).extract(store, deadline, CycleTrace("lag"))

    assert set(_values(output.records, "sonic_lag_info")) == {("PortChannel1",)}
    assert output.ledger.skipped_by_reason() == {"over_parent_cap": 2}
    assert output.ledger.skipped_count("lag_member") == 1
    assert output.truncated is True
    assert output.ledger.unbalanced() == []


def test_lag_malformed_member_key_is_skipped(deadline) -> None:
    store = FakeSourceStore(
        {
            "APPL_DB": {
                "LAG_TABLE:PortChannel1": {"oper_status": "up"},
                "LAG_MEMBER_TABLE:PortChannel1": {"status": "enabled"},
            }
        }
    )
    output = LagPipeline(DOMAIN_DEFAULTS["lag"]).extract(store, deadline, CycleTrace("lag"))

    assert output.ledger.skipped_by_reason() == {"malformed_key": 1}
    assert _values(output.records, "sonic_lag_members") == {("PortChannel1",): 0.0}
