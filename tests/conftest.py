from __future__ import annotations

import copy
import fnmatch
import json
from pathlib import Path

import pytest

from sonic_prom_exporter.deadline import Deadline
from sonic_prom_exporter.pipeline import CycleTrace
from sonic_prom_exporter.snapshot import MetricRecord


FIXTURES = Path(__file__).parent / "fixtures"


def gauge(name: str, value: float, **labels: str) -> MetricRecord:
    return MetricRecord(name=name, labels=tuple(labels.items()), value=float(value))


class FakeSourceStore:
    """In-memory stand-in for the SONiC redis databases.

    ``tables`` maps database name to ``{key: {field: value}}``. Setting
    ``fail_with`` makes every call raise that exception.
    """

    def __init__(self, tables: dict[str, dict[str, dict[str, str]]] | None = None) -> None:
        self.tables = copy.deepcopy(tables or {})
        self.fail_with: Exception | None = None
        self.calls = 0
        self.closed = False

    @classmethod
    def from_fixture(cls, name: str = "switch.json") -> "FakeSourceStore":
        return cls(json.loads((FIXTURES / name).read_text(encoding="utf-8")))

    def _enter(self, deadline: Deadline, activity: str) -> None:
        self.calls += 1
        deadline.check(activity)
        if self.fail_with is not None:
            raise self.fail_with

    def scan_keys(self, db: str, pattern: str, count: int, deadline: Deadline) -> list[str]:
        self._enter(deadline, f"scanning {db} {pattern}")
        return sorted(key for key in self.tables.get(db, {}) if fnmatch.fnmatchcase(key, pattern))

    def get_all(self, db: str, key: str, deadline: Deadline) -> dict[str, str]:
        self._enter(deadline, f"reading {db} {key}")
        return dict(self.tables.get(db, {}).get(key, {}))

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def switch_store() -> FakeSourceStore:
    return FakeSourceStore.from_fixture()


@pytest.fixture
def deadline() -> Deadline:
    return Deadline(60.0)


@pytest.fixture
def trace() -> CycleTrace:
    return CycleTrace("test")
