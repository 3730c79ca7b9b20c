import pytest
import redis

from sonic_prom_exporter.deadline import Deadline
from sonic_prom_exporter.errors import DeadlineExceeded, SourceUnavailable
from sonic_prom_exporter.store import RedisSourceStore


class ScriptedRedis:
    def __init__(self, pages=None, hashes=None, error: Exception | None = None) -> None:
        self.pages = list(pages or [])
        self.hashes = hashes or {}
        self.error = error
        self.scan_calls: list[tuple[int, str, int]] = []

    def scan(self, cursor: int, match: str, count: int):
        self.scan_calls.append((cursor, match, count))
        if self.error is not None:
            raise self.error
        return self.pages.pop(0)

    def hgetall(self, key: str):
        if self.error is not None:
            raise self.error
        return self.hashes.get(key, {})

    def close(self) -> None:
        pass


def _store_with(monkeypatch, client: ScriptedRedis) -> RedisSourceStore:
    store = RedisSourceStore("localhost:6379")
    monkeypatch.setattr(store, "_connect", lambda db_index: client)
    return store


def test_scan_keys_follows_cursor_and_deduplicates(monkeypatch) -> None:
    client = ScriptedRedis(pages=[(17, ["VLAN|Vlan20", "VLAN|Vlan10"]), (0, ["VLAN|Vlan10"])])
    store = _store_with(monkeypatch, client)

    keys = store.scan_keys("CONFIG_DB", "VLAN|*", 100, Deadline(5.0))

    assert keys == ["VLAN|Vlan10", "VLAN|Vlan20"]
    assert client.scan_calls == [(0, "VLAN|*", 100), (17, "VLAN|*", 100)]


def test_get_all_returns_plain_dict(monkeypatch) -> None:
    client = ScriptedRedis(hashes={"LAG_TABLE:PortChannel1": {"oper_status": "up"}})
    store = _store_with(monkeypatch, client)
    assert store.get_all("APPL_DB", "LAG_TABLE:PortChannel1", Deadline(5.0)) == {"oper_status": "up"}
    assert store.get_all("APPL_DB", "LAG_TABLE:PortChannel9", Deadline(5.0)) == {}


def test_redis_errors_are_mapped(monkeypatch) -> None:
    store = _store_with(monkeypatch, ScriptedRedis(error=redis.ConnectionError("refused")))
    with pytest.raises(SourceUnavailable):
        store.scan_keys("APPL_DB", "LAG_TABLE:*", 10, Deadline(5.0))

    store = _store_with(monkeypatch, ScriptedRedis(error=redis.TimeoutError("slow")))
    with pytest.raises(DeadlineExceeded):
        store.get_all("APPL_DB", "LAG_TABLE:PortChannel1", Deadline(5.0))


def test_expired_deadline_stops_before_round_trip(monkeypatch) -> None:
    client = ScriptedRedis(pages=[(0, [])])
    store = _store_with(monkeypatch, client)
    with pytest.raises(DeadlineExceeded):
        store.scan_keys("APPL_DB", "LAG_TABLE:*", 10, Deadline(0.0))
    assert client.scan_calls == []


def test_unknown_database_is_unavailable() -> None:
    with pytest.raises(SourceUnavailable):
        RedisSourceStore().get_all("NOPE_DB", "key", Deadline(5.0))


def test_connect_supports_unix_socket() -> None:
    client = RedisSourceStore("unix:///var/run/redis/redis.sock")._connect(4)
    assert client.connection_pool.connection_kwargs["path"] == "/var/run/redis/redis.sock"
    assert client.connection_pool.connection_kwargs["db"] == 4

    tcp = RedisSourceStore("10.0.0.5:6380")._connect(0)
    assert tcp.connection_pool.connection_kwargs["host"] == "10.0.0.5"
    assert tcp.connection_pool.connection_kwargs["port"] == 6380


def test_undecodable_bytes_are_replaced_instead_of_raising() -> None:
    client = RedisSourceStore("localhost:6379")._connect(0)
    encoder = client.connection_pool.get_encoder()
    assert encoder.decode(b"spine\xff01") == "spine\ufffd01"
