from __future__ import annotations

import logging
import threading
from typing import Protocol

import redis

from sonic_prom_exporter.deadline import Deadline
from sonic_prom_exporter.errors import DeadlineExceeded, SourceUnavailable


LOGGER = logging.getLogger("sonic_prom_exporter.store")

SONIC_DATABASES: dict[str, int] = {
    "APPL_DB": 0,
    "ASIC_DB": 1,
    "COUNTERS_DB": 2,
    "LOGLEVEL_DB": 3,
    "CONFIG_DB": 4,
    "FLEX_COUNTER_DB": 5,
    "STATE_DB": 6,
}


class SourceStore(Protocol):
    def scan_keys(self, db: str, pattern: str, count: int, deadline: Deadline) -> list[str]:
        ...

    def get_all(self, db: str, key: str, deadline: Deadline) -> dict[str, str]:
        ...


class RedisSourceStore:
    """Read-only access to the SONiC redis databases."""

    def __init__(
        self,
        address: str = "localhost:6379",
        *,
        password: str | None = None,
        socket_timeout_seconds: float = 2.0,
    ) -> None:
        self.address = address
        self._password = password
        self._socket_timeout_seconds = socket_timeout_seconds
        self._clients: dict[str, redis.Redis] = {}
        self._lock = threading.Lock()

    def _client(self, db: str) -> redis.Redis:
        if db not in SONIC_DATABASES:
            raise SourceUnavailable(f"unknown database {db}")
        with self._lock:
            client = self._clients.get(db)
            if client is None:
                client = self._connect(SONIC_DATABASES[db])
                self._clients[db] = client
            return client

    def _connect(self, db_index: int) -> redis.Redis:
        common = {
            "db": db_index,
            "password": self._password,
            "socket_timeout": self._socket_timeout_seconds,
            "socket_connect_timeout": self._socket_timeout_seconds,
            "decode_responses": True,
            "encoding_errors": "replace",
        }
        if self.address.startswith("unix://") or self.address.startswith("/"):
            socket_path = self.address.removeprefix("unix://")
            return redis.Redis(unix_socket_path=socket_path, **common)
        host, _, port = self.address.rpartition(":")
        if not host:
            host, port = self.address, "6379"
        return redis.Redis(host=host, port=int(port), **common)

    def scan_keys(self, db: str, pattern: str, count: int, deadline: Deadline) -> list[str]:
        client = self._client(db)
        keys: set[str] = set()
        cursor = 0
        try:
            while True:
                deadline.check(f"scanning {db} {pattern}")
                cursor, batch = client.scan(cursor=cursor, match=pattern, count=count)
                keys.update(batch)
                if cursor == 0:
                    break
        except redis.TimeoutError as error:
            raise DeadlineExceeded(f"timed out scanning {db} {pattern}: {error}") from error
        except (redis.RedisError, OSError) as error:
            raise SourceUnavailable(f"failed to scan {db} {pattern}: {error}") from error
        return sorted(keys)

    def get_all(self, db: str, key: str, deadline: Deadline) -> dict[str, str]:
        client = self._client(db)
        deadline.check(f"reading {db} {key}")
        try:
            return dict(client.hgetall(key))
        except redis.TimeoutError as error:
            raise DeadlineExceeded(f"timed out reading {db} {key}: {error}") from error
        except (redis.RedisError, OSError) as error:
            raise SourceUnavailable(f"failed to read {db} {key}: {error}") from error

    def close(self) -> None:
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()
