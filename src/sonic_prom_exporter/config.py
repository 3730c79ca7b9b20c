from __future__ import annotations

import enum
import logging
import os
import re
from dataclasses import dataclass, replace
from typing import Mapping


LOGGER = logging.getLogger("sonic_prom_exporter.config")

_BARE_SECONDS = re.compile(r"\d+(?:\.\d*)?|\.\d+")
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_TRUE_VALUES = {"1", "t", "true", "yes", "on"}
_FALSE_VALUES = {"0", "f", "false", "no", "off"}


class RefreshMode(str, enum.Enum):
    INTERVAL = "interval"
    ON_DEMAND = "on_demand"


@dataclass(frozen=True)
class DomainConfig:
    name: str
    enabled: bool = True
    refresh_interval_seconds: float = 30.0
    timeout_seconds: float = 2.0
    refresh_mode: RefreshMode = RefreshMode.INTERVAL
    freshness_window_seconds: float = 15.0
    max_entities: int = 1024
    max_children: int = 4096
    scan_count: int = 256
    include_mgmt: bool = True
    max_vlan_series: int = 4096
    max_port_series: int = 1024
    source_stale_threshold_seconds: float = 300.0


DOMAIN_DEFAULTS: dict[str, DomainConfig] = {
    "vlan": DomainConfig(name="vlan", max_entities=1024, max_children=8192),
    "lag": DomainConfig(name="lag", max_entities=512, max_children=4096),
    "lldp": DomainConfig(name="lldp", max_entities=512),
    "fdb": DomainConfig(
        name="fdb",
        enabled=False,
        refresh_interval_seconds=60.0,
        max_entities=50000,
        max_vlan_series=4096,
        max_port_series=1024,
    ),
    "docker": DomainConfig(
        name="docker",
        enabled=False,
        refresh_interval_seconds=60.0,
        max_entities=128,
        source_stale_threshold_seconds=300.0,
    ),
}

# env names of the entity and child caps, kept from the original deployment
_CAP_ENV_NAMES: dict[str, tuple[str, str | None]] = {
    "vlan": ("VLAN_MAX_VLANS", "VLAN_MAX_MEMBERS"),
    "lag": ("LAG_MAX_LAGS", "LAG_MAX_MEMBERS"),
    "lldp": ("LLDP_MAX_NEIGHBORS", None),
    "fdb": ("FDB_MAX_ENTRIES", None),
    "docker": ("DOCKER_MAX_CONTAINERS", None),
}


def parse_duration(raw: str) -> float:
    """Parse ``30s``, ``1m30s``, ``500ms`` or a bare number of seconds."""
    value = raw.strip()
    if not value:
        raise ValueError("empty duration")
    if _BARE_SECONDS.fullmatch(value):
        return float(value)
    total = 0.0
    position = 0
    for matched in _DURATION_PART.finditer(value):
        if matched.start() != position:
            raise ValueError(f"invalid duration {raw!r}")
        total += float(matched.group(1)) * _DURATION_UNITS[matched.group(2)]
        position = matched.end()
    if position != len(value):
        raise ValueError(f"invalid duration {raw!r}")
    return total


def _raw_env(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _bool_env(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = _raw_env(environ, name)
    if value is None:
        return default
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    LOGGER.warning("invalid boolean value in env %s=%r, using default %s", name, value, default)
    return default


def _duration_env(environ: Mapping[str, str], name: str, default: float) -> float:
    value = _raw_env(environ, name)
    if value is None:
        return default
    try:
        parsed = parse_duration(value)
    except ValueError:
        LOGGER.warning("invalid duration value in env %s=%r, using default %.3fs", name, value, default)
        return default
    if parsed <= 0:
        LOGGER.warning("duration env %s must be greater than zero, using default %.3fs", name, default)
        return default
    return parsed


def _int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    value = _raw_env(environ, name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        LOGGER.warning("invalid integer value in env %s=%r, using default %d", name, value, default)
        return default
    if parsed <= 0:
        LOGGER.warning("integer env %s must be greater than zero, using default %d", name, default)
        return default
    return parsed


def _mode_env(environ: Mapping[str, str], name: str, default: RefreshMode) -> RefreshMode:
    value = _raw_env(environ, name)
    if value is None:
        return default
    normalized = value.lower().replace("-", "_")
    try:
        return RefreshMode(normalized)
    except ValueError:
        LOGGER.warning("invalid refresh mode in env %s=%r, using default %s", name, value, default.value)
        return default


def load_domain_config(name: str, environ: Mapping[str, str] | None = None) -> DomainConfig:
    if environ is None:
        environ = os.environ
    default = DOMAIN_DEFAULTS[name]
    prefix = name.upper()
    entity_env, child_env = _CAP_ENV_NAMES[name]
    config = replace(
        default,
        enabled=_bool_env(environ, f"{prefix}_ENABLED", default.enabled),
        refresh_interval_seconds=_duration_env(
            environ, f"{prefix}_REFRESH_INTERVAL", default.refresh_interval_seconds
        ),
        timeout_seconds=_duration_env(environ, f"{prefix}_TIMEOUT", default.timeout_seconds),
        refresh_mode=_mode_env(environ, f"{prefix}_REFRESH_MODE", default.refresh_mode),
        freshness_window_seconds=_duration_env(
            environ, f"{prefix}_FRESHNESS_WINDOW", default.freshness_window_seconds
        ),
        max_entities=_int_env(environ, entity_env, default.max_entities),
        scan_count=_int_env(environ, f"{prefix}_SCAN_COUNT", default.scan_count),
    )
    if child_env is not None:
        config = replace(config, max_children=_int_env(environ, child_env, default.max_children))
    if name == "lldp":
        config = replace(config, include_mgmt=_bool_env(environ, "LLDP_INCLUDE_MGMT", default.include_mgmt))
    if name == "fdb":
        config = replace(
            config,
            max_port_series=_int_env(environ, "FDB_MAX_PORTS", default.max_port_series),
            max_vlan_series=_int_env(environ, "FDB_MAX_VLANS", default.max_vlan_series),
        )
    if name == "docker":
        config = replace(
            config,
            source_stale_threshold_seconds=_duration_env(
                environ, "DOCKER_SOURCE_STALE_THRESHOLD", default.source_stale_threshold_seconds
            ),
        )
    return config


def load_domain_configs(environ: Mapping[str, str] | None = None) -> list[DomainConfig]:
    return [load_domain_config(name, environ) for name in DOMAIN_DEFAULTS]
