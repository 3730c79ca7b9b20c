from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from dataclasses import dataclass
from typing import Mapping

from prometheus_client import generate_latest, start_http_server

from sonic_prom_exporter.config import DomainConfig, load_domain_configs
from sonic_prom_exporter.exporter import SonicMetricsPublisher, build_collector
from sonic_prom_exporter.keyvalue import read_key_value_file
from sonic_prom_exporter.store import RedisSourceStore


LOGGER = logging.getLogger("sonic_prom_exporter")


@dataclass(frozen=True)
class AppConfig:
    domains: list[DomainConfig]
    redis_address: str
    redis_password: str | None
    listen_address: str
    listen_port: int
    run_once: bool
    log_level: str


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Prometheus exporter for SONiC switch state")
    parser.add_argument(
        "--listen-address",
        default=os.getenv("SONIC_EXPORTER_LISTEN_ADDRESS", "0.0.0.0"),
        help="http bind address for /metrics endpoint",
    )
    parser.add_argument(
        "--listen-port",
        type=int,
        default=_int_env("SONIC_EXPORTER_LISTEN_PORT", 9101),
        help="http bind port for /metrics endpoint",
    )
    parser.add_argument(
        "--redis-address",
        default=os.getenv("REDIS_ADDRESS", "localhost:6379"),
        help="redis host:port or unix socket path (unix:///var/run/redis/redis.sock)",
    )
    parser.add_argument(
        "--redis-password",
        default=os.getenv("REDIS_PASSWORD"),
        help="redis password",
    )
    parser.add_argument(
        "--env-file",
        default=os.getenv("SONIC_EXPORTER_ENV_FILE"),
        help="KEY=VALUE file with domain settings; process environment wins",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="refresh every enabled domain once, print metrics and exit",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("SONIC_EXPORTER_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def domain_environment(env_file: str | None) -> Mapping[str, str]:
    if env_file is None:
        return os.environ
    try:
        values = read_key_value_file(env_file)
    except OSError as error:
        LOGGER.warning("env file %s unavailable, using process environment: %s", env_file, error)
        return os.environ
    values.update(os.environ)
    return values


def load_config(argv: list[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    return AppConfig(
        domains=load_domain_configs(domain_environment(args.env_file)),
        redis_address=args.redis_address,
        redis_password=args.redis_password,
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        run_once=bool(args.once),
        log_level=args.log_level,
    )


def build_publisher(config: AppConfig, store: RedisSourceStore) -> SonicMetricsPublisher:
    publisher = SonicMetricsPublisher()
    publisher.register_all(build_collector(domain, store) for domain in config.domains)
    return publisher


def main(argv: list[str] | None = None) -> None:
    config = load_config(argv)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = RedisSourceStore(
        config.redis_address,
        password=config.redis_password,
        socket_timeout_seconds=max(domain.timeout_seconds for domain in config.domains),
    )
    publisher = build_publisher(config, store)

    if config.run_once:
        publisher.refresh_once()
        sys.stdout.write(generate_latest(publisher.registry).decode("utf-8"))
        store.close()
        return

    start_http_server(
        port=config.listen_port,
        addr=config.listen_address,
        registry=publisher.registry,
    )
    LOGGER.info("metrics server listening on http://%s:%d/metrics", config.listen_address, config.listen_port)

    try:
        publisher.start()
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        LOGGER.info("shutdown requested, exiting")
    finally:
        publisher.stop()
        store.close()


if __name__ == "__main__":
    main()
