from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
from urllib.parse import urljoin


_HTTP_URL_ENV = "HONO_HTTP_URL"
_HTTP_PROTO_ENV = "HONO_HTTP_PROTO"
_HTTP_HOST_ENV = "HONO_HTTP_HOST"
_HTTP_PORT_ENV = "HONO_HTTP_PORT"
_HTTP_ASYNC_ENV = "HTTP_ASYNC"
_AUTO_REGISTER_ENV = "AUTO_REGISTER"
_REGISTRY_URL_ENV = "DEVICE_REGISTRY_URL"

_PERSISTENCE_ENV = "ENABLE_PERSISTENCE"
_METRICS_ENV = "ENABLE_METRICS"
_INFLUXDB_URL_ENV = "INFLUXDB_URL"
_INFLUXDB_HOST_ENV = "INFLUXDB_SERVICE_HOST"
_INFLUXDB_PORT_ENV = "INFLUXDB_SERVICE_PORT_API"
_INFLUXDB_USER_ENV = "INFLUXDB_USER"
_INFLUXDB_PASSWORD_ENV = "INFLUXDB_PASSWORD"
_INFLUXDB_NAME_ENV = "INFLUXDB_NAME"

_TENANT_ENV = "HONO_TENANT"
_BROKER_HOST_ENV = "MESSAGING_SERVICE_HOST"
_BROKER_PORT_ENV = "MESSAGING_SERVICE_PORT"
_BROKER_USER_ENV = "HONO_USER"
_BROKER_PASSWORD_ENV = "HONO_PASSWORD"
_TRUSTED_CERTS_ENV = "HONO_TRUSTED_CERTS"
_DISABLE_TLS_ENV = "DISABLE_TLS"
_INITIAL_CREDITS_ENV = "HONO_INITIAL_CREDITS"

_DEVICE_COUNT_ENV = "NUM_DEVICES"
_DEVICE_ID_PREFIX_ENV = "DEVICE_ID_PREFIX"
_DEVICE_USER_PREFIX_ENV = "DEVICE_USER_PREFIX"
_DEVICE_PASSWORD_ENV = "DEVICE_PASSWORD"
_TICK_INTERVAL_ENV = "TICK_INTERVAL_MS"
_WORKER_COUNT_ENV = "PRODUCER_WORKER_COUNT"

_HTTP_TIMEOUT_ENV = "HTTP_TIMEOUT"
_CONNECT_TIMEOUT_ENV = "CONNECT_TIMEOUT"
_RECONNECT_DELAY_ENV = "RECONNECT_DELAY_MS"
_LOG_LEVEL_ENV = "LOG_LEVEL"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    telemetry_url: Optional[str]
    http_async: bool
    auto_register: bool
    registry_url: Optional[str]

    persistence_enabled: bool
    metrics_enabled: bool
    influxdb_url: str
    influxdb_user: Optional[str]
    influxdb_password: Optional[str]
    influxdb_name: str

    tenant: str
    broker_host: str
    broker_port: int
    broker_user: Optional[str]
    broker_password: Optional[str]
    trusted_certs: Optional[str]
    tls_enabled: bool
    initial_credits: Optional[int]

    device_count: int
    device_id_prefix: str
    device_user_prefix: str
    device_password: str
    tick_interval: float
    producer_workers: int

    http_timeout: float
    connect_timeout: float
    reconnect_delay: float
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in _TRUE_VALUES:
        return True
    if candidate in _FALSE_VALUES:
        return False
    return default


def _read_int_env(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


def resolve_telemetry_url(
    url: Optional[str],
    proto: Optional[str] = None,
    host: Optional[str] = None,
    port: Optional[str] = None,
) -> Optional[str]:
    """Resolve the producer endpoint; ``None`` disables sending."""
    if url is None and host is not None and port is not None:
        url = f"{proto or 'http'}://{host}:{port}"
    if url is None:
        return None
    return urljoin(url, "/telemetry")


def _resolve_influxdb_url() -> str:
    url = _read_optional_env(_INFLUXDB_URL_ENV)
    if url:
        return url.rstrip("/")
    host = _read_str_env(_INFLUXDB_HOST_ENV, "localhost")
    port = _read_str_env(_INFLUXDB_PORT_ENV, "8086")
    return f"http://{host}:{port}"


@lru_cache
def get_settings() -> Settings:
    return Settings(
        telemetry_url=resolve_telemetry_url(
            _read_optional_env(_HTTP_URL_ENV),
            _read_optional_env(_HTTP_PROTO_ENV),
            _read_optional_env(_HTTP_HOST_ENV),
            _read_optional_env(_HTTP_PORT_ENV),
        ),
        http_async=_read_bool_env(_HTTP_ASYNC_ENV, False),
        auto_register=_read_bool_env(_AUTO_REGISTER_ENV, True),
        registry_url=_read_optional_env(_REGISTRY_URL_ENV),
        persistence_enabled=_read_bool_env(_PERSISTENCE_ENV, True),
        metrics_enabled=_read_bool_env(_METRICS_ENV, True),
        influxdb_url=_resolve_influxdb_url(),
        influxdb_user=_read_optional_env(_INFLUXDB_USER_ENV),
        influxdb_password=_read_optional_env(_INFLUXDB_PASSWORD_ENV),
        influxdb_name=_read_str_env(_INFLUXDB_NAME_ENV, "hono"),
        tenant=_read_str_env(_TENANT_ENV, "DEFAULT_TENANT"),
        broker_host=_read_str_env(_BROKER_HOST_ENV, "localhost"),
        broker_port=_read_int_env(_BROKER_PORT_ENV, 1883) or 1883,
        broker_user=_read_optional_env(_BROKER_USER_ENV),
        broker_password=_read_optional_env(_BROKER_PASSWORD_ENV),
        trusted_certs=_read_optional_env(_TRUSTED_CERTS_ENV),
        tls_enabled=os.getenv(_DISABLE_TLS_ENV) is None,
        initial_credits=_read_int_env(_INITIAL_CREDITS_ENV, None),
        device_count=_read_int_env(_DEVICE_COUNT_ENV, 10) or 10,
        device_id_prefix=_read_str_env(_DEVICE_ID_PREFIX_ENV, "sim-"),
        device_user_prefix=_read_str_env(_DEVICE_USER_PREFIX_ENV, "user-"),
        device_password=_read_str_env(_DEVICE_PASSWORD_ENV, "hono-secret"),
        tick_interval=_read_float_env(_TICK_INTERVAL_ENV, 1000.0) / 1000.0,
        producer_workers=_read_int_env(_WORKER_COUNT_ENV, 4) or 4,
        http_timeout=_read_float_env(_HTTP_TIMEOUT_ENV, 10.0),
        connect_timeout=_read_float_env(_CONNECT_TIMEOUT_ENV, 5.0),
        reconnect_delay=_read_float_env(_RECONNECT_DELAY_ENV, 5000.0) / 1000.0,
        log_level=_read_log_level("INFO"),
    )
