from __future__ import annotations

import pytest

from settings import get_settings

_SETTINGS_ENV = (
    "HONO_HTTP_URL",
    "HONO_HTTP_PROTO",
    "HONO_HTTP_HOST",
    "HONO_HTTP_PORT",
    "HTTP_ASYNC",
    "AUTO_REGISTER",
    "DEVICE_REGISTRY_URL",
    "ENABLE_PERSISTENCE",
    "ENABLE_METRICS",
    "INFLUXDB_URL",
    "INFLUXDB_SERVICE_HOST",
    "INFLUXDB_SERVICE_PORT_API",
    "INFLUXDB_USER",
    "INFLUXDB_PASSWORD",
    "INFLUXDB_NAME",
    "HONO_TENANT",
    "MESSAGING_SERVICE_HOST",
    "MESSAGING_SERVICE_PORT",
    "HONO_USER",
    "HONO_PASSWORD",
    "HONO_TRUSTED_CERTS",
    "DISABLE_TLS",
    "HONO_INITIAL_CREDITS",
    "NUM_DEVICES",
    "DEVICE_ID_PREFIX",
    "DEVICE_USER_PREFIX",
    "DEVICE_PASSWORD",
    "TICK_INTERVAL_MS",
    "PRODUCER_WORKER_COUNT",
    "HTTP_TIMEOUT",
    "CONNECT_TIMEOUT",
    "RECONNECT_DELAY_MS",
    "LOG_LEVEL",
    "STATUS_API_URL",
)


@pytest.fixture()
def clean_env(monkeypatch):
    """Start from default settings and drop the cached copy afterwards."""
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()
