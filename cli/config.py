from __future__ import annotations

import os
from dataclasses import replace
from typing import Any, Optional

from settings import Settings, get_settings, resolve_telemetry_url

DEFAULT_STATUS_URL = "http://localhost:8080"

_STATUS_URL_ENV = "STATUS_API_URL"


def load_settings(**overrides: Any) -> Settings:
    """Environment settings with any non-``None`` CLI option applied on top."""
    settings = get_settings()
    changes = {key: value for key, value in overrides.items() if value is not None}
    if "telemetry_url" in changes:
        changes["telemetry_url"] = resolve_telemetry_url(changes["telemetry_url"])
    return replace(settings, **changes) if changes else settings


def status_url(base_url: Optional[str] = None) -> str:
    url = base_url or os.getenv(_STATUS_URL_ENV) or DEFAULT_STATUS_URL
    return url.rstrip("/")
