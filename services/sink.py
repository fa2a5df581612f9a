"""Turns decoded telemetry messages into time-series points."""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Union

from models.records import Counters, DataPoint, TelemetryMessage
from services.errors import DecodeError

logger = logging.getLogger(__name__)

MEASUREMENT = "P"


class PointWriter(Protocol):
    def write(self, point: DataPoint) -> None:
        ...


def _wall_clock_ms() -> int:
    return time.time_ns() // 1_000_000


def extract_tags(annotations: Mapping[str, Any]) -> Dict[str, str]:
    return {str(key): value for key, value in annotations.items() if isinstance(value, str)}


def extract_fields(values: Mapping[str, Any]) -> Dict[str, Union[int, float]]:
    """Keep numeric entries; parse string entries as floats and drop the rest."""
    fields: Dict[str, Union[int, float]] = {}
    for key, value in values.items():
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            fields[key] = value
        elif isinstance(value, str):
            try:
                parsed = float(value)
            except ValueError:
                logger.debug("Failed to parse metric %r", key, extra={"reason": "not numeric"})
                continue
            if not math.isfinite(parsed):
                logger.debug("Failed to parse metric %r", key, extra={"reason": "not finite"})
                continue
            fields[key] = parsed
    return fields


def decode_payload(json_body: str) -> Dict[str, Any]:
    try:
        values = json.loads(json_body)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Payload is not valid JSON: {exc.msg}") from exc
    if not isinstance(values, dict):
        raise DecodeError(f"Payload must be a JSON object, got {type(values).__name__}.")
    return values


class SinkWriter:
    """Builds one point per message and hands it to the batching writer."""

    def __init__(
        self,
        writer: PointWriter,
        counters: Optional[Counters] = None,
        measurement: str = MEASUREMENT,
        clock: Callable[[], int] = _wall_clock_ms,
    ) -> None:
        self._writer = writer
        self.counters = counters if counters is not None else Counters()
        self._measurement = measurement
        self._clock = clock

    def consume(self, message: TelemetryMessage, json_body: str) -> Optional[DataPoint]:
        point = self.build_point(message.annotations, json_body)
        if point is None:
            return None
        self.counters.increment_processed()
        self._writer.write(point)
        return point

    def build_point(
        self, annotations: Mapping[str, Any], json_body: str
    ) -> Optional[DataPoint]:
        try:
            values = decode_payload(json_body)
        except DecodeError as exc:
            logger.warning("Dropping message: %s", exc, extra={"reason": "decode"})
            return None

        fields = extract_fields(values)
        if not fields:
            logger.info("Dropping message without numeric fields", extra={"reason": "no fields"})
            return None

        return DataPoint(
            measurement=self._measurement,
            timestamp_ms=self._clock(),
            tags=extract_tags(annotations),
            fields=fields,
        )
