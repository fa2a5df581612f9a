from __future__ import annotations

from datetime import datetime

from models.records import DataPoint
from storage.influxdb import InfluxDBWriter


class InfluxDBMetrics:
    """Records stats-reporter samples as individual points."""

    def __init__(self, writer: InfluxDBWriter) -> None:
        self._writer = writer

    def update_stats(self, now: datetime, measurement: str, field: str, value: int) -> None:
        point = DataPoint(
            measurement=measurement,
            timestamp_ms=int(now.timestamp() * 1000),
            fields={field: value},
        )
        self._writer.write_now([point])

    def close(self) -> None:
        self._writer.close()
