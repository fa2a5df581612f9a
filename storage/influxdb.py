"""Batching InfluxDB 1.x writer speaking the HTTP line protocol."""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable, Iterable, List, Optional

import httpx

from models.records import DataPoint
from services.errors import StoreError
from services.scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)


def _escape_identifier(value: str, specials: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("\n", "\\n")
    for char in specials:
        escaped = escaped.replace(char, f"\\{char}")
    return escaped


def _escape_measurement(value: str) -> str:
    return _escape_identifier(value, ", ")


def _escape_key(value: str) -> str:
    return _escape_identifier(value, ",= ")


def _format_field_value(value: int | float) -> str:
    if isinstance(value, int):
        return f"{value}i"
    return repr(float(value))


def to_line_protocol(point: DataPoint) -> str:
    """Render one point as a line protocol record with millisecond precision."""
    if not point.fields:
        raise ValueError("A data point needs at least one field.")

    head = _escape_measurement(point.measurement)
    tags = ",".join(
        f"{_escape_key(key)}={_escape_key(value)}"
        for key, value in sorted(point.tags.items())
        if value
    )
    if tags:
        head = f"{head},{tags}"
    fields = ",".join(
        f"{_escape_key(key)}={_format_field_value(value)}"
        for key, value in sorted(point.fields.items())
    )
    return f"{head} {fields} {point.timestamp_ms}"


class InfluxDBWriter:
    """Buffers points and writes them in batches.

    A batch is flushed when it holds ``batch_size`` points or when its oldest
    point has waited ``flush_interval`` seconds, whichever happens first.
    With a scheduler, a full batch is posted from a scheduler thread so the
    enqueuing thread never blocks on HTTP; without one it is posted inline.
    Flushing swaps the buffer out under the lock, so every buffered point is
    written exactly once; a failed write is logged and its points counted as
    dropped.
    """

    DEFAULT_BATCH_SIZE = 20
    DEFAULT_FLUSH_INTERVAL = 1.0

    def __init__(
        self,
        url: str,
        database: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self.database = database
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self._scheduler = scheduler
        self._clock = clock
        auth = (username, password or "") if username else None
        self._client = httpx.Client(
            base_url=url, auth=auth, timeout=timeout, transport=transport
        )

        self._buffer: List[DataPoint] = []
        self._oldest_at: Optional[float] = None
        self._lock = Lock()
        self._flush_task: Optional[ScheduledTask] = None
        self._flush_requested = False

        self.total_written = 0
        self.total_dropped = 0
        self.flush_count = 0

    def create_database(self) -> None:
        """Create the target database; InfluxDB treats this as idempotent."""
        try:
            response = self._client.post(
                "/query", params={"q": f'CREATE DATABASE "{self.database}"'}
            )
        except httpx.HTTPError as exc:
            raise StoreError(f"InfluxDB at {self.url} is unreachable: {exc}") from exc
        if not response.is_success:
            raise StoreError(
                f"Creating database {self.database!r} failed with status {response.status_code}."
            )

    def start(self) -> None:
        """Begin checking the age of the buffered batch on the scheduler."""
        if self._scheduler is None or self._flush_task is not None:
            return
        self._flush_task = self._scheduler.call_every(
            self.flush_interval / 10, self.flush_if_due
        )
        logger.info(
            "InfluxDB writer started with batch_size=%d, flush_interval=%.1fs",
            self.batch_size,
            self.flush_interval,
        )

    def write(self, point: DataPoint) -> None:
        with self._lock:
            if not self._buffer:
                self._oldest_at = self._clock()
            self._buffer.append(point)
            full = len(self._buffer) >= self.batch_size and not self._flush_requested
            if full and self._scheduler is not None:
                self._flush_requested = True
        if not full:
            return
        if self._scheduler is None:
            self.flush()
            return
        try:
            self._scheduler.call_later(0, self.flush)
        except RuntimeError:
            # Scheduler already shut down.
            self.flush()

    def write_now(self, points: Iterable[DataPoint]) -> None:
        """Write points immediately, bypassing the batch buffer."""
        self._post(list(points))

    def flush_if_due(self) -> None:
        with self._lock:
            due = (
                self._oldest_at is not None
                and self._clock() - self._oldest_at >= self.flush_interval
            )
        if due:
            self.flush()

    def flush(self) -> int:
        with self._lock:
            batch = self._buffer
            self._buffer = []
            self._oldest_at = None
            self._flush_requested = False
        if not batch:
            return 0

        try:
            self._post(batch)
        except (httpx.HTTPError, StoreError) as exc:
            with self._lock:
                self.total_dropped += len(batch)
            logger.error(
                "Failed to write batch: %s", exc, extra={"count": len(batch)}
            )
            return 0

        with self._lock:
            self.flush_count += 1
            self.total_written += len(batch)
        logger.debug("Flushed batch", extra={"count": len(batch)})
        return len(batch)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def close(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            self._flush_task = None
        self.flush()
        self._client.close()
        logger.info(
            "InfluxDB writer stopped. written=%d dropped=%d",
            self.total_written,
            self.total_dropped,
        )

    def _post(self, points: List[DataPoint]) -> None:
        if not points:
            return
        body = "\n".join(to_line_protocol(point) for point in points)
        response = self._client.post(
            "/write",
            params={"db": self.database, "precision": "ms"},
            content=body.encode("utf-8"),
        )
        if not response.is_success:
            raise StoreError(
                f"Write to {self.database!r} failed with status {response.status_code}: "
                f"{response.text.strip()}"
            )
