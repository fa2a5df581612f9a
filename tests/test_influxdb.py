from __future__ import annotations

import threading
import time
from typing import List

import httpx
import pytest

from models.records import DataPoint
from services.errors import StoreError
from services.scheduler import Scheduler
from storage.influxdb import InfluxDBWriter, to_line_protocol


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class RecordingInflux:
    def __init__(self, write_status: int = 204) -> None:
        self.requests: List[httpx.Request] = []
        self.write_status = write_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/write":
            return httpx.Response(self.write_status, text="" if self.write_status < 300 else "boom")
        return httpx.Response(200, json={"results": [{"statement_id": 0}]})

    @property
    def writes(self) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path == "/write"]


def _point(value: float, **tags: str) -> DataPoint:
    return DataPoint(measurement="P", timestamp_ms=1000, tags=dict(tags), fields={"value": value})


def _writer(influx: RecordingInflux, clock: FakeClock | None = None) -> InfluxDBWriter:
    return InfluxDBWriter(
        "http://influx:8086",
        "hono",
        username="admin",
        password="secret",
        transport=httpx.MockTransport(influx),
        clock=clock or FakeClock(),
    )


def test_line_protocol_escapes_and_types() -> None:
    point = DataPoint(
        measurement="P x",
        timestamp_ms=1_700_000_000_123,
        tags={"room,name": "a b=c", "empty": ""},
        fields={"count": 3, "temp": 21.5},
    )

    assert to_line_protocol(point) == r"P\ x,room\,name=a\ b\=c count=3i,temp=21.5 1700000000123"


def test_line_protocol_requires_a_field() -> None:
    with pytest.raises(ValueError):
        to_line_protocol(DataPoint(measurement="P", timestamp_ms=1))


def test_twenty_points_trigger_one_flush() -> None:
    influx = RecordingInflux()
    writer = _writer(influx)

    for index in range(20):
        writer.write(_point(float(index)))

    assert len(influx.writes) == 1
    request = influx.writes[0]
    assert request.url.params["db"] == "hono"
    assert request.url.params["precision"] == "ms"
    assert len(request.content.decode("utf-8").splitlines()) == 20
    assert writer.pending == 0
    assert writer.flush_count == 1
    assert writer.total_written == 20


def test_age_triggers_flush_of_partial_batch() -> None:
    influx = RecordingInflux()
    clock = FakeClock()
    writer = _writer(influx, clock)

    writer.write(_point(1.0))
    clock.now = 0.5
    writer.write(_point(2.0))
    writer.flush_if_due()
    assert influx.writes == []

    clock.now = 1.0
    writer.flush_if_due()

    assert len(influx.writes) == 1
    assert writer.pending == 0
    assert writer.total_written == 2


def test_failed_write_is_dropped_not_retried(caplog) -> None:
    influx = RecordingInflux(write_status=500)
    writer = _writer(influx)

    writer.write(_point(1.0))
    assert writer.flush() == 0
    assert writer.flush() == 0

    assert len(influx.writes) == 1
    assert writer.total_dropped == 1
    assert any("Failed to write batch" in record.getMessage() for record in caplog.records)


def test_create_database_uses_basic_auth() -> None:
    influx = RecordingInflux()
    writer = _writer(influx)

    writer.create_database()

    request = influx.requests[0]
    assert request.url.path == "/query"
    assert request.url.params["q"] == 'CREATE DATABASE "hono"'
    assert request.headers["Authorization"].startswith("Basic ")


def test_create_database_failure_raises() -> None:
    writer = InfluxDBWriter(
        "http://influx:8086",
        "hono",
        transport=httpx.MockTransport(lambda request: httpx.Response(401)),
    )

    with pytest.raises(StoreError):
        writer.create_database()


def test_close_flushes_remaining_points() -> None:
    influx = RecordingInflux()
    writer = _writer(influx)

    writer.write(_point(1.0))
    writer.close()

    assert len(influx.writes) == 1
    assert writer.total_written == 1


def test_full_batch_is_posted_off_the_enqueuing_thread() -> None:
    posted_from: List[str] = []
    done = threading.Event()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/write":
            time.sleep(0.2)
            posted_from.append(threading.current_thread().name)
            done.set()
        return httpx.Response(204)

    scheduler = Scheduler(name="test-flush")
    writer = InfluxDBWriter(
        "http://influx:8086",
        "hono",
        transport=httpx.MockTransport(handler),
        scheduler=scheduler,
    )
    try:
        started = time.monotonic()
        for index in range(20):
            writer.write(_point(float(index)))
        enqueue_time = time.monotonic() - started

        assert done.wait(5)
        assert enqueue_time < 0.2
        assert posted_from[0].startswith("test-flush")
    finally:
        scheduler.shutdown()
        writer.close()

    assert writer.total_written == 20
    assert writer.pending == 0


def test_concurrent_writes_and_flushes_write_each_point_once() -> None:
    bodies: List[str] = []
    bodies_lock = threading.Lock()

    def handler(request: httpx.Request) -> httpx.Response:
        with bodies_lock:
            bodies.append(request.content.decode("utf-8"))
        return httpx.Response(204)

    writer = InfluxDBWriter(
        "http://influx:8086",
        "hono",
        batch_size=7,
        transport=httpx.MockTransport(handler),
    )
    writers, per_writer = 4, 250
    stop = threading.Event()

    def produce(offset: int) -> None:
        for index in range(per_writer):
            writer.write(
                DataPoint(measurement="P", timestamp_ms=1, fields={"seq": offset + index})
            )

    def keep_flushing() -> None:
        while not stop.is_set():
            writer.flush_if_due()
            writer.flush()

    flusher = threading.Thread(target=keep_flushing)
    producers = [
        threading.Thread(target=produce, args=(n * per_writer,)) for n in range(writers)
    ]
    flusher.start()
    for thread in producers:
        thread.start()
    for thread in producers:
        thread.join(timeout=10)
    stop.set()
    flusher.join(timeout=10)

    total = writers * per_writer
    assert writer.total_written + writer.pending == total

    writer.flush()
    lines = [line for body in bodies for line in body.splitlines()]
    assert len(lines) == total
    assert len(set(lines)) == total
    assert writer.total_written == total
    assert writer.total_dropped == 0
