from __future__ import annotations

import base64
import json
from typing import Callable, List

import httpx
import pytest

from models.records import Counters, DeviceIdentity
from services.device import Device, build_telemetry_request
from services.errors import RegistrationError
from services.runtime import AsyncRuntime

URL = "http://hono.example:8080/telemetry"


class RecordingRegistrar:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: List[tuple[str, str, str]] = []
        self.error = error

    def register(self, device_id: str, user: str, password: str) -> None:
        self.calls.append((device_id, user, password))
        if self.error is not None:
            raise self.error


def _identity() -> DeviceIdentity:
    return DeviceIdentity(user="user-1", device_id="sim-1", tenant="tenant-a", password="secret")


def _status_handler(status_code: int) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code)

    return handler


def _failing_handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


def _sync_device(
    handler: Callable[[httpx.Request], httpx.Response],
    counters: Counters,
    registrar: RecordingRegistrar | None = None,
    auto_register: bool = True,
    telemetry_url: str | None = URL,
) -> Device:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return Device(
        _identity(),
        counters,
        telemetry_url=telemetry_url,
        client=client,
        registrar=registrar,
        auto_register=auto_register,
    )


def test_request_carries_basic_auth_and_json_body() -> None:
    request = build_telemetry_request(_identity(), URL)

    expected = base64.b64encode(b"user-1@tenant-a:secret").decode("ascii")
    assert request.method == "POST"
    assert str(request.url) == URL
    assert request.headers["Authorization"] == f"Basic {expected}"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content) == {"foo": 42}


def test_successful_tick_counts_success() -> None:
    counters = Counters()
    device = _sync_device(_status_handler(202), counters)

    assert device.tick() is None

    snapshot = counters.snapshot()
    assert (snapshot.sent, snapshot.success, snapshot.failure) == (1, 1, 0)


def test_same_request_is_reused_across_ticks() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    counters = Counters()
    device = _sync_device(handler, counters)

    for _ in range(3):
        device.tick()

    assert len(seen) == 3
    assert all(request is device.request for request in seen)
    assert counters.snapshot().success == 3


def test_non_success_status_counts_failure_without_registration() -> None:
    counters = Counters()
    registrar = RecordingRegistrar()
    device = _sync_device(_status_handler(503), counters, registrar=registrar)

    device.tick()

    snapshot = counters.snapshot()
    assert (snapshot.sent, snapshot.success, snapshot.failure) == (1, 0, 1)
    assert registrar.calls == []


def test_unauthorized_triggers_single_registration() -> None:
    counters = Counters()
    registrar = RecordingRegistrar()
    device = _sync_device(_status_handler(401), counters, registrar=registrar)

    device.tick()

    assert registrar.calls == [("sim-1", "user-1", "secret")]
    snapshot = counters.snapshot()
    assert (snapshot.sent, snapshot.success, snapshot.failure) == (1, 0, 1)


def test_unauthorized_without_auto_register_skips_registrar() -> None:
    counters = Counters()
    registrar = RecordingRegistrar()
    device = _sync_device(_status_handler(401), counters, registrar=registrar, auto_register=False)

    device.tick()

    assert registrar.calls == []
    assert counters.snapshot().failure == 1


def test_registration_failure_is_logged_and_swallowed(caplog) -> None:
    counters = Counters()
    registrar = RecordingRegistrar(error=RegistrationError("registry down"))
    device = _sync_device(_status_handler(401), counters, registrar=registrar)

    with caplog.at_level("WARNING", logger="services.device"):
        device.tick()

    assert len(registrar.calls) == 1
    assert counters.snapshot().failure == 1
    assert any("registry down" in record.getMessage() for record in caplog.records)


def test_unexpected_registrar_error_does_not_escape_tick(caplog) -> None:
    counters = Counters()
    registrar = RecordingRegistrar(error=ValueError("registry returned garbage"))
    device = _sync_device(_status_handler(401), counters, registrar=registrar)

    with caplog.at_level("WARNING", logger="services.device"):
        assert device.tick() is None

    assert len(registrar.calls) == 1
    snapshot = counters.snapshot()
    assert (snapshot.sent, snapshot.success, snapshot.failure) == (1, 0, 1)
    records = [r for r in caplog.records if "registry returned garbage" in r.getMessage()]
    assert len(records) == 1
    assert records[0].exc_info is not None


def test_transport_error_counts_exactly_one_failure() -> None:
    counters = Counters()
    device = _sync_device(_failing_handler, counters)

    device.tick()

    snapshot = counters.snapshot()
    assert snapshot.sent == 1
    assert snapshot.failure == 1
    assert snapshot.success == 0


def test_missing_endpoint_disables_sending() -> None:
    counters = Counters()
    device = _sync_device(_status_handler(200), counters, telemetry_url=None)

    device.tick()

    assert counters.snapshot().sent == 0


def test_async_mode_needs_runtime_and_client() -> None:
    with pytest.raises(ValueError):
        Device(_identity(), Counters(), telemetry_url=URL, async_client=httpx.AsyncClient())


@pytest.fixture()
def runtime():
    runtime = AsyncRuntime(name="test-runtime").start()
    yield runtime
    runtime.shutdown(timeout=1.0)


def _async_device(
    handler: Callable[[httpx.Request], httpx.Response],
    counters: Counters,
    runtime: AsyncRuntime,
    registrar: RecordingRegistrar | None = None,
) -> Device:
    return Device(
        _identity(),
        counters,
        telemetry_url=URL,
        registrar=registrar,
        async_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        runtime=runtime,
    )


def test_async_tick_returns_future_and_settles_counters(runtime) -> None:
    counters = Counters()
    device = _async_device(_status_handler(200), counters, runtime)

    futures = [device.tick() for _ in range(5)]
    assert all(future is not None for future in futures)
    assert counters.snapshot().sent == 5

    for future in futures:
        future.result(timeout=5)

    snapshot = counters.snapshot()
    assert snapshot.sent == snapshot.success + snapshot.failure
    assert snapshot.success == 5


def test_async_unauthorized_registers_once(runtime) -> None:
    counters = Counters()
    registrar = RecordingRegistrar()
    device = _async_device(_status_handler(401), counters, runtime, registrar=registrar)

    future = device.tick()
    assert future is not None
    future.result(timeout=5)

    assert registrar.calls == [("sim-1", "user-1", "secret")]
    assert counters.snapshot().failure == 1


def test_async_unexpected_registrar_error_settles_future(runtime) -> None:
    counters = Counters()
    registrar = RecordingRegistrar(error=ValueError("registry returned garbage"))
    device = _async_device(_status_handler(401), counters, runtime, registrar=registrar)

    future = device.tick()
    assert future is not None
    assert future.result(timeout=5) is None

    assert counters.snapshot().failure == 1


def test_async_transport_error_counts_failure(runtime) -> None:
    counters = Counters()
    device = _async_device(_failing_handler, counters, runtime)

    future = device.tick()
    assert future is not None
    future.result(timeout=5)

    snapshot = counters.snapshot()
    assert (snapshot.sent, snapshot.success, snapshot.failure) == (1, 0, 1)
