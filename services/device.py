"""Simulated HTTP device that publishes telemetry on every tick."""

from __future__ import annotations

import asyncio
import base64
import logging
from concurrent.futures import Future
from typing import Optional

import httpx

from models.records import Counters, DeviceIdentity
from services.errors import RegistrationError
from services.registrar import Registrar
from services.runtime import AsyncRuntime

logger = logging.getLogger(__name__)

TELEMETRY_BODY = b'{"foo": 42}'


def basic_authorization(identity: DeviceIdentity) -> str:
    token = f"{identity.auth_id}:{identity.password}".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("ascii")


def build_telemetry_request(
    identity: DeviceIdentity, telemetry_url: str, timeout: float = 10.0
) -> httpx.Request:
    """Build the request once; it is re-sent unchanged on every tick."""
    return httpx.Request(
        "POST",
        telemetry_url,
        headers={
            "Authorization": basic_authorization(identity),
            "Content-Type": "application/json",
        },
        content=TELEMETRY_BODY,
        extensions={"timeout": httpx.Timeout(timeout).as_dict()},
    )


class Device:
    """One simulated device.

    In synchronous mode ``tick`` blocks on ``client``. When ``async_client``
    and ``runtime`` are given the call is dispatched to the runtime's loop and
    ``tick`` returns the pending future right away; counters are updated from
    the loop thread once the call completes.
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        counters: Counters,
        telemetry_url: Optional[str],
        client: Optional[httpx.Client] = None,
        registrar: Optional[Registrar] = None,
        auto_register: bool = True,
        async_client: Optional[httpx.AsyncClient] = None,
        runtime: Optional[AsyncRuntime] = None,
        timeout: float = 10.0,
    ) -> None:
        if (async_client is None) != (runtime is None):
            raise ValueError("Asynchronous mode needs both an async client and a runtime.")
        if async_client is None and client is None:
            raise ValueError("Synchronous mode needs an HTTP client.")

        self.identity = identity
        self._counters = counters
        self._client = client
        self._async_client = async_client
        self._runtime = runtime
        self._registrar = registrar
        self._auto_register = auto_register
        self._request = (
            build_telemetry_request(identity, telemetry_url, timeout) if telemetry_url else None
        )

    @property
    def is_async(self) -> bool:
        return self._runtime is not None

    @property
    def request(self) -> Optional[httpx.Request]:
        return self._request

    def register(self) -> None:
        """Register this device's credentials; no-op without a registrar."""
        if self._registrar is None:
            return
        self._registrar.register(
            self.identity.device_id, self.identity.user, self.identity.password
        )

    def tick(self) -> Optional[Future[None]]:
        if self._request is None:
            return None

        self._counters.increment_sent()

        if self._runtime is not None:
            return self._runtime.submit(self._send_async())

        assert self._client is not None
        try:
            response = self._client.send(self._request)
        except httpx.HTTPError as exc:
            self._record_transport_failure(exc)
            return None
        self._record_response(response.status_code)
        if self._needs_registration(response.status_code):
            self._reregister()
        return None

    async def _send_async(self) -> None:
        assert self._async_client is not None and self._request is not None
        try:
            response = await self._async_client.send(self._request)
        except httpx.HTTPError as exc:
            self._record_transport_failure(exc)
            return
        self._record_response(response.status_code)
        if self._needs_registration(response.status_code):
            await asyncio.to_thread(self._reregister)

    def _record_response(self, status_code: int) -> None:
        if httpx.codes.is_success(status_code):
            self._counters.increment_success()
            return
        self._counters.increment_failure()
        logger.debug(
            "Result code: %s",
            status_code,
            extra={"device_id": self.identity.device_id, "status": status_code},
        )

    def _record_transport_failure(self, exc: httpx.HTTPError) -> None:
        self._counters.increment_failure()
        logger.debug(
            "Failed to tick: %s",
            exc,
            extra={"device_id": self.identity.device_id, "reason": type(exc).__name__},
        )

    def _needs_registration(self, status_code: int) -> bool:
        return status_code == httpx.codes.UNAUTHORIZED and self._auto_register

    def _reregister(self) -> None:
        try:
            self.register()
        except RegistrationError as exc:
            logger.warning(
                "Failed to re-register device: %s",
                exc,
                extra={"device_id": self.identity.device_id, "tenant": self.identity.tenant},
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Failed to re-register device: %s",
                exc,
                exc_info=True,
                extra={"device_id": self.identity.device_id, "tenant": self.identity.tenant},
            )
