"""Wires simulated devices to a worker pool and a tick schedule."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional

import httpx

from models.records import Counters, DeviceIdentity
from services.device import Device
from services.errors import RegistrationError
from services.registrar import Registrar
from services.runtime import AsyncRuntime
from services.scheduler import ScheduledTask, Scheduler
from settings import Settings

logger = logging.getLogger(__name__)


def build_identities(settings: Settings) -> List[DeviceIdentity]:
    return [
        DeviceIdentity(
            user=f"{settings.device_user_prefix}{index}",
            device_id=f"{settings.device_id_prefix}{index}",
            tenant=settings.tenant,
            password=settings.device_password,
        )
        for index in range(settings.device_count)
    ]


def _log_tick_failure(future: Future) -> None:
    """Log a tick that raised; follow the in-flight call of an async tick."""
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Device tick failed: %s", exc, exc_info=exc)
        return
    pending = future.result()
    if isinstance(pending, Future):
        pending.add_done_callback(_log_tick_failure)


class ProducerRunner:
    """Owns the HTTP clients and ticks every device once per interval."""

    def __init__(
        self,
        settings: Settings,
        counters: Counters,
        scheduler: Scheduler,
        registrar: Optional[Registrar] = None,
        transport: Optional[httpx.BaseTransport] = None,
        async_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.counters = counters
        self._scheduler = scheduler
        self._registrar = registrar
        self._executor = ThreadPoolExecutor(
            max_workers=settings.producer_workers, thread_name_prefix="tick"
        )
        self._tick_task: Optional[ScheduledTask] = None
        self._client: Optional[httpx.Client] = None
        self._async_client: Optional[httpx.AsyncClient] = None
        self._runtime: Optional[AsyncRuntime] = None

        if settings.http_async:
            self._runtime = AsyncRuntime().start()
            self._async_client = httpx.AsyncClient(
                timeout=settings.http_timeout, transport=async_transport
            )
        else:
            self._client = httpx.Client(timeout=settings.http_timeout, transport=transport)

        self.devices = [
            Device(
                identity,
                counters,
                telemetry_url=settings.telemetry_url,
                client=self._client,
                registrar=registrar,
                auto_register=settings.auto_register,
                async_client=self._async_client,
                runtime=self._runtime,
                timeout=settings.http_timeout,
            )
            for identity in build_identities(settings)
        ]
        logger.info(
            "Prepared %d devices (async=%s, endpoint=%s)",
            len(self.devices),
            settings.http_async,
            settings.telemetry_url,
        )

    def register_all(self) -> int:
        """Register every device up front; returns how many registrations failed."""
        failures = 0
        for device in self.devices:
            try:
                device.register()
            except RegistrationError as exc:
                failures += 1
                logger.warning(
                    "Failed to register device: %s",
                    exc,
                    extra={"device_id": device.identity.device_id},
                )
        return failures

    def start(self) -> None:
        if self._tick_task is None:
            self._tick_task = self._scheduler.call_every(
                self.settings.tick_interval, self.tick_all
            )

    def tick_all(self) -> List[Future]:
        futures = []
        for device in self.devices:
            future = self._executor.submit(device.tick)
            future.add_done_callback(_log_tick_failure)
            futures.append(future)
        return futures

    def shutdown(self) -> None:
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None
        self._executor.shutdown(wait=True, cancel_futures=True)
        if self._runtime is not None:
            self._runtime.drain(timeout=self.settings.http_timeout)
            if self._async_client is not None:
                self._runtime.run(self._async_client.aclose(), timeout=5.0)
            self._runtime.shutdown(timeout=1.0)
        if self._client is not None:
            self._client.close()
