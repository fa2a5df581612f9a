"""Telemetry subscription with a reconnecting connection lifecycle."""

from __future__ import annotations

import logging
import threading
from functools import partial
from typing import Callable, Optional, Protocol

from models.records import ConnectionState, Counters, DataSection, TelemetryMessage
from services.errors import BrokerConnectionError, DecodeError
from services.scheduler import ScheduledTask, Scheduler
from services.sink import SinkWriter

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 5.0

MessageHandler = Callable[[TelemetryMessage], None]


class Subscription(Protocol):
    def close(self) -> None:
        ...


class BrokerConnection(Protocol):
    @property
    def is_open(self) -> bool:
        ...

    def subscribe(
        self, tenant: str, on_message: MessageHandler, on_close: Callable[[], None]
    ) -> Subscription:
        ...

    def close(self) -> None:
        ...


class BrokerConnector(Protocol):
    def connect(
        self, on_disconnect: Callable[[BrokerConnection], None]
    ) -> BrokerConnection:
        ...


def body_as_string(message: TelemetryMessage) -> str:
    """Return the message body as text, raising DecodeError for unusable bodies."""
    body = message.body
    if body is None:
        raise DecodeError("Missing body value")
    if isinstance(body, str):
        return body
    if isinstance(body, DataSection):
        body = body.value
    if isinstance(body, (bytes, bytearray, memoryview)):
        try:
            return bytes(body).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"Body is not valid UTF-8: {exc.reason}") from exc
    raise DecodeError(f"Unsupported body type: {type(body).__name__}")


class TelemetryConsumer:
    """Consumes one tenant's telemetry stream and feeds the sink.

    A failure of the very first connect/subscribe ends :meth:`run`. After
    that, every disconnect or subscription close moves the consumer back to
    ``disconnected`` and schedules a single reconnect attempt; attempts keep
    being scheduled until one succeeds or :meth:`close` is called.
    """

    def __init__(
        self,
        connector: BrokerConnector,
        tenant: str,
        counters: Counters,
        scheduler: Scheduler,
        sink: Optional[SinkWriter] = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
    ) -> None:
        self.tenant = tenant
        self._connector = connector
        self._counters = counters
        self._scheduler = scheduler
        self._sink = sink
        self._reconnect_delay = reconnect_delay

        self._lock = threading.RLock()
        self._state = ConnectionState.disconnected
        self._connection: Optional[BrokerConnection] = None
        self._subscription: Optional[Subscription] = None
        self._reconnect_task: Optional[ScheduledTask] = None
        self._done = threading.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None

    def run(self) -> bool:
        """Connect, subscribe and block until the consumer is closed.

        Returns ``False`` when the initial connect or subscribe failed.
        """
        with self._lock:
            if self._state is not ConnectionState.disconnected or self._done.is_set():
                raise RuntimeError("Consumer has already been started.")
            self._state = ConnectionState.connecting

        try:
            self._open()
        except BrokerConnectionError as exc:
            logger.error(
                "Error occurred during initialization of receiver: %s",
                exc,
                extra={"tenant": self.tenant},
            )
            self.close()
            return False

        logger.info("Consuming telemetry", extra={"tenant": self.tenant, "state": self._state.value})
        self._done.wait()
        return True

    def close(self) -> None:
        with self._lock:
            self._state = ConnectionState.closing
            task, self._reconnect_task = self._reconnect_task, None
            subscription, self._subscription = self._subscription, None
            connection, self._connection = self._connection, None

        if task is not None:
            task.cancel()
        if subscription is not None:
            subscription.close()
        if connection is not None:
            connection.close()
        self._done.set()

    def handle_message(self, message: TelemetryMessage) -> None:
        self._counters.increment_processed()
        if self._sink is None:
            return

        try:
            body = body_as_string(message)
        except DecodeError as exc:
            logger.info(
                "Dropping message: %s",
                exc,
                extra={"body_type": type(message.body).__name__},
            )
            return
        self._sink.consume(message, body)

    def _open(self) -> None:
        with self._lock:
            connection = self._connection

        if connection is None or not connection.is_open:
            connection = self._connector.connect(self._on_disconnect)
            with self._lock:
                accepted = self._state is ConnectionState.connecting
                if accepted:
                    self._connection = connection
            if not accepted:
                connection.close()
                return

        try:
            subscription = connection.subscribe(
                self.tenant,
                self.handle_message,
                partial(self._on_subscription_closed, connection),
            )
        except BrokerConnectionError:
            with self._lock:
                if self._connection is connection:
                    self._connection = None
            connection.close()
            raise

        with self._lock:
            accepted = (
                self._state is ConnectionState.connecting
                and self._connection is connection
            )
            if accepted:
                self._subscription = subscription
                self._state = ConnectionState.consuming
        if not accepted:
            subscription.close()

    def _on_disconnect(self, connection: BrokerConnection) -> None:
        with self._lock:
            if connection is not self._connection or self._state is ConnectionState.closing:
                return
            self._connection = None
            self._subscription = None
            self._state = ConnectionState.disconnected
            self._schedule_reconnect()

        logger.info(
            "Connection lost",
            extra={"tenant": self.tenant, "delay": self._reconnect_delay},
        )
        connection.close()

    def _on_subscription_closed(self, connection: BrokerConnection) -> None:
        with self._lock:
            if connection is not self._connection or self._state is not ConnectionState.consuming:
                return
            self._subscription = None
            self._state = ConnectionState.disconnected
            self._schedule_reconnect()

        logger.info(
            "Subscription closed",
            extra={"tenant": self.tenant, "delay": self._reconnect_delay},
        )

    def _schedule_reconnect(self) -> None:
        # Caller holds the lock and has moved the state to disconnected.
        if self._reconnect_task is not None:
            return
        self._reconnect_task = self._scheduler.call_later(
            self._reconnect_delay, self._reconnect
        )

    def _reconnect(self) -> None:
        with self._lock:
            self._reconnect_task = None
            if self._state is not ConnectionState.disconnected:
                return
            self._state = ConnectionState.connecting

        logger.info("Attempting to re-connect", extra={"tenant": self.tenant})
        try:
            self._open()
        except BrokerConnectionError as exc:
            logger.warning(
                "Reconnect failed: %s",
                exc,
                extra={"tenant": self.tenant, "delay": self._reconnect_delay},
            )
            with self._lock:
                if self._state is ConnectionState.connecting:
                    self._state = ConnectionState.disconnected
                if self._state is ConnectionState.disconnected:
                    self._schedule_reconnect()
            return

        if self._state is ConnectionState.consuming:
            logger.info("Re-connected", extra={"tenant": self.tenant})
