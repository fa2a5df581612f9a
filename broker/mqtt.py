"""MQTT v5 broker connector used by the telemetry consumer."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from models.records import DataSection, TelemetryMessage
from services.errors import BrokerConnectionError

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "telemetry"
_UTF8_PAYLOAD = 1


def telemetry_topic(tenant: str) -> str:
    return f"{TOPIC_PREFIX}/{tenant}/#"


def to_telemetry_message(message: Any) -> TelemetryMessage:
    """Map an MQTT message onto a body and a set of annotations."""
    topic = message.topic
    annotations: Dict[str, Any] = {"topic": topic, "qos": message.qos}

    parts = topic.split("/")
    if len(parts) >= 3 and parts[0] == TOPIC_PREFIX:
        annotations["tenant_id"] = parts[1]
        annotations["device_id"] = parts[2]

    properties = getattr(message, "properties", None)
    for key, value in getattr(properties, "UserProperty", None) or []:
        annotations.setdefault(key, value)

    payload = message.payload
    if getattr(properties, "PayloadFormatIndicator", 0) == _UTF8_PAYLOAD:
        body: Any = bytes(payload)
    else:
        body = DataSection(payload)
    return TelemetryMessage(body=body, annotations=annotations)


class MqttSubscription:
    def __init__(self, client: mqtt.Client, topic: str) -> None:
        self._client = client
        self.topic = topic

    def close(self) -> None:
        if self._client.is_connected():
            self._client.unsubscribe(self.topic)


class MqttConnection:
    """A connected paho client whose network loop never reconnects on its own."""

    def __init__(self, client: mqtt.Client, timeout: float) -> None:
        self._client = client
        self._timeout = timeout
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed and self._client.is_connected()

    def subscribe(
        self,
        tenant: str,
        on_message: Callable[[TelemetryMessage], None],
        on_close: Callable[[], None],
    ) -> MqttSubscription:
        # MQTT has no broker-side subscription close, only DISCONNECT, so
        # ``on_close`` never fires here; connection loss arrives via the connector.
        topic = telemetry_topic(tenant)
        acknowledged = threading.Event()
        outcome: Dict[str, Any] = {}

        def _on_subscribe(_client, _userdata, mid, reason_codes, _properties) -> None:
            outcome["mid"] = mid
            outcome["reason_codes"] = reason_codes
            acknowledged.set()

        def _on_message(_client, _userdata, message) -> None:
            on_message(to_telemetry_message(message))

        self._client.on_message = _on_message
        self._client.on_subscribe = _on_subscribe
        result, _mid = self._client.subscribe(topic, qos=1)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerConnectionError(
                f"Subscribing to {topic!r} failed: {mqtt.error_string(result)}"
            )
        if not acknowledged.wait(self._timeout):
            raise BrokerConnectionError(f"No subscription acknowledgement for {topic!r}.")
        if any(code.is_failure for code in outcome["reason_codes"]):
            raise BrokerConnectionError(
                f"Broker refused subscription to {topic!r}: {outcome['reason_codes']}"
            )

        logger.info("Subscribed to %s", topic, extra={"tenant": tenant})
        return MqttSubscription(self._client, topic)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._client.disconnect()
        self._client.loop_stop()


class MqttConnector:
    """Opens one paho client per connection attempt."""

    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        tls_enabled: bool = True,
        trusted_certs: Optional[str] = None,
        receive_maximum: Optional[int] = None,
        connect_timeout: float = 5.0,
        keepalive: int = 30,
    ) -> None:
        self.host = host
        self.port = port
        self._username = username
        self._password = password
        self._tls_enabled = tls_enabled
        self._trusted_certs = trusted_certs
        self._receive_maximum = receive_maximum
        self._connect_timeout = connect_timeout
        self._keepalive = keepalive

    def connect(self, on_disconnect: Callable[[MqttConnection], None]) -> MqttConnection:
        client = self._build_client()
        connection = MqttConnection(client, self._connect_timeout)
        connected = threading.Event()
        outcome: Dict[str, Any] = {}

        def _on_connect(_client, _userdata, _flags, reason_code, _properties) -> None:
            outcome["reason_code"] = reason_code
            connected.set()

        def _on_disconnect(_client, _userdata, _flags, reason_code, _properties) -> None:
            # Stop paho's built-in reconnect; the consumer owns reconnect timing.
            client.loop_stop()
            if connected.is_set():
                logger.info("Disconnected from broker: %s", reason_code)
                on_disconnect(connection)

        client.on_connect = _on_connect
        client.on_disconnect = _on_disconnect

        try:
            client.connect(
                self.host,
                self.port,
                keepalive=self._keepalive,
                clean_start=True,
                properties=self._connect_properties(),
            )
        except (OSError, ValueError) as exc:
            raise BrokerConnectionError(
                f"Connecting to {self.host}:{self.port} failed: {exc}"
            ) from exc

        client.loop_start()
        if not connected.wait(self._connect_timeout):
            connection.close()
            raise BrokerConnectionError(
                f"Timed out connecting to {self.host}:{self.port}."
            )
        reason_code = outcome["reason_code"]
        if reason_code.is_failure:
            connection.close()
            raise BrokerConnectionError(
                f"Broker at {self.host}:{self.port} refused connection: {reason_code}"
            )

        logger.info("Connected to broker %s:%s", self.host, self.port)
        return connection

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"telemetry-soak-{uuid4().hex[:12]}",
            protocol=mqtt.MQTTv5,
        )
        if self._username:
            client.username_pw_set(self._username, self._password)
        if self._tls_enabled:
            client.tls_set(ca_certs=self._trusted_certs)
            client.tls_insecure_set(True)
        return client

    def _connect_properties(self) -> Optional[Properties]:
        if self._receive_maximum is None:
            return None
        properties = Properties(PacketTypes.CONNECT)
        properties.ReceiveMaximum = self._receive_maximum
        return properties
