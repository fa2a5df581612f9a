"""Domain models shared across the producer and consumer sides."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Dict, Mapping, Union


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    """Credentials of one simulated device."""

    user: str
    device_id: str
    tenant: str
    password: str

    @property
    def auth_id(self) -> str:
        return f"{self.user}@{self.tenant}"


@dataclass(frozen=True, slots=True)
class CounterSnapshot:
    sent: int = 0
    success: int = 0
    failure: int = 0
    processed: int = 0

    def __sub__(self, other: "CounterSnapshot") -> "CounterSnapshot":
        return CounterSnapshot(
            sent=self.sent - other.sent,
            success=self.success - other.success,
            failure=self.failure - other.failure,
            processed=self.processed - other.processed,
        )


class Counters:
    """Monotonic tallies shared by every worker of one process side.

    Each increment takes the internal lock so callers never coordinate among
    themselves. ``snapshot`` reads all four values under the same lock, which
    keeps ``sent >= success + failure`` visible at every observation.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._sent = 0
        self._success = 0
        self._failure = 0
        self._processed = 0

    def increment_sent(self) -> None:
        with self._lock:
            self._sent += 1

    def increment_success(self) -> None:
        with self._lock:
            self._success += 1

    def increment_failure(self) -> None:
        with self._lock:
            self._failure += 1

    def increment_processed(self) -> None:
        with self._lock:
            self._processed += 1

    @property
    def sent(self) -> int:
        return self._sent

    @property
    def success(self) -> int:
        return self._success

    @property
    def failure(self) -> int:
        return self._failure

    @property
    def processed(self) -> int:
        return self._processed

    def snapshot(self) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(
                sent=self._sent,
                success=self._success,
                failure=self._failure,
                processed=self._processed,
            )


class ConnectionState(str, Enum):
    """Lifecycle of a consumer's broker connection."""

    disconnected = "disconnected"
    connecting = "connecting"
    consuming = "consuming"
    closing = "closing"


@dataclass(frozen=True, slots=True)
class DataSection:
    """Opaque binary body section as delivered by the broker client."""

    value: Union[bytes, bytearray, memoryview]


@dataclass(slots=True)
class TelemetryMessage:
    body: Any
    annotations: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DataPoint:
    """A single time-series point headed for the store."""

    measurement: str
    timestamp_ms: int
    tags: Dict[str, str] = field(default_factory=dict)
    fields: Dict[str, Union[int, float]] = field(default_factory=dict)
