"""Exception types raised at the component boundaries."""

from __future__ import annotations


class TelemetrySoakError(Exception):
    """Base class for errors raised by this project."""


class RegistrationError(TelemetrySoakError):
    """The device registry rejected or failed a registration request."""


class BrokerConnectionError(TelemetrySoakError):
    """Connecting or subscribing to the message broker failed."""


class DecodeError(TelemetrySoakError):
    """A telemetry message body could not be turned into a data point."""


class StoreError(TelemetrySoakError):
    """The time-series store rejected a request."""
