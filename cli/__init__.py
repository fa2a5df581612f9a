"""Command line entry points for the telemetry producer and consumer."""

from importlib import import_module
from types import ModuleType


def __getattr__(name: str) -> ModuleType:
    if name == "app":
        return import_module("cli.app")
    raise AttributeError(name)

# ``cli.app`` stays the module, not the Typer instance, so tests can patch
# ``cli.app.MqttConnector`` and ``cli.app.StatusClient`` by dotted path.

__all__ = []
