from __future__ import annotations

from typing import Any, Dict, Iterable

import typer

_COUNTER_NAMES = ("sent", "success", "failure", "processed")


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_counters(label: str, counters: Dict[str, Any]) -> None:
    echo_heading(label)
    echo_key_values((name, counters.get(name, 0)) for name in _COUNTER_NAMES)


def render_stats(payload: Dict[str, Any]) -> None:
    counters = payload.get("counters") or {}
    if not counters:
        typer.echo("No counters reported.")
        return
    for index, (label, values) in enumerate(sorted(counters.items())):
        if index:
            typer.echo()
        render_counters(label, values or {})
