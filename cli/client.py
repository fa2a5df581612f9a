from __future__ import annotations

from typing import Any, Dict

import httpx
import typer


class StatusClient:
    """Minimal HTTP client for a running process's status API."""

    def __init__(self, base_url: str, timeout: float = 10.0) -> None:
        self.base_url = base_url
        self._client = httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def get_stats(self) -> Dict[str, Any]:
        try:
            response = self._client.get("/stats")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            typer.secho(
                f"Request failed with status {exc.response.status_code}.",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(code=1)
        except httpx.HTTPError as exc:
            typer.secho(f"Status API at {self.base_url} is unreachable: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        return response.json()
