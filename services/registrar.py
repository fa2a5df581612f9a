"""Client for the device registry that issues simulator credentials."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from services.errors import RegistrationError

logger = logging.getLogger(__name__)


class Registrar(Protocol):
    def register(self, device_id: str, user: str, password: str) -> None:
        ...


class HttpRegistrar:
    """Registers devices and their password credentials with a Hono-style registry."""

    def __init__(
        self,
        base_url: str,
        tenant: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.tenant = tenant
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def register(self, device_id: str, user: str, password: str) -> None:
        """Create the device (tolerating an existing one) and set its credentials."""
        try:
            response = self._client.post(f"/v1/devices/{self.tenant}/{device_id}", json={})
            if response.status_code not in (httpx.codes.CREATED, httpx.codes.CONFLICT):
                raise RegistrationError(
                    f"Creating device {device_id!r} failed with status {response.status_code}."
                )

            credentials = [
                {
                    "type": "hashed-password",
                    "auth-id": user,
                    "secrets": [{"pwd-plain": password}],
                }
            ]
            response = self._client.put(
                f"/v1/credentials/{self.tenant}/{device_id}", json=credentials
            )
            if not response.is_success:
                raise RegistrationError(
                    f"Setting credentials for {device_id!r} failed with status {response.status_code}."
                )
        except httpx.HTTPError as exc:
            raise RegistrationError(f"Registry request for {device_id!r} failed: {exc}") from exc

        logger.debug(
            "Registered device", extra={"device_id": device_id, "tenant": self.tenant}
        )
