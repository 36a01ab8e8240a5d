"""
HTTP transport for telemetry batches.

POSTs ``{"schemaVersion": 1, "events": [...]}`` to the ingestion endpoint with
a bearer token and maps the response onto the error taxonomy in
:mod:`telemetry_agent.errors`. Raises; never retries on its own.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
from loguru import logger

from .errors import TransientTransportError, map_http_status
from .models import SCHEMA_VERSION, Batch


@runtime_checkable
class Transport(Protocol):
    """Anything that can deliver a batch and request a user's deletion."""

    async def send(self, batch: Batch, *, auth_token: Optional[str]) -> None:
        """Deliver ``batch``. Raises a TransportError subclass on failure."""
        ...

    async def delete_user(self, user_id: str, *, auth_token: Optional[str]) -> None:
        """Ask the server to delete all persisted events for ``user_id``."""
        ...

    async def aclose(self) -> None: ...


class Credentials:
    """Bearer token shared by the batcher and the orchestrator.

    A 401/403 pauses delivery until a fresh token is supplied.
    """

    def __init__(self, token: Optional[str] = None):
        self._token = token
        self._paused = False

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        if not self._paused:
            logger.warning("Telemetry delivery paused: server rejected credentials")
        self._paused = True

    def refresh(self, token: Optional[str]) -> None:
        self._token = token
        if self._paused:
            logger.info("Telemetry delivery resumed with fresh credentials")
        self._paused = False


def batch_payload(batch: Batch) -> dict:
    return {
        "schemaVersion": SCHEMA_VERSION,
        "batchId": str(batch.batch_id),
        "events": [e.to_wire() for e in batch.events],
    }


class HttpTransport:
    """httpx-based transport.

    Example:
        transport = HttpTransport("https://api.example.com", timeout=10.0)
        await transport.send(batch, auth_token="...")
        await transport.aclose()
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        events_path: str = "/telemetry/events",
        users_path: str = "/telemetry/users",
    ):
        self._base_url = base_url.rstrip("/")
        self._events_path = events_path
        self._users_path = users_path
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @staticmethod
    def _headers(auth_token: Optional[str]) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        return headers

    async def send(self, batch: Batch, *, auth_token: Optional[str]) -> None:
        url = f"{self._base_url}{self._events_path}"
        try:
            resp = await self._client.post(
                url, json=batch_payload(batch), headers=self._headers(auth_token)
            )
        except httpx.TimeoutException as exc:
            raise TransientTransportError(f"timeout posting batch: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientTransportError(f"network error posting batch: {exc}") from exc

        if 200 <= resp.status_code < 300:
            logger.debug(f"Batch {batch.batch_id} accepted ({resp.status_code})")
            return
        raise map_http_status(resp.status_code, resp.text)

    async def delete_user(self, user_id: str, *, auth_token: Optional[str]) -> None:
        url = f"{self._base_url}{self._users_path}/{quote(user_id, safe='')}"
        try:
            resp = await self._client.delete(url, headers=self._headers(auth_token))
        except httpx.TimeoutException as exc:
            raise TransientTransportError(f"timeout deleting user: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientTransportError(f"network error deleting user: {exc}") from exc

        if 200 <= resp.status_code < 300 or resp.status_code == 404:
            return
        raise map_http_status(resp.status_code, resp.text)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
