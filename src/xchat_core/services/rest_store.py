# src/xchat_core/services/rest_store.py
"""PostgREST relay client.

Talks to any PostgREST-compatible endpoint (Supabase exposes one at
``/rest/v1``). The table and column names are configurable so an existing
table can be reused as the relay.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Hashable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from xchat_core.core.errors import TransportError
from xchat_core.core.settings import Settings, settings
from xchat_core.services.row_store import (
    STATUS_CHANNEL_ERROR,
    Row,
    RowCallback,
    StatusCallback,
    SubscriptionHandle,
)

logger = logging.getLogger(__name__)

HTTP_BAD_REQUEST = 400
REST_PREFIX = "/rest/v1"


@dataclass(frozen=True)
class RestRelayConfig:
    """Immutable configuration for the HTTP relay."""

    base_url: str
    table: str
    payload_column: str
    id_column: str
    api_key: str | None
    timeout_seconds: float


def load_rest_config(source: Settings | None = None) -> RestRelayConfig:
    """Build configuration object from settings."""
    source = source or settings
    base_url, table = source.relay_url_parts()
    return RestRelayConfig(
        base_url=base_url,
        table=table,
        payload_column=source.relay_payload_column,
        id_column=source.relay_id_column,
        api_key=source.relay_api_key,
        timeout_seconds=float(source.http_timeout_seconds),
    )


class _NoPushSubscription:
    """Placeholder handle for relays without a push channel."""

    async def close(self) -> None:
        return None


class RestRowStore:
    """Row store speaking the PostgREST HTTP dialect."""

    def __init__(
        self,
        config: RestRelayConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or load_rest_config()
        if not self.config.base_url:
            raise ValueError("Relay URL is not configured")
        self.id_field = self.config.id_column
        self.payload_field = self.config.payload_column
        self._client = client
        self._client_lock = asyncio.Lock()

    @property
    def table_path(self) -> str:
        return f"{REST_PREFIX}/{self.config.table}"

    def _build_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["apikey"] = self.config.api_key
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                )
        return self._client

    async def aclose(self) -> None:
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None

    async def _request(
        self,
        method: str,
        *,
        params: Mapping[str, str] | None = None,
        json_data: Any | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(
                method,
                self.table_path,
                params=params,
                json=json_data,
                headers={**self._build_headers(), **(headers or {})},
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"Relay request failed: {exc}") from exc

        if response.status_code >= HTTP_BAD_REQUEST:
            raise TransportError(
                f"Relay responded with {response.status_code} for {method} {self.table_path}"
            )
        return response

    async def insert(self, row: Mapping[str, Any]) -> Hashable:
        keys = await self.insert_many([row])
        return keys[0] if keys else None

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> list[Hashable]:
        if not rows:
            return []
        response = await self._request(
            "POST",
            json_data=[{self.payload_field: row[self.payload_field]} for row in rows],
            headers={"Prefer": "return=representation"},
        )
        try:
            body = response.json()
        except ValueError:
            body = []
        if not isinstance(body, list):
            return []
        return [item.get(self.id_field) for item in body if isinstance(item, dict)]

    async def select_all(self) -> list[Row]:
        response = await self._request(
            "GET",
            params={
                "select": f"{self.id_field},{self.payload_field}",
                "order": f"{self.id_field}.asc",
            },
        )
        try:
            body = response.json()
        except ValueError as err:
            raise TransportError(f"Relay returned invalid JSON: {err}") from err
        if not isinstance(body, list):
            raise TransportError("Relay returned an unexpected body for select")
        return [item for item in body if isinstance(item, dict)]

    async def delete(self, key: Hashable) -> None:
        await self._request("DELETE", params={self.id_field: f"eq.{key}"})
        logger.debug("Deleted relay row %s=%s", self.id_field, key)

    async def subscribe_insert(
        self, on_row: RowCallback, on_status: StatusCallback
    ) -> SubscriptionHandle:
        """Report that no push channel exists; callers keep polling."""
        asyncio.get_running_loop().call_soon(on_status, STATUS_CHANNEL_ERROR)
        return _NoPushSubscription()
