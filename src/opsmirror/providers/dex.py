"""httpx contact source for a Dex-style personal CRM REST API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from opsmirror.providers.base import ContactSource, safe_error_message
from opsmirror.sync.errors import SourceRequestError

logger = logging.getLogger(__name__)

DEFAULT_DEX_API_URL = "https://api.getdex.com/api/rest"
DEX_API_KEY_HEADER = "x-hasura-dex-api-key"
SOURCE_NAME = "dex"


class DexContactSource(ContactSource):
    """API-key client for the CRM ``/contacts`` collection."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_DEX_API_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        api_key = api_key.strip()
        if not api_key:
            raise ValueError("api_key must be a non-empty string")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
        )

    @property
    def name(self) -> str:
        return SOURCE_NAME

    async def list_contacts(self, *, offset: int, limit: int) -> list[dict[str, Any]]:
        payload = await self._request(
            "GET",
            params={"offset": max(0, int(offset)), "limit": max(1, int(limit))},
        )
        if isinstance(payload, list):
            raw = payload
        elif isinstance(payload, dict):
            raw = payload.get("contacts") or payload.get("data") or []
        else:
            raw = []
        if not isinstance(raw, list):
            raise SourceRequestError(
                status_code=200,
                message="contacts payload must be a list",
                source=SOURCE_NAME,
            )
        return [item for item in raw if isinstance(item, dict)]

    async def update_contact(self, contact_id: str, fields: dict[str, Any]) -> None:
        await self._request("PUT", json={"id": contact_id, **fields})
        logger.info("Pushed contact update upstream: %s (%s)", contact_id, ", ".join(fields))

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self._http_client.request(
                method,
                f"{self._base_url}/contacts",
                params=params,
                json=json,
                headers={
                    DEX_API_KEY_HEADER: self._api_key,
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            raise SourceRequestError(
                status_code=0, message=f"transport error: {exc}", source=SOURCE_NAME
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise SourceRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
                source=SOURCE_NAME,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise SourceRequestError(
                status_code=response.status_code,
                message="invalid JSON payload",
                source=SOURCE_NAME,
            ) from exc
