"""Source contracts for the external chat aggregator and contact CRM."""

from __future__ import annotations

import abc
from typing import Any, Literal

import httpx

from opsmirror.sync.models import ChatPage, MessagePage, SendReceipt

Direction = Literal["before", "after"]


class ChatSource(abc.ABC):
    """Paginated chat and message feed."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Stable source name."""
        ...

    @abc.abstractmethod
    async def list_chats(
        self,
        *,
        cursor: str | None = None,
        direction: Direction | None = None,
    ) -> ChatPage:
        """Fetch one page of chat summaries."""
        ...

    @abc.abstractmethod
    async def list_messages(
        self,
        chat_id: str,
        *,
        cursor: str | None = None,
        direction: Direction | None = None,
        limit: int | None = None,
    ) -> MessagePage:
        """Fetch one page of messages relative to *cursor* (a sort key)."""
        ...

    @abc.abstractmethod
    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to: str | None = None,
    ) -> SendReceipt:
        """Queue *text* for delivery; returns the pending correlation ID."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release source resources."""
        ...


class ContactSource(abc.ABC):
    """Offset-paginated CRM contact feed with best-effort write-back."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Stable source name."""
        ...

    @abc.abstractmethod
    async def list_contacts(self, *, offset: int, limit: int) -> list[dict[str, Any]]:
        """Fetch raw contact records; validation happens in the reconciler."""
        ...

    @abc.abstractmethod
    async def update_contact(self, contact_id: str, fields: dict[str, Any]) -> None:
        """Push *fields* for *contact_id* upstream."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release source resources."""
        ...


async def fetch_all_contacts(source: ContactSource, *, page_size: int = 100) -> list[dict]:
    """Page through *source* until a short page is returned."""
    page_size = max(1, int(page_size))
    records: list[dict[str, Any]] = []
    offset = 0
    while True:
        page = await source.list_contacts(offset=offset, limit=page_size)
        records.extend(page)
        if len(page) < page_size:
            return records
        offset += page_size


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error message from an error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]

    text = response.text.strip()
    if text:
        return " ".join(text.split())[:200]
    return "unknown error"


def as_non_empty_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None
