"""httpx chat source for a Beeper-style chat aggregation API."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from opsmirror.providers.base import (
    ChatSource,
    Direction,
    as_non_empty_string,
    safe_error_message,
)
from opsmirror.sync.errors import SourceRequestError
from opsmirror.sync.models import (
    Attachment,
    ChatPage,
    MessagePage,
    Reaction,
    RemoteChat,
    RemoteMessage,
    SendReceipt,
)

logger = logging.getLogger(__name__)

DEFAULT_BEEPER_API_URL = "http://localhost:23373"
SOURCE_NAME = "beeper"


class BeeperChatSource(ChatSource):
    """Bearer-token client for ``/v1/chats`` and ``/v1/chats/{id}/messages``."""

    def __init__(
        self,
        *,
        token: str,
        base_url: str = DEFAULT_BEEPER_API_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        token = token.strip()
        if not token:
            raise ValueError("token must be a non-empty string")
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=10.0))
        )

    @property
    def name(self) -> str:
        return SOURCE_NAME

    async def list_chats(
        self,
        *,
        cursor: str | None = None,
        direction: Direction | None = None,
    ) -> ChatPage:
        params: dict[str, Any] = {}
        if cursor is not None:
            params["cursor"] = cursor
        if direction is not None:
            params["direction"] = direction
        payload = await self._request("GET", "/v1/chats", params=params)
        return _parse_chat_page(payload)

    async def list_messages(
        self,
        chat_id: str,
        *,
        cursor: str | None = None,
        direction: Direction | None = None,
        limit: int | None = None,
    ) -> MessagePage:
        params: dict[str, Any] = {}
        if cursor is not None:
            params["cursor"] = cursor
        if direction is not None:
            params["direction"] = direction
        if limit is not None:
            params["limit"] = max(1, int(limit))
        payload = await self._request(
            "GET", f"/v1/chats/{_quote(chat_id)}/messages", params=params
        )
        return _parse_message_page(payload)

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to: str | None = None,
    ) -> SendReceipt:
        body: dict[str, Any] = {"text": text}
        if reply_to is not None:
            body["replyToMessageID"] = reply_to
        payload = await self._request("POST", f"/v1/chats/{_quote(chat_id)}/messages", json=body)
        pending_id = as_non_empty_string(payload.get("pendingMessageID"))
        if pending_id is None:
            raise SourceRequestError(
                status_code=200,
                message="send response is missing pendingMessageID",
                source=SOURCE_NAME,
            )
        return SendReceipt(pending_id=pending_id)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._http_client.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=json,
                headers={
                    "Authorization": f"Bearer {self._token}",
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
            payload = response.json()
        except ValueError as exc:
            raise SourceRequestError(
                status_code=response.status_code,
                message="invalid JSON payload",
                source=SOURCE_NAME,
            ) from exc

        if not isinstance(payload, dict):
            raise SourceRequestError(
                status_code=response.status_code,
                message="payload must be a JSON object",
                source=SOURCE_NAME,
            )
        return payload


def _quote(chat_id: str) -> str:
    return quote(chat_id, safe="")


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, int | float) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return None


def _is_assistant_bot(participant: dict[str, Any]) -> bool:
    name = str(participant.get("fullName") or "").lower()
    username = str(participant.get("username") or "").lower()
    return "meta ai" in name or username == "meta.ai"


def pick_counterpart(participants: list[Any]) -> dict[str, Any] | None:
    """Return the other person in a single chat.

    Self is never chosen. Injected assistant bots are skipped unless they are
    the only non-self participant.
    """
    others = [p for p in participants if isinstance(p, dict) and p.get("isSelf") is False]
    humans = [p for p in others if not _is_assistant_bot(p)]
    if humans:
        return humans[0]
    return others[0] if others else None


def _parse_chat(payload: dict[str, Any]) -> RemoteChat | None:
    chat_id = as_non_empty_string(payload.get("id"))
    if chat_id is None:
        logger.warning("Skipping chat without id")
        return None

    chat_type = payload.get("type") if payload.get("type") in ("single", "group") else "single"
    counterpart: dict[str, Any] | None = None
    participants = payload.get("participants")
    if chat_type == "single" and isinstance(participants, dict):
        items = participants.get("items")
        if isinstance(items, list):
            counterpart = pick_counterpart(items)

    counterpart = counterpart or {}
    return RemoteChat(
        chat_id=chat_id,
        local_chat_id=as_non_empty_string(payload.get("localChatID")) or chat_id,
        title=as_non_empty_string(payload.get("title")) or "Unknown",
        network=(
            as_non_empty_string(payload.get("network"))
            or as_non_empty_string(payload.get("accountID"))
            or "Unknown"
        ),
        account_id=as_non_empty_string(payload.get("accountID")) or "",
        type=chat_type,
        username=as_non_empty_string(counterpart.get("username")),
        phone_number=as_non_empty_string(counterpart.get("phoneNumber")),
        email=as_non_empty_string(counterpart.get("email")),
        participant_id=as_non_empty_string(counterpart.get("id")),
        last_activity=_parse_timestamp(payload.get("lastActivity")),
        unread_count=int(payload.get("unreadCount") or 0),
        is_archived=bool(payload.get("isArchived")),
        is_muted=bool(payload.get("isMuted")),
        is_pinned=bool(payload.get("isPinned")),
    )


def _parse_chat_page(payload: dict[str, Any]) -> ChatPage:
    chats: list[RemoteChat] = []
    raw_items = payload.get("items")
    if isinstance(raw_items, list):
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            parsed = _parse_chat(item)
            if parsed is not None:
                chats.append(parsed)
    return ChatPage(
        items=chats,
        newest_cursor=as_non_empty_string(payload.get("newestCursor")),
        oldest_cursor=as_non_empty_string(payload.get("oldestCursor")),
        has_more=bool(payload.get("hasMore")),
    )


def _parse_message(payload: dict[str, Any]) -> RemoteMessage | None:
    message_id = as_non_empty_string(payload.get("id"))
    timestamp = _parse_timestamp(payload.get("timestamp"))
    sort_key = payload.get("sortKey")
    if message_id is None or timestamp is None or sort_key in (None, ""):
        logger.warning("Skipping message without id, timestamp or sortKey: %r", message_id)
        return None

    attachments = [
        Attachment(
            type=att.get("type") or "unknown",
            src_url=att.get("srcURL"),
            mime_type=att.get("mimeType"),
            file_name=att.get("fileName"),
            file_size=att.get("fileSize"),
            is_gif=att.get("isGif"),
            is_sticker=att.get("isSticker"),
            is_voice_note=att.get("isVoiceNote"),
            width=(att.get("size") or {}).get("width"),
            height=(att.get("size") or {}).get("height"),
        )
        for att in payload.get("attachments") or []
        if isinstance(att, dict)
    ]
    reactions = [
        Reaction(
            id=r.get("id"),
            participant_id=r.get("participantID"),
            reaction_key=r.get("reactionKey"),
            emoji=r.get("emoji"),
        )
        for r in payload.get("reactions") or []
        if isinstance(r, dict)
    ]
    sender_id = str(payload.get("senderID") or "")
    try:
        return RemoteMessage(
            message_id=message_id,
            text=payload.get("text"),
            timestamp=timestamp,
            sort_key=str(sort_key),
            sender_id=sender_id,
            sender_name=str(payload.get("senderName") or sender_id),
            is_from_user=bool(payload.get("isSender")),
            is_unread=payload.get("isUnread"),
            attachments=attachments,
            reactions=reactions,
            pending_id=as_non_empty_string(payload.get("pendingMessageID")),
        )
    except ValidationError:
        logger.warning("Skipping message that failed validation: %s", message_id)
        return None


def _parse_message_page(payload: dict[str, Any]) -> MessagePage:
    messages: list[RemoteMessage] = []
    raw_items = payload.get("items")
    if isinstance(raw_items, list):
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            parsed = _parse_message(item)
            if parsed is not None:
                messages.append(parsed)
    return MessagePage(items=messages, has_more=bool(payload.get("hasMore")))
