"""asyncpg-backed implementations of the sync store contracts.

Tables come from the ``core`` migration chain. List-valued model fields are
stored as JSONB; ``normalized_phones`` is a ``TEXT[]`` with a GIN index so
phone lookups stay indexed. Chats carry two derived lookup columns
(``username_normalized``, ``phone_normalized``) written on every save.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import asyncpg
from pydantic import BaseModel

from opsmirror.core.state import (
    state_compare_and_set,
    state_get_versioned,
    state_set,
    state_setdefault,
)
from opsmirror.sync.errors import ChatNotFoundError, ContactNotFoundError
from opsmirror.sync.models import (
    Chat,
    Contact,
    Message,
    confirmed_window,
    validate_chat_patch,
)
from opsmirror.sync.normalize import normalize_handle, normalize_phone, sort_key_value

logger = logging.getLogger(__name__)

_CONTACT_COLUMNS = tuple(Contact.model_fields)
_CONTACT_JSONB = frozenset({"phones", "emails", "social_handles", "tags", "merged_from"})

_CHAT_COLUMNS = tuple(Chat.model_fields)
_CHAT_LOOKUP_COLUMNS = ("username_normalized", "phone_normalized")

_MESSAGE_COLUMNS = tuple(Message.model_fields)
_MESSAGE_JSONB = frozenset({"attachments", "reactions"})


def _ident(column: str) -> str:
    return f'"{column}"'


def _select(columns: Sequence[str]) -> str:
    return ", ".join(_ident(c) for c in columns)


def _placeholders(columns: Sequence[str], jsonb: frozenset[str]) -> str:
    return ", ".join(
        f"${i}::jsonb" if column in jsonb else f"${i}" for i, column in enumerate(columns, 1)
    )


def _upsert_sql(
    table: str, columns: Sequence[str], jsonb: frozenset[str], conflict: Sequence[str]
) -> str:
    updates = ", ".join(
        f"{_ident(c)} = EXCLUDED.{_ident(c)}" for c in columns if c not in conflict
    )
    return (
        f"INSERT INTO {table} ({_select(columns)}) "
        f"VALUES ({_placeholders(columns, jsonb)}) "
        f"ON CONFLICT ({_select(conflict)}) DO UPDATE SET {updates}"
    )


def _row_values(model: BaseModel, columns: Sequence[str], jsonb: frozenset[str]) -> list[Any]:
    data = model.model_dump()
    encoded = model.model_dump(mode="json", include=set(jsonb)) if jsonb else {}
    return [json.dumps(encoded[c]) if c in jsonb else data[c] for c in columns]


def _decode_row(row: asyncpg.Record, jsonb: frozenset[str]) -> dict[str, Any]:
    data = dict(row)
    for column in jsonb:
        value = data.get(column)
        if isinstance(value, str):
            data[column] = json.loads(value)
    return data


def _contact_from_row(row: asyncpg.Record) -> Contact:
    data = _decode_row(row, _CONTACT_JSONB)
    data["normalized_phones"] = list(data.get("normalized_phones") or [])
    return Contact.model_validate(data)


def _message_from_row(row: asyncpg.Record) -> Message:
    return Message.model_validate(_decode_row(row, _MESSAGE_JSONB))


def _chat_from_row(row: asyncpg.Record) -> Chat:
    return Chat.model_validate(dict(row))


_CONTACT_SELECT = f"SELECT {_select(_CONTACT_COLUMNS)} FROM contacts"
_CONTACT_ORDER = "ORDER BY created_at, seq"
_CHAT_SELECT = f"SELECT {_select(_CHAT_COLUMNS)} FROM chats"
_MESSAGE_SELECT = f"SELECT {_select(_MESSAGE_COLUMNS)} FROM messages"

_CHAT_WRITE_COLUMNS = (*_CHAT_COLUMNS, *_CHAT_LOOKUP_COLUMNS)
_CHAT_UPSERT = _upsert_sql("chats", _CHAT_WRITE_COLUMNS, frozenset(), ("chat_id",))
_MESSAGE_UPSERT = _upsert_sql(
    "messages", _MESSAGE_COLUMNS, _MESSAGE_JSONB, ("chat_id", "message_id")
)


class PostgresContactStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_contact(self, contact_id: str) -> Contact | None:
        row = await self._pool.fetchrow(f"{_CONTACT_SELECT} WHERE id = $1", contact_id)
        return _contact_from_row(row) if row is not None else None

    async def get_by_dex_id(self, dex_id: str) -> Contact | None:
        row = await self._pool.fetchrow(f"{_CONTACT_SELECT} WHERE dex_id = $1", dex_id)
        return _contact_from_row(row) if row is not None else None

    async def get_by_instagram(self, handle: str) -> Contact | None:
        row = await self._pool.fetchrow(
            f"{_CONTACT_SELECT} WHERE instagram = $1 {_CONTACT_ORDER} LIMIT 1", handle
        )
        return _contact_from_row(row) if row is not None else None

    async def get_by_whatsapp(self, phone: str) -> Contact | None:
        row = await self._pool.fetchrow(
            f"{_CONTACT_SELECT} WHERE whatsapp = $1 {_CONTACT_ORDER} LIMIT 1", phone
        )
        return _contact_from_row(row) if row is not None else None

    async def list_contacts(self) -> list[Contact]:
        rows = await self._pool.fetch(f"{_CONTACT_SELECT} {_CONTACT_ORDER}")
        return [_contact_from_row(r) for r in rows]

    async def list_contacts_with_instagram(self) -> list[Contact]:
        rows = await self._pool.fetch(
            f"{_CONTACT_SELECT} WHERE instagram IS NOT NULL AND instagram <> '' {_CONTACT_ORDER}"
        )
        return [_contact_from_row(r) for r in rows]

    async def find_by_normalized_phone(self, normalized: str) -> list[Contact]:
        rows = await self._pool.fetch(
            f"{_CONTACT_SELECT} WHERE normalized_phones @> ARRAY[$1]::text[] {_CONTACT_ORDER}",
            normalized,
        )
        return [_contact_from_row(r) for r in rows]

    async def insert_contact(self, contact: Contact) -> Contact:
        stored = contact.refreshed()
        await self._pool.execute(
            f"INSERT INTO contacts ({_select(_CONTACT_COLUMNS)}) "
            f"VALUES ({_placeholders(_CONTACT_COLUMNS, _CONTACT_JSONB)})",
            *_row_values(stored, _CONTACT_COLUMNS, _CONTACT_JSONB),
        )
        return stored

    async def update_contact(self, contact: Contact) -> Contact:
        stored = contact.refreshed()
        columns = [c for c in _CONTACT_COLUMNS if c not in ("id", "created_at")]
        assignments = ", ".join(
            f"{_ident(c)} = ${i}::jsonb" if c in _CONTACT_JSONB else f"{_ident(c)} = ${i}"
            for i, c in enumerate(columns, 2)
        )
        values = _row_values(stored, columns, _CONTACT_JSONB)
        status = await self._pool.execute(
            f"UPDATE contacts SET {assignments} WHERE id = $1", stored.id, *values
        )
        if status == "UPDATE 0":
            raise ContactNotFoundError(stored.id)
        return stored

    async def delete_contact(self, contact_id: str) -> None:
        await self._pool.execute("DELETE FROM contacts WHERE id = $1", contact_id)


class PostgresChatStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_chat(self, chat_id: str) -> Chat | None:
        row = await self._pool.fetchrow(f"{_CHAT_SELECT} WHERE chat_id = $1", chat_id)
        return _chat_from_row(row) if row is not None else None

    async def list_chats(self, *, chat_type: str | None = None) -> list[Chat]:
        if chat_type is None:
            rows = await self._pool.fetch(f"{_CHAT_SELECT} ORDER BY chat_id")
        else:
            rows = await self._pool.fetch(
                f"{_CHAT_SELECT} WHERE type = $1 ORDER BY chat_id", chat_type
            )
        return [_chat_from_row(r) for r in rows]

    async def find_chats_by_username(self, username: str) -> list[Chat]:
        wanted = normalize_handle(username).casefold()
        if not wanted:
            return []
        rows = await self._pool.fetch(
            f"{_CHAT_SELECT} WHERE username_normalized = $1 ORDER BY chat_id", wanted
        )
        return [_chat_from_row(r) for r in rows]

    async def find_chats_by_phone(self, normalized: str) -> list[Chat]:
        if not normalized:
            return []
        rows = await self._pool.fetch(
            f"{_CHAT_SELECT} WHERE phone_normalized = $1 ORDER BY chat_id", normalized
        )
        return [_chat_from_row(r) for r in rows]

    async def find_chats_by_contact(self, contact_id: str) -> list[Chat]:
        rows = await self._pool.fetch(
            f"{_CHAT_SELECT} WHERE contact_id = $1 ORDER BY chat_id", contact_id
        )
        return [_chat_from_row(r) for r in rows]

    async def list_chats_needing_history(self) -> list[Chat]:
        rows = await self._pool.fetch(
            f"""
            {_CHAT_SELECT}
            WHERE NOT has_complete_history AND oldest_message_sort_key IS NOT NULL
            ORDER BY message_count, chat_id
            """
        )
        return [_chat_from_row(r) for r in rows]

    async def save_chat(self, chat: Chat) -> Chat:
        await self._pool.execute(_CHAT_UPSERT, *self._chat_values(chat))
        return chat

    async def update_chat(
        self,
        chat_id: str,
        fields: Mapping[str, Any],
        *,
        skip_overridden: bool = False,
    ) -> Chat | None:
        patch = validate_chat_patch(fields)
        if not patch:
            chat = await self.get_chat(chat_id)
            if chat is None:
                raise ChatNotFoundError(chat_id)
            return chat
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await self._patch_chat(conn, chat_id, patch, skip_overridden=skip_overridden)
                if row is None:
                    exists = await conn.fetchval("SELECT 1 FROM chats WHERE chat_id = $1", chat_id)
                    if exists is None:
                        raise ChatNotFoundError(chat_id)
                    return None
        return _chat_from_row(row)

    async def get_message(self, chat_id: str, message_id: str) -> Message | None:
        row = await self._pool.fetchrow(
            f"{_MESSAGE_SELECT} WHERE chat_id = $1 AND message_id = $2", chat_id, message_id
        )
        return _message_from_row(row) if row is not None else None

    async def get_message_by_pending_id(self, chat_id: str, pending_id: str) -> Message | None:
        row = await self._pool.fetchrow(
            f"{_MESSAGE_SELECT} WHERE chat_id = $1 AND pending_id = $2 LIMIT 1",
            chat_id,
            pending_id,
        )
        return _message_from_row(row) if row is not None else None

    async def list_messages(self, chat_id: str) -> list[Message]:
        rows = await self._pool.fetch(f"{_MESSAGE_SELECT} WHERE chat_id = $1", chat_id)
        # Sort keys compare numerically when both are digit strings.
        messages = [_message_from_row(r) for r in rows]
        return sorted(messages, key=lambda m: sort_key_value(m.sort_key))

    async def write_messages(
        self,
        chat_id: str,
        messages: list[Message],
        *,
        remove_ids: Sequence[str] = (),
        updates: Mapping[str, Any] | None = None,
    ) -> Chat:
        patch = validate_chat_patch(updates or {})
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                exists = await conn.fetchval(
                    "SELECT 1 FROM chats WHERE chat_id = $1 FOR UPDATE", chat_id
                )
                if exists is None:
                    raise ChatNotFoundError(chat_id)
                if remove_ids:
                    await conn.execute(
                        "DELETE FROM messages WHERE chat_id = $1 AND message_id = ANY($2::text[])",
                        chat_id,
                        list(remove_ids),
                    )
                if messages:
                    await conn.executemany(
                        _MESSAGE_UPSERT,
                        [_row_values(m, _MESSAGE_COLUMNS, _MESSAGE_JSONB) for m in messages],
                    )
                rows = await conn.fetch(f"{_MESSAGE_SELECT} WHERE chat_id = $1", chat_id)
                count, oldest, newest = confirmed_window([_message_from_row(r) for r in rows])
                patch.update(
                    {
                        "message_count": count,
                        "oldest_message_sort_key": oldest,
                        "newest_message_sort_key": newest,
                    }
                )
                row = await self._patch_chat(conn, chat_id, patch)
        logger.debug(
            "Stored %d messages for chat %s (window=%d, removed=%d)",
            len(messages),
            chat_id,
            count,
            len(remove_ids),
        )
        return _chat_from_row(row)

    async def save_message(self, message: Message) -> None:
        await self._pool.execute(
            _MESSAGE_UPSERT, *_row_values(message, _MESSAGE_COLUMNS, _MESSAGE_JSONB)
        )

    @staticmethod
    async def _patch_chat(
        conn: asyncpg.Connection,
        chat_id: str,
        patch: dict[str, Any],
        *,
        skip_overridden: bool = False,
    ) -> asyncpg.Record | None:
        values = dict(patch)
        if "username" in values:
            values["username_normalized"] = (
                normalize_handle(values["username"]).casefold() or None
            )
        if "phone_number" in values:
            values["phone_normalized"] = normalize_phone(values["phone_number"]) or None
        columns = list(values)
        assignments = ", ".join(f"{_ident(c)} = ${i}" for i, c in enumerate(columns, 2))
        guard = " AND NOT contact_override" if skip_overridden else ""
        return await conn.fetchrow(
            f"UPDATE chats SET {assignments} WHERE chat_id = $1{guard} "
            f"RETURNING {_select(_CHAT_COLUMNS)}",
            chat_id,
            *(values[c] for c in columns),
        )

    @staticmethod
    def _chat_values(chat: Chat) -> list[Any]:
        username = normalize_handle(chat.username).casefold() or None
        phone = normalize_phone(chat.phone_number) or None
        return [*_row_values(chat, _CHAT_COLUMNS, frozenset()), username, phone]


class PostgresStateStore:
    """``SyncStateStore`` over the shared ``state`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, key: str) -> tuple[Any, int] | None:
        return await state_get_versioned(self._pool, key)

    async def setdefault(self, key: str, value: Any) -> tuple[Any, int]:
        return await state_setdefault(self._pool, key, value)

    async def compare_and_set(self, key: str, expected_version: int, value: Any) -> int:
        return await state_compare_and_set(self._pool, key, expected_version, value)

    async def set(self, key: str, value: Any) -> int:
        return await state_set(self._pool, key, value)
