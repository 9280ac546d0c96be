"""Persistence contracts used by the sync engine.

Every write is atomic at the single-record level. ``ChatStore.write_messages``
is the one exception: it persists a message batch together with the chat's
derived fields and window descriptor in one unit. Chat writes after creation
are field patches applied to the row as stored at write time.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from opsmirror.sync.models import Chat, Contact, Message


class ContactStore(Protocol):
    async def get_contact(self, contact_id: str) -> Contact | None: ...

    async def get_by_dex_id(self, dex_id: str) -> Contact | None: ...

    async def get_by_instagram(self, handle: str) -> Contact | None:
        """Exact, case-sensitive lookup on the handle index."""
        ...

    async def get_by_whatsapp(self, phone: str) -> Contact | None:
        """Exact lookup on the primary phone index (storage form)."""
        ...

    async def list_contacts(self) -> list[Contact]:
        """All contacts in stable creation order."""
        ...

    async def list_contacts_with_instagram(self) -> list[Contact]: ...

    async def find_by_normalized_phone(self, normalized: str) -> list[Contact]:
        """Contacts whose ``normalized_phones`` contains *normalized*."""
        ...

    async def insert_contact(self, contact: Contact) -> Contact: ...

    async def update_contact(self, contact: Contact) -> Contact: ...

    async def delete_contact(self, contact_id: str) -> None: ...


class ChatStore(Protocol):
    async def get_chat(self, chat_id: str) -> Chat | None: ...

    async def list_chats(self, *, chat_type: str | None = None) -> list[Chat]: ...

    async def find_chats_by_username(self, username: str) -> list[Chat]:
        """Case-insensitive lookup on the participant handle."""
        ...

    async def find_chats_by_phone(self, normalized: str) -> list[Chat]:
        """Chats whose participant phone normalizes to *normalized*."""
        ...

    async def find_chats_by_contact(self, contact_id: str) -> list[Chat]: ...

    async def list_chats_needing_history(self) -> list[Chat]:
        """Chats with a loaded window but no complete history, fewest messages first."""
        ...

    async def save_chat(self, chat: Chat) -> Chat:
        """Insert or replace the chat keyed by ``chat_id``."""
        ...

    async def update_chat(
        self,
        chat_id: str,
        fields: Mapping[str, Any],
        *,
        skip_overridden: bool = False,
    ) -> Chat | None:
        """Patch only *fields* on the stored chat and return the result.

        Columns not named in *fields* keep whatever is stored at write time.
        With *skip_overridden*, a chat pinned by ``contact_override`` is left
        alone and ``None`` is returned.

        Raises:
            ChatNotFoundError: If no chat has *chat_id*.
            ValueError: If *fields* names an unknown or window-descriptor field.
        """
        ...

    async def get_message(self, chat_id: str, message_id: str) -> Message | None: ...

    async def get_message_by_pending_id(self, chat_id: str, pending_id: str) -> Message | None: ...

    async def list_messages(self, chat_id: str) -> list[Message]:
        """Messages for *chat_id* in ascending sort-key order."""
        ...

    async def write_messages(
        self,
        chat_id: str,
        messages: list[Message],
        *,
        remove_ids: Sequence[str] = (),
        updates: Mapping[str, Any] | None = None,
    ) -> Chat:
        """Upsert *messages*, drop *remove_ids* and patch the chat as one unit.

        Only *updates* and the window descriptor (count, oldest and newest
        sort key, recomputed via ``confirmed_window``) are written to the
        chat row; every other column is left as stored.

        Raises:
            ChatNotFoundError: If no chat has *chat_id*.
            ValueError: If *updates* names an unknown or window-descriptor field.
        """
        ...

    async def save_message(self, message: Message) -> None: ...


class SyncStateStore(Protocol):
    """Versioned key-value records backing singleton sync state."""

    async def get(self, key: str) -> tuple[Any, int] | None: ...

    async def setdefault(self, key: str, value: Any) -> tuple[Any, int]:
        """Insert *value* if *key* is absent; return the stored value and version."""
        ...

    async def compare_and_set(self, key: str, expected_version: int, value: Any) -> int: ...

    async def set(self, key: str, value: Any) -> int: ...
