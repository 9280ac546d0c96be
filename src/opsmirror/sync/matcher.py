"""Resolve which local contact a conversation belongs to.

Precedence, first hit wins:

1. exact handle on the handle index
2. exact phone on the primary-phone index
3. case-insensitive handle scan over contacts that have a handle
4. normalized phone against every phone a contact carries (``phones`` and
   whatsapp ``social_handles``)

There is no fuzzy step. If two contacts share a key, whichever the store
yields first is returned.
"""

from __future__ import annotations

import logging

from opsmirror.sync.models import Chat, Contact
from opsmirror.sync.normalize import (
    format_phone_for_storage,
    handles_equal,
    normalize_handle,
    normalize_phone,
)
from opsmirror.sync.store import ContactStore

logger = logging.getLogger(__name__)


class IdentityMatcher:
    """Map ``{handle, phone}`` identifiers onto a single contact."""

    def __init__(self, contacts: ContactStore) -> None:
        self._contacts = contacts

    async def match(self, handle: str | None = None, phone: str | None = None) -> Contact | None:
        handle = normalize_handle(handle)
        phone = (phone or "").strip()

        if handle:
            contact = await self._contacts.get_by_instagram(handle)
            if contact is not None:
                return contact

        if phone:
            contact = await self._contacts.get_by_whatsapp(phone)
            if contact is None:
                stored = format_phone_for_storage(phone)
                if stored and stored != phone:
                    contact = await self._contacts.get_by_whatsapp(stored)
            if contact is not None:
                return contact

        if handle:
            for candidate in await self._contacts.list_contacts_with_instagram():
                if handles_equal(candidate.instagram, handle):
                    logger.debug(
                        "Matched handle %s case-insensitively to contact %s", handle, candidate.id
                    )
                    return candidate

        if phone:
            normalized = normalize_phone(phone)
            if normalized:
                candidates = await self._contacts.find_by_normalized_phone(normalized)
                if candidates:
                    if len(candidates) > 1:
                        logger.warning(
                            "Phone %s is shared by %d contacts; using %s",
                            normalized,
                            len(candidates),
                            candidates[0].id,
                        )
                    return candidates[0]

        return None

    async def match_chat(self, chat: Chat) -> Contact | None:
        """Match a chat by its counterpart identifiers. Group chats never match."""
        if chat.type != "single":
            return None
        return await self.match(chat.username, chat.phone_number)
