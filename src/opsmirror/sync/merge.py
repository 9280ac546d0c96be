"""Absorb a duplicate contact into a primary one."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from opsmirror.sync.errors import ContactNotFoundError
from opsmirror.sync.models import (
    WHATSAPP_PLATFORM,
    Contact,
    ContactPhone,
    MergeResult,
    SocialHandle,
    utcnow,
)
from opsmirror.sync.rematch import RematchEngine
from opsmirror.sync.store import ChatStore, ContactStore

logger = logging.getLogger(__name__)

# Feed-sourced fields where the primary wins and the duplicate only fills gaps.
FILLABLE_FIELDS = (
    "dex_id",
    "first_name",
    "last_name",
    "description",
    "image_url",
    "birthday",
    "last_seen_at",
)


def _current_handles(contact: Contact, *, primary: bool) -> list[SocialHandle]:
    handles = []
    if contact.instagram:
        handles.append(
            SocialHandle(platform="instagram", handle=contact.instagram, is_primary=primary)
        )
    if contact.whatsapp:
        handles.append(
            SocialHandle(platform=WHATSAPP_PLATFORM, handle=contact.whatsapp, is_primary=primary)
        )
    return handles


def merge_social_handles(primary: Contact, duplicate: Contact) -> list[SocialHandle]:
    """Primary's live handles first, then the rest; the duplicate's are never primary."""
    combined: list[SocialHandle] = []
    seen: set[str] = set()

    def _add(handles: Iterable[SocialHandle]) -> None:
        for handle in handles:
            if handle.handle not in seen:
                seen.add(handle.handle)
                combined.append(handle)

    _add(_current_handles(primary, primary=True))
    _add(_current_handles(duplicate, primary=False))
    _add(primary.social_handles)
    _add(h.model_copy(update={"is_primary": False}) for h in duplicate.social_handles)
    return combined


def _dedupe(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(values))


class ContactMerger:
    def __init__(
        self,
        contacts: ContactStore,
        chats: ChatStore,
        rematch: RematchEngine | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._contacts = contacts
        self._chats = chats
        self._rematch = rematch
        self._clock = clock

    async def merge(self, primary_id: str, duplicate_id: str) -> MergeResult:
        """Fold *duplicate_id* into *primary_id* and delete the duplicate.

        The primary keeps its own values and local-only fields; empty
        feed-sourced fields are filled from the duplicate. The duplicate's
        chats are relinked to the primary, keeping any user override.

        Raises:
            ValueError: If both IDs are the same.
            ContactNotFoundError: If either contact does not exist.
        """
        if primary_id == duplicate_id:
            raise ValueError("cannot merge a contact into itself")
        primary = await self._contacts.get_contact(primary_id)
        if primary is None:
            raise ContactNotFoundError(primary_id)
        duplicate = await self._contacts.get_contact(duplicate_id)
        if duplicate is None:
            raise ContactNotFoundError(duplicate_id)

        phones: list[ContactPhone] = []
        seen_phones: set[str] = set()
        for phone in [*primary.phones, *duplicate.phones]:
            if phone.phone not in seen_phones:
                seen_phones.add(phone.phone)
                phones.append(phone)

        update: dict[str, object] = {
            field: getattr(primary, field) or getattr(duplicate, field)
            for field in FILLABLE_FIELDS
        }
        update.update(
            {
                "instagram": primary.instagram or duplicate.instagram,
                "whatsapp": primary.whatsapp or duplicate.whatsapp,
                "emails": _dedupe([*primary.emails, *duplicate.emails]),
                "phones": phones,
                "tags": _dedupe([*primary.tags, *duplicate.tags]),
                "social_handles": merge_social_handles(primary, duplicate),
                "merged_from": _dedupe(
                    [*primary.merged_from, duplicate.id, *duplicate.merged_from]
                ),
                "last_modified_at": self._clock(),
            }
        )
        # The dex_id moves only after the duplicate row is gone; the store may
        # enforce uniqueness on it.
        carried_dex_id = update.pop("dex_id") if primary.dex_id is None else None

        relinked = 0
        for chat in await self._chats.find_chats_by_contact(duplicate.id):
            await self._chats.update_chat(
                chat.chat_id, {"contact_id": primary.id, "contact_matched_at": self._clock()}
            )
            relinked += 1

        await self._contacts.delete_contact(duplicate.id)
        if carried_dex_id is not None:
            update["dex_id"] = carried_dex_id
        merged = await self._contacts.update_contact(primary.model_copy(update=update))
        logger.info(
            "Merged contact %s into %s (relinked %d chats)", duplicate.id, primary.id, relinked
        )

        if self._rematch is not None:
            await self._rematch.rematch_contact(
                merged,
                previous_handle=duplicate.instagram,
                previous_phones=duplicate.phone_candidates(),
            )

        return MergeResult(contact=merged, merged_contact_id=duplicate.id, relinked_chats=relinked)
