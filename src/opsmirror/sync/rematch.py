"""Keep the denormalized chat -> contact link consistent with the matcher.

A chat's ``contact_id`` must always equal ``IdentityMatcher.match_chat(chat)``
unless the user pinned it (``contact_override``). Links are re-derived on
explicit triggers: a targeted pass when one contact's identifiers change, and
a full sweep on demand.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from opentelemetry import trace

from opsmirror.sync.matcher import IdentityMatcher
from opsmirror.sync.models import Chat, Contact, RematchResult, utcnow
from opsmirror.sync.normalize import normalize_handle, normalized_phone_set
from opsmirror.sync.store import ChatStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("opsmirror")


class RematchEngine:
    def __init__(
        self,
        chats: ChatStore,
        matcher: IdentityMatcher,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._chats = chats
        self._matcher = matcher
        self._clock = clock

    @property
    def matcher(self) -> IdentityMatcher:
        return self._matcher

    async def rematch_contact(
        self,
        contact: Contact,
        *,
        previous_handle: str | None = None,
        previous_phones: Iterable[str] = (),
    ) -> RematchResult:
        """Re-derive links for chats plausibly affected by *contact* changing.

        Candidates are chats carrying the contact's old or new handle/phone,
        plus every chat currently linked to it.
        """
        candidates: dict[str, Chat] = {}

        handles = {normalize_handle(h) for h in (contact.instagram, previous_handle)} - {""}
        for handle in sorted(handles):
            for chat in await self._chats.find_chats_by_username(handle):
                candidates.setdefault(chat.chat_id, chat)

        phones = normalized_phone_set([*contact.phone_candidates(), *previous_phones])
        for phone in phones:
            for chat in await self._chats.find_chats_by_phone(phone):
                candidates.setdefault(chat.chat_id, chat)

        for chat in await self._chats.find_chats_by_contact(contact.id):
            candidates.setdefault(chat.chat_id, chat)

        counts = {"matched": 0, "unmatched": 0, "unchanged": 0}
        for chat in candidates.values():
            if chat.type != "single" or chat.contact_override:
                continue
            counts[await self._recompute(chat)] += 1

        result = RematchResult(**counts, total=sum(counts.values()))
        if result.writes:
            logger.info(
                "Targeted rematch for contact %s: matched=%d unmatched=%d unchanged=%d",
                contact.id,
                result.matched,
                result.unmatched,
                result.unchanged,
            )
        return result

    async def rematch_all(self) -> RematchResult:
        """Recompute the link on every single chat, writing only on change."""
        with tracer.start_as_current_span("opsmirror.rematch.all") as span:
            counts = {"matched": 0, "unmatched": 0, "unchanged": 0}
            for chat in await self._chats.list_chats(chat_type="single"):
                if chat.contact_override:
                    counts["unchanged"] += 1
                    continue
                counts[await self._recompute(chat)] += 1

            result = RematchResult(**counts, total=sum(counts.values()))
            span.set_attribute("rematch.total", result.total)
            span.set_attribute("rematch.writes", result.writes)
            logger.info(
                "Full rematch: matched=%d unmatched=%d unchanged=%d total=%d",
                result.matched,
                result.unmatched,
                result.unchanged,
                result.total,
            )
            return result

    async def _recompute(self, chat: Chat) -> str:
        contact = await self._matcher.match_chat(chat)
        contact_id = contact.id if contact is not None else None
        if contact_id == chat.contact_id:
            return "unchanged"
        updated = await self._chats.update_chat(
            chat.chat_id,
            {"contact_id": contact_id, "contact_matched_at": self._clock()},
            skip_overridden=True,
        )
        if updated is None:
            return "unchanged"
        return "matched" if contact_id is not None else "unmatched"
