"""Contact reconciliation against the CRM feed, plus local contact edits.

Two clocks drive conflict handling:

- ``last_synced_at``: when external data was last pulled into the record
- ``last_modified_at``: when the user last edited the record locally

An external record is skipped while the local edit is inside the protection
window, and skipped when nothing changed upstream since the last pull. The
feed never writes ``last_modified_at`` or any local-only field.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from opentelemetry import trace
from pydantic import ValidationError

from opsmirror.providers.base import ContactSource
from opsmirror.sync.errors import ChatNotFoundError, ContactNotFoundError, SourceError
from opsmirror.sync.models import (
    Contact,
    ContactBatchResult,
    ContactCreateResult,
    ContactEditResult,
    ContactPhone,
    ExternalContact,
    utcnow,
)
from opsmirror.sync.normalize import (
    format_phone_for_storage,
    normalize_handle,
    normalize_phone,
    normalized_phone_set,
)
from opsmirror.sync.rematch import RematchEngine
from opsmirror.sync.store import ChatStore, ContactStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("opsmirror")

DEFAULT_PROTECTION_WINDOW = timedelta(minutes=5)

EDITABLE_CONTACT_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "description",
        "instagram",
        "whatsapp",
        "phones",
        "emails",
        "image_url",
        "birthday",
        "notes",
        "tags",
        "lead_status",
        "connection",
        "sex",
        "location",
        "private_notes",
        "do_not_sync_to_dex",
    }
)
# Edits to these are pushed back to the CRM.
WRITEBACK_FIELDS = ("first_name", "last_name", "description", "instagram", "birthday")

ApplyOutcome = Literal["added", "updated", "skipped"]


@dataclass(frozen=True)
class RematchRequest:
    contact_id: str
    previous_handle: str | None = None
    previous_phones: tuple[str, ...] = field(default_factory=tuple)


def identifiers_changed(before: Contact, after: Contact) -> bool:
    if normalize_handle(before.instagram) != normalize_handle(after.instagram):
        return True
    return normalized_phone_set(before.phone_candidates()) != normalized_phone_set(
        after.phone_candidates()
    )


def _record_label(raw: Any, index: int) -> str:
    if isinstance(raw, ExternalContact):
        return raw.id
    if isinstance(raw, Mapping) and isinstance(raw.get("id"), str) and raw["id"].strip():
        return raw["id"].strip()
    return f"record[{index}]"


def _describe(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'record'}: {err['msg']}"
            for err in exc.errors()
        ]
        return "invalid record (" + "; ".join(problems) + ")"
    return str(exc) or type(exc).__name__


class ContactUpsertReconciler:
    """Apply CRM contact batches, isolating failures per record."""

    def __init__(
        self,
        contacts: ContactStore,
        rematch: RematchEngine | None = None,
        *,
        protection_window: timedelta = DEFAULT_PROTECTION_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._contacts = contacts
        self._rematch = rematch
        self._protection_window = protection_window
        self._clock = clock

    async def apply_batch(
        self,
        records: Iterable[Mapping[str, Any] | ExternalContact],
        *,
        force_update: bool = False,
    ) -> ContactBatchResult:
        with tracer.start_as_current_span("opsmirror.sync.contacts") as span:
            now = self._clock()
            processed = added = updated = skipped = errors = 0
            error_messages: list[str] = []
            pending: list[RematchRequest] = []

            for index, raw in enumerate(records):
                processed += 1
                try:
                    record = (
                        raw
                        if isinstance(raw, ExternalContact)
                        else ExternalContact.model_validate(raw)
                    )
                    outcome, request = await self._apply_one(
                        record, now=now, force_update=force_update
                    )
                except Exception as exc:
                    errors += 1
                    label = _record_label(raw, index)
                    error_messages.append(f"{label}: {_describe(exc)}")
                    logger.warning("Failed to apply contact %s: %s", label, _describe(exc))
                    continue

                if outcome == "added":
                    added += 1
                elif outcome == "updated":
                    updated += 1
                else:
                    skipped += 1
                if request is not None:
                    pending.append(request)

            await self._drain_rematches(pending)

            result = ContactBatchResult(
                processed=processed,
                added=added,
                updated=updated,
                skipped=skipped,
                errors=errors,
                error_messages=error_messages,
                timestamp=now,
            )
            span.set_attribute("contacts.processed", processed)
            span.set_attribute("contacts.errors", errors)
            logger.info(
                "Contact batch applied: processed=%d added=%d updated=%d skipped=%d errors=%d",
                processed,
                added,
                updated,
                skipped,
                errors,
            )
            return result

    def is_protected(self, contact: Contact, now: datetime) -> bool:
        """True while a local edit is young enough to outrank the feed."""
        if contact.last_modified_at is None:
            return False
        return now - contact.last_modified_at <= self._protection_window

    async def _resolve_target(self, record: ExternalContact) -> tuple[Contact | None, bool]:
        existing = await self._contacts.get_by_dex_id(record.id)
        if existing is not None:
            return existing, False
        if not record.instagram:
            return None, False

        candidate = await self._contacts.get_by_instagram(record.instagram)
        if candidate is None:
            return None, False
        if candidate.dex_id is None:
            logger.info(
                "Adopting local contact %s for external contact %s via handle %s",
                candidate.id,
                record.id,
                record.instagram,
            )
            return candidate, True
        logger.warning(
            "Handle %s already belongs to external contact %s; creating a separate contact for %s",
            record.instagram,
            candidate.dex_id,
            record.id,
        )
        return None, False

    async def _apply_one(
        self,
        record: ExternalContact,
        *,
        now: datetime,
        force_update: bool,
    ) -> tuple[ApplyOutcome, RematchRequest | None]:
        existing, adopting = await self._resolve_target(record)

        if existing is None:
            contact = Contact(
                dex_id=record.id,
                last_synced_at=now,
                created_at=now,
                **record.external_fields(),
            )
            stored = await self._contacts.insert_contact(contact)
            logger.debug("Added contact %s for external contact %s", stored.id, record.id)
            return "added", RematchRequest(stored.id)

        if not force_update and self.is_protected(existing, now):
            logger.info(
                "Skipping external update for contact %s: edited locally at %s",
                existing.id,
                existing.last_modified_at,
            )
            return await self._skip(existing, record, adopting)

        if (
            not force_update
            and existing.last_synced_at is not None
            and record.updated_at <= existing.last_synced_at
        ):
            return await self._skip(existing, record, adopting)

        patched = existing.model_copy(
            update={**record.external_fields(), "dex_id": record.id, "last_synced_at": now}
        )
        stored = await self._contacts.update_contact(patched)

        request = None
        if adopting or identifiers_changed(existing, stored):
            request = RematchRequest(
                stored.id,
                previous_handle=existing.instagram,
                previous_phones=tuple(existing.phone_candidates()),
            )
        return "updated", request

    async def _skip(
        self, existing: Contact, record: ExternalContact, adopting: bool
    ) -> tuple[ApplyOutcome, RematchRequest | None]:
        # An adopted contact keeps its local fields but still gains the external ID.
        if adopting:
            await self._contacts.update_contact(existing.model_copy(update={"dex_id": record.id}))
        return "skipped", None

    async def _drain_rematches(self, pending: list[RematchRequest]) -> None:
        if self._rematch is None or not pending:
            return
        for request in pending:
            try:
                contact = await self._contacts.get_contact(request.contact_id)
                if contact is None:
                    continue
                await self._rematch.rematch_contact(
                    contact,
                    previous_handle=request.previous_handle,
                    previous_phones=request.previous_phones,
                )
            except Exception:
                logger.warning(
                    "Targeted rematch failed for contact %s", request.contact_id, exc_info=True
                )


class ContactService:
    """User-initiated contact operations."""

    def __init__(
        self,
        contacts: ContactStore,
        chats: ChatStore,
        rematch: RematchEngine,
        *,
        source: ContactSource | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._contacts = contacts
        self._chats = chats
        self._rematch = rematch
        self._source = source
        self._clock = clock

    async def create_local_contact(
        self,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        instagram: str | None = None,
        whatsapp: str | None = None,
        phone: str | None = None,
        notes: str | None = None,
    ) -> ContactCreateResult:
        """Create a contact with no external ID, or return the one it duplicates.

        A contact known only by phone is flagged so it is never pushed to the
        CRM, which does not track that channel.
        """
        handle = normalize_handle(instagram) or None
        whatsapp_stored = format_phone_for_storage(whatsapp) or None
        phone_stored = format_phone_for_storage(phone) or None
        if not (handle or whatsapp_stored or phone_stored or first_name or last_name):
            raise ValueError("a local contact needs a name, handle or phone")

        existing = await self._find_existing(handle, whatsapp_stored, phone_stored)
        if existing is not None:
            logger.info("Local contact create resolved to existing contact %s", existing.id)
            return ContactCreateResult(contact=existing, created=False)

        now = self._clock()
        contact = Contact(
            first_name=first_name,
            last_name=last_name,
            instagram=handle,
            whatsapp=whatsapp_stored,
            phones=[ContactPhone(phone=phone_stored)] if phone_stored else [],
            notes=notes,
            do_not_sync_to_dex=handle is None and bool(whatsapp_stored or phone_stored),
            last_synced_at=now,
            last_modified_at=now,
            created_at=now,
        )
        stored = await self._contacts.insert_contact(contact)
        await self._rematch.rematch_contact(stored)
        logger.info("Created local contact %s", stored.id)
        return ContactCreateResult(contact=stored, created=True)

    async def _find_existing(
        self, handle: str | None, whatsapp: str | None, phone: str | None
    ) -> Contact | None:
        if handle:
            found = await self._contacts.get_by_instagram(handle)
            if found is not None:
                return found
        if whatsapp:
            found = await self._contacts.get_by_whatsapp(whatsapp)
            if found is not None:
                return found
        for value in (whatsapp, phone):
            normalized = normalize_phone(value)
            if normalized:
                matches = await self._contacts.find_by_normalized_phone(normalized)
                if matches:
                    return matches[0]
        return None

    async def edit_contact(self, contact_id: str, **fields: Any) -> ContactEditResult:
        """Apply a local edit and stamp ``last_modified_at``.

        Externally sourced fields are pushed to the CRM best-effort; a push
        failure is reported in the result and the local edit stands.
        """
        unknown = set(fields) - EDITABLE_CONTACT_FIELDS
        if unknown:
            raise ValueError(f"fields are not editable: {', '.join(sorted(unknown))}")

        existing = await self._contacts.get_contact(contact_id)
        if existing is None:
            raise ContactNotFoundError(contact_id)

        if "instagram" in fields:
            fields["instagram"] = normalize_handle(fields["instagram"]) or None
        if "whatsapp" in fields:
            fields["whatsapp"] = format_phone_for_storage(fields["whatsapp"]) or None
        if "phones" in fields:
            fields["phones"] = [
                p if isinstance(p, ContactPhone) else ContactPhone.model_validate(p)
                for p in fields["phones"]
            ]

        patched = existing.model_copy(update={**fields, "last_modified_at": self._clock()})
        stored = await self._contacts.update_contact(patched)

        if identifiers_changed(existing, stored):
            await self._rematch.rematch_contact(
                stored,
                previous_handle=existing.instagram,
                previous_phones=existing.phone_candidates(),
            )

        changed = {
            name: getattr(stored, name)
            for name in WRITEBACK_FIELDS
            if name in fields and getattr(existing, name) != getattr(stored, name)
        }
        return await self._push_upstream(stored, changed)

    async def _push_upstream(self, contact: Contact, changed: dict[str, Any]) -> ContactEditResult:
        if (
            not changed
            or self._source is None
            or contact.dex_id is None
            or contact.do_not_sync_to_dex
        ):
            return ContactEditResult(contact=contact)
        payload = {name: ("" if value is None else value) for name, value in changed.items()}
        try:
            await self._source.update_contact(contact.dex_id, payload)
        except SourceError as exc:
            logger.warning(
                "Upstream push failed for contact %s; keeping local edit: %s", contact.id, exc
            )
            return ContactEditResult(contact=contact, push_error=str(exc))
        return ContactEditResult(contact=contact, pushed_upstream=True)

    async def link_chat(self, chat_id: str, contact_id: str) -> None:
        """Pin a chat to a contact; rematch leaves pinned chats alone."""
        if await self._chats.get_chat(chat_id) is None:
            raise ChatNotFoundError(chat_id)
        if await self._contacts.get_contact(contact_id) is None:
            raise ContactNotFoundError(contact_id)
        await self._chats.update_chat(
            chat_id,
            {
                "contact_id": contact_id,
                "contact_override": True,
                "contact_matched_at": self._clock(),
            },
        )

    async def release_chat_override(self, chat_id: str) -> str | None:
        """Drop a pinned link and fall back to the matcher. Returns the new link."""
        chat = await self._chats.get_chat(chat_id)
        if chat is None:
            raise ChatNotFoundError(chat_id)
        matcher = self._rematch.matcher
        contact = await matcher.match_chat(chat)
        contact_id = contact.id if contact is not None else None
        await self._chats.update_chat(
            chat_id,
            {
                "contact_id": contact_id,
                "contact_override": False,
                "contact_matched_at": self._clock(),
            },
        )
        return contact_id
