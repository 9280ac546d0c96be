"""Find contacts that likely describe the same person."""

from __future__ import annotations

import logging

from opsmirror.sync.errors import ContactNotFoundError
from opsmirror.sync.models import (
    WHATSAPP_PLATFORM,
    Confidence,
    Contact,
    DuplicateGroup,
    DuplicateMatch,
    DuplicateReport,
)
from opsmirror.sync.normalize import handles_equal, normalize_phone
from opsmirror.sync.store import ContactStore

logger = logging.getLogger(__name__)

INSTAGRAM_PLATFORM = "instagram"
_CONFIDENCE_RANK: dict[Confidence, int] = {"high": 2, "medium": 1}


def _name_key(contact: Contact) -> str:
    return contact.display_name.strip().casefold()


def _names_similar(left: Contact, right: Contact) -> bool:
    a, b = _name_key(left), _name_key(right)
    if not a or not b:
        return False
    return a in b or b in a


def _handles_on(contact: Contact, platform: str) -> list[str]:
    return [h.handle for h in contact.social_handles if h.platform.lower() == platform]


def compare_contacts(contact: Contact, other: Contact) -> tuple[Confidence, str] | None:
    """Return the first rule that marks *other* as a duplicate of *contact*."""
    if contact.instagram and other.instagram == contact.instagram:
        return "high", f"Same Instagram: @{contact.instagram}"

    if contact.whatsapp and other.whatsapp == contact.whatsapp:
        return "high", f"Same WhatsApp: {contact.whatsapp}"

    if contact.instagram and contact.instagram in _handles_on(other, INSTAGRAM_PLATFORM):
        return "high", f"Instagram @{contact.instagram} in previous handles"

    if contact.whatsapp:
        wanted = normalize_phone(contact.whatsapp)
        if wanted and any(
            normalize_phone(handle) == wanted for handle in _handles_on(other, WHATSAPP_PLATFORM)
        ):
            return "high", f"WhatsApp {contact.whatsapp} in previous handles"

    own_phones = {normalize_phone(p.phone) for p in contact.phones} - {""}
    for phone in other.phones:
        if normalize_phone(phone.phone) in own_phones:
            return "medium", f"Matching phone: {phone.phone}"

    if _names_similar(contact, other):
        shared_handle = handles_equal(contact.instagram, other.instagram)
        shared_phone = bool(set(contact.normalized_phones) & set(other.normalized_phones))
        if shared_handle or shared_phone:
            return "medium", "Similar name + matching handle"

    return None


class DuplicateDetector:
    def __init__(self, contacts: ContactStore) -> None:
        self._contacts = contacts

    async def find_duplicates(self, contact_id: str) -> list[DuplicateMatch]:
        """Rank every other contact that plausibly duplicates *contact_id*.

        Pairs already joined by a merge (either side listing the other in
        ``merged_from``) are skipped. Results are ordered high to medium,
        keeping store order within a confidence level.
        """
        contact = await self._contacts.get_contact(contact_id)
        if contact is None:
            raise ContactNotFoundError(contact_id)

        matches: list[DuplicateMatch] = []
        for other in await self._contacts.list_contacts():
            if other.id == contact.id:
                continue
            if other.id in contact.merged_from or contact.id in other.merged_from:
                continue
            verdict = compare_contacts(contact, other)
            if verdict is None:
                continue
            confidence, reason = verdict
            matches.append(DuplicateMatch(contact=other, confidence=confidence, reason=reason))

        matches.sort(key=lambda m: _CONFIDENCE_RANK[m.confidence], reverse=True)
        return matches

    async def find_all_duplicates(self) -> DuplicateReport:
        """Group contacts sharing an Instagram handle, then a WhatsApp number.

        A contact lands in at most one group; Instagram groups are formed
        first and their members are left out of the WhatsApp pass.
        """
        contacts = await self._contacts.list_contacts()
        groups: list[DuplicateGroup] = []
        grouped: set[str] = set()

        by_instagram: dict[str, list[Contact]] = {}
        for contact in contacts:
            if contact.instagram:
                by_instagram.setdefault(contact.instagram, []).append(contact)
        for handle, members in by_instagram.items():
            if len(members) > 1:
                groups.append(DuplicateGroup(match_type="instagram", key=handle, contacts=members))
                grouped.update(c.id for c in members)

        by_whatsapp: dict[str, list[Contact]] = {}
        for contact in contacts:
            if contact.whatsapp and contact.id not in grouped:
                key = normalize_phone(contact.whatsapp)
                if key:
                    by_whatsapp.setdefault(key, []).append(contact)
        for phone, members in by_whatsapp.items():
            if len(members) > 1:
                groups.append(DuplicateGroup(match_type="whatsapp", key=phone, contacts=members))

        report = DuplicateReport(
            total_groups=len(groups),
            total_duplicates=sum(len(g.contacts) for g in groups),
            groups=groups,
        )
        if report.total_groups:
            logger.info(
                "Found %d duplicate groups covering %d contacts",
                report.total_groups,
                report.total_duplicates,
            )
        return report
