"""Record shapes and result summaries for the sync engine."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from opsmirror.sync.normalize import (
    extract_message_text,
    format_phone_for_storage,
    full_name,
    normalize_handle,
    normalized_phone_set,
    sort_key_value,
)

ChatType = Literal["single", "group"]
SyncSource = Literal["cron", "manual", "page_load", "load_older"]
SendStatus = Literal["sending", "sent", "failed"]
Confidence = Literal["high", "medium"]
WHATSAPP_PLATFORM = "whatsapp"

# Stand-in for a feed record that carries no ``updated_at``.
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_record_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


class SocialHandle(BaseModel):
    """A channel identifier previously or currently associated with a contact."""

    model_config = ConfigDict(extra="forbid")

    platform: str = Field(min_length=1)
    handle: str = Field(min_length=1)
    is_primary: bool = False


class ContactPhone(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phone: str = Field(min_length=1)
    label: str | None = None


class Contact(BaseModel):
    """Local person record.

    ``last_synced_at`` tracks the last external pull and ``last_modified_at``
    the last local edit; the reconciler compares them independently.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_record_id)
    dex_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    description: str | None = None
    instagram: str | None = None
    whatsapp: str | None = None
    phones: list[ContactPhone] = Field(default_factory=list)
    emails: list[str] = Field(default_factory=list)
    social_handles: list[SocialHandle] = Field(default_factory=list)
    normalized_phones: list[str] = Field(default_factory=list)
    image_url: str | None = None
    birthday: str | None = None
    last_seen_at: str | None = None

    # Local-only fields, never written by the external feed.
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    lead_status: str | None = None
    connection: str | None = None
    sex: str | None = None
    location: str | None = None
    private_notes: str | None = None

    do_not_sync_to_dex: bool = False
    merged_from: list[str] = Field(default_factory=list)
    last_synced_at: datetime | None = None
    last_modified_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return full_name(self.first_name, self.last_name)

    def phone_candidates(self) -> list[str]:
        """Every raw phone value known for this contact."""
        values: list[str] = []
        if self.whatsapp:
            values.append(self.whatsapp)
        values.extend(p.phone for p in self.phones)
        values.extend(
            h.handle for h in self.social_handles if h.platform.lower() == WHATSAPP_PLATFORM
        )
        return values

    def refreshed(self) -> Contact:
        """Return a copy with ``normalized_phones`` recomputed from phone fields."""
        return self.model_copy(
            update={"normalized_phones": normalized_phone_set(self.phone_candidates())}
        )


class ExternalContact(BaseModel):
    """One record from the CRM feed.

    ``id`` is required; a record without one is malformed and counted as a
    per-item error by the reconciler. A missing or null ``updated_at`` reads
    as the epoch, so such a record is inserted when new and treated as
    unchanged once synced.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    updated_at: datetime = EPOCH
    first_name: str | None = None
    last_name: str | None = None
    description: str | None = None
    instagram: str | None = None
    image_url: str | None = None
    birthday: str | None = None
    last_seen_at: str | None = None
    emails: list[str] = Field(default_factory=list)
    phones: list[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("id must be a non-empty string")
        return normalized

    @field_validator("updated_at", mode="before")
    @classmethod
    def _missing_is_epoch(cls, value: Any) -> Any:
        return EPOCH if value is None or value == "" else value

    @field_validator("updated_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    @field_validator("instagram", mode="before")
    @classmethod
    def _clean_handle(cls, value: Any) -> str | None:
        if value is None:
            return None
        return normalize_handle(str(value)) or None

    @field_validator("emails", mode="before")
    @classmethod
    def _flatten_emails(cls, value: Any) -> list[str]:
        if not value:
            return []
        emails: list[str] = []
        for item in value:
            raw = item.get("email") if isinstance(item, dict) else item
            if isinstance(raw, str) and raw.strip():
                emails.append(raw.strip())
        return emails

    @field_validator("phones", mode="before")
    @classmethod
    def _flatten_phones(cls, value: Any) -> list[str]:
        if not value:
            return []
        phones: list[str] = []
        for item in value:
            if isinstance(item, dict):
                raw = item.get("phone_number") or item.get("phone")
            else:
                raw = item
            formatted = format_phone_for_storage(raw if isinstance(raw, str) else None)
            if formatted:
                phones.append(formatted)
        return phones

    def external_fields(self) -> dict[str, Any]:
        """Contact fields sourced from the feed. Empty strings collapse to None."""
        return {
            "first_name": self.first_name or None,
            "last_name": self.last_name or None,
            "description": self.description or None,
            "instagram": self.instagram or None,
            "image_url": self.image_url or None,
            "birthday": self.birthday or None,
            "last_seen_at": self.last_seen_at or None,
            "emails": list(self.emails),
            "phones": [ContactPhone(phone=p) for p in self.phones],
        }


# ---------------------------------------------------------------------------
# Chats and messages
# ---------------------------------------------------------------------------


class RemoteChat(BaseModel):
    """Chat summary as delivered by the chat source."""

    model_config = ConfigDict(extra="ignore")

    chat_id: str = Field(min_length=1)
    local_chat_id: str | None = None
    title: str = "Unknown"
    network: str = "Unknown"
    account_id: str = ""
    type: ChatType = "single"
    username: str | None = None
    phone_number: str | None = None
    email: str | None = None
    participant_id: str | None = None
    last_activity: datetime | None = None
    unread_count: int = 0
    is_archived: bool = False
    is_muted: bool = False
    is_pinned: bool = False


class Chat(BaseModel):
    """Local mirror of one remote conversation plus its message window."""

    model_config = ConfigDict(extra="forbid")

    chat_id: str = Field(min_length=1)
    local_chat_id: str | None = None
    title: str = "Unknown"
    network: str = "Unknown"
    account_id: str = ""
    type: ChatType = "single"
    username: str | None = None
    phone_number: str | None = None
    email: str | None = None
    participant_id: str | None = None

    contact_id: str | None = None
    contact_matched_at: datetime | None = None
    contact_override: bool = False

    last_activity: datetime | None = None
    unread_count: int = 0
    is_archived: bool = False
    is_muted: bool = False
    is_pinned: bool = False
    is_blocked: bool = False

    last_synced_at: datetime | None = None
    last_messages_synced_at: datetime | None = None
    sync_source: SyncSource | None = None

    last_message_from: Literal["user", "them"] | None = None
    needs_reply: bool | None = None
    last_message: str | None = None

    newest_message_sort_key: str | None = None
    oldest_message_sort_key: str | None = None
    message_count: int = 0
    has_complete_history: bool = False
    last_full_sync_at: datetime | None = None


class Attachment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = "unknown"
    src_url: str | None = None
    mime_type: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    is_gif: bool | None = None
    is_sticker: bool | None = None
    is_voice_note: bool | None = None
    width: int | None = None
    height: int | None = None


class Reaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    participant_id: str | None = None
    reaction_key: str | None = None
    emoji: bool | None = None


class RemoteMessage(BaseModel):
    """Message as delivered by the chat source."""

    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(min_length=1)
    text: str = ""
    timestamp: datetime
    sort_key: str = Field(min_length=1)
    sender_id: str = ""
    sender_name: str = ""
    is_from_user: bool = False
    is_unread: bool | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    reactions: list[Reaction] = Field(default_factory=list)
    pending_id: str | None = None

    @field_validator("text", mode="before")
    @classmethod
    def _extract_text(cls, value: Any) -> str:
        return extract_message_text(value)


class Message(BaseModel):
    """Locally stored message, keyed by ``(chat_id, message_id)``."""

    model_config = ConfigDict(extra="forbid")

    chat_id: str
    message_id: str
    text: str = ""
    timestamp: datetime
    sort_key: str
    sender_id: str = ""
    sender_name: str = ""
    is_from_user: bool = False
    is_unread: bool | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    reactions: list[Reaction] = Field(default_factory=list)
    send_status: SendStatus | None = None
    send_error: str | None = None
    pending_id: str | None = None

    @classmethod
    def from_remote(cls, chat_id: str, remote: RemoteMessage) -> Message:
        return cls(
            chat_id=chat_id,
            message_id=remote.message_id,
            text=remote.text,
            timestamp=remote.timestamp,
            sort_key=remote.sort_key,
            sender_id=remote.sender_id,
            sender_name=remote.sender_name or remote.sender_id,
            is_from_user=remote.is_from_user,
            is_unread=remote.is_unread,
            attachments=list(remote.attachments),
            reactions=list(remote.reactions),
            pending_id=remote.pending_id,
        )


class ChatPage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[RemoteChat] = Field(default_factory=list)
    newest_cursor: str | None = None
    oldest_cursor: str | None = None
    has_more: bool = False


class MessagePage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[RemoteMessage] = Field(default_factory=list)
    has_more: bool = False


class SendReceipt(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pending_id: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Singleton sync-state records
# ---------------------------------------------------------------------------


class ChatListSyncState(BaseModel):
    """Global chat-list cursor pair plus the optional advisory lock."""

    model_config = ConfigDict(extra="ignore")

    key: str = "global"
    newest_cursor: str | None = None
    oldest_cursor: str | None = None
    last_synced_at: datetime | None = None
    sync_source: SyncSource | None = None
    total_chats: int = 0
    lock_id: str | None = None
    lock_at: datetime | None = None


class HistorySyncStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    is_running: bool = False
    stop_requested: bool = False
    chats_processed: int = 0
    total_chats: int = 0
    messages_loaded: int = 0
    current_chat: str | None = None
    started_at: datetime | None = None
    last_updated: datetime | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ContactBatchResult(BaseModel):
    """Outcome summary from one contact batch."""

    model_config = ConfigDict(extra="forbid")

    processed: int = 0
    added: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class ContactCreateResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contact: Contact
    created: bool


class ContactEditResult(BaseModel):
    """Local edit outcome; a failed upstream push never undoes the edit."""

    model_config = ConfigDict(extra="forbid")

    contact: Contact
    pushed_upstream: bool = False
    push_error: str | None = None


class ChatSyncResult(BaseModel):
    """Outcome of one chat-list sync pass; never raised, always returned."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    synced_chats: int = 0
    synced_messages: int = 0
    failed_chats: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
    source: SyncSource = "manual"
    error: str | None = None


class MessageLoadResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    chat_id: str
    messages_loaded: int = 0
    has_more: bool = False
    error: str | None = None


class ChatPageResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    chats_loaded: int = 0
    has_more: bool = False
    error: str | None = None


class SendResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    message_id: str
    pending_id: str | None = None
    error: str | None = None


class RematchResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    matched: int = 0
    unmatched: int = 0
    unchanged: int = 0
    total: int = 0

    @property
    def writes(self) -> int:
        return self.total - self.unchanged


class BackfillResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    chats_processed: int = 0
    completed_chats: int = 0
    messages_loaded: int = 0
    stopped: bool = False
    error: str | None = None


class GapReport(BaseModel):
    """Window-descriptor consistency diagnostics for one chat."""

    model_config = ConfigDict(extra="forbid")

    chat_id: str
    stored_count: int
    descriptor_count: int
    stored_oldest: str | None
    stored_newest: str | None
    descriptor_oldest: str | None
    descriptor_newest: str | None
    has_complete_history: bool

    @property
    def consistent(self) -> bool:
        return (
            self.stored_count == self.descriptor_count
            and self.stored_oldest == self.descriptor_oldest
            and self.stored_newest == self.descriptor_newest
        )


class DuplicateMatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contact: Contact
    confidence: Confidence
    reason: str


class DuplicateGroup(BaseModel):
    model_config = ConfigDict(extra="forbid")

    match_type: Literal["instagram", "whatsapp"]
    key: str
    contacts: list[Contact]


class DuplicateReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_groups: int = 0
    total_duplicates: int = 0
    groups: list[DuplicateGroup] = Field(default_factory=list)


class MergeResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contact: Contact
    merged_contact_id: str
    relinked_chats: int = 0


def confirmed_window(messages: list[Message]) -> tuple[int, str | None, str | None]:
    """Return ``(count, oldest, newest)`` over messages confirmed upstream.

    Locally composed messages still ``sending`` or ``failed`` carry synthetic
    sort keys and are not part of the paginated window.
    """
    keys = [m.sort_key for m in messages if m.send_status not in ("sending", "failed")]
    if not keys:
        return 0, None, None
    ordered = sorted(keys, key=sort_key_value)
    return len(ordered), ordered[0], ordered[-1]


# Owned by ChatStore.write_messages; always recomputed from stored messages.
CHAT_WINDOW_FIELDS = frozenset(
    {"message_count", "oldest_message_sort_key", "newest_message_sort_key"}
)


def validate_chat_patch(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Check a partial chat update and coerce its values to column types.

    Raises:
        ValueError: If a field is unknown, is ``chat_id``, or belongs to the
            window descriptor.
    """
    protected = sorted(set(fields) & (CHAT_WINDOW_FIELDS | {"chat_id"}))
    if protected:
        raise ValueError(f"Chat fields cannot be patched directly: {', '.join(protected)}")
    unknown = sorted(set(fields) - set(Chat.model_fields))
    if unknown:
        raise ValueError(f"Unknown chat fields: {', '.join(unknown)}")
    coerced = Chat.model_validate({"chat_id": "patch", **fields})
    return coerced.model_dump(include=set(fields))
