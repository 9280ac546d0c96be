"""Chat list and message window synchronization.

Per chat, the local mirror holds a contiguous window of messages bounded by
``oldest_message_sort_key`` and ``newest_message_sort_key``. The window grows
forward with :meth:`ChatSyncController.load_newer_messages` and backward with
:meth:`ChatSyncController.load_older_messages` until upstream reports no more
history. Ordering always comes from sort keys, never from response arrival.

A transport failure while fetching one chat's messages is logged and counted;
the list sync carries on with the remaining chats and the failed chat keeps
its previous ``last_messages_synced_at``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Literal

from opentelemetry import trace

from opsmirror.providers.base import ChatSource
from opsmirror.sync.errors import (
    ChatNotFoundError,
    SourceError,
    SyncLockHeldError,
    UnsortedBatchError,
)
from opsmirror.sync.lock import SyncLock
from opsmirror.sync.matcher import IdentityMatcher
from opsmirror.sync.models import (
    Chat,
    ChatListSyncState,
    ChatPageResult,
    ChatSyncResult,
    GapReport,
    Message,
    MessageLoadResult,
    RemoteChat,
    RemoteMessage,
    SendResult,
    SyncSource,
    confirmed_window,
    utcnow,
)
from opsmirror.sync.normalize import compare_sort_keys, sort_key_value
from opsmirror.sync.state import VersionedRecord, chat_list_state
from opsmirror.sync.store import ChatStore, SyncStateStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("opsmirror")

DEFAULT_MESSAGE_WINDOW = 30
DEFAULT_PAGE_SIZE = 50
LOCAL_MESSAGE_PREFIX = "local_"


def sort_batch(messages: Sequence[Message]) -> list[Message]:
    """Dedupe by message ID (last wins) and order ascending by sort key, then time."""
    unique = {m.message_id: m for m in messages}
    return sorted(unique.values(), key=lambda m: (sort_key_value(m.sort_key), m.timestamp))


def derive_last_message(
    messages: Sequence[Message],
) -> tuple[Literal["user", "them"], bool, str] | None:
    """Return ``(last_message_from, needs_reply, last_message)`` for a sorted batch.

    Raises:
        UnsortedBatchError: If *messages* is not in ascending sort-key order.
    """
    if not messages:
        return None
    for previous, current in zip(messages, messages[1:]):
        if compare_sort_keys(previous.sort_key, current.sort_key) > 0:
            raise UnsortedBatchError(
                f"message batch for chat {current.chat_id} is not sorted: "
                f"{previous.sort_key!r} precedes {current.sort_key!r}"
            )
    last = messages[-1]
    sender: Literal["user", "them"] = "user" if last.is_from_user else "them"
    return sender, not last.is_from_user, last.text


class ChatSyncController:
    """Drive list sync, message window fetches and the local send pathway."""

    def __init__(
        self,
        source: ChatSource,
        chats: ChatStore,
        matcher: IdentityMatcher,
        state: SyncStateStore,
        *,
        lock: SyncLock | None = None,
        message_window: int = DEFAULT_MESSAGE_WINDOW,
        page_size: int = DEFAULT_PAGE_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._source = source
        self._chats = chats
        self._matcher = matcher
        self._list_state: VersionedRecord[ChatListSyncState] = chat_list_state(state)
        self._lock = lock or SyncLock(self._list_state, clock=clock)
        self._message_window = max(1, message_window)
        self._page_size = max(1, page_size)
        self._clock = clock

    @property
    def chats(self) -> ChatStore:
        return self._chats

    async def list_state(self) -> ChatListSyncState:
        state, _ = await self._list_state.load()
        return state

    # ------------------------------------------------------------------
    # List sync
    # ------------------------------------------------------------------

    async def sync_chats(
        self,
        *,
        sync_source: SyncSource = "manual",
        force_message_sync: bool = False,
    ) -> ChatSyncResult:
        """Mirror the newest chat page and refresh messages where activity moved."""
        with tracer.start_as_current_span("opsmirror.sync.chats") as span:
            span.set_attribute("sync.source", sync_source)
            try:
                lock_id = await self._lock.acquire()
            except SyncLockHeldError as exc:
                logger.info("Skipping chat sync (%s): %s", sync_source, exc)
                return ChatSyncResult(
                    success=False, source=sync_source, error=str(exc), timestamp=self._clock()
                )
            try:
                result = await self._sync_chats_locked(sync_source, force_message_sync)
            finally:
                await self._lock.release(lock_id)
            span.set_attribute("sync.chats", result.synced_chats)
            span.set_attribute("sync.messages", result.synced_messages)
            return result

    async def _sync_chats_locked(
        self, sync_source: SyncSource, force_message_sync: bool
    ) -> ChatSyncResult:
        now = self._clock()
        try:
            page = await self._source.list_chats()
        except SourceError as exc:
            logger.warning("Chat list fetch failed: %s", exc)
            return ChatSyncResult(success=False, source=sync_source, error=str(exc), timestamp=now)

        synced_chats = synced_messages = failed_chats = 0
        for remote in page.items:
            try:
                chat, should_sync = await self._upsert_chat(
                    remote, sync_source=sync_source, now=now
                )
            except Exception:
                logger.warning("Chat %s could not be stored", remote.chat_id, exc_info=True)
                failed_chats += 1
                continue
            synced_chats += 1
            if not (force_message_sync or should_sync):
                continue
            try:
                loaded = await self.load_messages(chat.chat_id)
            except Exception:
                logger.warning(
                    "Message sync failed for chat %s", chat.chat_id, exc_info=True
                )
                failed_chats += 1
                continue
            if loaded.success:
                synced_messages += loaded.messages_loaded
            else:
                failed_chats += 1

        total_chats = len(await self._chats.list_chats())

        def _advance(state: ChatListSyncState) -> ChatListSyncState:
            return state.model_copy(
                update={
                    "newest_cursor": page.newest_cursor or state.newest_cursor,
                    "oldest_cursor": state.oldest_cursor or page.oldest_cursor,
                    "last_synced_at": now,
                    "sync_source": sync_source,
                    "total_chats": total_chats,
                }
            )

        await self._list_state.update(_advance)
        logger.info(
            "Chat sync (%s): chats=%d messages=%d failed=%d",
            sync_source,
            synced_chats,
            synced_messages,
            failed_chats,
        )
        return ChatSyncResult(
            success=True,
            synced_chats=synced_chats,
            synced_messages=synced_messages,
            failed_chats=failed_chats,
            timestamp=now,
            source=sync_source,
        )

    async def _upsert_chat(
        self,
        remote: RemoteChat,
        *,
        sync_source: SyncSource,
        now: datetime,
    ) -> tuple[Chat, bool]:
        """Create or patch a chat; returns it and whether its messages need a fetch."""
        fields = {
            **remote.model_dump(exclude={"chat_id"}),
            "last_synced_at": now,
            "sync_source": sync_source,
        }
        existing = await self._chats.get_chat(remote.chat_id)
        if existing is None:
            chat = await self._chats.save_chat(Chat(chat_id=remote.chat_id, **fields))
            should_sync = True
        else:
            should_sync = existing.last_messages_synced_at is None or (
                remote.last_activity is not None
                and remote.last_activity > existing.last_messages_synced_at
            )
            chat = await self._chats.update_chat(remote.chat_id, fields) or existing

        if not chat.contact_override:
            contact = await self._matcher.match_chat(chat)
            contact_id = contact.id if contact is not None else None
            if contact_id != chat.contact_id:
                linked = await self._chats.update_chat(
                    chat.chat_id,
                    {"contact_id": contact_id, "contact_matched_at": now},
                    skip_overridden=True,
                )
                chat = linked or await self._require_chat(chat.chat_id)

        return chat, should_sync

    async def load_older_chats(self) -> ChatPageResult:
        """Extend the chat list backward from the stored oldest cursor."""
        state, _ = await self._list_state.load()
        if state.oldest_cursor is None:
            return ChatPageResult(success=False, error="no chat list cursor; run a chat sync first")
        now = self._clock()
        try:
            page = await self._source.list_chats(cursor=state.oldest_cursor, direction="before")
        except SourceError as exc:
            logger.warning("Older chat page fetch failed: %s", exc)
            return ChatPageResult(success=False, error=str(exc))

        for remote in page.items:
            try:
                await self._upsert_chat(remote, sync_source="load_older", now=now)
            except Exception:
                logger.warning("Chat %s could not be stored", remote.chat_id, exc_info=True)

        await self._list_state.update(
            lambda s: s.model_copy(update={"oldest_cursor": page.oldest_cursor or s.oldest_cursor})
        )
        return ChatPageResult(success=True, chats_loaded=len(page.items), has_more=page.has_more)

    # ------------------------------------------------------------------
    # Message window
    # ------------------------------------------------------------------

    async def load_messages(self, chat_id: str, *, limit: int | None = None) -> MessageLoadResult:
        """Fetch the most recent messages for *chat_id* into the window."""
        chat = await self._require_chat(chat_id)
        try:
            page = await self._source.list_messages(chat_id, limit=limit or self._message_window)
        except SourceError as exc:
            logger.warning("Message fetch failed for chat %s: %s", chat_id, exc)
            return MessageLoadResult(success=False, chat_id=chat_id, error=str(exc))
        stored = await self._store_batch(chat, page.items)
        return MessageLoadResult(
            success=True, chat_id=chat_id, messages_loaded=stored, has_more=page.has_more
        )

    async def load_newer_messages(self, chat_id: str) -> MessageLoadResult:
        """Page forward from the newest stored sort key."""
        chat = await self._require_chat(chat_id)
        if chat.newest_message_sort_key is None:
            return await self.load_messages(chat_id, limit=self._page_size)
        try:
            page = await self._source.list_messages(
                chat_id,
                cursor=chat.newest_message_sort_key,
                direction="after",
                limit=self._page_size,
            )
        except SourceError as exc:
            logger.warning("Newer message fetch failed for chat %s: %s", chat_id, exc)
            return MessageLoadResult(success=False, chat_id=chat_id, error=str(exc))
        stored = await self._store_batch(chat, page.items)
        return MessageLoadResult(
            success=True, chat_id=chat_id, messages_loaded=stored, has_more=page.has_more
        )

    async def load_older_messages(self, chat_id: str) -> MessageLoadResult:
        """Page backward from the oldest stored sort key.

        When upstream reports nothing further back, the chat is marked as
        having complete history and later calls return immediately.
        """
        chat = await self._require_chat(chat_id)
        if chat.has_complete_history:
            return MessageLoadResult(success=True, chat_id=chat_id, has_more=False)
        if chat.oldest_message_sort_key is None:
            return await self.load_messages(chat_id, limit=self._page_size)
        try:
            page = await self._source.list_messages(
                chat_id,
                cursor=chat.oldest_message_sort_key,
                direction="before",
                limit=self._page_size,
            )
        except SourceError as exc:
            logger.warning("Older message fetch failed for chat %s: %s", chat_id, exc)
            return MessageLoadResult(success=False, chat_id=chat_id, error=str(exc))
        stored = await self._store_batch(chat, page.items, complete=not page.has_more)
        return MessageLoadResult(
            success=True, chat_id=chat_id, messages_loaded=stored, has_more=page.has_more
        )

    async def _store_batch(
        self,
        chat: Chat,
        items: Sequence[RemoteMessage],
        *,
        complete: bool = False,
    ) -> int:
        now = self._clock()
        batch = sort_batch([Message.from_remote(chat.chat_id, item) for item in items])
        batch, remove_ids = await self._confirm_pending(chat.chat_id, batch)

        update: dict[str, object] = {"last_messages_synced_at": now}
        derived = derive_last_message(batch)
        extends_newest = derived is not None and (
            chat.newest_message_sort_key is None
            or compare_sort_keys(batch[-1].sort_key, chat.newest_message_sort_key) >= 0
        )
        if derived is not None and extends_newest:
            last_from, needs_reply, text = derived
            update.update(
                {"last_message_from": last_from, "needs_reply": needs_reply, "last_message": text}
            )
        if complete:
            update.update({"has_complete_history": True, "last_full_sync_at": now})

        await self._chats.write_messages(
            chat.chat_id, batch, remove_ids=remove_ids, updates=update
        )
        if complete:
            logger.info("Chat %s has complete history", chat.chat_id)
        return len(batch)

    async def _confirm_pending(
        self, chat_id: str, batch: list[Message]
    ) -> tuple[list[Message], list[str]]:
        """Swap locally composed messages for the confirmed remote copies."""
        remove_ids: list[str] = []
        confirmed: list[Message] = []
        for message in batch:
            if message.pending_id is not None:
                local = await self._chats.get_message_by_pending_id(chat_id, message.pending_id)
                if local is not None and local.message_id != message.message_id:
                    remove_ids.append(local.message_id)
                    message = message.model_copy(update={"send_status": "sent"})
                    logger.debug(
                        "Confirmed local message %s as %s", local.message_id, message.message_id
                    )
            confirmed.append(message)
        return confirmed, remove_ids

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to: str | None = None,
    ) -> SendResult:
        """Store *text* as ``sending`` right away, then hand it to the source.

        The source answers with a pending correlation ID; a later message
        fetch that carries the same ID replaces the local copy and marks it
        ``sent``. A transport failure marks the local copy ``failed``.
        """
        await self._require_chat(chat_id)
        now = self._clock()
        millis = int(now.timestamp() * 1000)
        while await self._chats.get_message(chat_id, f"{LOCAL_MESSAGE_PREFIX}{millis}"):
            millis += 1

        local = Message(
            chat_id=chat_id,
            message_id=f"{LOCAL_MESSAGE_PREFIX}{millis}",
            text=text,
            timestamp=now,
            sort_key=str(millis),
            sender_name="You",
            is_from_user=True,
            send_status="sending",
        )
        await self._chats.write_messages(
            chat_id,
            [local],
            updates={
                "last_activity": now,
                "last_message_from": "user",
                "needs_reply": False,
                "last_message": text,
            },
        )

        try:
            receipt = await self._source.send_message(chat_id, text, reply_to=reply_to)
        except SourceError as exc:
            logger.warning("Send failed for chat %s: %s", chat_id, exc)
            await self._chats.save_message(
                local.model_copy(update={"send_status": "failed", "send_error": str(exc)})
            )
            return SendResult(success=False, message_id=local.message_id, error=str(exc))

        await self._chats.save_message(local.model_copy(update={"pending_id": receipt.pending_id}))
        return SendResult(
            success=True, message_id=local.message_id, pending_id=receipt.pending_id
        )

    # ------------------------------------------------------------------
    # Local chat flags
    # ------------------------------------------------------------------

    async def archive_chat(self, chat_id: str, *, archived: bool = True) -> Chat:
        return await self._set_flags(chat_id, is_archived=archived)

    async def mark_read(self, chat_id: str) -> Chat:
        return await self._set_flags(chat_id, unread_count=0)

    async def mark_unread(self, chat_id: str) -> Chat:
        return await self._set_flags(chat_id, unread_count=1)

    async def _set_flags(self, chat_id: str, **fields: object) -> Chat:
        chat = await self._chats.update_chat(chat_id, fields)
        if chat is None:
            raise ChatNotFoundError(chat_id)
        return chat

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def detect_gaps(self, chat_id: str) -> GapReport:
        """Compare the stored messages with the chat's window descriptor."""
        chat = await self._require_chat(chat_id)
        count, oldest, newest = confirmed_window(await self._chats.list_messages(chat_id))
        report = GapReport(
            chat_id=chat_id,
            stored_count=count,
            descriptor_count=chat.message_count,
            stored_oldest=oldest,
            stored_newest=newest,
            descriptor_oldest=chat.oldest_message_sort_key,
            descriptor_newest=chat.newest_message_sort_key,
            has_complete_history=chat.has_complete_history,
        )
        if not report.consistent:
            logger.warning("Window descriptor drift for chat %s: %s", chat_id, report)
        return report

    async def _require_chat(self, chat_id: str) -> Chat:
        chat = await self._chats.get_chat(chat_id)
        if chat is None:
            raise ChatNotFoundError(chat_id)
        return chat
