"""Interruptible full-history backfill.

The backfill walks chats that have a loaded window but no complete history
and pages each one backward through ``ChatSyncController.load_older_messages``.
Stopping is cooperative: the stop request is checked before every page, so an
interrupted run leaves the chat's window intact and the next run resumes from
the stored oldest sort key.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from opentelemetry import trace

from opsmirror.sync.chats import ChatSyncController
from opsmirror.sync.models import BackfillResult, Chat, HistorySyncStatus, utcnow
from opsmirror.sync.state import VersionedRecord, history_status
from opsmirror.sync.store import SyncStateStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("opsmirror")

DEFAULT_MAX_PAGES_PER_CHAT = 20


class HistoryBackfill:
    def __init__(
        self,
        controller: ChatSyncController,
        state: SyncStateStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._controller = controller
        self._chats = controller.chats
        self._status: VersionedRecord[HistorySyncStatus] = history_status(state)
        self._stop = asyncio.Event()
        self._running = False
        self._clock = clock

    @property
    def is_running(self) -> bool:
        return self._running

    async def status(self) -> HistorySyncStatus:
        status, _ = await self._status.load()
        return status

    async def request_stop(self) -> None:
        """Ask a running backfill to stop at the next page boundary."""
        self._stop.set()
        now = self._clock()
        await self._status.update(
            lambda s: s.model_copy(update={"stop_requested": True, "last_updated": now})
        )
        logger.info("History backfill stop requested")

    async def run(
        self,
        *,
        max_pages_per_chat: int = DEFAULT_MAX_PAGES_PER_CHAT,
        stop_at: datetime | None = None,
    ) -> BackfillResult:
        """Page older messages into every chat still missing history.

        Chats are visited fewest-messages first. A chat stops early once it
        has loaded *max_pages_per_chat* pages, or once its oldest stored
        message predates *stop_at*.
        """
        if self._running:
            return BackfillResult(success=False, error="history backfill already running")

        with tracer.start_as_current_span("opsmirror.history.backfill") as span:
            self._running = True
            result = BackfillResult(success=True)
            try:
                self._stop.clear()
                pending = await self._chats.list_chats_needing_history()
                started = self._clock()
                await self._status.update(
                    lambda s: HistorySyncStatus(
                        is_running=True,
                        total_chats=len(pending),
                        started_at=started,
                        last_updated=started,
                    )
                )
                span.set_attribute("history.pending_chats", len(pending))
                logger.info("History backfill started for %d chats", len(pending))

                for chat in pending:
                    if await self._stop_requested():
                        result.stopped = True
                        break
                    stopped = await self._backfill_chat(
                        chat, result, max_pages=max(1, max_pages_per_chat), stop_at=stop_at
                    )
                    result.chats_processed += 1
                    processed = result.chats_processed
                    now = self._clock()
                    await self._status.update(
                        lambda s: s.model_copy(
                            update={"chats_processed": processed, "last_updated": now}
                        )
                    )
                    if stopped:
                        result.stopped = True
                        break
            except Exception as exc:
                logger.error("History backfill failed: %s", exc, exc_info=True)
                result.success = False
                result.error = str(exc)
            finally:
                self._running = False
                finished = self._clock()
                error = result.error
                await self._status.update(
                    lambda s: s.model_copy(
                        update={
                            "is_running": False,
                            "stop_requested": False,
                            "current_chat": None,
                            "last_updated": finished,
                            "error": error,
                        }
                    )
                )

            span.set_attribute("history.chats_processed", result.chats_processed)
            span.set_attribute("history.messages_loaded", result.messages_loaded)
            logger.info(
                "History backfill %s: chats=%d completed=%d messages=%d",
                "stopped" if result.stopped else "finished",
                result.chats_processed,
                result.completed_chats,
                result.messages_loaded,
            )
            return result

    async def _backfill_chat(
        self,
        chat: Chat,
        result: BackfillResult,
        *,
        max_pages: int,
        stop_at: datetime | None,
    ) -> bool:
        """Page one chat backward. Returns True when a stop was requested."""
        for _ in range(max_pages):
            if await self._stop_requested():
                return True

            loaded = await self._controller.load_older_messages(chat.chat_id)
            if not loaded.success:
                logger.warning(
                    "History backfill skipping chat %s after error: %s", chat.chat_id, loaded.error
                )
                return False

            result.messages_loaded += loaded.messages_loaded
            total_loaded = result.messages_loaded
            now = self._clock()
            await self._status.update(
                lambda s: s.model_copy(
                    update={
                        "current_chat": chat.chat_id,
                        "messages_loaded": total_loaded,
                        "last_updated": now,
                    }
                )
            )

            if not loaded.has_more:
                result.completed_chats += 1
                return False
            if stop_at is not None and await self._reached_cutoff(chat.chat_id, stop_at):
                logger.debug("Chat %s reached backfill cutoff %s", chat.chat_id, stop_at)
                return False
        return False

    async def _reached_cutoff(self, chat_id: str, stop_at: datetime) -> bool:
        messages = await self._chats.list_messages(chat_id)
        confirmed = [m for m in messages if m.send_status not in ("sending", "failed")]
        return bool(confirmed) and confirmed[0].timestamp < stop_at

    async def _stop_requested(self) -> bool:
        if self._stop.is_set():
            return True
        status, _ = await self._status.load()
        return status.stop_requested
