"""Background pollers that keep the mirror fresh.

Two loops run side by side: the chat poller runs ``sync_chats`` every
``chat_interval_seconds`` and the contact poller pulls the full CRM feed every
``contact_interval_seconds``. ``trigger_sync`` wakes both immediately. A
failing pass is logged and the loop carries on with the next interval.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta
from pathlib import Path

import asyncpg

from opsmirror.config import ConfigError, OpsMirrorConfig, SyncConfig, load_config
from opsmirror.core.logging import bind_sync_pass, configure_logging
from opsmirror.core.metrics import SyncMetrics, init_metrics
from opsmirror.core.telemetry import init_telemetry
from opsmirror.db import Database
from opsmirror.migrations import run_migrations
from opsmirror.providers.base import ChatSource, ContactSource, fetch_all_contacts
from opsmirror.providers.beeper import BeeperChatSource
from opsmirror.providers.dex import DexContactSource
from opsmirror.sync.chats import ChatSyncController
from opsmirror.sync.contacts import ContactService, ContactUpsertReconciler
from opsmirror.sync.duplicates import DuplicateDetector
from opsmirror.sync.errors import SourceError
from opsmirror.sync.history import HistoryBackfill
from opsmirror.sync.lock import SyncLock
from opsmirror.sync.matcher import IdentityMatcher
from opsmirror.sync.merge import ContactMerger
from opsmirror.sync.models import BackfillResult, ChatSyncResult, ContactBatchResult, SyncSource
from opsmirror.sync.postgres import PostgresChatStore, PostgresContactStore, PostgresStateStore
from opsmirror.sync.rematch import RematchEngine
from opsmirror.sync.state import chat_list_state
from opsmirror.sync.store import ChatStore, ContactStore, SyncStateStore

logger = logging.getLogger(__name__)


class SyncRuntime:
    """Owns the sync components and the poller tasks that drive them."""

    def __init__(
        self,
        *,
        contacts: ContactStore,
        chats: ChatStore,
        state: SyncStateStore,
        chat_source: ChatSource,
        contact_source: ContactSource,
        sync: SyncConfig | None = None,
        service_name: str = "opsmirror",
    ) -> None:
        self.sync_config = sync or SyncConfig()
        self.metrics = SyncMetrics(service_name)
        self.chat_source = chat_source
        self.contact_source = contact_source

        self.matcher = IdentityMatcher(contacts)
        self.rematch = RematchEngine(chats, self.matcher)
        self.controller = ChatSyncController(
            chat_source,
            chats,
            self.matcher,
            state,
            lock=SyncLock(
                chat_list_state(state),
                timeout=timedelta(seconds=self.sync_config.lock_timeout_seconds),
            ),
            message_window=self.sync_config.message_window_size,
            page_size=self.sync_config.page_size,
        )
        self.reconciler = ContactUpsertReconciler(
            contacts,
            self.rematch,
            protection_window=timedelta(seconds=self.sync_config.protection_window_seconds),
        )
        self.contacts = ContactService(contacts, chats, self.rematch, source=contact_source)
        self.backfill = HistoryBackfill(self.controller, state)
        self.duplicates = DuplicateDetector(contacts)
        self.merger = ContactMerger(contacts, chats, self.rematch)

        self._tasks: list[asyncio.Task[None]] = []
        self._chat_sync_event: asyncio.Event = asyncio.Event()
        self._contact_sync_event: asyncio.Event = asyncio.Event()

    @classmethod
    def from_config(cls, config: OpsMirrorConfig, pool: asyncpg.Pool) -> SyncRuntime:
        """Wire Postgres stores and HTTP sources from *config*.

        Raises:
            ConfigError: If a source credential is missing.
        """
        if not config.beeper.token:
            raise ConfigError("Missing required field: sources.beeper.token")
        if not config.dex.api_key:
            raise ConfigError("Missing required field: sources.dex.api_key")
        return cls(
            contacts=PostgresContactStore(pool),
            chats=PostgresChatStore(pool),
            state=PostgresStateStore(pool),
            chat_source=BeeperChatSource(
                token=config.beeper.token, base_url=config.beeper.base_url
            ),
            contact_source=DexContactSource(
                api_key=config.dex.api_key, base_url=config.dex.base_url
            ),
            sync=config.sync,
            service_name=config.name,
        )

    # ------------------------------------------------------------------
    # Single passes
    # ------------------------------------------------------------------

    async def sync_chats(self, sync_source: SyncSource = "cron") -> ChatSyncResult:
        started = time.monotonic()
        with bind_sync_pass("chats"):
            result = await self.controller.sync_chats(sync_source=sync_source)
        self.metrics.record_pass("chats", success=result.success, duration_ms=_elapsed(started))
        self.metrics.record_messages("chats", result.synced_messages)
        return result

    async def sync_contacts(self, *, force_update: bool = False) -> ContactBatchResult:
        """Pull the whole CRM feed and apply it as one batch."""
        started = time.monotonic()
        with bind_sync_pass("contacts"):
            try:
                records = await fetch_all_contacts(
                    self.contact_source, page_size=self.sync_config.contact_page_size
                )
            except SourceError as exc:
                logger.warning("Contact feed fetch failed: %s", exc)
                result = ContactBatchResult(errors=1, error_messages=[str(exc)])
                success = False
            else:
                result = await self.reconciler.apply_batch(records, force_update=force_update)
                success = True
        self.metrics.record_pass("contacts", success=success, duration_ms=_elapsed(started))
        self.metrics.record_contact_outcomes(
            added=result.added, updated=result.updated, skipped=result.skipped, errors=result.errors
        )
        return result

    async def backfill_history(self) -> BackfillResult:
        started = time.monotonic()
        with bind_sync_pass("history"):
            result = await self.backfill.run(
                max_pages_per_chat=self.sync_config.backfill_max_pages_per_chat
            )
        self.metrics.record_pass("history", success=result.success, duration_ms=_elapsed(started))
        self.metrics.record_messages("history", result.messages_loaded)
        return result

    # ------------------------------------------------------------------
    # Pollers
    # ------------------------------------------------------------------

    def trigger_sync(self) -> None:
        """Wake both pollers without waiting for their intervals."""
        self._chat_sync_event.set()
        self._contact_sync_event.set()

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                self._run_poller(
                    "chat",
                    self.sync_chats,
                    self._chat_sync_event,
                    self.sync_config.chat_interval_seconds,
                ),
                name="opsmirror-chat-poller",
            ),
            asyncio.create_task(
                self._run_poller(
                    "contact",
                    self.sync_contacts,
                    self._contact_sync_event,
                    self.sync_config.contact_interval_seconds,
                ),
                name="opsmirror-contact-poller",
            ),
        ]
        logger.info(
            "Sync pollers started (chat_interval=%ds, contact_interval=%ds)",
            self.sync_config.chat_interval_seconds,
            self.sync_config.contact_interval_seconds,
        )

    async def shutdown(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        if self.backfill.is_running:
            await self.backfill.request_stop()
        await self.chat_source.shutdown()
        await self.contact_source.shutdown()

    async def _run_poller(
        self,
        label: str,
        run_pass: Callable[[], Awaitable[object]],
        event: asyncio.Event,
        interval_seconds: int,
    ) -> None:
        logger.debug("%s sync poller loop started (interval=%ds)", label, interval_seconds)
        while True:
            try:
                await run_pass()
            except Exception as exc:
                logger.error("%s sync poller error: %s", label, exc, exc_info=True)

            try:
                await asyncio.wait_for(event.wait(), timeout=interval_seconds)
                event.clear()
                logger.debug("%s sync poller: immediate sync triggered", label)
            except TimeoutError:
                pass


def _elapsed(started: float) -> float:
    return (time.monotonic() - started) * 1000


async def serve(config_dir: Path) -> None:
    """Run the sync service until SIGINT or SIGTERM."""
    config = load_config(config_dir)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        service_name=config.name,
    )
    init_telemetry(config.name)
    init_metrics(config.name)

    db = Database.from_env(config.db_name, schema=config.db_schema)
    await db.provision()
    await run_migrations(db.url, schema=config.db_schema)
    pool = await db.connect()

    runtime = SyncRuntime.from_config(config, pool)
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    await runtime.start()
    try:
        await shutdown_event.wait()
    finally:
        logger.info("Shutting down sync service")
        await runtime.shutdown()
        await db.close()
