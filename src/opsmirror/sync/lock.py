"""Advisory lock on the chat-list sync-state record.

Two full chat syncs racing would double-write activity timestamps, so a pass
claims ``lock_id``/``lock_at`` before it starts. A lock older than the timeout
is treated as abandoned and reclaimed.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from opsmirror.core.state import CASConflictError
from opsmirror.sync.errors import SyncLockHeldError
from opsmirror.sync.models import ChatListSyncState, utcnow
from opsmirror.sync.state import VersionedRecord

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = timedelta(minutes=10)


class SyncLock:
    def __init__(
        self,
        record: VersionedRecord[ChatListSyncState],
        *,
        timeout: timedelta = DEFAULT_LOCK_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._record = record
        self._timeout = timeout
        self._clock = clock

    async def acquire(self, lock_id: str | None = None) -> str:
        """Claim the lock and return its ID.

        Raises:
            SyncLockHeldError: If a live lock is held, or another pass claimed
                the record between our read and write.
        """
        lock_id = lock_id or uuid.uuid4().hex
        state, version = await self._record.load()
        now = self._clock()
        if state.lock_id is not None:
            age = now - state.lock_at if state.lock_at is not None else None
            if age is not None and age < self._timeout:
                raise SyncLockHeldError(state.lock_id)
            logger.warning(
                "Reclaiming stale chat sync lock %s (held since %s)", state.lock_id, state.lock_at
            )

        claimed = state.model_copy(update={"lock_id": lock_id, "lock_at": now})
        try:
            await self._record.compare_and_set(version, claimed)
        except CASConflictError as exc:
            raise SyncLockHeldError(None) from exc
        logger.debug("Acquired chat sync lock %s", lock_id)
        return lock_id

    async def release(self, lock_id: str) -> bool:
        """Release *lock_id*. Returns False if the lock was no longer ours."""
        released = False

        def _clear(state: ChatListSyncState) -> ChatListSyncState:
            nonlocal released
            if state.lock_id != lock_id:
                released = False
                return state
            released = True
            return state.model_copy(update={"lock_id": None, "lock_at": None})

        await self._record.update(_clear)
        if not released:
            logger.warning("Chat sync lock %s was reclaimed before release", lock_id)
        return released

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[str]:
        lock_id = await self.acquire()
        try:
            yield lock_id
        finally:
            await self.release(lock_id)
