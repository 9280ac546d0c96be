"""Singleton sync-state records kept in the versioned key-value store."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

from pydantic import BaseModel

from opsmirror.core.state import CASConflictError
from opsmirror.sync.errors import SyncError
from opsmirror.sync.models import ChatListSyncState, HistorySyncStatus
from opsmirror.sync.store import SyncStateStore

logger = logging.getLogger(__name__)

CHAT_LIST_SYNC_KEY = "sync::chat_list::global"
HISTORY_STATUS_KEY = "sync::history::status"
DEFAULT_MAX_CAS_ATTEMPTS = 5

RecordT = TypeVar("RecordT", bound=BaseModel)


class VersionedRecord(Generic[RecordT]):
    """A pydantic model persisted under one key with optimistic concurrency."""

    def __init__(
        self,
        store: SyncStateStore,
        *,
        key: str,
        model: type[RecordT],
        max_attempts: int = DEFAULT_MAX_CAS_ATTEMPTS,
    ) -> None:
        self._store = store
        self._key = key
        self._model = model
        self._max_attempts = max(1, max_attempts)

    @property
    def key(self) -> str:
        return self._key

    async def load(self) -> tuple[RecordT, int]:
        """Return the record and its version, creating the default on first use."""
        value, version = await self._store.setdefault(
            self._key, self._model().model_dump(mode="json")
        )
        return self._model.model_validate(value), version

    async def compare_and_set(self, expected_version: int, record: RecordT) -> int:
        """Single CAS attempt; raises :exc:`CASConflictError` on a lost race."""
        return await self._store.compare_and_set(
            self._key, expected_version, record.model_dump(mode="json")
        )

    async def update(self, mutate: Callable[[RecordT], RecordT]) -> RecordT:
        """Apply *mutate* with CAS, re-reading and retrying on conflicts."""
        for attempt in range(1, self._max_attempts + 1):
            current, version = await self.load()
            updated = mutate(current)
            try:
                await self.compare_and_set(version, updated)
                return updated
            except CASConflictError:
                logger.debug(
                    "CAS conflict on %s (attempt %d/%d)", self._key, attempt, self._max_attempts
                )
        raise SyncError(f"Could not update {self._key} after {self._max_attempts} attempts")


def chat_list_state(store: SyncStateStore) -> VersionedRecord[ChatListSyncState]:
    return VersionedRecord(store, key=CHAT_LIST_SYNC_KEY, model=ChatListSyncState)


def history_status(store: SyncStateStore) -> VersionedRecord[HistorySyncStatus]:
    return VersionedRecord(store, key=HISTORY_STATUS_KEY, model=HistorySyncStatus)
