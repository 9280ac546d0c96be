"""Shared fixtures for sync engine unit tests.

Everything is wired against the in-memory doubles from ``opsmirror.testing``
and a manual clock, so no test here touches the network or a database.
"""

from __future__ import annotations

import pytest

from opsmirror.sync.chats import ChatSyncController
from opsmirror.sync.contacts import ContactService, ContactUpsertReconciler
from opsmirror.sync.lock import SyncLock
from opsmirror.sync.matcher import IdentityMatcher
from opsmirror.sync.rematch import RematchEngine
from opsmirror.sync.state import chat_list_state
from opsmirror.testing import (
    FakeChatSource,
    FakeContactSource,
    InMemoryChatStore,
    InMemoryContactStore,
    InMemoryStateStore,
    ManualClock,
)
from opsmirror.testing.builders import BASE_TIME


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(BASE_TIME)


@pytest.fixture
def contact_store() -> InMemoryContactStore:
    return InMemoryContactStore()


@pytest.fixture
def chat_store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def chat_source() -> FakeChatSource:
    return FakeChatSource()


@pytest.fixture
def contact_source() -> FakeContactSource:
    return FakeContactSource()


@pytest.fixture
def matcher(contact_store: InMemoryContactStore) -> IdentityMatcher:
    return IdentityMatcher(contact_store)


@pytest.fixture
def rematch(
    chat_store: InMemoryChatStore, matcher: IdentityMatcher, clock: ManualClock
) -> RematchEngine:
    return RematchEngine(chat_store, matcher, clock=clock)


@pytest.fixture
def reconciler(
    contact_store: InMemoryContactStore, rematch: RematchEngine, clock: ManualClock
) -> ContactUpsertReconciler:
    return ContactUpsertReconciler(contact_store, rematch, clock=clock)


@pytest.fixture
def contact_service(
    contact_store: InMemoryContactStore,
    chat_store: InMemoryChatStore,
    rematch: RematchEngine,
    contact_source: FakeContactSource,
    clock: ManualClock,
) -> ContactService:
    return ContactService(contact_store, chat_store, rematch, source=contact_source, clock=clock)


@pytest.fixture
def controller(
    chat_source: FakeChatSource,
    chat_store: InMemoryChatStore,
    matcher: IdentityMatcher,
    state_store: InMemoryStateStore,
    clock: ManualClock,
) -> ChatSyncController:
    return ChatSyncController(
        chat_source,
        chat_store,
        matcher,
        state_store,
        lock=SyncLock(chat_list_state(state_store), clock=clock),
        message_window=30,
        page_size=50,
        clock=clock,
    )
