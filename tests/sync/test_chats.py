"""Tests for ChatSyncController: list sync, message window, sends and flags."""

from __future__ import annotations

import pytest

from opsmirror.sync.chats import ChatSyncController, derive_last_message, sort_batch
from opsmirror.sync.contacts import ContactService
from opsmirror.sync.errors import ChatNotFoundError, SourceRequestError, UnsortedBatchError
from opsmirror.sync.lock import SyncLock
from opsmirror.sync.matcher import IdentityMatcher
from opsmirror.sync.models import Chat, ChatPage, Contact, Message
from opsmirror.sync.state import chat_list_state
from opsmirror.testing import (
    FakeChatSource,
    InMemoryChatStore,
    InMemoryContactStore,
    InMemoryStateStore,
    ManualClock,
)
from opsmirror.testing.builders import (
    BASE_TIME,
    remote_chat,
    remote_message,
    remote_messages,
)

pytestmark = pytest.mark.unit


def _message(message_id: str, sort_key: str, *, from_user: bool = False) -> Message:
    return Message(
        chat_id="c1",
        message_id=message_id,
        text=message_id,
        timestamp=BASE_TIME,
        sort_key=sort_key,
        is_from_user=from_user,
    )


class _InterleavingSource(FakeChatSource):
    """Runs ``during_fetch`` once while a message fetch is in flight."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.during_fetch = None

    async def list_messages(self, chat_id, **kwargs):
        if self.during_fetch is not None:
            hook, self.during_fetch = self.during_fetch, None
            await hook()
        return await super().list_messages(chat_id, **kwargs)


class _InterleavingMatcher(IdentityMatcher):
    """Runs ``during_match`` once before resolving a chat."""

    def __init__(self, contacts):
        super().__init__(contacts)
        self.during_match = None

    async def match_chat(self, chat):
        if self.during_match is not None:
            hook, self.during_match = self.during_match, None
            await hook()
        return await super().match_chat(chat)


class _BrokenChatStore(InMemoryChatStore):
    """Fails message writes and chat creation for chosen chats."""

    def __init__(self):
        super().__init__()
        self.broken_writes: set[str] = set()
        self.broken_saves: set[str] = set()

    async def save_chat(self, chat):
        if chat.chat_id in self.broken_saves:
            raise RuntimeError("chat insert rejected")
        return await super().save_chat(chat)

    async def write_messages(self, chat_id, messages, **kwargs):
        if chat_id in self.broken_writes:
            raise RuntimeError("message write rejected")
        return await super().write_messages(chat_id, messages, **kwargs)


@pytest.fixture
def seeded_source(chat_source: FakeChatSource) -> FakeChatSource:
    chat_source.chats = [remote_chat("c1", username="alice")]
    chat_source.add_messages("c1", remote_messages("c1", range(1, 41)))
    return chat_source


class TestBatchHelpers:
    def test_sort_batch_orders_by_numeric_key_and_dedupes(self):
        batch = [_message("b", "1000"), _message("a", "999"), _message("b", "1000")]
        assert [m.message_id for m in sort_batch(batch)] == ["a", "b"]

    def test_derive_last_message_reads_final_element(self):
        batch = [_message("a", "1"), _message("b", "2", from_user=True)]
        assert derive_last_message(batch) == ("user", False, "b")

    def test_derive_last_message_from_counterpart_needs_reply(self):
        assert derive_last_message([_message("a", "1")]) == ("them", True, "a")

    def test_unsorted_batch_is_rejected(self):
        with pytest.raises(UnsortedBatchError):
            derive_last_message([_message("b", "2"), _message("a", "1")])

    def test_empty_batch_derives_nothing(self):
        assert derive_last_message([]) is None


class TestSyncChats:
    async def test_first_sync_mirrors_chat_and_window(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        chat_store: InMemoryChatStore,
        clock: ManualClock,
    ):
        result = await controller.sync_chats(sync_source="cron")

        assert result.success
        assert (result.synced_chats, result.synced_messages, result.failed_chats) == (1, 30, 0)
        assert result.source == "cron"

        chat = await chat_store.get_chat("c1")
        assert chat is not None
        assert chat.message_count == 30
        assert chat.oldest_message_sort_key == "11"
        assert chat.newest_message_sort_key == "40"
        assert chat.last_message == "message c1-40"
        assert chat.last_message_from == "them"
        assert chat.needs_reply is True
        assert chat.last_messages_synced_at == clock.now
        assert chat.sync_source == "cron"
        assert not chat.has_complete_history

        state = await controller.list_state()
        assert state.newest_cursor == "cursor-newest"
        assert state.oldest_cursor == "cursor-oldest"
        assert state.total_chats == 1
        assert state.lock_id is None

    async def test_unchanged_activity_skips_message_fetch(
        self, controller: ChatSyncController, seeded_source: FakeChatSource
    ):
        await controller.sync_chats()
        calls = len(seeded_source.message_calls)

        second = await controller.sync_chats()

        assert second.synced_messages == 0
        assert len(seeded_source.message_calls) == calls

    async def test_newer_activity_triggers_message_fetch(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        clock: ManualClock,
    ):
        await controller.sync_chats()
        clock.advance(minutes=10)
        seeded_source.chats = [remote_chat("c1", username="alice", last_activity=clock.now)]
        seeded_source.add_messages("c1", [remote_message("c1-41", 41, from_user=True)])

        result = await controller.sync_chats()

        assert result.synced_messages == 30
        assert len(seeded_source.message_calls) == 2

    async def test_force_message_sync_fetches_every_chat(
        self, controller: ChatSyncController, seeded_source: FakeChatSource
    ):
        await controller.sync_chats()
        result = await controller.sync_chats(force_message_sync=True)
        assert result.synced_messages == 30

    async def test_one_failing_chat_does_not_abort_the_pass(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        chat_store: InMemoryChatStore,
    ):
        seeded_source.chats.append(remote_chat("c2", phone="+15551234567"))
        seeded_source.failing_chats.add("c2")

        result = await controller.sync_chats()

        assert result.success
        assert (result.synced_chats, result.failed_chats) == (2, 1)
        failed = await chat_store.get_chat("c2")
        assert failed is not None
        assert failed.last_messages_synced_at is None
        assert failed.message_count == 0

    async def test_store_failure_on_one_chat_is_isolated(
        self,
        chat_source: FakeChatSource,
        matcher: IdentityMatcher,
        state_store: InMemoryStateStore,
        clock: ManualClock,
    ):
        store = _BrokenChatStore()
        store.broken_writes.add("c2")
        store.broken_saves.add("c3")
        chat_source.chats = [
            remote_chat("c1", username="alice"),
            remote_chat("c2", username="bob"),
            remote_chat("c3", username="carol"),
        ]
        for chat_id in ("c1", "c2", "c3"):
            chat_source.add_messages(chat_id, remote_messages(chat_id, range(1, 4)))
        controller = ChatSyncController(chat_source, store, matcher, state_store, clock=clock)

        result = await controller.sync_chats()

        assert result.success
        assert (result.synced_chats, result.synced_messages, result.failed_chats) == (2, 3, 2)
        assert await store.get_chat("c3") is None
        state = await controller.list_state()
        assert state.newest_cursor == "cursor-newest"
        assert state.last_synced_at == clock.now

    async def test_list_failure_returns_error_and_releases_lock(
        self, controller: ChatSyncController, seeded_source: FakeChatSource
    ):
        seeded_source.list_error = SourceRequestError(status_code=503, message="down")

        failed = await controller.sync_chats()

        assert not failed.success
        assert failed.error is not None and "503" in failed.error
        seeded_source.list_error = None
        assert (await controller.sync_chats()).success

    async def test_live_lock_blocks_second_pass(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        state_store: InMemoryStateStore,
        clock: ManualClock,
    ):
        other = SyncLock(chat_list_state(state_store), clock=clock)
        await other.acquire("other-pass")

        blocked = await controller.sync_chats()

        assert not blocked.success
        assert blocked.error is not None and "other-pass" in blocked.error
        assert seeded_source.message_calls == []

    async def test_stale_lock_is_reclaimed(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        state_store: InMemoryStateStore,
        clock: ManualClock,
    ):
        await SyncLock(chat_list_state(state_store), clock=clock).acquire("crashed-pass")
        clock.advance(minutes=11)

        result = await controller.sync_chats()

        assert result.success
        assert (await controller.list_state()).lock_id is None

    async def test_chats_are_linked_to_matching_contacts(
        self,
        chat_source: FakeChatSource,
        chat_store: InMemoryChatStore,
        state_store: InMemoryStateStore,
        clock: ManualClock,
    ):
        alice = Contact(first_name="Alice", instagram="Alice")
        contacts = InMemoryContactStore([alice])
        controller = ChatSyncController(
            chat_source, chat_store, IdentityMatcher(contacts), state_store, clock=clock
        )
        chat_source.chats = [
            remote_chat("c1", username="alice"),
            remote_chat("g1", username="alice", chat_type="group"),
        ]

        await controller.sync_chats()

        single = await chat_store.get_chat("c1")
        group = await chat_store.get_chat("g1")
        assert single is not None and group is not None
        assert single.contact_id == alice.id
        assert single.contact_matched_at == clock.now
        assert group.contact_id is None

    async def test_pinned_chat_keeps_its_contact(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        chat_store: InMemoryChatStore,
    ):
        await chat_store.save_chat(
            Chat(chat_id="c1", username="alice", contact_id="pinned", contact_override=True)
        )

        await controller.sync_chats()

        chat = await chat_store.get_chat("c1")
        assert chat is not None
        assert chat.contact_id == "pinned"
        assert chat.contact_override

    async def test_link_made_while_matching_survives_the_sync(
        self,
        chat_store: InMemoryChatStore,
        contact_store: InMemoryContactStore,
        state_store: InMemoryStateStore,
        contact_service: ContactService,
        clock: ManualClock,
    ):
        alice = await contact_store.insert_contact(Contact(first_name="Alice", instagram="alice"))
        pinned = await contact_store.insert_contact(Contact(first_name="Pinned"))
        matcher = _InterleavingMatcher(contact_store)
        source = FakeChatSource([remote_chat("c1", username="alice")])
        controller = ChatSyncController(source, chat_store, matcher, state_store, clock=clock)
        matcher.during_match = lambda: contact_service.link_chat("c1", pinned.id)

        await controller.sync_chats()

        chat = await chat_store.get_chat("c1")
        assert chat is not None
        assert chat.contact_id == pinned.id != alice.id
        assert chat.contact_override


class TestLoadOlderChats:
    async def test_requires_a_prior_sync(self, controller: ChatSyncController):
        result = await controller.load_older_chats()
        assert not result.success

    async def test_extends_list_backward(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        chat_store: InMemoryChatStore,
    ):
        await controller.sync_chats()
        seeded_source.older_chat_pages = [
            ChatPage(items=[remote_chat("old-1")], oldest_cursor="cursor-older", has_more=False)
        ]

        result = await controller.load_older_chats()

        assert result.success
        assert (result.chats_loaded, result.has_more) == (1, False)
        assert (await controller.list_state()).oldest_cursor == "cursor-older"
        older = await chat_store.get_chat("old-1")
        assert older is not None and older.sync_source == "load_older"


class TestMessageWindow:
    async def test_older_pages_extend_window_until_complete(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        chat_store: InMemoryChatStore,
        clock: ManualClock,
    ):
        await controller.sync_chats()

        result = await controller.load_older_messages("c1")

        assert result.success
        assert (result.messages_loaded, result.has_more) == (10, False)
        chat = await chat_store.get_chat("c1")
        assert chat is not None
        assert chat.message_count == 40
        assert chat.oldest_message_sort_key == "1"
        assert chat.newest_message_sort_key == "40"
        assert chat.has_complete_history
        assert chat.last_full_sync_at == clock.now
        # Older pages never rewrite the last-message summary.
        assert chat.last_message == "message c1-40"

    async def test_complete_chat_short_circuits(
        self, controller: ChatSyncController, seeded_source: FakeChatSource
    ):
        await controller.sync_chats()
        await controller.load_older_messages("c1")
        calls = len(seeded_source.message_calls)

        again = await controller.load_older_messages("c1")

        assert again.success and not again.has_more
        assert len(seeded_source.message_calls) == calls

    async def test_newer_page_moves_newest_edge_and_summary(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        chat_store: InMemoryChatStore,
    ):
        await controller.sync_chats()
        seeded_source.add_messages(
            "c1",
            [
                remote_message("c1-41", 41),
                remote_message("c1-42", 42, text="on my way", from_user=True),
            ],
        )

        result = await controller.load_newer_messages("c1")

        assert result.messages_loaded == 2
        chat = await chat_store.get_chat("c1")
        assert chat is not None
        assert chat.newest_message_sort_key == "42"
        assert chat.message_count == 32
        assert chat.last_message_from == "user"
        assert chat.needs_reply is False
        assert chat.last_message == "on my way"

    async def test_window_edges_compare_numerically(
        self,
        controller: ChatSyncController,
        chat_source: FakeChatSource,
        chat_store: InMemoryChatStore,
    ):
        chat_source.chats = [remote_chat("c1")]
        chat_source.add_messages(
            "c1", [remote_message(f"m{key}", key, minutes=0) for key in (998, 999, 1000, 1001)]
        )

        await controller.sync_chats()

        chat = await chat_store.get_chat("c1")
        assert chat is not None
        assert chat.oldest_message_sort_key == "998"
        assert chat.newest_message_sort_key == "1001"
        assert chat.last_message == "message m1001"

    async def test_empty_chat_loads_first_page_on_older_request(
        self,
        controller: ChatSyncController,
        chat_source: FakeChatSource,
        chat_store: InMemoryChatStore,
    ):
        await chat_store.save_chat(Chat(chat_id="c1"))
        chat_source.add_messages("c1", remote_messages("c1", range(1, 4)))

        result = await controller.load_older_messages("c1")

        assert result.messages_loaded == 3
        assert chat_source.message_calls[-1]["direction"] is None

    async def test_link_made_during_fetch_survives_the_write(
        self,
        chat_store: InMemoryChatStore,
        contact_store: InMemoryContactStore,
        matcher: IdentityMatcher,
        state_store: InMemoryStateStore,
        contact_service: ContactService,
        clock: ManualClock,
    ):
        source = _InterleavingSource([remote_chat("c1", username="alice")])
        source.add_messages("c1", remote_messages("c1", range(1, 6)))
        controller = ChatSyncController(source, chat_store, matcher, state_store, clock=clock)
        await chat_store.save_chat(Chat(chat_id="c1", username="alice"))
        pinned = await contact_store.insert_contact(Contact(first_name="Pinned"))
        source.during_fetch = lambda: contact_service.link_chat("c1", pinned.id)

        loaded = await controller.load_messages("c1")

        chat = await chat_store.get_chat("c1")
        assert loaded.messages_loaded == 5
        assert chat is not None
        assert chat.contact_id == pinned.id
        assert chat.contact_override
        assert chat.message_count == 5

    async def test_unknown_chat_raises(self, controller: ChatSyncController):
        with pytest.raises(ChatNotFoundError):
            await controller.load_messages("missing")

    async def test_window_descriptor_is_consistent_after_paging(
        self, controller: ChatSyncController, seeded_source: FakeChatSource
    ):
        await controller.sync_chats()
        await controller.load_older_messages("c1")

        report = await controller.detect_gaps("c1")

        assert report.consistent
        assert report.stored_count == 40

    async def test_descriptor_drift_is_reported(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        chat_store: InMemoryChatStore,
    ):
        await controller.sync_chats()
        chat = await chat_store.get_chat("c1")
        assert chat is not None
        await chat_store.save_chat(chat.model_copy(update={"message_count": 99}))

        report = await controller.detect_gaps("c1")

        assert not report.consistent
        assert (report.stored_count, report.descriptor_count) == (30, 99)


class TestSendMessage:
    async def test_send_then_confirm_replaces_local_copy(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        chat_store: InMemoryChatStore,
    ):
        await controller.sync_chats()

        sent = await controller.send_message("c1", "hello")

        millis = int(BASE_TIME.timestamp() * 1000)
        assert sent.success
        assert sent.message_id == f"local_{millis}"
        assert sent.pending_id == "pending-1"
        local = await chat_store.get_message("c1", sent.message_id)
        assert local is not None
        assert local.send_status == "sending"
        assert local.pending_id == "pending-1"
        chat = await chat_store.get_chat("c1")
        assert chat is not None
        assert chat.last_message == "hello"
        assert chat.needs_reply is False
        # Unconfirmed sends stay out of the window descriptor.
        assert chat.message_count == 30
        assert chat.newest_message_sort_key == "40"

        seeded_source.add_messages(
            "c1",
            [remote_message("c1-41", 41, text="hello", from_user=True, pending_id="pending-1")],
        )
        await controller.load_newer_messages("c1")

        assert await chat_store.get_message("c1", sent.message_id) is None
        confirmed = await chat_store.get_message("c1", "c1-41")
        assert confirmed is not None and confirmed.send_status == "sent"
        chat = await chat_store.get_chat("c1")
        assert chat is not None
        assert chat.message_count == 31
        assert chat.newest_message_sort_key == "41"

    async def test_failed_send_is_kept_as_failed(
        self,
        controller: ChatSyncController,
        seeded_source: FakeChatSource,
        chat_store: InMemoryChatStore,
    ):
        await controller.sync_chats()
        seeded_source.send_error = SourceRequestError(status_code=500, message="rejected")

        sent = await controller.send_message("c1", "hello")

        assert not sent.success
        assert sent.error is not None and "rejected" in sent.error
        local = await chat_store.get_message("c1", sent.message_id)
        assert local is not None
        assert local.send_status == "failed"
        assert local.send_error == sent.error

    async def test_local_ids_do_not_collide(
        self, controller: ChatSyncController, seeded_source: FakeChatSource
    ):
        await controller.sync_chats()
        first = await controller.send_message("c1", "one")
        second = await controller.send_message("c1", "two")
        assert first.message_id != second.message_id


class TestChatFlags:
    async def test_archive_and_read_state(
        self, controller: ChatSyncController, chat_store: InMemoryChatStore
    ):
        await chat_store.save_chat(Chat(chat_id="c1", unread_count=4))

        assert (await controller.archive_chat("c1")).is_archived
        assert not (await controller.archive_chat("c1", archived=False)).is_archived
        assert (await controller.mark_read("c1")).unread_count == 0
        assert (await controller.mark_unread("c1")).unread_count == 1

    async def test_flags_on_unknown_chat_raise(self, controller: ChatSyncController):
        with pytest.raises(ChatNotFoundError):
            await controller.mark_read("missing")
