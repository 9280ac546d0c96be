"""Tests for CRM batch reconciliation and user-initiated contact operations."""

from __future__ import annotations

from datetime import timedelta

import pytest

from opsmirror.sync.contacts import ContactService, ContactUpsertReconciler
from opsmirror.sync.errors import ChatNotFoundError, ContactNotFoundError, SourceRequestError
from opsmirror.sync.models import Chat, Contact
from opsmirror.testing import (
    FakeContactSource,
    InMemoryChatStore,
    InMemoryContactStore,
    ManualClock,
)
from opsmirror.testing.builders import BASE_TIME

pytestmark = pytest.mark.unit


def _record(dex_id: str, *, updated_minutes: int = -120, **fields) -> dict:
    return {
        "id": dex_id,
        "updated_at": (BASE_TIME + timedelta(minutes=updated_minutes)).isoformat(),
        **fields,
    }


class TestApplyBatch:
    async def test_new_record_is_added(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore, clock
    ):
        result = await reconciler.apply_batch(
            [
                _record(
                    "dex-1",
                    first_name="Ada",
                    instagram="@ada",
                    emails=[{"email": "ada@example.com"}],
                    phones=[{"phone_number": "0412 345 678"}],
                )
            ]
        )

        assert (result.processed, result.added, result.errors) == (1, 1, 0)
        contact = await contact_store.get_by_dex_id("dex-1")
        assert contact is not None
        assert contact.instagram == "ada"
        assert contact.emails == ["ada@example.com"]
        assert [p.phone for p in contact.phones] == ["+61412345678"]
        assert contact.normalized_phones == ["61412345678"]
        assert contact.last_synced_at == clock.now
        assert contact.last_modified_at is None

    async def test_replaying_a_batch_is_idempotent(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore
    ):
        batch = [_record("dex-1", first_name="Ada"), _record("dex-2", first_name="Grace")]
        await reconciler.apply_batch(batch)
        writes_after_first = contact_store.writes

        second = await reconciler.apply_batch(batch)

        assert (second.added, second.updated, second.skipped) == (0, 0, 2)
        assert contact_store.writes == writes_after_first
        assert len(await contact_store.list_contacts()) == 2

    async def test_newer_upstream_record_updates(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore, clock
    ):
        await reconciler.apply_batch([_record("dex-1", first_name="Ada")])
        clock.advance(hours=1)

        result = await reconciler.apply_batch(
            [_record("dex-1", updated_minutes=30, first_name="Ada", last_name="Lovelace")]
        )

        assert result.updated == 1
        contact = await contact_store.get_by_dex_id("dex-1")
        assert contact is not None
        assert contact.last_name == "Lovelace"
        assert contact.last_synced_at == clock.now

    async def test_malformed_records_are_isolated(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore
    ):
        batch = [_record(f"dex-{i}", first_name=f"Person {i}") for i in range(10)]
        batch[5]["updated_at"] = "not a date"

        result = await reconciler.apply_batch(batch)

        assert result.processed == 10
        assert result.errors == 1
        assert result.added == 9
        assert result.error_messages[0].startswith("dex-5:")
        assert len(await contact_store.list_contacts()) == 9

    async def test_record_without_id_is_labelled_by_position(
        self, reconciler: ContactUpsertReconciler
    ):
        result = await reconciler.apply_batch([{"updated_at": BASE_TIME.isoformat()}])
        assert result.errors == 1
        assert result.error_messages[0].startswith("record[0]:")

    async def test_record_without_timestamp_is_added_then_treated_as_unchanged(
        self,
        reconciler: ContactUpsertReconciler,
        contact_store: InMemoryContactStore,
        clock: ManualClock,
    ):
        first = await reconciler.apply_batch([{"id": "dex-1", "first_name": "Alice"}])

        assert (first.added, first.errors) == (1, 0)
        clock.advance(hours=1)

        again = await reconciler.apply_batch(
            [{"id": "dex-1", "updated_at": None, "first_name": "Renamed"}]
        )

        assert again.skipped == 1
        contact = await contact_store.get_by_dex_id("dex-1")
        assert contact is not None and contact.first_name == "Alice"

    async def test_local_only_fields_survive_updates(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore, clock
    ):
        await contact_store.insert_contact(
            Contact(
                dex_id="dex-1",
                first_name="Ada",
                notes="met at the conference",
                tags=["friend"],
                lead_status="warm",
                last_synced_at=BASE_TIME - timedelta(days=1),
            )
        )

        await reconciler.apply_batch([_record("dex-1", first_name="Ada B")])

        contact = await contact_store.get_by_dex_id("dex-1")
        assert contact is not None
        assert contact.first_name == "Ada B"
        assert contact.notes == "met at the conference"
        assert contact.tags == ["friend"]
        assert contact.lead_status == "warm"


class TestProtectionWindow:
    async def _seed(self, contact_store: InMemoryContactStore) -> None:
        await contact_store.insert_contact(
            Contact(
                dex_id="dex-1",
                first_name="Local",
                last_modified_at=BASE_TIME,
                last_synced_at=BASE_TIME - timedelta(days=1),
            )
        )

    async def test_recent_local_edit_blocks_feed(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore, clock
    ):
        await self._seed(contact_store)
        clock.advance(minutes=2)

        result = await reconciler.apply_batch([_record("dex-1", updated_minutes=1, first_name="X")])

        assert result.skipped == 1
        contact = await contact_store.get_by_dex_id("dex-1")
        assert contact is not None and contact.first_name == "Local"

    async def test_window_boundary_is_inclusive(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore, clock
    ):
        await self._seed(contact_store)
        clock.advance(minutes=5)

        result = await reconciler.apply_batch([_record("dex-1", updated_minutes=1, first_name="X")])

        assert result.skipped == 1

    async def test_expired_window_lets_feed_through(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore, clock
    ):
        await self._seed(contact_store)
        clock.advance(minutes=6)

        result = await reconciler.apply_batch(
            [_record("dex-1", updated_minutes=1, first_name="Remote")]
        )

        assert result.updated == 1
        contact = await contact_store.get_by_dex_id("dex-1")
        assert contact is not None
        assert contact.first_name == "Remote"
        assert contact.last_modified_at == BASE_TIME

    async def test_force_update_overrides_protection(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore, clock
    ):
        await self._seed(contact_store)
        clock.advance(minutes=1)

        result = await reconciler.apply_batch(
            [_record("dex-1", updated_minutes=-600, first_name="Remote")], force_update=True
        )

        assert result.updated == 1

    def test_is_protected_without_local_edit(self, clock):
        reconciler = ContactUpsertReconciler(InMemoryContactStore(), clock=clock)
        assert not reconciler.is_protected(Contact(first_name="A"), clock.now)


class TestAdoption:
    async def test_local_contact_is_adopted_by_handle(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore
    ):
        local = await contact_store.insert_contact(Contact(first_name="Ada", instagram="ada"))

        result = await reconciler.apply_batch(
            [_record("dex-9", first_name="Ada", last_name="Lovelace", instagram="@ada")]
        )

        assert result.updated == 1
        contacts = await contact_store.list_contacts()
        assert len(contacts) == 1
        assert contacts[0].id == local.id
        assert contacts[0].dex_id == "dex-9"
        assert contacts[0].last_name == "Lovelace"

    async def test_protected_adoption_still_links_external_id(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore, clock
    ):
        local = await contact_store.insert_contact(
            Contact(first_name="Mine", instagram="ada", last_modified_at=clock.now)
        )

        result = await reconciler.apply_batch(
            [_record("dex-9", first_name="Theirs", instagram="ada")]
        )

        assert result.skipped == 1
        adopted = await contact_store.get_contact(local.id)
        assert adopted is not None
        assert adopted.dex_id == "dex-9"
        assert adopted.first_name == "Mine"

    async def test_handle_owned_by_other_record_creates_new_contact(
        self, reconciler: ContactUpsertReconciler, contact_store: InMemoryContactStore
    ):
        await contact_store.insert_contact(
            Contact(dex_id="dex-other", first_name="Ada", instagram="ada")
        )

        result = await reconciler.apply_batch([_record("dex-9", first_name="Ada", instagram="ada")])

        assert result.added == 1
        contacts = await contact_store.list_contacts()
        assert sorted(c.dex_id for c in contacts) == ["dex-9", "dex-other"]


class TestRematchAfterBatch:
    async def test_new_contact_links_existing_chat(
        self,
        reconciler: ContactUpsertReconciler,
        contact_store: InMemoryContactStore,
        chat_store: InMemoryChatStore,
    ):
        await chat_store.save_chat(Chat(chat_id="c1", username="Alice99"))

        await reconciler.apply_batch([_record("dex-1", first_name="Alice", instagram="alice99")])

        contact = await contact_store.get_by_dex_id("dex-1")
        chat = await chat_store.get_chat("c1")
        assert contact is not None and chat is not None
        assert chat.contact_id == contact.id

    async def test_handle_change_moves_chat_links(
        self,
        reconciler: ContactUpsertReconciler,
        contact_store: InMemoryContactStore,
        chat_store: InMemoryChatStore,
        clock: ManualClock,
    ):
        await reconciler.apply_batch([_record("dex-1", first_name="Alice", instagram="old")])
        contact = await contact_store.get_by_dex_id("dex-1")
        assert contact is not None
        await chat_store.save_chat(Chat(chat_id="old-chat", username="old", contact_id=contact.id))
        await chat_store.save_chat(Chat(chat_id="new-chat", username="new"))
        clock.advance(hours=1)

        await reconciler.apply_batch(
            [_record("dex-1", updated_minutes=30, first_name="Alice", instagram="new")]
        )

        old_chat = await chat_store.get_chat("old-chat")
        new_chat = await chat_store.get_chat("new-chat")
        assert old_chat is not None and new_chat is not None
        assert old_chat.contact_id is None
        assert new_chat.contact_id == contact.id

    async def test_lookup_failure_does_not_stop_other_rematches(
        self,
        reconciler: ContactUpsertReconciler,
        contact_store: InMemoryContactStore,
        chat_store: InMemoryChatStore,
        monkeypatch: pytest.MonkeyPatch,
    ):
        await chat_store.save_chat(Chat(chat_id="c1", username="alice99"))
        await chat_store.save_chat(Chat(chat_id="c2", username="bob77"))
        lookup = contact_store.get_contact
        calls = 0

        async def _flaky_get_contact(contact_id: str):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("connection reset")
            return await lookup(contact_id)

        monkeypatch.setattr(contact_store, "get_contact", _flaky_get_contact)

        result = await reconciler.apply_batch(
            [_record("dex-1", instagram="alice99"), _record("dex-2", instagram="bob77")]
        )

        assert (result.added, result.errors) == (2, 0)
        bob = await contact_store.get_by_dex_id("dex-2")
        first = await chat_store.get_chat("c1")
        second = await chat_store.get_chat("c2")
        assert bob is not None and first is not None and second is not None
        assert first.contact_id is None
        assert second.contact_id == bob.id


class TestCreateLocalContact:
    async def test_creates_contact_with_normalized_identifiers(
        self, contact_service: ContactService, clock
    ):
        result = await contact_service.create_local_contact(
            first_name="Eve", instagram="@eve", whatsapp="0412 345 678"
        )

        assert result.created
        assert result.contact.dex_id is None
        assert result.contact.instagram == "eve"
        assert result.contact.whatsapp == "+61412345678"
        assert not result.contact.do_not_sync_to_dex
        assert result.contact.last_modified_at == clock.now

    async def test_phone_only_contact_is_never_pushed(self, contact_service: ContactService):
        result = await contact_service.create_local_contact(whatsapp="+15551234567")
        assert result.contact.do_not_sync_to_dex

    async def test_existing_contact_is_returned(
        self, contact_service: ContactService, contact_store: InMemoryContactStore
    ):
        existing = await contact_store.insert_contact(
            Contact(first_name="Bob", whatsapp="+61412345678")
        )

        result = await contact_service.create_local_contact(whatsapp="0412345678")

        assert not result.created
        assert result.contact.id == existing.id

    async def test_empty_request_is_rejected(self, contact_service: ContactService):
        with pytest.raises(ValueError):
            await contact_service.create_local_contact()

    async def test_new_contact_claims_matching_chat(
        self, contact_service: ContactService, chat_store: InMemoryChatStore
    ):
        await chat_store.save_chat(Chat(chat_id="wa-1", phone_number="+61 412 345 678"))

        result = await contact_service.create_local_contact(whatsapp="0412 345 678")

        chat = await chat_store.get_chat("wa-1")
        assert chat is not None and chat.contact_id == result.contact.id


class TestEditContact:
    async def _crm_contact(self, contact_store: InMemoryContactStore, **fields) -> Contact:
        return await contact_store.insert_contact(
            Contact(dex_id="dex-1", first_name="Ada", description="old", **fields)
        )

    async def test_edit_pushes_writeback_fields(
        self,
        contact_service: ContactService,
        contact_store: InMemoryContactStore,
        contact_source: FakeContactSource,
        clock: ManualClock,
    ):
        contact = await self._crm_contact(contact_store)
        clock.advance(minutes=3)

        result = await contact_service.edit_contact(contact.id, first_name="Augusta", notes="n")

        assert result.pushed_upstream
        assert result.contact.first_name == "Augusta"
        assert result.contact.last_modified_at == clock.now
        assert contact_source.updates == [("dex-1", {"first_name": "Augusta"})]

    async def test_cleared_field_is_pushed_as_empty_string(
        self,
        contact_service: ContactService,
        contact_store: InMemoryContactStore,
        contact_source: FakeContactSource,
    ):
        contact = await self._crm_contact(contact_store)

        await contact_service.edit_contact(contact.id, description=None)

        assert contact_source.updates == [("dex-1", {"description": ""})]

    async def test_local_only_edit_is_not_pushed(
        self,
        contact_service: ContactService,
        contact_store: InMemoryContactStore,
        contact_source: FakeContactSource,
    ):
        contact = await self._crm_contact(contact_store)

        result = await contact_service.edit_contact(contact.id, notes="private", tags=["vip"])

        assert not result.pushed_upstream
        assert contact_source.updates == []
        assert result.contact.tags == ["vip"]

    async def test_opted_out_contact_is_not_pushed(
        self,
        contact_service: ContactService,
        contact_store: InMemoryContactStore,
        contact_source: FakeContactSource,
    ):
        contact = await self._crm_contact(contact_store, do_not_sync_to_dex=True)

        await contact_service.edit_contact(contact.id, first_name="Augusta")

        assert contact_source.updates == []

    async def test_push_failure_keeps_local_edit(
        self,
        contact_service: ContactService,
        contact_store: InMemoryContactStore,
        contact_source: FakeContactSource,
    ):
        contact = await self._crm_contact(contact_store)
        contact_source.update_error = SourceRequestError(
            status_code=500, message="boom", source="dex"
        )

        result = await contact_service.edit_contact(contact.id, first_name="Augusta")

        assert not result.pushed_upstream
        assert result.push_error is not None and "boom" in result.push_error
        stored = await contact_store.get_contact(contact.id)
        assert stored is not None and stored.first_name == "Augusta"

    async def test_handle_edit_relinks_chats(
        self,
        contact_service: ContactService,
        contact_store: InMemoryContactStore,
        chat_store: InMemoryChatStore,
    ):
        contact = await self._crm_contact(contact_store, instagram="ada")
        await chat_store.save_chat(Chat(chat_id="c-old", username="ada", contact_id=contact.id))
        await chat_store.save_chat(Chat(chat_id="c-new", username="ada.lovelace"))

        await contact_service.edit_contact(contact.id, instagram="@ada.lovelace")

        old_chat = await chat_store.get_chat("c-old")
        new_chat = await chat_store.get_chat("c-new")
        assert old_chat is not None and new_chat is not None
        assert old_chat.contact_id is None
        assert new_chat.contact_id == contact.id

    async def test_unknown_field_is_rejected(
        self, contact_service: ContactService, contact_store: InMemoryContactStore
    ):
        contact = await self._crm_contact(contact_store)
        with pytest.raises(ValueError, match="dex_id"):
            await contact_service.edit_contact(contact.id, dex_id="dex-2")

    async def test_missing_contact_raises(self, contact_service: ContactService):
        with pytest.raises(ContactNotFoundError):
            await contact_service.edit_contact("missing", first_name="X")


class TestChatOverride:
    async def test_link_and_release(
        self,
        contact_service: ContactService,
        contact_store: InMemoryContactStore,
        chat_store: InMemoryChatStore,
    ):
        matched = await contact_store.insert_contact(Contact(first_name="A", instagram="alice"))
        pinned = await contact_store.insert_contact(Contact(first_name="B"))
        await chat_store.save_chat(Chat(chat_id="c1", username="alice", contact_id=matched.id))

        await contact_service.link_chat("c1", pinned.id)
        chat = await chat_store.get_chat("c1")
        assert chat is not None
        assert chat.contact_id == pinned.id
        assert chat.contact_override

        restored = await contact_service.release_chat_override("c1")
        chat = await chat_store.get_chat("c1")
        assert restored == matched.id
        assert chat is not None
        assert chat.contact_id == matched.id
        assert not chat.contact_override

    async def test_link_validates_both_sides(
        self,
        contact_service: ContactService,
        contact_store: InMemoryContactStore,
        chat_store: InMemoryChatStore,
    ):
        contact = await contact_store.insert_contact(Contact(first_name="A"))
        await chat_store.save_chat(Chat(chat_id="c1"))

        with pytest.raises(ChatNotFoundError):
            await contact_service.link_chat("missing", contact.id)
        with pytest.raises(ContactNotFoundError):
            await contact_service.link_chat("c1", "missing")
