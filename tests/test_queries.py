"""Tests for statement rendering and in-memory evaluation."""

from datetime import datetime, timezone

import pytest

from chatsync.errors import RemoteStoreError
from chatsync.memory import InMemoryRemoteStore
from chatsync.messages import room_messages_query
from chatsync.queries import ATTACHMENT_FIELDS, AnyOf, Contains, Eq, Gte, Select, Update, Upsert, by_id, statement_kind


class TestStatementText:
    def test_simple_select(self):
        stmt = Select("rooms")
        assert stmt.text == "SELECT * FROM rooms"
        assert stmt.params == {}

    def test_by_id(self):
        stmt = by_id("users", "alice")
        assert stmt.text == "SELECT * FROM users WHERE _id = :id"
        assert stmt.params == {"id": "alice"}

    def test_contains(self):
        stmt = Select("dm_rooms", where=(Contains("participants", "userId", "alice"),))
        assert stmt.text == "SELECT * FROM dm_rooms WHERE array_contains(participants, :userId)"
        assert stmt.params == {"userId": "alice"}

    def test_room_messages_query(self):
        """Retention-bounded feed covers canonical and legacy timestamp fields."""
        cutoff = datetime(2024, 1, 1, tzinfo=timezone.utc)
        stmt = room_messages_query("r1", "messages", cutoff)

        assert stmt.text == (
            "SELECT * FROM COLLECTION messages "
            "(thumbnailImageToken ATTACHMENT, largeImageToken ATTACHMENT, fileAttachmentToken ATTACHMENT) "
            "WHERE roomId = :roomId AND (createdOn >= :date OR timeMs >= :dateMs OR b >= :dateMs) "
            "ORDER BY createdOn ASC"
        )
        assert stmt.params == {
            "roomId": "r1",
            "date": "2024-01-01T00:00:00.000Z",
            "dateMs": 1704067200000,
        }

    def test_room_messages_query_unbounded(self):
        stmt = room_messages_query("r1", "messages", None)
        assert "createdOn >=" not in stmt.text
        assert stmt.params == {"roomId": "r1"}

    def test_upsert(self):
        stmt = Upsert("messages", {"_id": "m1"}, ATTACHMENT_FIELDS[:1])
        assert stmt.text == (
            "INSERT INTO COLLECTION messages (thumbnailImageToken ATTACHMENT) DOCUMENTS (:doc) ON ID CONFLICT DO UPDATE"
        )
        assert stmt.params == {"doc": {"_id": "m1"}}

    def test_update(self):
        stmt = Update("messages", "m1", {"isArchived": True})
        assert stmt.text == "UPDATE messages SET isArchived = :isArchived WHERE _id = :id"
        assert stmt.params == {"isArchived": True, "id": "m1"}

    def test_statement_kind(self):
        assert statement_kind(Select("x")) == "select"
        assert statement_kind(Upsert("x", {"_id": "a"})) == "upsert"
        assert statement_kind(Update("x", "a")) == "update"


class TestInMemoryEvaluation:
    @pytest.fixture
    def store(self):
        store = InMemoryRemoteStore()
        store.insert_raw("m", {"_id": "iso", "roomId": "r", "createdOn": "2024-06-01T00:00:00.000Z"})
        store.insert_raw("m", {"_id": "epoch", "roomId": "r", "timeMs": 1717200000000})
        store.insert_raw("m", {"_id": "odd", "roomId": "r", "b": "not-a-number"})
        store.insert_raw("m", {"_id": "elsewhere", "roomId": "x", "createdOn": "2024-06-01T00:00:00.000Z"})
        return store

    @pytest.mark.asyncio
    async def test_eq_filters(self, store):
        result = await store.execute(Select("m", where=(Eq("roomId", "roomId", "x"),)))
        assert [d["_id"] for d in result.values()] == ["elsewhere"]

    @pytest.mark.asyncio
    async def test_gte_never_matches_across_types(self, store):
        """A string field is never >= a number and vice versa."""
        stmt = Select(
            "m",
            where=(
                Eq("roomId", "roomId", "r"),
                AnyOf((Gte("createdOn", "date", "2024-01-01"), Gte("timeMs", "ms", 0), Gte("b", "ms", 0))),
            ),
        )
        result = await store.execute(stmt)
        assert sorted(d["_id"] for d in result.values()) == ["epoch", "iso"]

    @pytest.mark.asyncio
    async def test_order_by_puts_missing_first(self, store):
        result = await store.execute(Select("m", where=(Eq("roomId", "roomId", "r"),), order_by="createdOn"))
        assert [d["_id"] for d in result.values()][-1] == "iso"

    @pytest.mark.asyncio
    async def test_upsert_merges_existing(self, store):
        await store.execute(Upsert("m", {"_id": "iso", "text": "hi"}))
        doc = store.get_document("m", "iso")
        assert doc["text"] == "hi"
        assert doc["createdOn"] == "2024-06-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_update_missing_document_is_noop(self, store):
        result = await store.execute(Update("m", "nope", {"text": "x"}))
        assert result.mutated_document_ids == []
        assert store.get_document("m", "nope") is None


class TestInMemoryObservers:
    @pytest.mark.asyncio
    async def test_fires_on_registration_and_change(self):
        store = InMemoryRemoteStore()
        seen = []
        store.register_observer(Select("rooms"), lambda result: seen.append(len(result.items)))

        await store.execute(Upsert("rooms", {"_id": "r1"}))
        await store.execute(Select("rooms"))

        assert seen == [0, 1]

    @pytest.mark.asyncio
    async def test_unchanged_result_does_not_fire(self):
        store = InMemoryRemoteStore()
        seen = []
        store.register_observer(Select("rooms", where=(Eq("_id", "id", "r1"),)), seen.append)

        await store.execute(Upsert("other", {"_id": "x"}))

        assert len(seen) == 1

    def test_cancelled_observer_stops(self):
        store = InMemoryRemoteStore()
        seen = []
        handle = store.register_observer(Select("rooms"), seen.append)
        handle.cancel()

        store.insert_raw("rooms", {"_id": "r1"})

        assert len(seen) == 1
        assert store.active_observers() == []

    def test_double_cancel_raises(self):
        store = InMemoryRemoteStore()
        handle = store.register_subscription(Select("rooms"))
        handle.cancel()
        with pytest.raises(RemoteStoreError):
            handle.cancel()

    def test_callback_errors_are_contained(self):
        store = InMemoryRemoteStore()

        def boom(result):
            raise RuntimeError("boom")

        store.register_observer(Select("rooms"), boom)
        store.insert_raw("rooms", {"_id": "r1"})

        assert store.get_document("rooms", "r1") == {"_id": "r1"}
