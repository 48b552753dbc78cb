"""Tests for the user directory."""

import pytest

from chatsync.models import ChatUser
from chatsync.testing import TEST_USER_ID, TEST_USER_NAME, seed_room, seed_user


class TestObservation:
    def test_current_user_and_roster(self, chat, remote_store):
        seed_user(remote_store, "bob", "Bob")

        state = chat.state
        assert state.current_user.name == TEST_USER_NAME
        assert state.users_loading is False
        assert sorted(u.id for u in state.all_users) == ["bob", TEST_USER_ID]
        assert chat.resolve_user("bob").name == "Bob"
        assert chat.resolve_user("nobody") is None

    def test_roster_updates_in_place(self, chat, remote_store):
        seed_user(remote_store, "bob", "Bob")
        seed_user(remote_store, "bob", "Robert")
        assert [u.name for u in chat.state.all_users if u.id == "bob"] == ["Robert"]


class TestUserWrites:
    @pytest.mark.asyncio
    async def test_add_user(self, chat, remote_store):
        await chat.add_user({"_id": "carol", "name": "Carol"})
        assert remote_store.get_document("users", "carol")["name"] == "Carol"
        assert chat.resolve_user("carol").name == "Carol"

    @pytest.mark.asyncio
    async def test_update_user_merges(self, chat, remote_store):
        remote_store.insert_raw("users", {**remote_store.get_document("users", TEST_USER_ID), "team": "blue"})

        updated = await chat.update_user(TEST_USER_ID, name="Renamed")

        stored = remote_store.get_document("users", TEST_USER_ID)
        assert updated.name == "Renamed"
        assert stored["name"] == "Renamed"
        assert stored["team"] == "blue"
        assert chat.state.current_user.name == "Renamed"

    @pytest.mark.asyncio
    async def test_update_user_without_id_is_ignored(self, chat, remote_store, caplog):
        before = list(remote_store.executed)

        assert await chat.update_user(None, name="Nobody") is None
        assert await chat.update_user("", name="Nobody") is None

        assert remote_store.executed == before
        assert "without a user id" in caplog.text

    @pytest.mark.asyncio
    async def test_update_unknown_user(self, chat, remote_store):
        assert await chat.update_user("ghost", name="Boo") is None
        assert remote_store.get_document("users", "ghost") is None

    @pytest.mark.asyncio
    async def test_find_user_by_id(self, chat):
        assert (await chat.find_user_by_id(TEST_USER_ID)).name == TEST_USER_NAME
        assert await chat.find_user_by_id("ghost") is None


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, chat, remote_store):
        await chat.subscribe_to_room("r1")
        assert "r1" in remote_store.get_document("users", TEST_USER_ID)["subscriptions"]
        assert chat.state.current_user.is_subscribed_to("r1")

        await chat.unsubscribe_from_room("r1")
        assert "r1" not in remote_store.get_document("users", TEST_USER_ID)["subscriptions"]

    @pytest.mark.asyncio
    async def test_toggle(self, chat, remote_store):
        await chat.toggle_room_subscription("r1")
        assert remote_store.get_document("users", TEST_USER_ID)["subscriptions"]["r1"] is not None

        await chat.toggle_room_subscription("r1")
        assert remote_store.get_document("users", TEST_USER_ID)["subscriptions"] == {"r1": None}
        assert not chat.state.current_user.is_subscribed_to("r1")

    @pytest.mark.asyncio
    async def test_toggle_denied(self, chat, remote_store):
        chat.update_rbac_config({"canSubscribeToRoom": False})
        await chat.toggle_room_subscription("r1")
        assert remote_store.get_document("users", TEST_USER_ID)["subscriptions"] == {}


class TestMarkRoomAsRead:
    @pytest.mark.asyncio
    async def test_clears_mentions_and_bumps_time(self, chat, remote_store):
        room = seed_room(remote_store, "General")
        user = ChatUser(
            id=TEST_USER_ID,
            name=TEST_USER_NAME,
            subscriptions={room.id: "2020-01-01T00:00:00.000Z"},
            mentions={room.id: ["m1", "m2"], "other": ["m3"]},
        )
        remote_store.insert_raw("users", user.to_document())

        await chat.mark_room_as_read(room.id)

        stored = remote_store.get_document("users", TEST_USER_ID)
        assert stored["subscriptions"][room.id] > "2020-01-01T00:00:00.000Z"
        assert stored["mentions"] == {"other": ["m3"]}

    @pytest.mark.asyncio
    async def test_unsubscribed_room_is_untouched(self, chat, remote_store):
        user = ChatUser(id=TEST_USER_ID, name=TEST_USER_NAME, mentions={"r1": ["m1"]})
        remote_store.insert_raw("users", user.to_document())

        await chat.mark_room_as_read("r1")

        assert remote_store.get_document("users", TEST_USER_ID)["mentions"] == {"r1": ["m1"]}
