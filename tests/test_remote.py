"""Tests for the HTTP remote store."""

import asyncio
import json

import httpx
import pytest

from chatsync import Chat, ChatOptions
from chatsync.errors import RemoteStoreError
from chatsync.queries import Select, Upsert, by_id
from chatsync.remote import EXECUTE_PATH, HttpRemoteStore


class FakeServer:
    """Records requests and answers with queued responses.

    Each response is a factory so that every request gets a fresh httpx.Response.
    """

    def __init__(self, *responses):
        self.requests = []
        self.responses = list(responses)

    def __call__(self, request):
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)()
        return self.responses[0]()


def ok(items=(), mutated=()):
    return lambda: httpx.Response(200, json={"items": list(items), "mutatedDocumentIds": list(mutated)})


@pytest.fixture
def make_store():
    def factory(server, **kwargs):
        return HttpRemoteStore("https://store.example.com/", transport=httpx.MockTransport(server), **kwargs)

    return factory


class TestExecute:
    @pytest.mark.asyncio
    async def test_posts_statement_and_args(self, make_store):
        server = FakeServer(ok(items=[{"value": {"_id": "alice", "name": "Alice"}}]))
        store = make_store(server, bearer_token="tok")

        result = await store.execute(by_id("users", "alice"))

        request = server.requests[0]
        assert request.method == "POST"
        assert str(request.url) == f"https://store.example.com{EXECUTE_PATH}"
        assert request.headers["Authorization"] == "Bearer tok"
        assert json.loads(request.content) == {
            "statement": "SELECT * FROM users WHERE _id = :id",
            "args": {"id": "alice"},
        }
        assert result.first() == {"_id": "alice", "name": "Alice"}
        await store.aclose()

    @pytest.mark.asyncio
    async def test_bare_items_and_mutations(self, make_store):
        server = FakeServer(ok(items=[{"_id": "r1"}], mutated=["r1"]))
        store = make_store(server)

        result = await store.execute(Upsert("rooms", {"_id": "r1"}))

        assert result.values() == [{"_id": "r1"}]
        assert result.mutated_document_ids == ["r1"]
        assert "Authorization" not in server.requests[0].headers
        await store.aclose()

    @pytest.mark.asyncio
    async def test_empty_body(self, make_store):
        store = make_store(FakeServer(lambda: httpx.Response(204)))
        result = await store.execute(Select("rooms"))
        assert result.items == []
        await store.aclose()

    @pytest.mark.asyncio
    async def test_error_status_raises(self, make_store):
        store = make_store(FakeServer(lambda: httpx.Response(500, text="boom")))
        with pytest.raises(RemoteStoreError, match="500"):
            await store.execute(Select("rooms"))
        await store.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_raises(self, make_store):
        def broken(request):
            raise httpx.ConnectError("refused", request=request)

        store = make_store(broken)
        with pytest.raises(RemoteStoreError, match="failed"):
            await store.execute(Select("rooms"))
        await store.aclose()


class TestPollingObservers:
    @pytest.mark.asyncio
    async def test_observer_fires_on_change_only(self, make_store):
        server = FakeServer(ok(), ok(), ok(items=[{"_id": "r1"}]))
        store = make_store(server, poll_interval=0.01)
        seen = []

        handle = store.register_observer(Select("rooms"), lambda result: seen.append(result.values()))
        for _ in range(100):
            if len(seen) >= 2:
                break
            await asyncio.sleep(0.01)
        handle.cancel()

        assert seen[:2] == [[], [{"_id": "r1"}]]
        await store.aclose()

    def test_observer_requires_running_loop(self):
        store = HttpRemoteStore("https://store.example.com", transport=httpx.MockTransport(FakeServer(ok())))
        with pytest.raises(RemoteStoreError, match="event loop"):
            store.register_observer(Select("rooms"), lambda result: None)
        store.close()

    @pytest.mark.asyncio
    async def test_subscription_is_local_handle(self, make_store):
        server = FakeServer(ok())
        store = make_store(server)
        handle = store.register_subscription(Select("rooms"))
        handle.cancel()
        assert handle.is_cancelled
        assert server.requests == []
        await store.aclose()

    @pytest.mark.asyncio
    async def test_attachments_unsupported(self, make_store):
        store = make_store(FakeServer(ok()))
        with pytest.raises(RemoteStoreError):
            await store.new_attachment(b"x", {})
        await store.aclose()


class TestChatOverHttp:
    @pytest.mark.asyncio
    async def test_chat_observes_over_http(self):
        def server(request):
            statement = json.loads(request.content)["statement"]
            if statement.startswith("SELECT * FROM rooms"):
                return ok(items=[{"_id": "r1", "name": "General"}])()
            return ok()()

        store = HttpRemoteStore("https://store.example.com", transport=httpx.MockTransport(server), poll_interval=0.01)
        chat = await Chat.create(
            ChatOptions(url="https://store.example.com", user_id="alice", auto_subscribe_rooms=False),
            store,
        )
        for _ in range(100):
            if chat.public_rooms():
                break
            await asyncio.sleep(0.01)

        assert [r.name for r in chat.public_rooms()] == ["General"]
        await chat.dispose()
