"""Tests for NotificationStore: optimistic sync, rollback, undo and live updates."""

from __future__ import annotations

import json

import httpx
import pytest

from resume_sync.errors import ServerFault
from resume_sync.events import NOTIFICATION_SYNC_FAILED_EVENT, RATE_LIMIT_EVENT
from resume_sync.notifications import Notification, NotificationStore, NotificationType
from resume_sync.notifications.store import PAGE_CACHE_KEY
from resume_sync.storage import CapabilityCache, TimedBlobCache, open_session_store
from resume_sync.stream import StreamState

IDS = [f"65a1f0c2e4b0a1b2c3d4e5{i:02x}" for i in range(4)]


class FakeServer:
    """In-memory notifications API behind an httpx MockTransport."""

    def __init__(self, count: int = 3):
        self.items = [
            {"_id": IDS[i], "type": "info", "title": f"Server {i}", "message": "", "read": False,
             "createdAt": f"2024-01-0{i + 1}T00:00:00Z"}
            for i in range(count)
        ]
        self.requests = []
        self.fail_writes_with = None
        self.list_status = 200
        self.stream_response = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        path = request.url.path.removeprefix("/api")

        if path == "/notifications/stream":
            if self.stream_response is not None:
                return self.stream_response()
            return httpx.Response(404)
        if request.method == "GET" and path == "/notifications":
            if self.list_status != 200:
                return httpx.Response(self.list_status, json={"message": "unavailable"})
            return httpx.Response(200, json={"data": {"notifications": self.items, "count": len(self.items)}})

        if self.fail_writes_with:
            return httpx.Response(self.fail_writes_with, json={"message": "write failed"})
        if request.method == "PATCH" and path == "/notifications/read-all":
            for item in self.items:
                item["read"] = True
        elif request.method == "DELETE" and path == "/notifications":
            self.items = []
        else:
            item = self._find(path.split("/")[2])
            if item is None:
                return httpx.Response(404, json={"message": "Notification not found"})
            if request.method == "PATCH":
                item["read"] = True
            else:
                self.items.remove(item)
        return httpx.Response(200, json={"success": True})

    def _find(self, notification_id):
        return next((i for i in self.items if i["_id"] == notification_id), None)

    def writes(self):
        return [r for r in self.requests if r[0] != "GET"]


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def make_store(client_factory, server):
    def _make(**kwargs) -> NotificationStore:
        client = client_factory(server)
        return NotificationStore(client, **kwargs)

    return _make


class TestFetch:
    @pytest.mark.asyncio
    async def test_fetch_replaces_state(self, make_store, server):
        store = make_store()
        await store.fetch()

        assert [n.id for n in store.notifications] == IDS[:3]
        assert store.total_count == 3
        assert store.unread_count == 3
        assert not store.is_loading
        assert ("GET", "/api/notifications") in server.requests

    @pytest.mark.asyncio
    async def test_missing_endpoint_is_remembered(self, make_store, server):
        server.list_status = 404
        generated = [Notification(id="local-1", title="Welcome", created_at="2024-01-01T00:00:00Z")]
        store = make_store(fallback=lambda: generated)

        await store.fetch()
        await store.fetch(force=True)

        assert server.requests == [("GET", "/api/notifications")]
        assert not store.capabilities.is_available("/notifications")
        assert [n.id for n in store.notifications] == ["local-1"]

    @pytest.mark.asyncio
    async def test_service_unavailable_keeps_state(self, make_store, server):
        store = make_store()
        await store.fetch()
        server.list_status = 503

        await store.fetch(force=True)

        assert len(store.notifications) == 3
        assert store.capabilities.is_available("/notifications")

    @pytest.mark.asyncio
    async def test_page_cache_round_trip(self, make_store, server):
        kv = open_session_store()
        store = make_store(page_cache=TimedBlobCache(kv, PAGE_CACHE_KEY, ttl_seconds=300))
        await store.fetch()

        fresh = make_store(page_cache=TimedBlobCache(kv, PAGE_CACHE_KEY, ttl_seconds=300))
        assert fresh.hydrate()
        assert [n.id for n in fresh.notifications] == IDS[:3]


class TestOptimisticMutations:
    @pytest.mark.asyncio
    async def test_mark_read_confirms_and_refetches(self, make_store, server):
        store = make_store()
        await store.fetch()

        await store.mark_read(IDS[0])

        assert ("PATCH", f"/api/notifications/{IDS[0]}/read") in server.requests
        assert server.requests[-1] == ("GET", "/api/notifications")
        assert store.notifications[0].read
        assert store.unread_count == 2

    @pytest.mark.asyncio
    async def test_dismiss_rollback_restores_exact_list(self, make_store, server):
        store = make_store()
        await store.fetch()
        before = store.notifications
        failures = []
        store.events.subscribe(NOTIFICATION_SYNC_FAILED_EVENT, failures.append)
        server.fail_writes_with = 500

        with pytest.raises(ServerFault):
            await store.dismiss(IDS[1])

        assert store.notifications == before
        assert store.total_count == 3
        assert isinstance(store.last_error, ServerFault)
        assert failures[0]["action"] == "dismiss"
        assert not store.undo()

    @pytest.mark.asyncio
    async def test_mark_all_read_rollback(self, make_store, server):
        store = make_store()
        await store.fetch()
        server.fail_writes_with = 502

        with pytest.raises(ServerFault):
            await store.mark_all_read()

        assert store.unread_count == 3

    @pytest.mark.asyncio
    async def test_not_found_is_treated_as_consistent(self, make_store, server):
        store = make_store()
        await store.fetch()
        server.items.pop(0)

        await store.dismiss(IDS[0])

        assert IDS[0] not in [n.id for n in store.notifications]
        assert store.last_error is None

    @pytest.mark.asyncio
    async def test_client_only_ids_never_hit_the_server(self, make_store, server):
        store = make_store()
        local = store.add({"title": "Saved locally", "type": "success"})

        await store.mark_read(local.id)
        await store.dismiss(local.id)

        assert server.writes() == []
        assert store.notifications == []

    @pytest.mark.asyncio
    async def test_custom_server_id_predicate(self, make_store, server):
        store = make_store(is_server_id=lambda value: value.startswith("srv_"))
        store.add(Notification(id="srv_1", title="x"))

        await store.mark_read("srv_1")

        assert ("PATCH", "/api/notifications/srv_1/read") in server.requests

    @pytest.mark.asyncio
    async def test_bulk_ops_skip_missing_endpoint(self, make_store, server):
        capabilities = CapabilityCache(open_session_store())
        capabilities.mark_unavailable("/notifications")
        store = make_store(capabilities=capabilities)
        store.add({"title": "a"})

        await store.mark_all_read()
        await store.clear_all()

        assert server.requests == []
        assert store.notifications == []


class TestUndo:
    @pytest.mark.asyncio
    async def test_undo_after_clear_all_is_local(self, make_store, server):
        store = make_store()
        await store.fetch()
        before = store.notifications

        await store.clear_all()
        assert store.notifications == []
        request_count = len(server.requests)

        assert store.undo()
        assert store.notifications == before
        assert len(server.requests) == request_count

    @pytest.mark.asyncio
    async def test_undo_dismiss_of_local_notification(self, make_store):
        store = make_store()
        first = store.add({"title": "one"})
        store.add({"title": "two"})

        await store.dismiss(first.id)
        assert len(store.notifications) == 1

        assert store.undo()
        assert [n.title for n in store.notifications] == ["two", "one"]
        assert not store.undo()


class TestLiveUpdates:
    @pytest.mark.asyncio
    async def test_stream_pushes_are_applied(self, make_store, server, event_stream, wait_for):
        pushed = {"_id": IDS[3], "type": "warning", "title": "Pushed"}
        server.stream_response = lambda: event_stream([
            "event: connected\ndata: {}\n\n",
            f"event: notification\ndata: {json.dumps(pushed)}\n\n",
        ], hold=True)
        store = make_store()

        await store.connect()
        try:
            await wait_for(lambda: store.notifications and store.notifications[0].id == IDS[3])
            assert store.stream_state is StreamState.OPEN
            assert store.total_count == 4
            assert not store.poller.is_running
        finally:
            await store.aclose()
        assert store.stream_state is StreamState.CLOSED

    @pytest.mark.asyncio
    async def test_initial_event_replaces_list(self, make_store, server, event_stream, wait_for):
        initial = {"notifications": [{"_id": IDS[3], "title": "Only"}], "count": 1}
        server.stream_response = lambda: event_stream(
            [f"event: initial\ndata: {json.dumps(initial)}\n\n"], hold=True
        )
        store = make_store()

        await store.connect()
        try:
            await wait_for(lambda: [n.id for n in store.notifications] == [IDS[3]])
            assert store.total_count == 1
        finally:
            await store.aclose()

    @pytest.mark.asyncio
    async def test_stream_failure_falls_back_to_polling(self, make_store, server, wait_for):
        store = make_store()

        await store.connect()
        try:
            await wait_for(lambda: store.stream_state is StreamState.DEGRADED_POLLING)
            assert store.poller.is_running
        finally:
            await store.aclose()
        assert not store.poller.is_running

    @pytest.mark.asyncio
    async def test_rate_limit_broadcast_becomes_notification(self, make_store):
        store = make_store()
        await store.connect(stream=False)
        try:
            store.events.emit(RATE_LIMIT_EVENT, {"message": "Slow down"})
            assert store.notifications[0].type is NotificationType.RATE_LIMIT
            assert store.notifications[0].message == "Slow down"
        finally:
            await store.aclose()


class TestPollingActivity:
    @pytest.mark.asyncio
    async def test_mutation_resumes_idle_polling(self, make_store, wait_for):
        store = make_store(poll_interval=0.01, idle_timeout=0.05)
        local = store.add({"title": "Draft saved"})
        await store.connect(stream=False)
        try:
            await wait_for(lambda: store.poller.paused)

            await store.mark_read(local.id)

            assert store.poller.is_running
            assert not store.poller.paused
        finally:
            await store.aclose()
