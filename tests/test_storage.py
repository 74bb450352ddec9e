"""Tests for the persistent key-value store adapter and token storage."""

from __future__ import annotations

import base64
import json

from resume_sync.events import TOKEN_REFRESHED_EVENT, EventBus
from resume_sync.storage import (
    ACCESS_TOKEN_KEY,
    CapabilityCache,
    JsonFileBackend,
    KeyValueStore,
    MemoryBackend,
    TimedBlobCache,
    TokenStorage,
    decode_token_expiry,
    open_durable_store,
    open_session_store,
)


def _jwt(payload: dict) -> str:
    segment = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")
    return f"eyJhbGciOiJIUzI1NiJ9.{segment}.signature"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestKeyValueStore:
    def test_round_trips_json_values(self):
        store = open_session_store()
        store.set("prefs", {"theme": "dark", "size": 3})
        assert store.get("prefs") == {"theme": "dark", "size": 3}

    def test_missing_key_returns_default(self):
        assert open_session_store().get("nope", "fallback") == "fallback"

    def test_corrupt_record_is_removed_and_reads_as_absent(self):
        backend = MemoryBackend({"broken": "{not json"})
        store = KeyValueStore(backend)

        assert store.get("broken", "default") == "default"
        assert "broken" not in backend

    def test_remove_and_clear(self):
        store = open_session_store()
        store.set("a", 1)
        store.set("b", 2)
        store.remove("a")
        store.remove("missing")
        assert store.keys() == ["b"]
        store.clear()
        assert store.keys() == []


class TestJsonFileBackend:
    def test_values_survive_reopen(self, tmp_path):
        path = tmp_path / "state" / "storage.json"
        open_durable_store(path).set("rememberMe", False)

        assert open_durable_store(path).get("rememberMe") is False
        assert not path.with_suffix(".json.tmp").exists()

    def test_corrupt_file_is_treated_as_empty(self, tmp_path):
        path = tmp_path / "storage.json"
        path.write_text("{{{ definitely not json", encoding="utf-8")

        backend = JsonFileBackend(path)
        assert len(backend) == 0

        backend["k"] = '"v"'
        assert json.loads(path.read_text(encoding="utf-8")) == {"k": '"v"'}


class TestTokenStorage:
    def test_remember_defaults_to_durable_scope(self):
        durable, session = open_session_store(), open_session_store()
        tokens = TokenStorage(durable, session)

        tokens.store_access_token("abc")

        assert durable.get(ACCESS_TOKEN_KEY) == "abc"
        assert session.get(ACCESS_TOKEN_KEY) is None
        stored = tokens.get_stored_access_token()
        assert stored.token == "abc"
        assert stored.remember_me is True

    def test_no_remember_routes_to_session_and_clears_durable(self):
        durable, session = open_session_store(), open_session_store()
        tokens = TokenStorage(durable, session)
        tokens.store_access_token("old", remember=True)

        tokens.store_access_token("new", remember=False)

        assert durable.get(ACCESS_TOKEN_KEY) is None
        assert session.get(ACCESS_TOKEN_KEY) == "new"
        assert tokens.remember_preference is False
        assert tokens.get_stored_access_token().remember_me is False

    def test_clear_keeps_preference(self):
        tokens = TokenStorage(open_session_store())
        tokens.store_access_token("abc", remember=False)

        tokens.clear()

        assert tokens.access_token is None
        assert tokens.remember_preference is False

    def test_expiry_is_decoded_from_jwt(self):
        clock = FakeClock(now=1_700_000_000)
        tokens = TokenStorage(open_session_store(), clock=clock)
        tokens.store_access_token(_jwt({"sub": "u1", "exp": 1_700_000_600}))

        assert tokens.get_stored_access_token().expires_at == 1_700_000_600
        assert not tokens.is_expired()
        assert tokens.is_expired(skew_seconds=600)

    def test_emits_token_refreshed(self):
        events = EventBus()
        seen = []
        events.subscribe(TOKEN_REFRESHED_EVENT, seen.append)

        TokenStorage(open_session_store(), events=events).store_access_token("abc")

        assert seen == [{"accessToken": "abc", "expiresAt": None}]

    def test_decode_token_expiry_handles_garbage(self):
        assert decode_token_expiry(None) is None
        assert decode_token_expiry("opaque-token") is None
        assert decode_token_expiry("a.%%%.c") is None


class TestCapabilityCache:
    def test_unknown_endpoint_is_available(self):
        assert CapabilityCache(open_session_store()).is_available("/notifications")

    def test_missing_verdict_is_sticky_without_ttl(self):
        clock = FakeClock()
        cache = CapabilityCache(open_session_store(), clock=clock)
        cache.mark_unavailable("/notifications")
        clock.now += 10_000

        assert not cache.is_available("/notifications")

    def test_missing_verdict_expires_with_ttl(self):
        clock = FakeClock()
        cache = CapabilityCache(open_session_store(), ttl_seconds=60, clock=clock)
        cache.mark_unavailable("/notifications")

        clock.now += 59
        assert not cache.is_available("/notifications")
        clock.now += 1
        assert cache.is_available("/notifications")

    def test_reset(self):
        cache = CapabilityCache(open_session_store())
        cache.mark_unavailable("/a")
        cache.mark_unavailable("/b")

        cache.reset("/a")
        assert cache.is_available("/a")
        assert not cache.is_available("/b")

        cache.reset()
        assert cache.is_available("/b")


class TestTimedBlobCache:
    def test_returns_payload_until_stale(self):
        clock = FakeClock()
        store = open_session_store()
        cache = TimedBlobCache(store, "page", ttl_seconds=300, clock=clock)
        cache.put({"notifications": [], "count": 0})

        clock.now += 299
        assert cache.get() == {"notifications": [], "count": 0}

        clock.now += 1
        assert cache.get() is None
        assert "page" not in store
