"""Persistent key-value storage for client-side state.

Holds the bearer token, the remember-me preference, endpoint capability
verdicts and a small cached page of notifications. Two scopes exist:
``durable`` (a JSON file that survives restarts) and ``session`` (process
memory).
"""

from __future__ import annotations

import base64
import json
import logging
import time
from collections.abc import MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from .events import TOKEN_REFRESHED_EVENT, EventBus

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "accessToken"
ACCESS_TOKEN_EXP_KEY = "accessTokenExpiresAt"
REMEMBER_ME_KEY = "rememberMe"
CAPABILITIES_KEY = "endpointCapabilities"

Clock = Callable[[], float]


class MemoryBackend(dict):
    """Session-scoped backend; forgotten when the process exits."""


class JsonFileBackend(MutableMapping):
    """Durable string->string mapping persisted as one JSON object.

    Every write rewrites the file through a temp file + rename so a crash
    never leaves a half-written document behind.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser()
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("storage_load_failed path=%s error=%s", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            logger.warning("storage_load_failed path=%s error=not a mapping", self.path)
            return {}
        return {str(k): v for k, v in payload.items() if isinstance(v, str)}

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        temp_path.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
        temp_path.replace(self.path)

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        self._data[key] = value
        self._write()

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._write()

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def clear(self) -> None:
        self._data.clear()
        self._write()


class KeyValueStore:
    """JSON (de)serializing wrapper over a string->string backend.

    A record that cannot be decoded is treated as absent and removed.
    """

    def __init__(self, backend: Optional[MutableMapping] = None, name: str = "memory"):
        self._backend = backend if backend is not None else MemoryBackend()
        self.name = name

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._backend.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("storage_record_corrupt store=%s key=%s", self.name, key)
            self.remove(key)
            return default

    def set(self, key: str, value: Any) -> None:
        self._backend[key] = json.dumps(value, ensure_ascii=False)

    def remove(self, key: str) -> None:
        if key in self._backend:
            del self._backend[key]

    def clear(self) -> None:
        self._backend.clear()

    def keys(self) -> List[str]:
        return list(self._backend.keys())

    def __contains__(self, key: str) -> bool:
        return key in self._backend


def open_durable_store(path: Path | str) -> KeyValueStore:
    return KeyValueStore(JsonFileBackend(path), name="durable")


def open_session_store() -> KeyValueStore:
    return KeyValueStore(MemoryBackend(), name="session")


def decode_token_expiry(token: Optional[str]) -> Optional[float]:
    """Return the JWT ``exp`` claim (epoch seconds) or None if absent/undecodable."""
    if not token:
        return None
    parts = token.split(".")
    if len(parts) < 2:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (ValueError, UnicodeError) as exc:
        logger.debug("token_expiry_decode_failed error=%s", exc)
        return None
    exp = payload.get("exp") if isinstance(payload, dict) else None
    return float(exp) if isinstance(exp, (int, float)) else None


@dataclass
class StoredToken:
    token: Optional[str]
    expires_at: Optional[float]
    remember_me: bool


class TokenStorage:
    """Bearer-token persistence honouring the remember-me preference.

    Remembered tokens go to the durable store, others to the session store;
    writing one scope always clears the other.
    """

    def __init__(
        self,
        durable: KeyValueStore,
        session: Optional[KeyValueStore] = None,
        events: Optional[EventBus] = None,
        clock: Clock = time.time,
    ):
        self.durable = durable
        self.session = session or open_session_store()
        self.events = events
        self._clock = clock

    @property
    def remember_preference(self) -> bool:
        value = self.durable.get(REMEMBER_ME_KEY)
        return True if value is None else bool(value)

    def set_remember_preference(self, remember: bool) -> None:
        self.durable.set(REMEMBER_ME_KEY, bool(remember))

    def store_access_token(
        self,
        token: str,
        expires_at: Optional[float] = None,
        remember: Optional[bool] = None,
    ) -> None:
        if not token:
            return
        if expires_at is None:
            expires_at = decode_token_expiry(token)
        if remember is None:
            remember = self.remember_preference

        target, other = (self.durable, self.session) if remember else (self.session, self.durable)
        target.set(ACCESS_TOKEN_KEY, token)
        if expires_at:
            target.set(ACCESS_TOKEN_EXP_KEY, expires_at)
        else:
            target.remove(ACCESS_TOKEN_EXP_KEY)
        other.remove(ACCESS_TOKEN_KEY)
        other.remove(ACCESS_TOKEN_EXP_KEY)
        self.set_remember_preference(remember)

        if self.events:
            self.events.emit(TOKEN_REFRESHED_EVENT, {"accessToken": token, "expiresAt": expires_at})

    def get_stored_access_token(self) -> StoredToken:
        for store, remembered in ((self.durable, True), (self.session, False)):
            token = store.get(ACCESS_TOKEN_KEY)
            if token:
                expires_at = store.get(ACCESS_TOKEN_EXP_KEY)
                if not isinstance(expires_at, (int, float)):
                    expires_at = None
                return StoredToken(token=token, expires_at=expires_at, remember_me=remembered)
        return StoredToken(token=None, expires_at=None, remember_me=self.remember_preference)

    @property
    def access_token(self) -> Optional[str]:
        return self.get_stored_access_token().token

    def is_expired(self, skew_seconds: float = 0.0) -> bool:
        stored = self.get_stored_access_token()
        if not stored.token:
            return True
        if stored.expires_at is None:
            return False
        return self._clock() + skew_seconds >= stored.expires_at

    def clear(self) -> None:
        for store in (self.durable, self.session):
            store.remove(ACCESS_TOKEN_KEY)
            store.remove(ACCESS_TOKEN_EXP_KEY)


class CapabilityCache:
    """Remembers endpoints known to be missing so they are not retried every poll.

    Entries look like ``{endpoint: {"available": bool, "checkedAt": epoch}}``.
    With ``ttl_seconds`` set, an "unavailable" verdict expires and the endpoint
    is probed again.
    """

    def __init__(self, store: KeyValueStore, ttl_seconds: Optional[float] = None, clock: Clock = time.time):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _entries(self) -> Dict[str, Dict[str, Any]]:
        entries = self.store.get(CAPABILITIES_KEY, {})
        return entries if isinstance(entries, dict) else {}

    def _put(self, endpoint: str, available: bool) -> None:
        entries = self._entries()
        entries[endpoint] = {"available": available, "checkedAt": self._clock()}
        self.store.set(CAPABILITIES_KEY, entries)

    def is_available(self, endpoint: str) -> bool:
        entry = self._entries().get(endpoint)
        if not isinstance(entry, dict) or entry.get("available", True):
            return True
        checked_at = entry.get("checkedAt") or 0
        if self.ttl_seconds is not None and self._clock() - checked_at >= self.ttl_seconds:
            return True
        return False

    def mark_unavailable(self, endpoint: str) -> None:
        logger.info("endpoint_marked_missing endpoint=%s", endpoint)
        self._put(endpoint, False)

    def mark_available(self, endpoint: str) -> None:
        self._put(endpoint, True)

    def reset(self, endpoint: Optional[str] = None) -> None:
        if endpoint is None:
            self.store.remove(CAPABILITIES_KEY)
            return
        entries = self._entries()
        if entries.pop(endpoint, None) is not None:
            self.store.set(CAPABILITIES_KEY, entries)


class TimedBlobCache:
    """One persisted payload with a short time-to-live."""

    def __init__(self, store: KeyValueStore, key: str, ttl_seconds: float, clock: Clock = time.time):
        self.store = store
        self.key = key
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def get(self) -> Any:
        record = self.store.get(self.key)
        if not isinstance(record, dict) or "storedAt" not in record:
            return None
        if self._clock() - float(record["storedAt"]) >= self.ttl_seconds:
            self.store.remove(self.key)
            return None
        return record.get("payload")

    def put(self, payload: Any) -> None:
        self.store.set(self.key, {"storedAt": self._clock(), "payload": payload})

    def clear(self) -> None:
        self.store.remove(self.key)
