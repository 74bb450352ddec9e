"""In-process broadcast bus.

Lets the request client announce rate limiting, sign-out and token refreshes
without depending on whoever surfaces them (toasts, CLI output, ...).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

RATE_LIMIT_EVENT = "rateLimit"
SERVICE_UNAVAILABLE_EVENT = "serviceUnavailable"
TOKEN_REFRESHED_EVENT = "tokenRefreshed"
SIGNED_OUT_EVENT = "signedOut"
RETRY_SUCCEEDED_EVENT = "retrySucceeded"
RETRY_EXHAUSTED_EVENT = "retryExhausted"
NOTIFICATION_SYNC_FAILED_EVENT = "notificationSyncFailed"

Listener = Callable[[Any], None]


class EventBus:
    """Named events fanned out to synchronous listeners."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def subscribe(self, name: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``name``; returns an unsubscribe function."""
        self._listeners[name].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners.get(name, []):
                self._listeners[name].remove(listener)

        return unsubscribe

    def emit(self, name: str, payload: Any = None) -> int:
        """Deliver ``payload`` to every listener of ``name``.

        A failing listener is logged and does not stop delivery to the rest.
        Returns the number of listeners invoked.
        """
        listeners = list(self._listeners.get(name, []))
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                logger.exception("event_listener_failed event=%s listener=%r", name, listener)
        return len(listeners)

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(name, []))
