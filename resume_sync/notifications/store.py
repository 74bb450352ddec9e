"""Notification store: optimistic mutations, rollback, undo and live updates."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..client.client import RequestClient
from ..config import SyncConfig
from ..errors import ApiError, NotFound, ServiceUnavailable
from ..events import NOTIFICATION_SYNC_FAILED_EVENT, RATE_LIMIT_EVENT, EventBus
from ..storage import CapabilityCache, KeyValueStore, TimedBlobCache
from ..stream.framing import StreamEvent
from ..stream.polling import DEFAULT_POLL_INTERVAL, Poller
from ..stream.transport import DEFAULT_RECONNECT_DELAY, StreamHandlers, StreamState, StreamSubscription
from .api import NOTIFICATIONS_ENDPOINT, NOTIFICATIONS_STREAM_ENDPOINT, NotificationsAPI, parse_page
from .models import Notification, NotificationType, is_object_id
from .reducer import (
    DEFAULT_CAP,
    DEFAULT_UNDO_DEPTH,
    AddNotification,
    AppendNotifications,
    ClearAll,
    Dismiss,
    MarkAllRead,
    MarkRead,
    Mutation,
    NotificationsReducer,
    NotificationsState,
    SetNotifications,
)

logger = logging.getLogger(__name__)

PAGE_CACHE_KEY = "notificationsCache"

FallbackSource = Callable[[], Union[List[Notification], Awaitable[List[Notification]]]]


class NotificationStore:
    """
    Client-side notification state kept in sync with the server.

    Mutations are applied locally first. Server-issued ids (per
    ``is_server_id``) are then confirmed remotely; a failed confirmation
    dispatches the captured inverse and re-raises. ``dismiss`` and
    ``clear_all`` can be undone locally.
    """

    def __init__(
        self,
        client: RequestClient,
        *,
        capabilities: Optional[CapabilityCache] = None,
        is_server_id: Callable[[str], bool] = is_object_id,
        cap: int = DEFAULT_CAP,
        undo_depth: int = DEFAULT_UNDO_DEPTH,
        events: Optional[EventBus] = None,
        fallback: Optional[FallbackSource] = None,
        page_cache: Optional[TimedBlobCache] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        idle_timeout: Optional[float] = None,
    ):
        self.client = client
        self.api = NotificationsAPI(client)
        self.events = events or client.events
        self.capabilities = capabilities or CapabilityCache(KeyValueStore(name="capabilities"))
        self.is_server_id = is_server_id
        self.reducer = NotificationsReducer(cap=cap, undo_depth=undo_depth)
        self.fallback = fallback
        self.page_cache = page_cache
        self.reconnect_delay = reconnect_delay
        self.poller = Poller(self.fetch, interval=poll_interval, idle_timeout=idle_timeout)
        self.last_error: Optional[ApiError] = None
        self._subscription: Optional[StreamSubscription] = None
        self._unsubscribe_rate_limit: Optional[Callable[[], None]] = None

    @classmethod
    def from_config(
        cls,
        client: RequestClient,
        config: SyncConfig,
        store: KeyValueStore,
        **kwargs: Any,
    ) -> "NotificationStore":
        """Wire capability and page caches onto ``store`` using config durations."""
        return cls(
            client,
            capabilities=CapabilityCache(store, ttl_seconds=config.capability_ttl_seconds),
            page_cache=TimedBlobCache(store, PAGE_CACHE_KEY, config.page_cache_ttl_seconds),
            cap=config.notification_cap,
            undo_depth=config.undo_depth,
            poll_interval=config.poll_interval_seconds,
            reconnect_delay=config.reconnect_delay_seconds,
            idle_timeout=config.poll_idle_timeout_seconds,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def state(self) -> NotificationsState:
        return self.reducer.state

    @property
    def notifications(self) -> List[Notification]:
        return list(self.reducer.state.notifications)

    @property
    def unread_count(self) -> int:
        return self.reducer.state.unread_count

    @property
    def total_count(self) -> int:
        return self.reducer.state.total_count

    @property
    def is_loading(self) -> bool:
        return self.reducer.state.is_loading

    @property
    def stream_state(self) -> Optional[StreamState]:
        return self._subscription.state if self._subscription else None

    def subscribe(self, listener: Callable[[NotificationsState], None]) -> Callable[[], None]:
        return self.reducer.subscribe(listener)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch(self, skip: int = 0, limit: int = 50, append: bool = False, force: bool = False) -> None:
        """
        Load a page of notifications.

        Replaces the list, or with ``append`` extends it (de-duplicated by id).
        Failures are logged and leave the current state in place; a 404
        marks the endpoint missing so later calls skip the network.
        """
        if not append:
            self.reducer.set_loading(True)
        try:
            if self.capabilities.is_available(NOTIFICATIONS_ENDPOINT):
                try:
                    page = await self.api.list(skip=skip, limit=limit, force=force)
                except NotFound:
                    self.capabilities.mark_unavailable(NOTIFICATIONS_ENDPOINT)
                except ServiceUnavailable as exc:
                    logger.debug("notifications_fetch_unavailable error=%s", exc.message)
                    return
                except ApiError as exc:
                    self.last_error = exc
                    logger.warning("notifications_fetch_failed status=%s error=%s", exc.status, exc.message)
                    return
                else:
                    items = page.items()
                    if append:
                        self.reducer.dispatch(AppendNotifications(items, page.total_count))
                    else:
                        self.reducer.dispatch(SetNotifications(items, page.total_count))
                        if skip == 0 and self.page_cache is not None:
                            self.page_cache.put({
                                "notifications": [n.to_dict() for n in items],
                                "count": page.total_count,
                            })
                    return

            if not append:
                await self._apply_fallback()
        finally:
            if not append:
                self.reducer.set_loading(False)

    async def _apply_fallback(self) -> None:
        if self.fallback is None:
            return
        generated = self.fallback()
        if inspect.isawaitable(generated):
            generated = await generated
        items = sorted(generated or [], key=lambda n: n.created_at, reverse=True)[: self.reducer.cap]
        self.reducer.dispatch(SetNotifications(items, len(items)))

    def hydrate(self) -> bool:
        """Seed state from the persisted page cache; True if anything was loaded."""
        if self.page_cache is None:
            return False
        cached = self.page_cache.get()
        if not cached:
            return False
        page = parse_page(cached)
        self.reducer.dispatch(SetNotifications(page.items(), page.total_count))
        logger.debug("notifications_hydrated count=%s", len(page.notifications))
        return True

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, notification: Union[Notification, Dict[str, Any]]) -> Notification:
        """Insert a locally originated notification at the front (no remote call)."""
        if isinstance(notification, dict):
            notification = Notification.from_api(notification)
        notification = notification.with_read(False)
        self.reducer.dispatch(AddNotification(notification))
        return self.reducer.state.notifications[0]

    async def mark_read(self, notification_id: str) -> None:
        self.poller.record_activity()
        inverse = self.reducer.dispatch(MarkRead(notification_id))
        if self._syncs(notification_id):
            await self._confirm("mark_read", inverse, lambda: self.api.mark_read(notification_id))

    async def mark_all_read(self) -> None:
        self.poller.record_activity()
        inverse = self.reducer.dispatch(MarkAllRead())
        if self.capabilities.is_available(NOTIFICATIONS_ENDPOINT):
            await self._confirm("mark_all_read", inverse, self.api.mark_all_read)

    async def dismiss(self, notification_id: str) -> None:
        self.poller.record_activity()
        entry = None
        if self.reducer.state.index_of(notification_id) >= 0:
            entry = self.reducer.push_undo("dismiss")
        inverse = self.reducer.dispatch(Dismiss(notification_id))
        if self._syncs(notification_id):
            await self._confirm("dismiss", inverse, lambda: self.api.dismiss(notification_id), entry)

    async def clear_all(self) -> None:
        self.poller.record_activity()
        entry = None
        if self.reducer.state.notifications:
            entry = self.reducer.push_undo("clear_all")
        inverse = self.reducer.dispatch(ClearAll())
        if self.capabilities.is_available(NOTIFICATIONS_ENDPOINT):
            await self._confirm("clear_all", inverse, self.api.clear_all, entry)

    def undo(self) -> bool:
        """Restore the state before the last dismiss/clear_all. Local only."""
        self.poller.record_activity()
        return self.reducer.undo() is not None

    def _syncs(self, notification_id: str) -> bool:
        return self.is_server_id(notification_id) and self.capabilities.is_available(NOTIFICATIONS_ENDPOINT)

    async def _confirm(
        self,
        action: str,
        inverse: Mutation,
        call: Callable[[], Awaitable[Any]],
        undo_entry: Any = None,
    ) -> None:
        try:
            await call()
        except NotFound:
            logger.debug("notification_sync_not_found action=%s", action)
            return
        except ApiError as exc:
            self.reducer.dispatch(inverse)
            if undo_entry is not None:
                self.reducer.drop_undo(undo_entry)
            self.last_error = exc
            logger.error("notification_sync_failed action=%s status=%s error=%s", action, exc.status, exc.message)
            self.events.emit(NOTIFICATION_SYNC_FAILED_EVENT, {"action": action, **exc.to_dict()})
            raise

        self.last_error = None
        self.client.invalidate_cache(NOTIFICATIONS_ENDPOINT)
        await self.fetch(force=True)

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    async def connect(self, stream: bool = True) -> None:
        """Hydrate from cache, fetch, then subscribe to the live stream (or poll)."""
        self.hydrate()
        if self._unsubscribe_rate_limit is None:
            self._unsubscribe_rate_limit = self.events.subscribe(RATE_LIMIT_EVENT, self._on_rate_limit)
        await self.fetch()

        if self._subscription is not None and not self._subscription.closed:
            return
        if not stream:
            self.poller.start()
            return
        failed = self._subscription.stream_failed if self._subscription else False
        self._subscription = StreamSubscription(
            self.client,
            NOTIFICATIONS_STREAM_ENDPOINT,
            handlers=StreamHandlers(on_message=self._on_stream_event, on_error=self._on_stream_error),
            poller=self.poller,
            reconnect=True,
            reconnect_delay=self.reconnect_delay,
            stream_failed=failed,
        )
        self._subscription.start()

    def disconnect(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
        self.poller.stop()
        if self._unsubscribe_rate_limit is not None:
            self._unsubscribe_rate_limit()
            self._unsubscribe_rate_limit = None

    async def aclose(self) -> None:
        self.disconnect()
        if self._subscription is not None:
            await self._subscription.aclose()

    def _on_stream_event(self, event: StreamEvent) -> None:
        data = event.data if isinstance(event.data, dict) else {}
        if event.event == "notification":
            raw = data.get("notification", data)
            self.reducer.dispatch(AddNotification(Notification.from_api(raw)))
        elif event.event == "initial":
            page = parse_page(data)
            self.reducer.dispatch(SetNotifications(page.items(), page.total_count))
        elif event.event == "connected":
            logger.debug("notification_stream_connected")
        else:
            logger.debug("notification_stream_event_ignored event=%s", event.event)

    def _on_stream_error(self, error: ApiError) -> None:
        logger.warning("notification_stream_degraded error=%s", error.message)

    def _on_rate_limit(self, payload: Any) -> None:
        message = payload.get("message") if isinstance(payload, dict) else None
        self.add(Notification(
            id="",
            type=NotificationType.RATE_LIMIT,
            title="Rate limit reached",
            message=message or "Too many requests. Please try again later.",
        ))
