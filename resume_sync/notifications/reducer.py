"""Notification state transitions as invertible mutations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, List, Optional

from .models import Notification, generate_notification_id

logger = logging.getLogger(__name__)

DEFAULT_CAP = 50
DEFAULT_UNDO_DEPTH = 5


@dataclass
class NotificationsState:
    notifications: List[Notification] = field(default_factory=list)
    total_count: int = 0
    is_loading: bool = False
    last_fetched: Optional[datetime] = None

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.notifications if not n.read)

    def index_of(self, notification_id: str) -> int:
        for index, notification in enumerate(self.notifications):
            if notification.id == notification_id:
                return index
        return -1


class Mutation:
    """A state transition. :meth:`apply` mutates ``state`` and returns the inverse."""

    action = "mutation"

    def apply(self, state: NotificationsState) -> "Mutation":
        raise NotImplementedError


class Noop(Mutation):
    action = "noop"

    def apply(self, state: NotificationsState) -> Mutation:
        return self


@dataclass
class Restore(Mutation):
    """Put back a full snapshot."""

    notifications: List[Notification]
    total_count: int
    action = "restore"

    def apply(self, state: NotificationsState) -> Mutation:
        inverse = Restore(list(state.notifications), state.total_count)
        state.notifications = list(self.notifications)
        state.total_count = self.total_count
        return inverse


@dataclass
class SetNotifications(Mutation):
    notifications: List[Notification]
    total_count: Optional[int] = None
    action = "set"

    def apply(self, state: NotificationsState) -> Mutation:
        inverse = Restore(list(state.notifications), state.total_count)
        state.notifications = list(self.notifications)
        state.total_count = self.total_count if self.total_count is not None else len(self.notifications)
        state.last_fetched = datetime.now()
        return inverse


@dataclass
class AppendNotifications(Mutation):
    """Extend with a further page, skipping ids already present."""

    notifications: List[Notification]
    total_count: Optional[int] = None
    action = "append"

    def apply(self, state: NotificationsState) -> Mutation:
        inverse = Restore(list(state.notifications), state.total_count)
        seen = {n.id for n in state.notifications}
        for notification in self.notifications:
            if notification.id not in seen:
                seen.add(notification.id)
                state.notifications.append(notification)
        if self.total_count:
            state.total_count = self.total_count
        return inverse


@dataclass
class AddNotification(Mutation):
    """Prepend; an entry with the same id is replaced and moved to the front."""

    notification: Notification
    action = "add"

    def apply(self, state: NotificationsState) -> Mutation:
        inverse = Restore(list(state.notifications), state.total_count)
        notification = self.notification
        if not notification.id:
            notification = replace(notification, id=generate_notification_id())
        index = state.index_of(notification.id)
        if index >= 0:
            del state.notifications[index]
        else:
            state.total_count += 1
        state.notifications.insert(0, notification)
        return inverse


@dataclass
class MarkRead(Mutation):
    notification_id: str
    read: bool = True
    action = "mark_read"

    def apply(self, state: NotificationsState) -> Mutation:
        index = state.index_of(self.notification_id)
        if index < 0:
            return Noop()
        current = state.notifications[index]
        state.notifications[index] = current.with_read(self.read)
        return MarkRead(self.notification_id, current.read)


@dataclass
class MarkAllRead(Mutation):
    action = "mark_all_read"

    def apply(self, state: NotificationsState) -> Mutation:
        unread = [n.id for n in state.notifications if not n.read]
        state.notifications = [n if n.read else n.with_read(True) for n in state.notifications]
        return MarkUnread(unread)


@dataclass
class MarkUnread(Mutation):
    notification_ids: List[str]
    action = "mark_unread"

    def apply(self, state: NotificationsState) -> Mutation:
        ids = set(self.notification_ids)
        changed = [n.id for n in state.notifications if n.id in ids and n.read]
        state.notifications = [n.with_read(False) if n.id in ids else n for n in state.notifications]
        return _MarkReadMany(changed)


@dataclass
class _MarkReadMany(Mutation):
    notification_ids: List[str]
    action = "mark_read_many"

    def apply(self, state: NotificationsState) -> Mutation:
        ids = set(self.notification_ids)
        changed = [n.id for n in state.notifications if n.id in ids and not n.read]
        state.notifications = [n.with_read(True) if n.id in ids else n for n in state.notifications]
        return MarkUnread(changed)


@dataclass
class Dismiss(Mutation):
    notification_id: str
    action = "dismiss"

    def apply(self, state: NotificationsState) -> Mutation:
        index = state.index_of(self.notification_id)
        if index < 0:
            return Noop()
        removed = state.notifications.pop(index)
        count_delta = 1 if state.total_count > 0 else 0
        state.total_count -= count_delta
        return InsertAt(index, removed, count_delta)


@dataclass
class InsertAt(Mutation):
    """Re-insert a dismissed notification at its original position."""

    index: int
    notification: Notification
    count_delta: int = 1
    action = "insert"

    def apply(self, state: NotificationsState) -> Mutation:
        if state.index_of(self.notification.id) >= 0:
            return Noop()
        state.notifications.insert(min(self.index, len(state.notifications)), self.notification)
        state.total_count += self.count_delta
        return Dismiss(self.notification.id)


@dataclass
class ClearAll(Mutation):
    action = "clear_all"

    def apply(self, state: NotificationsState) -> Mutation:
        inverse = Restore(list(state.notifications), state.total_count)
        state.notifications = []
        state.total_count = 0
        return inverse


@dataclass
class UndoEntry:
    previous: List[Notification]
    previous_total: int
    action: str


Listener = Callable[[NotificationsState], None]


class NotificationsReducer:
    """
    Owns :class:`NotificationsState` and applies mutations to it.

    Every transition is synchronous; the list is trimmed to ``cap`` most
    recent entries afterwards. Snapshots pushed with :meth:`push_undo` are
    kept up to ``undo_depth`` deep.
    """

    def __init__(self, cap: int = DEFAULT_CAP, undo_depth: int = DEFAULT_UNDO_DEPTH):
        self.cap = cap
        self.undo_depth = undo_depth
        self.state = NotificationsState()
        self.undo_stack: List[UndoEntry] = []
        self._listeners: List[Listener] = []

    def dispatch(self, mutation: Mutation) -> Mutation:
        """Apply ``mutation`` and return its inverse."""
        inverse = mutation.apply(self.state)
        if len(self.state.notifications) > self.cap:
            del self.state.notifications[self.cap:]
        logger.debug(
            "notifications_mutation action=%s size=%s unread=%s",
            mutation.action,
            len(self.state.notifications),
            self.state.unread_count,
        )
        self._notify()
        return inverse

    def set_loading(self, loading: bool) -> None:
        self.state.is_loading = loading
        self._notify()

    def push_undo(self, action: str) -> UndoEntry:
        entry = UndoEntry(list(self.state.notifications), self.state.total_count, action)
        self.undo_stack.insert(0, entry)
        del self.undo_stack[self.undo_depth:]
        return entry

    def drop_undo(self, entry: UndoEntry) -> None:
        self.undo_stack = [e for e in self.undo_stack if e is not entry]

    def undo(self) -> Optional[UndoEntry]:
        """Restore the most recent snapshot; returns it, or None if nothing to undo."""
        if not self.undo_stack:
            return None
        entry = self.undo_stack.pop(0)
        self.dispatch(Restore(entry.previous, entry.previous_total))
        return entry

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.exception("notifications_listener_failed")
