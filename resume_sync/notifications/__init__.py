"""Notification state with optimistic sync, rollback and undo."""

from .api import NotificationsAPI
from .models import Notification, NotificationType, generate_notification_id, is_object_id
from .reducer import NotificationsReducer, NotificationsState
from .store import NotificationStore

__all__ = [
    "Notification",
    "NotificationStore",
    "NotificationType",
    "NotificationsAPI",
    "NotificationsReducer",
    "NotificationsState",
    "generate_notification_id",
    "is_object_id",
]
