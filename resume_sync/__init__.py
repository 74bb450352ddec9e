"""Resume Sync - resilient client-side synchronization for the resume service."""

from .client import ApiResponse, RequestClient
from .config import SyncConfig, load_config
from .errors import ApiError, NetworkFailure, SessionExpired
from .events import EventBus
from .notifications import Notification, NotificationStore
from .observability import SyncObserver
from .retry import ApiResult, RetryOptions, RetryQueue, api_request
from .storage import CapabilityCache, KeyValueStore, TokenStorage
from .stream import Poller, StreamHandlers, StreamState, open_stream

__all__ = [
    "ApiError",
    "ApiResponse",
    "ApiResult",
    "CapabilityCache",
    "EventBus",
    "KeyValueStore",
    "NetworkFailure",
    "Notification",
    "NotificationStore",
    "Poller",
    "RequestClient",
    "RetryOptions",
    "RetryQueue",
    "SessionExpired",
    "StreamHandlers",
    "StreamState",
    "SyncConfig",
    "SyncObserver",
    "TokenStorage",
    "api_request",
    "load_config",
    "open_stream",
]
