"""HTTP request client with caching, de-duplication and token refresh."""

from .auth import RefreshResponse, TokenRefresher
from .client import ApiResponse, RequestClient
from .request_cache import CacheEntry, RequestCache, make_request_key

__all__ = [
    "ApiResponse",
    "CacheEntry",
    "RefreshResponse",
    "RequestCache",
    "RequestClient",
    "TokenRefresher",
    "make_request_key",
]
