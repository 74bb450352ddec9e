"""Deduplicating, caching HTTP client with single-flight token refresh."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from ..config import SyncConfig
from ..errors import (
    ApiError,
    ServiceUnavailable,
    SessionExpired,
    error_from_response,
    error_from_transport,
    response_is_rate_limited,
    timeout_failure,
)
from ..events import RATE_LIMIT_EVENT, SERVICE_UNAVAILABLE_EVENT, SIGNED_OUT_EVENT, EventBus
from ..observability import SyncObserver
from ..storage import KeyValueStore, TokenStorage
from .auth import TokenRefresher
from .request_cache import RequestCache, make_request_key

logger = logging.getLogger(__name__)

TOKEN_REFRESH_SKEW = 30.0


@dataclass
class ApiResponse:
    """A successful (2xx/3xx) response with its decoded JSON body."""

    status: int
    data: Any
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def payload(self) -> Any:
        """The ``data`` envelope member when present, else the whole body."""
        if isinstance(self.data, dict) and "data" in self.data:
            return self.data["data"]
        return self.data

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> "ApiResponse":
        if response.content:
            try:
                data = response.json()
            except ValueError:
                data = response.text
        else:
            data = None
        return cls(status=response.status_code, data=data, headers=dict(response.headers))


class RequestClient:
    """
    HTTP client shared by feature code, the stream transport and the store.

    - GET responses are cached for ``cache_ttl_seconds``
    - identical concurrent calls share one network request
    - a 401 triggers one shared token refresh and a single replay
    - rate-limit and outage responses are broadcast on the event bus
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        token_storage: Optional[TokenStorage] = None,
        events: Optional[EventBus] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        observer: Optional[SyncObserver] = None,
        cache: Optional[RequestCache] = None,
    ):
        self.config = config or SyncConfig()
        self.events = events or EventBus()
        self.token_storage = token_storage or TokenStorage(KeyValueStore(name="durable"), events=self.events)
        self.observer = observer
        self.cache = cache or RequestCache(ttl_seconds=self.config.cache_ttl_seconds)
        self.http = httpx.AsyncClient(
            base_url=self.config.api_base,
            timeout=self.config.request_timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self.refresher = TokenRefresher(
            self.http,
            self.token_storage,
            refresh_path=self.config.refresh_path,
            observer=observer,
        )
        self._last_sign_out_cause: Optional[BaseException] = None

    async def __aenter__(self) -> "RequestClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        *,
        params: Optional[Dict[str, Any]] = None,
        skip_cache: bool = False,
    ) -> ApiResponse:
        """
        Issue a request and return the decoded response.

        Args:
            method: HTTP method
            url: Path relative to ``api_base``
            body: JSON body
            params: Query parameters
            skip_cache: Bypass the response cache (GET only)

        Raises:
            ApiError: Any failure, already normalized
        """
        method = method.upper()
        key = make_request_key(method, url, params, body)
        cacheable = method == "GET" and not skip_cache

        if cacheable:
            entry = self.cache.get(key)
            if entry is not None:
                self._log_request(method, url, entry.payload.status, time.perf_counter(), cached=True)
                return entry.payload

        return await self.cache.dedupe(
            key,
            lambda: self._send(method, url, body, params),
            cacheable=cacheable,
        )

    async def get(self, url: str, *, params: Optional[Dict[str, Any]] = None, skip_cache: bool = False) -> ApiResponse:
        return await self.request("GET", url, params=params, skip_cache=skip_cache)

    async def post(self, url: str, body: Any = None, *, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self.request("POST", url, body, params=params)

    async def put(self, url: str, body: Any = None, *, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self.request("PUT", url, body, params=params)

    async def patch(self, url: str, body: Any = None, *, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self.request("PATCH", url, body, params=params)

    async def delete(self, url: str, *, params: Optional[Dict[str, Any]] = None) -> ApiResponse:
        return await self.request("DELETE", url, params=params)

    def invalidate_cache(self, pattern: str) -> int:
        return self.cache.invalidate(pattern)

    def clear_cache(self) -> None:
        self.cache.clear()

    def sign_in(self, token: str, remember: bool = True, expires_at: Optional[float] = None) -> None:
        self.token_storage.store_access_token(token, expires_at=expires_at, remember=remember)
        self.cache.clear()

    def sign_out(self, reason: str = "user") -> None:
        self.token_storage.clear()
        self.cache.clear()
        logger.info("signed_out reason=%s", reason)
        self.events.emit(SIGNED_OUT_EVENT, {"redirect": self.config.login_url, "reason": reason})

    async def aclose(self) -> None:
        await self.http.aclose()

    @asynccontextmanager
    async def open_event_stream(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[httpx.Response]:
        """
        Open a long-lived streaming response (no read timeout).

        Shares the auth header and the 401 refresh path with :meth:`request`.
        Error statuses raise the matching ApiError before anything is yielded.
        """
        timeout = httpx.Timeout(self.config.request_timeout, read=None)
        try:
            for attempt in (0, 1):
                request_headers = {
                    "Accept": "text/event-stream",
                    "Cache-Control": "no-cache",
                    **self._auth_headers(),
                    **(headers or {}),
                }
                async with self.http.stream(
                    method.upper(),
                    url,
                    json=body,
                    headers=request_headers,
                    timeout=timeout,
                ) as response:
                    needs_refresh = response.status_code == 401 and attempt == 0
                    if not needs_refresh:
                        if response.status_code >= 400:
                            await response.aread()
                            raise self._error_for(response, url)
                        yield response
                        return
                await self._refresh_or_sign_out()
        except httpx.TransportError as exc:
            raise error_from_transport(exc) from exc

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        token = self.token_storage.access_token
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _dispatch(self, method: str, url: str, body: Any, params: Optional[Dict[str, Any]]) -> httpx.Response:
        # httpx timeouts are per phase; request_timeout bounds the whole call.
        try:
            return await asyncio.wait_for(
                self.http.request(
                    method,
                    url,
                    json=body,
                    params=params,
                    headers=self._auth_headers(),
                ),
                timeout=self.config.request_timeout,
            )
        except asyncio.TimeoutError as exc:
            failure = timeout_failure()
            logger.warning("api_timeout method=%s url=%s timeout=%.1fs", method, url, self.config.request_timeout)
            raise failure from exc
        except httpx.TransportError as exc:
            failure = error_from_transport(exc)
            logger.warning("api_network_failure method=%s url=%s error=%s", method, url, failure.message)
            raise failure from exc

    async def _send(self, method: str, url: str, body: Any, params: Optional[Dict[str, Any]]) -> ApiResponse:
        started = time.perf_counter()
        try:
            if self._token_expiring():
                logger.debug("token_expiring url=%s", url)
                await self._refresh_or_sign_out()
            response = await self._dispatch(method, url, body, params)
            retried = False
            if response.status_code == 401:
                await self._refresh_or_sign_out()
                retried = True
                response = await self._dispatch(method, url, body, params)
        except ApiError as exc:
            self._log_request(method, url, exc.status, started)
            raise

        self._log_request(method, url, response.status_code, started, retried=retried)
        if response.status_code >= 400:
            raise self._error_for(response, url)
        return ApiResponse.from_httpx(response)

    def _token_expiring(self) -> bool:
        """A stored token whose known expiry falls within the refresh skew."""
        if not self.token_storage.access_token:
            return False
        return self.token_storage.is_expired(skew_seconds=TOKEN_REFRESH_SKEW)

    async def _refresh_or_sign_out(self) -> str:
        try:
            return await self.refresher.refresh()
        except ApiError as exc:
            # Callers sharing one failed refresh sign out once.
            if exc is not self._last_sign_out_cause:
                self._last_sign_out_cause = exc
                self.sign_out(reason="refresh_failed")
            raise SessionExpired(status=401) from exc

    def _error_for(self, response: httpx.Response, url: str) -> ApiError:
        error = error_from_response(response)
        if response_is_rate_limited(response):
            logger.warning("api_rate_limited url=%s status=%s", url, error.status)
            self.events.emit(RATE_LIMIT_EVENT, {"url": url, **error.to_dict()})
        if isinstance(error, ServiceUnavailable):
            self.events.emit(SERVICE_UNAVAILABLE_EVENT, {"url": url, **error.to_dict()})
        return error

    def _log_request(
        self,
        method: str,
        url: str,
        status: int,
        started: float,
        cached: bool = False,
        retried: bool = False,
    ) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        if self.observer:
            self.observer.log_request(method, url, status, duration_ms, cached=cached, retried=retried)
        else:
            logger.debug("api_request method=%s url=%s status=%s cached=%s", method, url, status, cached)
