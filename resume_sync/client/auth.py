"""Single-flight access-token refresh."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import httpx
from pydantic import BaseModel, ValidationError

from ..errors import ApiError, AuthExpired, error_from_response, error_from_transport
from ..observability import SyncObserver
from ..storage import TokenStorage

logger = logging.getLogger(__name__)


class RefreshedToken(BaseModel):
    accessToken: str
    expiresAt: Optional[float] = None


class RefreshResponse(BaseModel):
    """Body of ``POST /auth/refresh``: ``{"data": {"accessToken": ...}}``."""

    data: RefreshedToken


class TokenRefresher:
    """
    Refreshes the access token with at most one refresh outstanding.

    Every caller that hits a 401 while a refresh is running awaits the same
    ticket; the ticket is cleared as soon as it settles.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        token_storage: TokenStorage,
        refresh_path: str = "/auth/refresh",
        observer: Optional[SyncObserver] = None,
    ):
        self.http = http
        self.token_storage = token_storage
        self.refresh_path = refresh_path
        self.observer = observer
        self.refresh_count = 0
        self._ticket: Optional[asyncio.Task] = None

    @property
    def refreshing(self) -> bool:
        return self._ticket is not None

    async def refresh(self) -> str:
        """Return a fresh access token, joining an in-progress refresh if any.

        Raises:
            ApiError: The refresh call failed or returned no usable token
        """
        if self._ticket is None:
            self._ticket = asyncio.ensure_future(self._run())
        return await asyncio.shield(self._ticket)

    async def _run(self) -> str:
        started = time.perf_counter()
        try:
            token = await self._request_token()
        except ApiError as exc:
            self._log(False, started, exc.message)
            raise
        finally:
            self._ticket = None
        self.refresh_count += 1
        self._log(True, started)
        return token

    async def _request_token(self) -> str:
        try:
            # The refresh credential travels as a cookie managed by the http client.
            response = await self.http.post(self.refresh_path, json={})
        except httpx.TransportError as exc:
            raise error_from_transport(exc) from exc

        if response.status_code >= 400:
            raise error_from_response(response)
        try:
            parsed = RefreshResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise AuthExpired("Refresh response did not contain an access token", status=response.status_code) from exc

        self.token_storage.store_access_token(parsed.data.accessToken, expires_at=parsed.data.expiresAt)
        return parsed.data.accessToken

    def _log(self, success: bool, started: float, error: Optional[str] = None) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        if self.observer:
            self.observer.log_refresh(success, duration_ms, error)
        elif success:
            logger.info("token_refreshed duration_ms=%.2f", duration_ms)
        else:
            logger.warning("token_refresh_failed error=%s", error)
