"""Retry logic with exponential backoff for API calls, plus a manual retry queue."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from .client.client import ApiResponse
from .errors import RETRYABLE_STATUSES, ApiError, normalize_error
from .events import RETRY_EXHAUSTED_EVENT, RETRY_SUCCEEDED_EVENT, EventBus

logger = logging.getLogger(__name__)

OnRetry = Callable[[int, int, ApiError], Any]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryOptions:
    """Configuration for retry behavior."""
    retries: int = 0  # re-attempts after the first call
    retry_delay: float = 1.0
    retryable_statuses: FrozenSet[int] = RETRYABLE_STATUSES
    on_retry: Optional[OnRetry] = None
    error_message: Optional[str] = None  # overrides the normalized message on failure


@dataclass
class ApiResult:
    """Outcome of :func:`api_request`; failures are values, not exceptions."""
    success: bool
    data: Any = None
    message: Optional[str] = None
    error: Optional[ApiError] = None
    errors: List[Any] = field(default_factory=list)
    status: int = 0
    is_retryable: bool = False
    original_error: Optional[BaseException] = None


def backoff_delay(retry_delay: float, attempt: int) -> float:
    """Delay before re-attempt ``attempt`` (1-based): ``retry_delay * 2**(attempt-1)``."""
    return retry_delay * (2 ** (attempt - 1))


def is_retryable(error: ApiError, retryable_statuses: FrozenSet[int] = RETRYABLE_STATUSES) -> bool:
    # status 0 means no response arrived at all
    return error.status == 0 or error.status in retryable_statuses


async def api_request(
    operation: Callable[[], Awaitable[Any]],
    options: Optional[RetryOptions] = None,
    *,
    sleep: Sleep = asyncio.sleep,
) -> ApiResult:
    """
    Execute an API operation with exponential backoff retry logic.

    Args:
        operation: Zero-argument coroutine function performing the call
        options: Retry configuration
        sleep: Awaitable sleep used between attempts

    Returns:
        ApiResult describing success or the last failure. Only cancellation
        propagates as an exception.
    """
    options = options or RetryOptions()
    attempt = 0

    while True:
        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = normalize_error(exc)
            retryable = is_retryable(error, options.retryable_statuses)

            if not retryable or attempt >= options.retries:
                if attempt > 0:
                    logger.error("retry_exhausted attempts=%s status=%s error=%s", attempt + 1, error.status, error.message)
                return ApiResult(
                    success=False,
                    message=options.error_message or error.message,
                    error=error,
                    errors=list(error.errors),
                    status=error.status,
                    is_retryable=retryable,
                    original_error=exc,
                )

            attempt += 1
            delay = backoff_delay(options.retry_delay, attempt)
            logger.warning(
                "retry_scheduled attempt=%s/%s status=%s delay=%.2fs error=%s",
                attempt,
                options.retries,
                error.status,
                delay,
                error.message,
            )
            if options.on_retry:
                outcome = options.on_retry(attempt, options.retries, error)
                if inspect.isawaitable(outcome):
                    await outcome
            await sleep(delay)
            continue

        if attempt > 0:
            logger.info("retry_succeeded attempt=%s", attempt + 1)
        if isinstance(result, ApiResponse):
            body, status = result.data, result.status
        else:
            body, status = result, 200
        if isinstance(body, dict):
            return ApiResult(success=True, data=body.get("data") or body, message=body.get("message"), status=status)
        return ApiResult(success=True, data=body, status=status)


@dataclass
class RetryQueueItem:
    id: str
    retry_fn: Callable[[], Awaitable[Any]]
    error: Optional[ApiError] = None
    attempts: int = 0
    max_attempts: int = 3


class RetryQueue:
    """
    Failed operations parked for a user-triggered retry.

    Each item is retried on demand; it leaves the queue on success or once
    ``max_attempts`` failures have accumulated.
    """

    def __init__(self, events: Optional[EventBus] = None):
        self.events = events
        self._items: Dict[str, RetryQueueItem] = {}
        self._ids = itertools.count(1)

    def add(
        self,
        error: Optional[BaseException],
        retry_fn: Callable[[], Awaitable[Any]],
        max_attempts: int = 3,
        item_id: Optional[str] = None,
    ) -> str:
        """Queue ``retry_fn``; an existing item with the same id is replaced."""
        item_id = item_id or f"retry-{next(self._ids)}"
        normalized = normalize_error(error) if isinstance(error, Exception) else None
        self._items[item_id] = RetryQueueItem(
            id=item_id,
            retry_fn=retry_fn,
            error=normalized,
            max_attempts=max_attempts,
        )
        return item_id

    def remove(self, item_id: str) -> None:
        self._items.pop(item_id, None)

    def get(self, item_id: str) -> Optional[RetryQueueItem]:
        return self._items.get(item_id)

    def items(self) -> List[RetryQueueItem]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    async def retry(self, item_id: str) -> bool:
        """Retry one queued item. Returns True when the operation succeeded."""
        item = self._items.get(item_id)
        if item is None:
            return False

        try:
            await item.retry_fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            item.attempts += 1
            item.error = normalize_error(exc)
            logger.warning(
                "queued_retry_failed id=%s attempts=%s/%s error=%s",
                item_id,
                item.attempts,
                item.max_attempts,
                item.error.message,
            )
            if item.attempts >= item.max_attempts:
                self.remove(item_id)
                if self.events:
                    self.events.emit(RETRY_EXHAUSTED_EVENT, {"id": item_id, "error": item.error.to_dict()})
            return False

        self.remove(item_id)
        if self.events:
            self.events.emit(RETRY_SUCCEEDED_EVENT, {"id": item_id})
        return True
