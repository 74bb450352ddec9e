"""Streaming-event transport with fallback to interval polling."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..client.client import RequestClient
from ..errors import ApiError, StreamError, normalize_error
from ..observability import SyncObserver
from .framing import SSEFrameParser, StreamEvent
from .polling import Poller

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 5.0


class StreamState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    DEGRADED_POLLING = "degraded-polling"
    CLOSED = "closed"


@dataclass
class StreamHandlers:
    """Callbacks for one subscription; each may be a plain function or a coroutine function."""

    on_message: Optional[Callable[[StreamEvent], Any]] = None
    on_progress: Optional[Callable[[Any], Any]] = None
    on_complete: Optional[Callable[[Any], Any]] = None
    on_error: Optional[Callable[[ApiError], Any]] = None


class StreamSubscription:
    """
    One logical stream subscription.

    ``connecting`` becomes ``open`` on the first frame. Any failure sets the
    sticky ``stream_failed`` flag and hands over to the poller
    (``degraded-polling``) or, without one, to ``closed``. Once failed, the
    subscription never opens a stream again. A normal end moves to
    ``closed`` and, with ``reconnect``, schedules one new attempt.
    """

    def __init__(
        self,
        client: RequestClient,
        url: str,
        *,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        handlers: Optional[StreamHandlers] = None,
        poller: Optional[Poller] = None,
        reconnect: bool = False,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        observer: Optional[SyncObserver] = None,
        stream_failed: bool = False,
    ):
        self.client = client
        self.url = url
        self.method = method.upper()
        self.body = body
        self.headers = dict(headers or {})
        self.handlers = handlers or StreamHandlers()
        self.poller = poller
        self.reconnect = reconnect
        self.reconnect_delay = reconnect_delay
        self.observer = observer or client.observer
        self.stream_failed = stream_failed
        self.state = StreamState.CONNECTING
        self.last_event_id: Optional[str] = None
        self.attempts = 0
        self.retry_ms: Optional[int] = None
        self._parser: Optional[SSEFrameParser] = None
        self._closed = False
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Open the stream, or go straight to polling if it already failed once."""
        if self._closed:
            return
        if self.stream_failed:
            self._degrade("stream previously failed")
            return
        self._set_state(StreamState.CONNECTING)
        self._reader = asyncio.ensure_future(self._read())

    def close(self) -> None:
        """Stop everything; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        if self.poller is not None:
            self.poller.stop()
        self._set_state(StreamState.CLOSED, "closed by consumer")

    async def wait(self) -> None:
        """Wait until the current stream attempt has ended."""
        if self._reader is not None:
            await asyncio.wait([self._reader])

    async def aclose(self) -> None:
        """Close and wait for the reader to finish tearing down the connection."""
        self.close()
        await self.wait()

    async def _read(self) -> None:
        self.attempts += 1
        parser = self._parser = SSEFrameParser()
        headers = dict(self.headers)
        if self.last_event_id:
            headers["Last-Event-ID"] = self.last_event_id

        try:
            async with self.client.open_event_stream(self.method, self.url, self.body, headers) as response:
                async for chunk in response.aiter_bytes():
                    for event in parser.iter_feed(chunk):
                        if not await self._handle(event):
                            return
                for event in parser.iter_flush():
                    if not await self._handle(event):
                        return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._fail(normalize_error(exc))
            return

        await self._finish(None, "stream ended")

    async def _handle(self, event: StreamEvent) -> bool:
        """Dispatch one event; returns False once the stream should stop reading."""
        if self._closed:
            return False
        if event.id is not None:
            self.last_event_id = event.id
        if self.state is StreamState.CONNECTING:
            self._set_state(StreamState.OPEN)

        if event.event == "progress":
            if self.handlers.on_progress is not None:
                await self._invoke(self.handlers.on_progress, event.data)
            else:
                await self._invoke(self.handlers.on_message, event)
        elif event.event == "complete":
            await self._finish(event.data, "complete")
            return False
        elif event.event == "error":
            message = event.data.get("message") if isinstance(event.data, dict) else None
            await self._fail(StreamError(message))
            return False
        else:
            await self._invoke(self.handlers.on_message, event)
        return not self._closed

    async def _fail(self, error: ApiError) -> None:
        if self._closed:
            return
        self.stream_failed = True
        logger.warning("stream_failed url=%s state=%s error=%s", self.url, self.state.value, error.message)
        if self.observer:
            self.observer.log_error("stream", error.message, {"url": self.url, "status": error.status})
        self._degrade(error.message)
        await self._invoke(self.handlers.on_error, error)

    async def _finish(self, payload: Any, reason: str) -> None:
        if self._closed:
            return
        self._set_state(StreamState.CLOSED, reason)
        if reason == "complete":
            await self._invoke(self.handlers.on_complete, payload)
        if self.reconnect and not self._closed:
            delay = self._next_reconnect_delay()
            loop = asyncio.get_running_loop()
            self._reconnect_timer = loop.call_later(delay, self._reconnect)
            logger.debug("stream_reconnect_scheduled url=%s delay=%.1fs", self.url, delay)

    def _next_reconnect_delay(self) -> float:
        # A server-sent "retry:" field overrides the configured delay.
        if self._parser is not None and self._parser.retry_ms is not None:
            self.retry_ms = self._parser.retry_ms
        if self.retry_ms is not None:
            return self.retry_ms / 1000
        return self.reconnect_delay

    def _reconnect(self) -> None:
        self._reconnect_timer = None
        if not self._closed:
            self.start()

    def _degrade(self, reason: str) -> None:
        if self.poller is not None:
            self._set_state(StreamState.DEGRADED_POLLING, reason)
            self.poller.start()
        else:
            self._set_state(StreamState.CLOSED, reason)

    async def _invoke(self, callback: Optional[Callable[[Any], Any]], arg: Any) -> None:
        if callback is None or self._closed:
            return
        try:
            result = callback(arg)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("stream_callback_failed url=%s", self.url)

    def _set_state(self, state: StreamState, reason: Optional[str] = None) -> None:
        if state is self.state:
            return
        previous = self.state
        self.state = state
        if self.observer:
            self.observer.log_stream_state(self.url, previous.value, state.value, reason)
        else:
            logger.debug("stream_state url=%s from=%s to=%s", self.url, previous.value, state.value)


def open_stream(
    client: RequestClient,
    url: str,
    *,
    method: str = "GET",
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
    handlers: Optional[StreamHandlers] = None,
    poller: Optional[Poller] = None,
    reconnect: bool = False,
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
) -> Callable[[], None]:
    """Start a subscription and return its close function."""
    subscription = StreamSubscription(
        client,
        url,
        method=method,
        body=body,
        headers=headers,
        handlers=handlers,
        poller=poller,
        reconnect=reconnect,
        reconnect_delay=reconnect_delay,
    )
    subscription.start()
    return subscription.close
