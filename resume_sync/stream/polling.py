"""Interval polling used when the live stream is unavailable."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 180.0


class Poller:
    """
    Calls ``fetch`` immediately and then every ``interval`` seconds.

    With ``idle_timeout`` set, polling pauses once no activity has been
    recorded for that long and resumes on the next :meth:`record_activity`.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Any]],
        interval: float = DEFAULT_POLL_INTERVAL,
        idle_timeout: Optional[float] = None,
    ):
        self.fetch = fetch
        self.interval = interval
        self.idle_timeout = idle_timeout
        self.poll_count = 0
        self.paused = False
        self._task: Optional[asyncio.Task] = None
        self._idle_timer: Optional[asyncio.TimerHandle] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Begin polling; a no-op while already running."""
        if self.is_running:
            return
        self.paused = False
        logger.debug("polling_started interval=%.1fs", self.interval)
        self._task = asyncio.ensure_future(self._loop())
        self._arm_idle_timer()

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.debug("polling_stopped polls=%s", self.poll_count)
        self.paused = False
        self._cancel_idle_timer()

    def record_activity(self) -> None:
        """Note user activity; resumes polling if it was paused for inactivity."""
        if self.idle_timeout is None:
            return
        if self.paused:
            logger.debug("polling_resumed")
            self.start()
            return
        if self.is_running:
            self._arm_idle_timer()

    async def poll_once(self) -> None:
        self.poll_count += 1
        try:
            result = self.fetch()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("poll_failed error=%s", exc)

    async def _loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval)

    def _pause(self) -> None:
        self._idle_timer = None
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.paused = True
        logger.debug("polling_paused reason=inactive")

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self.idle_timeout is not None:
            loop = asyncio.get_running_loop()
            self._idle_timer = loop.call_later(self.idle_timeout, self._pause)

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None
