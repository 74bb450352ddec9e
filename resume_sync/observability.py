"""Observability for sync operations - logging and lightweight metrics."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

LOGGER_NAME = "resume_sync"
MAX_EVENTS = 500


@dataclass
class SyncEvent:
    """A single recorded event in the sync layer."""

    timestamp: datetime
    event_type: str  # "request", "refresh", "stream_state", "error"
    data: Dict[str, Any]
    duration_ms: Optional[float] = None


class SyncObserver:
    """
    Observability layer for the request client and stream transport.

    Keeps a bounded in-memory event log and mirrors each event to the
    ``resume_sync`` logger.
    """

    def __init__(self, verbose: bool = False, max_events: int = MAX_EVENTS):
        self.events: List[SyncEvent] = []
        self.logger = logging.getLogger(LOGGER_NAME)
        self.verbose = verbose
        self.max_events = max_events
        self._setup_logging()

    def _setup_logging(self):
        """Configure logging format and handlers."""
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)
        self.logger.setLevel(logging.DEBUG if self.verbose else logging.WARNING)

    def _record(self, event: SyncEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def log_request(
        self,
        method: str,
        url: str,
        status: int,
        duration_ms: float,
        cached: bool = False,
        retried: bool = False,
    ):
        """
        Log a settled HTTP request.

        Args:
            method: HTTP method
            url: Request URL (relative to the API base)
            status: Response status, 0 for network failures
            duration_ms: Wall time of the call
            cached: Whether the payload came from the response cache
            retried: Whether the call was re-issued after a token refresh
        """
        self._record(SyncEvent(
            timestamp=datetime.now(),
            event_type="request",
            data={"method": method, "url": url, "status": status, "cached": cached, "retried": retried},
            duration_ms=duration_ms,
        ))
        self.logger.debug(
            "api_request method=%s url=%s status=%s duration_ms=%.2f cached=%s retried=%s",
            method,
            url,
            status,
            duration_ms,
            cached,
            retried,
        )

    def log_refresh(self, success: bool, duration_ms: float, error: Optional[str] = None):
        """Log a completed token refresh."""
        self._record(SyncEvent(
            timestamp=datetime.now(),
            event_type="refresh",
            data={"success": success, "error": error},
            duration_ms=duration_ms,
        ))
        if success:
            self.logger.info("token_refreshed duration_ms=%.2f", duration_ms)
        else:
            self.logger.warning("token_refresh_failed duration_ms=%.2f error=%s", duration_ms, error)

    def log_stream_state(self, url: str, previous: str, current: str, reason: Optional[str] = None):
        """Log a stream connection state transition."""
        self._record(SyncEvent(
            timestamp=datetime.now(),
            event_type="stream_state",
            data={"url": url, "from": previous, "to": current, "reason": reason},
        ))
        self.logger.info("stream_state url=%s from=%s to=%s reason=%s", url, previous, current, reason or "-")

    def log_error(self, error_type: str, message: str, context: Optional[Dict[str, Any]] = None):
        """
        Log an error event.

        Args:
            error_type: Type of error (e.g., "stream_framing", "notification_sync")
            message: Error message
            context: Additional context about the error
        """
        self._record(SyncEvent(
            timestamp=datetime.now(),
            event_type="error",
            data={"error_type": error_type, "message": message, "context": context or {}},
        ))
        self.logger.error("sync_error type=%s message=%s", error_type, message)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get aggregated statistics for the recorded events.

        Returns:
            Dictionary with request/refresh/stream/error counters
        """
        requests = [e for e in self.events if e.event_type == "request"]
        refreshes = [e for e in self.events if e.event_type == "refresh"]
        cached = sum(1 for e in requests if e.data.get("cached"))
        failed = sum(1 for e in requests if e.data.get("status", 0) == 0 or e.data.get("status", 0) >= 400)

        return {
            "event_count": len(self.events),
            "requests": len(requests),
            "cached_requests": cached,
            "failed_requests": failed,
            "cache_hit_rate": cached / len(requests) if requests else 0.0,
            "refreshes": len(refreshes),
            "failed_refreshes": sum(1 for e in refreshes if not e.data.get("success")),
            "stream_transitions": sum(1 for e in self.events if e.event_type == "stream_state"),
            "errors": sum(1 for e in self.events if e.event_type == "error"),
            "total_duration_ms": sum(e.duration_ms or 0 for e in requests),
        }

    def clear(self):
        """Clear all recorded events."""
        self.events.clear()
