"""Live event stream with framing, state machine and polling fallback."""

from .framing import SSEFrameParser, StreamEvent
from .polling import Poller
from .transport import StreamHandlers, StreamState, StreamSubscription, open_stream

__all__ = [
    "Poller",
    "SSEFrameParser",
    "StreamEvent",
    "StreamHandlers",
    "StreamState",
    "StreamSubscription",
    "open_stream",
]
