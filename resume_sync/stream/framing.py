"""Incremental parser for ``text/event-stream`` framing."""

from __future__ import annotations

import codecs
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, List, Optional, Union

from ..errors import StreamFramingFailure

DEFAULT_EVENT = "message"

_LINE_END = re.compile(r"\r\n|\r|\n")


@dataclass
class StreamEvent:
    """One dispatched event: its name, JSON-decoded data and optional id."""

    event: str
    data: Any
    id: Optional[str] = None


class FrameState(Enum):
    IDLE = "idle"  # between events
    ACCUMULATING = "accumulating"  # fields of an event seen, no blank line yet


class SSEFrameParser:
    """
    Turns arbitrary byte chunks into :class:`StreamEvent` objects.

    Feeding a stream in one piece or one byte at a time yields the same
    events. Partial lines and partial UTF-8 sequences are carried over to
    the next :meth:`feed`; :meth:`flush` drains them at end of stream.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.state = FrameState.IDLE
        self._event_name: Optional[str] = None
        self._data_lines: List[str] = []
        self.last_event_id: Optional[str] = None
        self.retry_ms: Optional[int] = None

    def feed(self, chunk: Union[bytes, str]) -> List[StreamEvent]:
        """Consume a chunk and return the events it completed.

        Raises:
            StreamFramingFailure: A completed event's data is not valid JSON
        """
        return list(self.iter_feed(chunk))

    def iter_feed(self, chunk: Union[bytes, str]) -> Iterator[StreamEvent]:
        """Buffer ``chunk`` now and yield its completed events one at a time.

        Events ahead of a malformed one are yielded before
        :class:`StreamFramingFailure` is raised, whatever the chunking.
        """
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text
        return self._drain()

    def flush(self) -> List[StreamEvent]:
        """Parse whatever is left once the stream has ended."""
        return list(self.iter_flush())

    def iter_flush(self) -> Iterator[StreamEvent]:
        self._buffer += self._decoder.decode(b"", final=True)
        leftover = self._buffer.rstrip("\r\n")
        self._buffer = ""
        return self._drain_leftover(leftover)

    def _drain(self) -> Iterator[StreamEvent]:
        while True:
            match = _LINE_END.search(self._buffer)
            if match is None:
                return
            # A trailing "\r" may be the first half of "\r\n".
            if match.group() == "\r" and match.end() == len(self._buffer):
                return
            line = self._buffer[: match.start()]
            self._buffer = self._buffer[match.end():]
            event = self._process_line(line)
            if event is not None:
                yield event

    def _drain_leftover(self, leftover: str) -> Iterator[StreamEvent]:
        if leftover.strip().startswith(("{", "[")) and self.state is FrameState.IDLE:
            # Bare JSON with no field prefix
            yield self._decode(DEFAULT_EVENT, leftover.strip())
            return

        for line in _LINE_END.split(leftover) if leftover else []:
            event = self._process_line(line)
            if event is not None:
                yield event
        event = self._dispatch()
        if event is not None:
            yield event

    def reset(self) -> None:
        """Forget partial input; ``last_event_id`` is kept for resumption."""
        self._decoder.reset()
        self._buffer = ""
        self._clear_event()

    def _process_line(self, line: str) -> Optional[StreamEvent]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event_name = value.strip() or DEFAULT_EVENT
        elif name == "data":
            self._data_lines.append(value)
        elif name == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif name == "retry":
            if value.isdigit():
                self.retry_ms = int(value)
            return None
        else:
            return None
        self.state = FrameState.ACCUMULATING
        return None

    def _dispatch(self) -> Optional[StreamEvent]:
        if self.state is FrameState.IDLE:
            return None
        name = self._event_name or DEFAULT_EVENT
        data_lines = self._data_lines
        self._clear_event()
        if not data_lines:
            return None
        return self._decode(name, "\n".join(data_lines))

    def _decode(self, name: str, raw: str) -> StreamEvent:
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise StreamFramingFailure(f"Invalid JSON in '{name}' event: {exc}", raw=raw) from exc
        return StreamEvent(event=name, data=data, id=self.last_event_id)

    def _clear_event(self) -> None:
        self.state = FrameState.IDLE
        self._event_name = None
        self._data_lines = []
