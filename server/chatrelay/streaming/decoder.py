from __future__ import annotations
import codecs
import json
import logging
from typing import Any, Iterable, List, Optional, Tuple

from chatrelay.streaming.events import (
    ChatIdEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    ReasoningEvent,
    StreamEvent,
)

logger = logging.getLogger(__name__)

Frame = Tuple[str, str]


class SSEParser:
    """Incremental server-sent-events parser yielding raw ``(event, data)`` frames.

    Input may be split anywhere, including inside a multi-byte UTF-8 sequence.
    A frame ends at a blank line; as a fallback for producers that separate
    events with a single newline, an ``event:`` line also ends a pending frame
    that already carries data. ``close()`` flushes whatever is left.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, chunk: bytes) -> List[Frame]:
        self._buffer += self._decoder.decode(chunk)
        frames: List[Frame] = []
        while True:
            idx = self._buffer.find("\n")
            if idx == -1:
                break
            line = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1:]
            self._handle_line(line, frames)
        return frames

    def close(self) -> List[Frame]:
        frames: List[Frame] = []
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self._handle_line(line, frames)
        self._dispatch(frames)
        return frames

    def _handle_line(self, line: str, frames: List[Frame]) -> None:
        line = line.rstrip("\r")
        if not line.strip():
            self._dispatch(frames)
            return
        if line.startswith(":"):
            return
        field, _, value = line.partition(":")
        # One optional space after the colon belongs to the framing
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            if self._data:
                self._dispatch(frames)
            self._event = value
        elif field == "data":
            self._data.append(value)
        # id:, retry: and unknown fields are irrelevant here

    def _dispatch(self, frames: List[Frame]) -> None:
        if self._event is None and not self._data:
            return
        frames.append((self._event or "message", "\n".join(self._data)))
        self._event = None
        self._data = []


def _load_object(data: str) -> Optional[dict]:
    try:
        obj: Any = json.loads(data)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def frame_to_event(name: str, data: str) -> Optional[StreamEvent]:
    """Map a raw frame to a typed event, or None when it should be dropped."""
    if name == "chatId":
        chat_id = data.strip()
        return ChatIdEvent(chat_id) if chat_id else None
    if name == "reasoning":
        obj = _load_object(data)
        if obj is None:
            logger.debug("Dropping malformed reasoning payload")
            return None
        return ReasoningEvent(_text(obj.get("reasoning")))
    if name == "content":
        obj = _load_object(data)
        if obj is None:
            logger.debug("Dropping malformed content payload")
            return None
        return ContentEvent(_text(obj.get("content")))
    if name == "done":
        obj = _load_object(data)
        if obj is None:
            return ErrorEvent(data or "Unknown error")
        chat_id = obj.get("chatId")
        return DoneEvent(
            content=_text(obj.get("content")),
            reasoning=_text(obj.get("reasoning")),
            chat_id=str(chat_id) if chat_id else None,
        )
    if name == "error":
        obj = _load_object(data)
        if obj is None:
            return ErrorEvent(data or "Unknown error")
        return ErrorEvent(_text(obj.get("error")) or "Unknown error")
    return None


class StreamDecoder:
    """Decode the relay's byte stream into typed events.

    Decoding stops for good after a ``done`` or ``error`` event; bytes that
    follow are ignored.
    """

    def __init__(self) -> None:
        self._parser = SSEParser()
        self.finished = False

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        if self.finished:
            return []
        return self._convert(self._parser.feed(chunk))

    def close(self) -> List[StreamEvent]:
        if self.finished:
            return []
        return self._convert(self._parser.close())

    def _convert(self, frames: Iterable[Frame]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for name, data in frames:
            event = frame_to_event(name, data)
            if event is None:
                continue
            events.append(event)
            if isinstance(event, (DoneEvent, ErrorEvent)):
                self.finished = True
                break
        return events


def decode_all(chunks: Iterable[bytes]) -> List[StreamEvent]:
    decoder = StreamDecoder()
    events: List[StreamEvent] = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
        if decoder.finished:
            return events
    events.extend(decoder.close())
    return events
