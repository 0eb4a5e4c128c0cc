"""Typed relay events and their server-sent-event wire encoding.

The relay speaks a closed vocabulary of five events over one SSE stream::

    event: chatId      data: <raw chat id>
    event: reasoning   data: {"reasoning": "<full reasoning so far>"}
    event: content     data: {"content": "<incremental delta>"}
    event: done        data: {"content": ..., "reasoning": ..., "chatId": ...}
    event: error       data: {"error": "<message>"}

`reasoning` payloads are absolute (each replaces the previous value) while
`content` payloads are deltas to be appended.
"""
from __future__ import annotations
import json
from dataclasses import dataclass
from typing import ClassVar, Optional, Union


@dataclass(frozen=True)
class ChatIdEvent:
    kind: ClassVar[str] = "chatId"
    chat_id: str


@dataclass(frozen=True)
class ReasoningEvent:
    kind: ClassVar[str] = "reasoning"
    reasoning: str


@dataclass(frozen=True)
class ContentEvent:
    kind: ClassVar[str] = "content"
    content: str


@dataclass(frozen=True)
class DoneEvent:
    kind: ClassVar[str] = "done"
    content: str
    reasoning: str
    chat_id: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent:
    kind: ClassVar[str] = "error"
    error: str


StreamEvent = Union[ChatIdEvent, ReasoningEvent, ContentEvent, DoneEvent, ErrorEvent]

EVENT_KINDS = ("chatId", "reasoning", "content", "done", "error")
TERMINAL_KINDS = ("done", "error")


def event_payload(event: StreamEvent) -> str:
    """Render the `data:` payload for an event."""
    if isinstance(event, ChatIdEvent):
        return event.chat_id
    if isinstance(event, ReasoningEvent):
        body = {"reasoning": event.reasoning}
    elif isinstance(event, ContentEvent):
        body = {"content": event.content}
    elif isinstance(event, DoneEvent):
        body = {"content": event.content, "reasoning": event.reasoning, "chatId": event.chat_id}
    elif isinstance(event, ErrorEvent):
        body = {"error": event.error}
    else:
        raise TypeError(f"Unknown stream event: {event!r}")
    return json.dumps(body, ensure_ascii=False)


def encode_event(event: StreamEvent) -> bytes:
    return f"event: {event.kind}\ndata: {event_payload(event)}\n\n".encode("utf-8")


def encode_frame(name: str, data: str) -> bytes:
    """Encode an arbitrary named SSE frame (used outside the relay vocabulary)."""
    lines = "".join(f"data: {line}\n" for line in data.split("\n"))
    return f"event: {name}\n{lines}\n".encode("utf-8")
