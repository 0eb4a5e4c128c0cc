from __future__ import annotations
import inspect
from dataclasses import dataclass
from typing import Any, AsyncIterable, Callable, Optional, Union

from chatrelay.streaming.decoder import StreamDecoder
from chatrelay.streaming.events import (
    ChatIdEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    ReasoningEvent,
    StreamEvent,
)


@dataclass
class StreamHandlers:
    """Callbacks invoked in arrival order. Each may be a plain or an async callable."""

    on_chat_id: Optional[Callable[[str], Any]] = None
    # Full reasoning so far
    on_reasoning: Optional[Callable[[str], Any]] = None
    # Content delta
    on_content: Optional[Callable[[str], Any]] = None
    on_done: Optional[Callable[[DoneEvent], Any]] = None
    on_error: Optional[Callable[[str], Any]] = None


async def _call(handler: Optional[Callable[..., Any]], *args: Any) -> None:
    if handler is None:
        return
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


async def dispatch(event: StreamEvent, handlers: StreamHandlers) -> None:
    if isinstance(event, ChatIdEvent):
        await _call(handlers.on_chat_id, event.chat_id)
    elif isinstance(event, ReasoningEvent):
        await _call(handlers.on_reasoning, event.reasoning)
    elif isinstance(event, ContentEvent):
        await _call(handlers.on_content, event.content)
    elif isinstance(event, DoneEvent):
        await _call(handlers.on_done, event)
    elif isinstance(event, ErrorEvent):
        await _call(handlers.on_error, event.error)
    else:
        raise TypeError(f"Unknown stream event: {event!r}")


async def consume_stream(
    chunks: AsyncIterable[bytes], handlers: StreamHandlers
) -> Optional[Union[DoneEvent, ErrorEvent]]:
    """Drive a StreamDecoder over a response body and dispatch each event.

    Returns the terminal event, or None when the body ended without one.
    Reading stops as soon as a terminal event has been handled.
    """
    decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            await dispatch(event, handlers)
            if isinstance(event, (DoneEvent, ErrorEvent)):
                return event
    for event in decoder.close():
        await dispatch(event, handlers)
        if isinstance(event, (DoneEvent, ErrorEvent)):
            return event
    return None
