from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class RowChange:
    """A row-level change notification, shaped like a realtime postgres payload."""

    table: str
    event_type: str  # INSERT | UPDATE | DELETE
    new: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RowChange":
        return cls(
            table=str(data.get("table", "")),
            event_type=str(data.get("event_type", "")),
            new=dict(data.get("new") or {}),
            old=dict(data.get("old") or {}),
        )


class ChangeFeed:
    """In-process fan-out of row changes, keyed by chat id.

    Subscribers get a bounded queue; a subscriber that falls behind loses the
    oldest notifications rather than blocking the publisher.
    """

    def __init__(self, max_queue: int = 256) -> None:
        self._max_queue = max_queue
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, chat_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.setdefault(chat_id, []).append(queue)
        return queue

    def unsubscribe(self, chat_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(chat_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(chat_id, None)

    def subscriber_count(self, chat_id: Optional[str] = None) -> int:
        if chat_id is not None:
            return len(self._subscribers.get(chat_id, []))
        return sum(len(q) for q in self._subscribers.values())

    def publish(self, chat_id: str, change: RowChange) -> None:
        for queue in list(self._subscribers.get(chat_id, [])):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.warning("Change feed subscriber for chat %s is lagging; dropped oldest change", chat_id)
            queue.put_nowait(change)
