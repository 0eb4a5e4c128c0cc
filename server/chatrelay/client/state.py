from __future__ import annotations
import uuid
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Iterable, List, Optional

from chatrelay.core.changes import RowChange

SESSIONS_TABLE = "assistant_stream_sessions"


@dataclass
class ChatMessage:
    id: str
    role: str
    content: str = ""
    reasoning: Optional[str] = None
    chat_id: Optional[str] = None
    created_at: Optional[str] = None
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    model: Optional[str] = None
    # Local placeholder not yet confirmed by the server
    optimistic: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChatMessage":
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in known}
        data["attachments"] = list(data.get("attachments") or [])
        return cls(**data)


@dataclass
class PartialAssistant:
    content: str = ""
    reasoning: str = ""


def reconcile(messages: Iterable[ChatMessage]) -> List[ChatMessage]:
    """De-duplicate by id (last write wins) and order by creation time.

    An id keeps the position of its first occurrence; rows without a
    timestamp (optimistic ones) sort after confirmed rows.
    """
    latest: Dict[str, ChatMessage] = {}
    for m in messages:
        latest[m.id] = m
    ordered = list(latest.values())
    ordered.sort(key=lambda m: (m.created_at is None, m.created_at or ""))
    return ordered


class ChatStateStore:
    """In-memory message list for the active chat.

    Optimistic local updates and realtime change notifications both land
    here, possibly out of order; `visible()` is the reconciled view and
    `replace_all()` is the authoritative reset after a refetch.
    """

    def __init__(self, chat_id: Optional[str] = None) -> None:
        self.chat_id = chat_id
        self.messages: List[ChatMessage] = []
        self.partial_assistant: Optional[PartialAssistant] = None

    def visible(self) -> List[ChatMessage]:
        return reconcile(self.messages)

    def reset(self, chat_id: Optional[str] = None) -> None:
        self.chat_id = chat_id
        self.messages = []
        self.partial_assistant = None

    def replace_all(self, rows: Iterable[ChatMessage]) -> None:
        self.messages = list(rows)

    def append(self, message: ChatMessage) -> None:
        self.messages.append(message)

    def get(self, message_id: str) -> Optional[ChatMessage]:
        found = None
        for m in self.messages:
            if m.id == message_id:
                found = m
        return found

    def remove(self, message_id: str) -> None:
        self.messages = [m for m in self.messages if m.id != message_id]

    # Optimistic placeholders
    def add_placeholder(self, role: str = "assistant", content: str = "", after: Optional[str] = None) -> str:
        msg = ChatMessage(
            id=f"local-{uuid.uuid4()}",
            role=role,
            content=content,
            reasoning="" if role == "assistant" else None,
            chat_id=self.chat_id,
            optimistic=True,
        )
        if after is None:
            self.messages.append(msg)
        else:
            idx = max((i for i, m in enumerate(self.messages) if m.id == after), default=len(self.messages) - 1)
            self.messages.insert(idx + 1, msg)
        return msg.id

    def update_message(self, message_id: str, content: Optional[str] = None, reasoning: Optional[str] = None) -> None:
        for i, m in enumerate(self.messages):
            if m.id != message_id:
                continue
            changes: Dict[str, Any] = {}
            if content is not None:
                changes["content"] = content
            if reasoning is not None:
                changes["reasoning"] = reasoning
            self.messages[i] = replace(m, **changes)

    def adopt_chat_id(self, chat_id: str) -> None:
        """Take over a chat id announced by the server for a newly created chat."""
        self.chat_id = chat_id
        self.messages = [replace(m, chat_id=chat_id) if m.optimistic and not m.chat_id else m for m in self.messages]

    def truncate_after(self, message_id: str) -> None:
        for i, m in enumerate(self.messages):
            if m.id == message_id:
                self.messages = self.messages[: i + 1]
                return

    def _retire_user_placeholder(self, content: str) -> None:
        for i, m in enumerate(self.messages):
            if m.optimistic and m.role == "user" and m.content == content:
                del self.messages[i]
                return

    # Realtime changes
    def apply_change(self, change: RowChange) -> None:
        row = change.new or change.old
        if self.chat_id is not None and row.get("chat_id") not in (None, self.chat_id):
            return
        if change.table == SESSIONS_TABLE:
            self._apply_session(change.new)
            return
        if change.table != "messages":
            return
        if change.event_type == "INSERT":
            row_msg = ChatMessage.from_row(change.new)
            if row_msg.role == "assistant":
                # The confirmed answer supersedes any local placeholder
                self.messages = [m for m in self.messages if not (m.optimistic and m.role == "assistant")]
            elif row_msg.role == "user" and self.get(row_msg.id) is None:
                self._retire_user_placeholder(row_msg.content)
            self.messages.append(row_msg)
        elif change.event_type == "UPDATE":
            current = self.get(str(change.new.get("id")))
            if current is None:
                self.messages.append(ChatMessage.from_row(change.new))
            else:
                merged = {**current.__dict__, **change.new}
                self.messages.append(ChatMessage.from_row(merged))
        elif change.event_type == "DELETE":
            self.remove(str(change.old.get("id")))

    def _apply_session(self, row: Dict[str, Any]) -> None:
        if row.get("status") == "streaming":
            self.partial_assistant = PartialAssistant(
                content=row.get("streamed_content") or "",
                reasoning=row.get("streamed_reasoning") or "",
            )
        else:
            self.partial_assistant = None
