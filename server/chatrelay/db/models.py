from __future__ import annotations
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from sqlalchemy import Column, DateTime, JSON
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive value; SQLite hands timestamps back without tzinfo."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Chat(SQLModel, table=True):
    __tablename__ = "chats"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    title: Optional[str] = None
    visibility: str = Field(default="private")
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))


class Message(SQLModel, table=True):
    __tablename__ = "messages"

    id: str = Field(default_factory=new_id, primary_key=True)
    chat_id: str = Field(index=True, foreign_key="chats.id")
    user_id: Optional[str] = Field(default=None, index=True)
    role: str
    content: str = ""
    reasoning: Optional[str] = None
    attachments: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    model: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))


class StreamSession(SQLModel, table=True):
    __tablename__ = "assistant_stream_sessions"

    id: str = Field(default_factory=new_id, primary_key=True)
    chat_id: str = Field(index=True)
    user_id: str = Field(index=True)
    status: str = Field(default="streaming", index=True)
    streamed_content: str = ""
    streamed_reasoning: str = ""
    message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    last_chunk_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


def row_to_dict(row: SQLModel) -> Dict[str, Any]:
    """JSON-friendly dump of a table row (datetimes as ISO strings)."""
    data = row.model_dump()
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = as_utc(value).isoformat(timespec="microseconds")
    return data
