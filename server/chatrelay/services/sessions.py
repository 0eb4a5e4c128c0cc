from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlmodel import select, desc

from chatrelay.core.changes import ChangeFeed, RowChange
from chatrelay.db.models import StreamSession, row_to_dict, utcnow
from chatrelay.db.session import Database

logger = logging.getLogger(__name__)

STREAMING = "streaming"
COMPLETED = "completed"
ERROR = "error"

T = TypeVar("T")


async def with_retry(op: Callable[[], Awaitable[T]], what: str, attempts: int = 3, backoff: float = 0.5) -> T:
    """Run `op`, retrying with exponential backoff; the last failure propagates."""
    attempt = 1
    while True:
        try:
            return await op()
        except Exception as e:
            if attempt >= attempts:
                raise
            logger.warning("%s failed (attempt %d/%d): %s", what, attempt, attempts, e)
            await asyncio.sleep(backoff)
            backoff *= 2
            attempt += 1


class StreamSessionStore:
    """Durable record of in-flight assistant output, one row per relay call.

    Progress writes are best-effort. Terminal states are sticky: a late
    progress snapshot never moves a session back to `streaming`.
    """

    def __init__(self, db: Database, feed: Optional[ChangeFeed] = None) -> None:
        self.db = db
        self.feed = feed

    def _publish(self, row: StreamSession, event_type: str) -> None:
        if self.feed is not None:
            self.feed.publish(row.chat_id, RowChange(StreamSession.__tablename__, event_type, new=row_to_dict(row)))

    async def _write(
        self,
        session_id: str,
        chat_id: str,
        user_id: str,
        content: str,
        reasoning: str,
        status: str,
        message_id: Optional[str] = None,
    ) -> Optional[StreamSession]:
        async with self.db.session() as session:
            row = await session.get(StreamSession, session_id)
            event_type = "UPDATE"
            if row is None:
                row = StreamSession(id=session_id, chat_id=chat_id, user_id=user_id)
                event_type = "INSERT"
            elif row.status != STREAMING and status == STREAMING:
                return None
            row.streamed_content = content
            row.streamed_reasoning = reasoning
            row.status = status
            row.last_chunk_at = utcnow()
            if message_id is not None:
                row.message_id = message_id
            session.add(row)
        self._publish(row, event_type)
        return row

    async def upsert(self, session_id: str, chat_id: str, user_id: str, content: str = "", reasoning: str = "") -> bool:
        """Idempotent progress snapshot. Returns False if the write failed."""
        try:
            await self._write(session_id, chat_id, user_id, content, reasoning, STREAMING)
            return True
        except Exception:
            logger.exception("Failed to persist progress for stream session %s", session_id)
            return False

    async def finalize(self, session_id: str, message_id: str, content: Optional[str] = None, reasoning: Optional[str] = None) -> None:
        """Mark the session completed and link the persisted message. Raises on failure."""
        async with self.db.session() as session:
            row = await session.get(StreamSession, session_id)
            if row is None:
                raise LookupError(f"stream session {session_id} not found")
            row.status = COMPLETED
            row.message_id = message_id
            if content is not None:
                row.streamed_content = content
            if reasoning is not None:
                row.streamed_reasoning = reasoning
            row.last_chunk_at = utcnow()
            session.add(row)
        self._publish(row, "UPDATE")

    async def mark_error(self, session_id: str, chat_id: str, user_id: str, content: str, reasoning: str) -> bool:
        try:
            await self._write(session_id, chat_id, user_id, content, reasoning, ERROR)
            return True
        except Exception:
            logger.exception("Failed to mark stream session %s as errored", session_id)
            return False

    async def get(self, session_id: str) -> Optional[StreamSession]:
        async with self.db.session() as session:
            return await session.get(StreamSession, session_id)

    async def find_active(self, chat_id: str, user_id: str) -> Optional[StreamSession]:
        """Most recent `streaming` session for this chat and user."""
        async with self.db.session() as session:
            stmt = (
                select(StreamSession)
                .where(
                    StreamSession.chat_id == chat_id,
                    StreamSession.user_id == user_id,
                    StreamSession.status == STREAMING,
                )
                .order_by(desc(StreamSession.last_chunk_at))
                .limit(1)
            )
            return (await session.exec(stmt)).first()
