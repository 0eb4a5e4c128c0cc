from __future__ import annotations
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import select, desc

from chatrelay.core.changes import ChangeFeed, RowChange
from chatrelay.db.models import Chat, Message, StreamSession, as_utc, row_to_dict
from chatrelay.db.session import Database

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50


def title_from_message(text: str) -> str:
    title = " ".join(text.split())[:TITLE_LENGTH]
    return title or "New Chat"


def edited_text(current: str, new_content: str) -> str:
    """Text a user message carries after an edit; blank or unchanged input keeps `current`."""
    if new_content.strip() and new_content.strip() != current.strip():
        return new_content
    return current


class ChatRepository:
    """Chats and messages. Every committed mutation is published on the change feed."""

    def __init__(self, db: Database, feed: Optional[ChangeFeed] = None) -> None:
        self.db = db
        self.feed = feed

    def _publish(self, chat_id: str, change: RowChange) -> None:
        if self.feed is not None:
            self.feed.publish(chat_id, change)

    # Chats
    async def create_chat(self, user_id: str, title: Optional[str] = None) -> Chat:
        async with self.db.session() as session:
            chat = Chat(user_id=user_id, title=title)
            session.add(chat)
        logger.info("Created chat %s for user %s", chat.id, user_id)
        self._publish(chat.id, RowChange("chats", "INSERT", new=row_to_dict(chat)))
        return chat

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        async with self.db.session() as session:
            return await session.get(Chat, chat_id)

    async def list_chats(self, user_id: str) -> List[Chat]:
        async with self.db.session() as session:
            stmt = select(Chat).where(Chat.user_id == user_id).order_by(desc(Chat.created_at))
            result = await session.exec(stmt)
            return list(result.all())

    async def update_chat(self, chat_id: str, title: Optional[str] = None, visibility: Optional[str] = None) -> Optional[Chat]:
        async with self.db.session() as session:
            chat = await session.get(Chat, chat_id)
            if chat is None:
                return None
            if title is not None:
                chat.title = title
            if visibility is not None:
                chat.visibility = visibility
            session.add(chat)
        self._publish(chat_id, RowChange("chats", "UPDATE", new=row_to_dict(chat)))
        return chat

    async def delete_chat(self, chat_id: str) -> int:
        """Delete a chat with its messages and stream sessions. Returns the message count."""
        async with self.db.session() as session:
            msgs = (await session.exec(select(Message).where(Message.chat_id == chat_id))).all()
            for m in msgs:
                await session.delete(m)
            sessions = (await session.exec(select(StreamSession).where(StreamSession.chat_id == chat_id))).all()
            for s in sessions:
                await session.delete(s)
            # Messages first so the chat row never dangles children
            await session.flush()
            chat = await session.get(Chat, chat_id)
            if chat is not None:
                await session.delete(chat)
        for m in msgs:
            self._publish(chat_id, RowChange("messages", "DELETE", old={"id": m.id, "chat_id": chat_id}))
        self._publish(chat_id, RowChange("chats", "DELETE", old={"id": chat_id}))
        logger.info("Deleted chat %s (%d messages)", chat_id, len(msgs))
        return len(msgs)

    # Messages
    async def list_messages(self, chat_id: str) -> List[Message]:
        async with self.db.session() as session:
            stmt = select(Message).where(Message.chat_id == chat_id).order_by(Message.created_at)
            result = await session.exec(stmt)
            return list(result.all())

    async def list_attachments(self, chat_id: str) -> List[Dict[str, Any]]:
        files: List[Dict[str, Any]] = []
        for m in await self.list_messages(chat_id):
            files.extend(m.attachments or [])
        return files

    async def get_message(self, message_id: str) -> Optional[Message]:
        async with self.db.session() as session:
            return await session.get(Message, message_id)

    async def add_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        user_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
    ) -> Message:
        async with self.db.session() as session:
            msg = Message(
                chat_id=chat_id,
                role=role,
                content=content,
                user_id=user_id,
                reasoning=reasoning,
                attachments=list(attachments or []),
                model=model,
            )
            # Keep created_at strictly increasing within a chat
            stmt = (
                select(Message.created_at)
                .where(Message.chat_id == chat_id)
                .order_by(desc(Message.created_at))
                .limit(1)
            )
            latest = (await session.exec(stmt)).first()
            if latest is not None and msg.created_at <= as_utc(latest):
                msg.created_at = as_utc(latest) + timedelta(microseconds=1)
            session.add(msg)
        self._publish(chat_id, RowChange("messages", "INSERT", new=row_to_dict(msg)))
        return msg

    async def edit_and_truncate(self, message_id: str, new_content: str) -> Tuple[Message, List[str]]:
        """Rewrite a user message and drop everything after it in the chat.

        Blank or unchanged content leaves the message text as it was. Returns
        the edited message and the ids of the deleted messages.
        """
        async with self.db.session() as session:
            msg = await session.get(Message, message_id)
            if msg is None:
                raise LookupError(message_id)
            text = edited_text(msg.content, new_content)
            changed = text != msg.content
            if changed:
                msg.content = text
                session.add(msg)
            pivot = as_utc(msg.created_at)
            stmt = select(Message).where(Message.chat_id == msg.chat_id, Message.created_at > pivot)
            later = (await session.exec(stmt)).all()
            deleted = [m.id for m in later]
            for m in later:
                await session.delete(m)
        if changed:
            self._publish(msg.chat_id, RowChange("messages", "UPDATE", new=row_to_dict(msg)))
        for mid in deleted:
            self._publish(msg.chat_id, RowChange("messages", "DELETE", old={"id": mid, "chat_id": msg.chat_id}))
        logger.info("Edited message %s, removed %d later message(s)", message_id, len(deleted))
        return msg, deleted

