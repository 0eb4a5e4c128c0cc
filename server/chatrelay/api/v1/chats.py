import asyncio
import json
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from typing import Any, Dict, List, Optional

from chatrelay.api.deps import get_chats, get_feed, get_relay, get_sessions
from chatrelay.core.auth import AuthUser, optional_user, require_user
from chatrelay.core.changes import ChangeFeed, RowChange
from chatrelay.core.errors import Forbidden, NotFound
from chatrelay.db.models import Chat, StreamSession, row_to_dict
from chatrelay.schemas.chat import CreateChatRequest, UpdateChatRequest
from chatrelay.services.chats import ChatRepository
from chatrelay.services.relay import ChatRelay
from chatrelay.services.sessions import StreamSessionStore
from chatrelay.services.titles import generate_title
from chatrelay.streaming.events import encode_frame

router = APIRouter()

KEEPALIVE_SECONDS = 15.0


async def _owned_chat(chats: ChatRepository, chat_id: str, user: AuthUser) -> Chat:
    chat = await chats.get_chat(chat_id)
    if chat is None:
        raise NotFound("Chat not found")
    if chat.user_id != user.id:
        raise Forbidden()
    return chat


@router.get("/chats")
async def list_chats(user: AuthUser = Depends(require_user), chats: ChatRepository = Depends(get_chats)) -> List[Dict]:
    """Chats owned by the caller, newest first."""
    return [row_to_dict(c) for c in await chats.list_chats(user.id)]


@router.post("/chats")
async def create_chat(
    request: CreateChatRequest,
    user: AuthUser = Depends(require_user),
    chats: ChatRepository = Depends(get_chats),
    relay: ChatRelay = Depends(get_relay),
) -> Dict:
    """Create an empty chat, titling it from `prompt` when no title is given."""
    title = request.title
    if not title and request.prompt:
        title = await generate_title(relay.upstream, relay.settings.title_model, request.prompt)
    chat = await chats.create_chat(user.id, title)
    return {"chatId": chat.id, "chatTitle": chat.title}


@router.patch("/chats/{chat_id}")
async def update_chat(
    chat_id: str,
    request: UpdateChatRequest,
    user: AuthUser = Depends(require_user),
    chats: ChatRepository = Depends(get_chats),
) -> Dict:
    """Rename a chat or change its visibility."""
    await _owned_chat(chats, chat_id, user)
    chat = await chats.update_chat(chat_id, title=request.title, visibility=request.visibility)
    if chat is None:
        raise NotFound("Chat not found")
    return row_to_dict(chat)


@router.get("/chats/{chat_id}/messages")
async def list_messages(
    chat_id: str,
    user: Optional[AuthUser] = Depends(optional_user),
    chats: ChatRepository = Depends(get_chats),
) -> List[Dict]:
    """Messages of a chat, oldest first. Public chats are readable by anyone."""
    chat = await chats.get_chat(chat_id)
    if chat is None:
        raise NotFound("Chat not found")
    if chat.visibility != "public" and (user is None or chat.user_id != user.id):
        raise Forbidden()
    return [row_to_dict(m) for m in await chats.list_messages(chat_id)]


@router.get("/chats/{chat_id}/session")
async def active_session(
    chat_id: str,
    user: AuthUser = Depends(require_user),
    sessions: StreamSessionStore = Depends(get_sessions),
) -> Dict[str, Any]:
    """The caller's in-progress stream session for this chat, if any (polling fallback)."""
    row: Optional[StreamSession] = await sessions.find_active(chat_id, user.id)
    return {"session": row_to_dict(row) if row else None}


@router.get("/chats/{chat_id}/changes")
async def follow_changes(
    chat_id: str,
    user: AuthUser = Depends(require_user),
    chats: ChatRepository = Depends(get_chats),
    sessions: StreamSessionStore = Depends(get_sessions),
    feed: ChangeFeed = Depends(get_feed),
):
    """Push channel of row changes for one chat, including stream-session progress."""
    await _owned_chat(chats, chat_id, user)
    queue = feed.subscribe(chat_id)
    active = await sessions.find_active(chat_id, user.id)

    async def generator():
        try:
            if active is not None:
                change = RowChange(StreamSession.__tablename__, "UPDATE", new=row_to_dict(active))
                yield encode_frame("change", json.dumps(change.to_dict()))
            while True:
                try:
                    change = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield b": keep-alive\n\n"
                    continue
                # Other users' sessions on a shared chat id are not the caller's business
                if change.table == StreamSession.__tablename__ and change.new.get("user_id") != user.id:
                    continue
                yield encode_frame("change", json.dumps(change.to_dict()))
                if change.table == "chats" and change.event_type == "DELETE":
                    return
        finally:
            feed.unsubscribe(chat_id, queue)

    return StreamingResponse(
        generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
    )
