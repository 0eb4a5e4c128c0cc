from fastapi import APIRouter, Depends, HTTPException, Request
import logging
from fastapi.responses import StreamingResponse

from chatrelay.api.deps import get_chats, get_rate_limiter, get_relay, get_storage
from chatrelay.core.auth import AuthUser, require_user
from chatrelay.core.errors import Forbidden, NotFound
from chatrelay.core.ratelimit import RateLimiter
from chatrelay.schemas.chat import ChatRequest, DeleteChatRequest, EditRequest
from chatrelay.services.chats import ChatRepository
from chatrelay.services.relay import ChatRelay, StreamHandle
from chatrelay.services.storage import ObjectStore

router = APIRouter()
logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    # Disable proxy buffering so events flush immediately
    "X-Accel-Buffering": "no",
}


def sse_response(handle: StreamHandle) -> StreamingResponse:
    return StreamingResponse(handle.body(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/chat/stream")
async def stream_chat(
    request: ChatRequest,
    http_request: Request,
    relay: ChatRelay = Depends(get_relay),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Relay a user message upstream and stream the answer as server-sent events."""
    limiter.enforce(http_request)
    logger.info(
        "/chat/stream start chat=%s model=%s attachments=%d web_search=%s",
        request.chatId, request.model, len(request.attachedFiles), request.webSearchEnabled,
    )
    try:
        # Everything up to here may still fail with an ordinary JSON error
        job = await relay.prepare(request)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("/chat/stream setup failed model=%s: %s", request.model, e)
        raise HTTPException(status_code=500, detail="Failed to start chat stream")
    return sse_response(relay.start(job))


@router.post("/chat/edit")
async def edit_message(
    request: EditRequest,
    user: AuthUser = Depends(require_user),
    relay: ChatRelay = Depends(get_relay),
):
    """Rewrite a user message, drop everything after it and stream a new reply."""
    try:
        job = await relay.prepare_edit(user, request)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("/chat/edit setup failed message=%s: %s", request.id, e)
        raise HTTPException(status_code=500, detail="Failed to edit message")
    logger.info("/chat/edit message=%s chat=%s model=%s", request.id, job.chat_id, job.model)
    return sse_response(relay.start(job))


@router.post("/chat/delete")
async def delete_chat(
    request: DeleteChatRequest,
    user: AuthUser = Depends(require_user),
    chats: ChatRepository = Depends(get_chats),
    storage: ObjectStore = Depends(get_storage),
):
    """Delete a chat, its messages and their stored attachments."""
    chat = await chats.get_chat(request.chatId)
    if chat is None:
        raise NotFound("Chat not found")
    if chat.user_id != user.id:
        raise Forbidden()
    try:
        files = await chats.list_attachments(chat.id)
        removed = await storage.remove(files)
        await chats.delete_chat(chat.id)
    except Exception as e:
        logger.exception("/chat/delete failed chat=%s: %s", request.chatId, e)
        raise HTTPException(status_code=500, detail=f"Chat deletion error: {e}")
    logger.info("/chat/delete chat=%s attachments_removed=%d", chat.id, removed)
    return {"success": True}
