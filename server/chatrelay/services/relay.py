"""Upstream relay: bridges a client request to the OpenRouter token stream.

A relay run is split in two halves joined by a FIFO queue:

* the producer, a detached task registered with the TaskRegistry, consumes the
  upstream stream, re-emits every reasoning/content delta as an encoded event,
  snapshots progress into the stream session and writes the final message;
* the StreamHandle body, which the HTTP response iterates.

Dropping the client connection only ends the body iterator. The producer keeps
running until upstream finishes or fails, so a completed answer is never lost
because the user navigated away.
"""
from __future__ import annotations
import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional
import httpx

from chatrelay.config import Settings
from chatrelay.core.auth import AuthUser
from chatrelay.core.catalog import ModelCatalog
from chatrelay.core.errors import ConfigurationError, Forbidden, NotFound, UpstreamError, ValidationFailed
from chatrelay.core.tasks import TaskRegistry
from chatrelay.db.models import Message, new_id
from chatrelay.providers.openrouter import OpenRouterClient
from chatrelay.schemas.chat import AttachedFile, ChatRequest, EditRequest
from chatrelay.services.chats import ChatRepository, edited_text, title_from_message
from chatrelay.services.sessions import StreamSessionStore, with_retry
from chatrelay.streaming.events import (
    ChatIdEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    ReasoningEvent,
    StreamEvent,
    encode_event,
)

logger = logging.getLogger(__name__)

SYSTEM_PREAMBLE = (
    "You are a helpful AI assistant. Format your answers in Markdown, using headings, "
    "lists and fenced code blocks where they help. Keep your step-by-step reasoning "
    "separate from the final answer: the answer itself must not repeat the reasoning."
)


@dataclass
class RelayJob:
    chat_id: str
    user_id: str
    # Model recorded on the persisted messages
    model: str
    # Model id sent upstream (may carry the web-search suffix)
    upstream_model: str
    messages: List[Dict[str, Any]]
    announce_chat_id: bool = False
    session_id: str = field(default_factory=new_id)


@dataclass
class _Progress:
    content: str = ""
    reasoning: str = ""
    unsaved: int = 0
    message_id: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class StreamHandle:
    """Client-facing end of one relay run."""

    def __init__(self, job: RelayJob) -> None:
        self.job = job
        self.task: Optional[asyncio.Task] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.detached = False

    def emit(self, event: StreamEvent) -> None:
        if self._closed or self.detached:
            return
        self._queue.put_nowait(encode_event(event))

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def body(self) -> AsyncIterator[bytes]:
        finished = False
        try:
            while True:
                item = await self._queue.get()
                if item is None:
                    finished = True
                    return
                yield item
        finally:
            if not finished:
                logger.info("Client left stream %s for chat %s; relay continues", self.job.session_id, self.job.chat_id)
            self.detached = True


class ChatRelay:
    def __init__(
        self,
        settings: Settings,
        chats: ChatRepository,
        sessions: StreamSessionStore,
        upstream: OpenRouterClient,
        catalog: ModelCatalog,
        tasks: TaskRegistry,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.chats = chats
        self.sessions = sessions
        self.upstream = upstream
        self.catalog = catalog
        self.tasks = tasks
        self._transport = transport
        self.persist_interval = settings.persist_interval_seconds
        self.persist_threshold = settings.persist_char_threshold

    def check_configured(self) -> None:
        if not self.upstream.configured:
            logger.error("OPENROUTER_API_KEY is not configured; refusing to relay")
            raise ConfigurationError("Server configuration error: upstream API key is not set")

    # Context building
    async def _fetch_bytes(self, file: AttachedFile) -> bytes:
        timeout = httpx.Timeout(connect=10.0, read=60.0, write=30.0, pool=10.0)
        try:
            async with httpx.AsyncClient(timeout=timeout, trust_env=True, transport=self._transport) as client:
                resp = await client.get(file.url)
                resp.raise_for_status()
                return resp.content
        except httpx.HTTPError as e:
            logger.warning("Could not fetch attachment %s: %s", file.name, e)
            raise ValidationFailed(f"Could not fetch attachment {file.name}") from e

    async def build_user_content(self, text: str, files: List[AttachedFile]) -> List[Dict[str, Any]]:
        """Multi-part user content: the text, then one part per attachment in order."""
        parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
        for f in files:
            if f.is_image:
                parts.append({"type": "image_url", "image_url": {"url": f.url}})
            else:
                data = base64.b64encode(await self._fetch_bytes(f)).decode("ascii")
                parts.append({
                    "type": "file",
                    "file": {"filename": f.name, "file_data": f"data:{f.type};base64,{data}"},
                })
        return parts

    @staticmethod
    def _history(messages: List[Message]) -> List[Dict[str, Any]]:
        return [{"role": m.role, "content": m.content} for m in messages]

    # Request preparation (runs before any byte of the response is sent)
    async def prepare(self, request: ChatRequest) -> RelayJob:
        if not request.userId:
            raise ValidationFailed("User ID is required")
        if not request.userMessageContent or not request.userMessageContent.strip():
            raise ValidationFailed("Message content is required")
        self.check_configured()

        model = self.catalog.resolve(request.model)
        upstream_model = self.catalog.with_web_search(model, request.webSearchEnabled)

        history: List[Dict[str, Any]] = []
        announce = False
        chat_id = request.chatId
        if chat_id:
            chat = await self.chats.get_chat(chat_id)
            if chat is None:
                raise NotFound("Chat not found")
            if chat.user_id != request.userId:
                raise Forbidden("Not authorized to post to this chat.")
            history = self._history(await self.chats.list_messages(chat_id))

        # Attachments are fetched before anything is written
        user_content = await self.build_user_content(request.userMessageContent, request.attachedFiles)
        if not chat_id:
            chat = await self.chats.create_chat(request.userId, title_from_message(request.userMessageContent))
            chat_id = chat.id
            announce = True
        await self.chats.add_message(
            chat_id,
            "user",
            request.userMessageContent,
            user_id=request.userId,
            attachments=[f.model_dump(exclude_none=True) for f in request.attachedFiles],
            model=model,
        )
        messages = [{"role": "system", "content": SYSTEM_PREAMBLE}, *history, {"role": "user", "content": user_content}]
        logger.info(
            "Relay prepared chat=%s model=%s upstream_model=%s history=%d attachments=%d",
            chat_id, model, upstream_model, len(history), len(request.attachedFiles),
        )
        return RelayJob(
            chat_id=chat_id,
            user_id=request.userId,
            model=model,
            upstream_model=upstream_model,
            messages=messages,
            announce_chat_id=announce,
        )

    async def prepare_edit(self, user: AuthUser, request: EditRequest) -> RelayJob:
        original = await self.chats.get_message(request.id)
        if original is None or original.role != "user" or original.user_id != user.id:
            raise Forbidden("Not authorized to edit this message.")
        self.check_configured()

        override = (request.modelOverride or "").strip()
        model = self.catalog.resolve(override or original.model or self.catalog.default)

        # Attachments are fetched before the later history is deleted
        files = [AttachedFile(**a) for a in (original.attachments or [])]
        text = edited_text(original.content, request.newContent or "")
        user_content = await self.build_user_content(text, files)

        edited, _ = await self.chats.edit_and_truncate(original.id, request.newContent or "")
        remaining = await self.chats.list_messages(edited.chat_id)
        prior = [m for m in remaining if m.id != edited.id]
        messages = [
            {"role": "system", "content": SYSTEM_PREAMBLE},
            *self._history(prior),
            {"role": "user", "content": user_content},
        ]
        return RelayJob(
            chat_id=edited.chat_id,
            user_id=user.id,
            model=model,
            upstream_model=model,
            messages=messages,
        )

    # Streaming
    def start(self, job: RelayJob) -> StreamHandle:
        handle = StreamHandle(job)
        handle.task = self.tasks.spawn(self._run(job, handle), name=f"relay-{job.session_id}")
        return handle

    async def _snapshot(self, job: RelayJob, progress: _Progress) -> None:
        async with progress.lock:
            if not progress.unsaved:
                return
            progress.unsaved = 0
            await self.sessions.upsert(job.session_id, job.chat_id, job.user_id, progress.content, progress.reasoning)

    async def _tick(self, job: RelayJob, progress: _Progress) -> None:
        while True:
            await asyncio.sleep(self.persist_interval)
            await self._snapshot(job, progress)

    async def _stop_ticker(self, ticker: asyncio.Task, progress: _Progress) -> None:
        # Holding the lock guarantees the ticker is not mid-write
        async with progress.lock:
            ticker.cancel()
        try:
            await ticker
        except asyncio.CancelledError:
            pass

    async def _run(self, job: RelayJob, handle: StreamHandle) -> None:
        progress = _Progress()
        if job.announce_chat_id:
            handle.emit(ChatIdEvent(job.chat_id))
        await self.sessions.upsert(job.session_id, job.chat_id, job.user_id)
        ticker = asyncio.create_task(self._tick(job, progress))
        try:
            payload = self.upstream.build_payload(job.upstream_model, job.messages)
            async for delta in self.upstream.stream(payload):
                if delta.reasoning:
                    progress.reasoning += delta.reasoning
                    handle.emit(ReasoningEvent(progress.reasoning))
                if delta.content:
                    progress.content += delta.content
                    handle.emit(ContentEvent(delta.content))
                progress.unsaved += len(delta.reasoning) + len(delta.content)
                if progress.unsaved >= self.persist_threshold:
                    await self._snapshot(job, progress)
        except asyncio.CancelledError:
            await self._stop_ticker(ticker, progress)
            handle.emit(ErrorEvent("The server stopped before the answer was complete."))
            handle.close()
            await self.sessions.mark_error(job.session_id, job.chat_id, job.user_id, progress.content, progress.reasoning)
            raise
        except Exception as e:
            await self._stop_ticker(ticker, progress)
            if isinstance(e, UpstreamError):
                message = str(e)
                logger.warning("Upstream failed for chat %s: %s", job.chat_id, message)
            else:
                message = "Internal error while streaming the response."
                logger.exception("Relay failed for chat %s", job.chat_id)
            handle.emit(ErrorEvent(message))
            handle.close()
            await self.sessions.mark_error(job.session_id, job.chat_id, job.user_id, progress.content, progress.reasoning)
            return

        await self._stop_ticker(ticker, progress)
        handle.emit(DoneEvent(content=progress.content, reasoning=progress.reasoning, chat_id=job.chat_id))
        handle.close()
        await self._persist_final(job, progress)

    async def _persist_final(self, job: RelayJob, progress: _Progress) -> None:
        async def op() -> None:
            if progress.message_id is None:
                msg = await self.chats.add_message(
                    job.chat_id,
                    "assistant",
                    progress.content,
                    reasoning=progress.reasoning or None,
                    model=job.model,
                )
                progress.message_id = msg.id
            await self.sessions.finalize(job.session_id, progress.message_id, progress.content, progress.reasoning)

        try:
            await with_retry(op, f"Persisting final message for chat {job.chat_id}")
        except Exception:
            logger.critical(
                "LOST final assistant message: chat=%s session=%s message=%s chars=%d",
                job.chat_id, job.session_id, progress.message_id, len(progress.content),
                exc_info=True,
            )
            return
        logger.info("Stream %s completed for chat %s (message %s)", job.session_id, job.chat_id, progress.message_id)
