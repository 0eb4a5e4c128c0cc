from __future__ import annotations
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from chatrelay.client.state import ChatMessage, ChatStateStore, PartialAssistant
from chatrelay.core.changes import RowChange
from chatrelay.streaming.consumer import StreamHandlers, consume_stream
from chatrelay.streaming.decoder import SSEParser
from chatrelay.streaming.events import DoneEvent

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str], Any]


def _log_notice(title: str, description: str) -> None:
    logger.warning("%s: %s", title, description)


def error_text(payload: Any) -> str:
    if isinstance(payload, str) and payload:
        return payload
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            if isinstance(payload.get(key), str):
                return payload[key]
    return "Unknown error"


def session_age(session: Dict[str, Any], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds since the session's last snapshot, or None when it carries no usable timestamp."""
    stamp = session.get("last_chunk_at")
    if not isinstance(stamp, str):
        return None
    try:
        last = datetime.fromisoformat(stamp)
    except ValueError:
        return None
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return ((now or datetime.now(timezone.utc)) - last).total_seconds()


class ChatClient:
    """Async client for the relay that keeps a ChatStateStore in sync.

    Errors are surfaced through `notify(title, description)` as transient
    notices; nothing is retried automatically.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        store: ChatStateStore,
        user_id: str,
        access_token: Optional[str] = None,
        notify: Optional[Notifier] = None,
        base_path: str = "/api/v1",
    ) -> None:
        self.http = http
        self.store = store
        self.user_id = user_id
        self.access_token = access_token
        self.notify = notify or _log_notice
        self.base_path = base_path.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self.base_path}{path}"

    def _headers(self) -> Dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    @staticmethod
    def _response_error(resp: httpx.Response) -> str:
        try:
            return error_text(resp.json())
        except ValueError:
            return resp.text or f"HTTP {resp.status_code}"

    async def _read_error(self, resp: httpx.Response) -> str:
        body = await resp.aread()
        try:
            return error_text(json.loads(body))
        except ValueError:
            return body.decode("utf-8", errors="ignore") or f"HTTP {resp.status_code}"

    async def fetch_messages(self, chat_id: str) -> Optional[List[ChatMessage]]:
        """Authoritative refetch; replaces the store's list on success."""
        try:
            resp = await self.http.get(self._url(f"/chats/{chat_id}/messages"), headers=self._headers())
        except httpx.HTTPError as e:
            self.notify("Error fetching messages", str(e))
            return None
        if resp.status_code != 200:
            self.notify("Error fetching messages", self._response_error(resp))
            return None
        rows = [ChatMessage.from_row(r) for r in resp.json()]
        if self.store.chat_id == chat_id:
            self.store.replace_all(rows)
        return rows

    async def _run_stream(
        self,
        method: str,
        path: str,
        body: Dict[str, Any],
        placeholder_id: str,
        failure_title: str,
        on_request_failed: Optional[Callable[[], None]] = None,
    ) -> bool:
        content = ""

        def on_chat_id(chat_id: str) -> None:
            if not self.store.chat_id:
                self.store.adopt_chat_id(chat_id)

        def on_reasoning(reasoning: str) -> None:
            self.store.update_message(placeholder_id, reasoning=reasoning)

        def on_content(delta: str) -> None:
            nonlocal content
            content += delta
            self.store.update_message(placeholder_id, content=content)

        async def on_done(event: DoneEvent) -> None:
            placeholder = self.store.get(placeholder_id)
            chat_id = event.chat_id or self.store.chat_id
            rows = await self.fetch_messages(chat_id) if chat_id else None
            if rows and rows[-1].role == "assistant":
                return
            # The answer row is written after `done`; keep the streamed text
            # visible until a refetch or a change notification delivers it
            if placeholder is not None and self.store.get(placeholder_id) is None:
                self.store.append(placeholder)
            self.store.update_message(placeholder_id, content=event.content, reasoning=event.reasoning)

        def on_error(message: str) -> None:
            self.store.remove(placeholder_id)
            self.notify(failure_title, message)

        handlers = StreamHandlers(
            on_chat_id=on_chat_id,
            on_reasoning=on_reasoning,
            on_content=on_content,
            on_done=on_done,
            on_error=on_error,
        )
        try:
            async with self.http.stream(method, self._url(path), json=body, headers=self._headers()) as resp:
                if resp.status_code != 200:
                    message = await self._read_error(resp)
                    self.store.remove(placeholder_id)
                    if on_request_failed:
                        on_request_failed()
                    self.notify(failure_title, message)
                    return False
                result = await consume_stream(resp.aiter_bytes(), handlers)
        except httpx.HTTPError as e:
            self.store.remove(placeholder_id)
            self.notify(failure_title, str(e) or "Could not connect to chat service.")
            return False
        if result is None:
            self.store.remove(placeholder_id)
            self.notify(failure_title, "The response ended unexpectedly.")
            return False
        return isinstance(result, DoneEvent)

    async def send_message(
        self,
        content: str,
        model: str,
        web_search: bool = False,
        attachments: Optional[List[Dict[str, Any]]] = None,
        chat_id: Optional[str] = None,
    ) -> bool:
        if chat_id is not None and chat_id != self.store.chat_id:
            self.store.reset(chat_id)
        user_local = self.store.add_placeholder(role="user", content=content)
        placeholder = self.store.add_placeholder(role="assistant")
        body = {
            "chatId": self.store.chat_id,
            "userMessageContent": content,
            "userId": self.user_id,
            "model": model,
            "webSearchEnabled": web_search,
            "attachedFiles": list(attachments or []),
        }
        return await self._run_stream(
            "POST", "/chat/stream", body, placeholder, "Error sending message",
            # Nothing was stored server-side, drop the local user message too
            on_request_failed=lambda: self.store.remove(user_local),
        )

    async def edit_message(self, message_id: str, new_content: str, model_override: Optional[str] = None) -> bool:
        if not self.access_token:
            self.notify("Not authenticated", "Please log in.")
            return False
        if new_content.strip():
            self.store.update_message(message_id, content=new_content)
        self.store.truncate_after(message_id)
        placeholder = self.store.add_placeholder(role="assistant", after=message_id)
        body: Dict[str, Any] = {"id": message_id, "newContent": new_content}
        if model_override:
            body["modelOverride"] = model_override
        return await self._run_stream("POST", "/chat/edit", body, placeholder, "Error editing message")

    async def delete_chat(self, chat_id: str) -> bool:
        try:
            resp = await self.http.post(self._url("/chat/delete"), json={"chatId": chat_id}, headers=self._headers())
        except httpx.HTTPError as e:
            self.notify("Error deleting chat", str(e))
            return False
        if resp.status_code != 200:
            self.notify("Error deleting chat", self._response_error(resp))
            return False
        if self.store.chat_id == chat_id:
            self.store.reset()
        return True

    # Resuming an interrupted stream
    async def fetch_active_session(self, chat_id: str) -> Optional[Dict[str, Any]]:
        resp = await self.http.get(self._url(f"/chats/{chat_id}/session"), headers=self._headers())
        resp.raise_for_status()
        return resp.json().get("session")

    async def poll_active_session(
        self, chat_id: str, interval: float = 2.0, stale_after: float = 60.0
    ) -> AsyncIterator[PartialAssistant]:
        """Polling fallback: yield the partial answer until no session is streaming.

        A session whose last snapshot is older than `stale_after` seconds
        belongs to a relay that died mid-answer and ends the poll.
        """
        while True:
            session = await self.fetch_active_session(chat_id)
            if session is None:
                self.store.partial_assistant = None
                return
            age = session_age(session)
            if age is not None and age > stale_after:
                logger.warning("Stream session for chat %s went quiet %.0fs ago; stopped polling", chat_id, age)
                self.store.partial_assistant = None
                return
            partial = PartialAssistant(
                content=session.get("streamed_content") or "",
                reasoning=session.get("streamed_reasoning") or "",
            )
            if partial.content or partial.reasoning:
                self.store.partial_assistant = partial
                yield partial
            await asyncio.sleep(interval)

    async def follow_changes(self, chat_id: str, on_change: Optional[Callable[[RowChange], Any]] = None) -> None:
        """Apply pushed row changes to the store until the chat is deleted or the stream ends."""
        parser = SSEParser()
        async with self.http.stream("GET", self._url(f"/chats/{chat_id}/changes"), headers=self._headers()) as resp:
            resp.raise_for_status()
            async for chunk in resp.aiter_bytes():
                for name, data in parser.feed(chunk):
                    if name != "change":
                        continue
                    try:
                        change = RowChange.from_dict(json.loads(data))
                    except ValueError:
                        logger.debug("Dropping malformed change frame")
                        continue
                    self.store.apply_change(change)
                    if on_change is not None:
                        on_change(change)
                    if change.table == "chats" and change.event_type == "DELETE":
                        return
