from __future__ import annotations
import json
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Dict, Any, Optional
import httpx

from chatrelay.config import Settings
from chatrelay.core.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


@dataclass(frozen=True)
class UpstreamDelta:
    """One upstream frame, split into its reasoning and content parts."""

    reasoning: str = ""
    content: str = ""


def friendly_error(status: Optional[int], body_text: Optional[str]) -> str:
    if status == 402:
        return "[OpenRouter] Payment required. Add credits or choose a free model."
    if status == 429:
        return "[OpenRouter] Too many requests. Please slow down and try again shortly."
    if status in (401, 403):
        return "[OpenRouter] Authentication/permission issue. Check your API key and model access."
    if status == 400:
        return "[OpenRouter] Bad request. Verify model id and parameters."
    detail = None
    if body_text:
        try:
            detail = (json.loads(body_text).get("error") or {}).get("message")
        except (ValueError, AttributeError):
            detail = body_text
    msg = f"[openrouter] request failed with status {status}"
    if detail:
        msg += f": {detail}"
    return msg


class OpenRouterClient:
    """Streaming chat-completions client for the OpenRouter aggregator."""

    max_attempts = 3

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._transport = transport
        self.backoff = 0.8

    @property
    def configured(self) -> bool:
        return bool(self.settings.openrouter_api_key)

    @property
    def url(self) -> str:
        return self.settings.openrouter_base_url.rstrip("/") + "/chat/completions"

    def _headers(self) -> Dict[str, str]:
        api_key = self.settings.openrouter_api_key
        if not api_key:
            raise ConfigurationError("Server configuration error: OPENROUTER_API_KEY is not set")
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        # Optional attribution headers (if configured)
        if self.settings.openrouter_http_referer:
            headers["HTTP-Referer"] = self.settings.openrouter_http_referer
        if self.settings.openrouter_app_title:
            headers["X-Title"] = self.settings.openrouter_app_title
        return headers

    def _client(self, read_timeout: float = 120.0) -> httpx.AsyncClient:
        timeout = httpx.Timeout(connect=10.0, read=read_timeout, write=30.0, pool=10.0)
        return httpx.AsyncClient(timeout=timeout, trust_env=True, transport=self._transport)

    def build_payload(self, model: str, messages: List[Dict[str, Any]], stream: bool = True) -> Dict[str, Any]:
        # For ":free" alias SKUs, allow OpenRouter to fallback within the free pool.
        is_free_alias = ":free" in model
        payload: Dict[str, Any] = {
            "model": model,
            "provider": {"allow_fallbacks": bool(is_free_alias)},
            "messages": messages,
            "stream": stream,
        }
        if self.settings.reasoning_effort:
            payload["reasoning"] = {"effort": self.settings.reasoning_effort}
        # Only enforce strict models[] for non-free selections
        if not is_free_alias:
            payload["models"] = [model]
        return payload

    async def stream(self, payload: Dict[str, Any]) -> AsyncIterator[UpstreamDelta]:
        """Yield reasoning/content deltas until `[DONE]` or end of body.

        Connection failures, 429 and 5xx are retried with backoff as long as
        nothing has been yielded yet. Everything else raises UpstreamError.
        """
        headers = self._headers()
        backoff = self.backoff
        for attempt in range(1, self.max_attempts + 1):
            emitted_any = False
            try:
                async with self._client() as client:
                    async with client.stream("POST", self.url, headers=headers, json=payload) as resp:
                        if resp.status_code >= 400:
                            body = await resp.aread()
                            body_text = body.decode("utf-8", errors="ignore")
                            raise UpstreamError(friendly_error(resp.status_code, body_text), resp.status_code)
                        async for line in resp.aiter_lines():
                            # Blank keep-alives and ": OPENROUTER PROCESSING" comments
                            if not line or line.startswith(":"):
                                continue
                            if not line.startswith("data:"):
                                continue
                            data = line[len("data:"):].strip()
                            if data == "[DONE]":
                                return
                            delta = self._parse_frame(data)
                            if delta is None:
                                continue
                            emitted_any = True
                            yield delta
                        return
            except UpstreamError as e:
                if not emitted_any and e.status_code in RETRYABLE_STATUS and attempt < self.max_attempts:
                    logger.warning("OpenRouter returned %s (attempt %d/%d), retrying", e.status_code, attempt, self.max_attempts)
                    await asyncio.sleep(backoff)
                    backoff *= 2
                    continue
                raise
            except httpx.HTTPError as e:
                if not emitted_any and attempt < self.max_attempts:
                    logger.warning("OpenRouter request error (attempt %d/%d): %s", attempt, self.max_attempts, e)
                    await asyncio.sleep(backoff)
                    backoff *= 2
                    continue
                raise UpstreamError(f"[openrouter] request failed after {attempt} attempts: {e}") from e

    @staticmethod
    def _parse_frame(data: str) -> Optional[UpstreamDelta]:
        try:
            obj = json.loads(data)
        except ValueError:
            logger.debug("Skipping unparseable upstream frame")
            return None
        if not isinstance(obj, dict):
            return None
        err = obj.get("error")
        if err:
            message = err.get("message") if isinstance(err, dict) else str(err)
            code = err.get("code") if isinstance(err, dict) else None
            raise UpstreamError(f"[OpenRouter] {message or 'Upstream error'}", code if isinstance(code, int) else None)
        choices = obj.get("choices") or []
        if not choices:
            return None
        ch0 = choices[0]
        # Prefer streaming delta; some providers send message.* even in stream
        delta = ch0.get("delta") or ch0.get("message") or {}
        reasoning = delta.get("reasoning") or ""
        content = delta.get("content") or ""
        if not reasoning and not content:
            return None
        return UpstreamDelta(reasoning=reasoning, content=content)

    async def complete(self, payload: Dict[str, Any]) -> Optional[str]:
        """Non-streaming completion; returns the message text or None."""
        headers = self._headers()
        body = dict(payload)
        body["stream"] = False
        try:
            async with self._client(read_timeout=30.0) as client:
                resp = await client.post(self.url, headers=headers, json=body)
                resp.raise_for_status()
                obj = resp.json()
        except httpx.HTTPError as e:
            raise UpstreamError(f"[openrouter] completion failed: {e}") from e
        text = (obj.get("choices") or [{}])[0].get("message", {}).get("content")
        return text if isinstance(text, str) else None
