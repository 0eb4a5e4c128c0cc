from __future__ import annotations
import logging
from typing import Optional

from chatrelay.core.errors import UpstreamError
from chatrelay.providers.openrouter import OpenRouterClient

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "Given a chat message, generate a very concise title (max 7 words, no quotes, "
    "no punctuation unless necessary, fit for sidebar labeling). Only return the title."
)
MAX_PROMPT_CHARS = 200
MAX_TITLE_CHARS = 80


async def generate_title(client: OpenRouterClient, model: str, prompt: str) -> Optional[str]:
    """Ask the upstream for a short sidebar title. Returns None on any failure."""
    prompt = (prompt or "").strip()[:MAX_PROMPT_CHARS]
    if not prompt or not client.configured:
        return None
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": TITLE_PROMPT},
            {"role": "user", "content": prompt},
        ],
        "max_tokens": 50,
        "temperature": 0.3,
        "top_p": 0.8,
    }
    try:
        text = await client.complete(payload)
    except UpstreamError as e:
        logger.warning("Title generation failed: %s", e)
        return None
    if not text:
        return None
    return text.strip().strip('"')[:MAX_TITLE_CHARS] or None
