from __future__ import annotations
import logging
import re
from typing import Iterable

REDACT_PATTERNS = [
    re.compile(r"sk-or-v1-[A-Za-z0-9]{20,}"),  # OpenRouter keys
    re.compile(r"sk-[A-Za-z0-9]{20,}"),
    re.compile(r"(?i)(?<=bearer )[A-Za-z0-9\-_.]{16,}"),
    # Bare JWTs (user access tokens, service keys)
    re.compile(r"eyJ[A-Za-z0-9_\-]{8,}\.[A-Za-z0-9_\-]{8,}\.[A-Za-z0-9_\-]+"),
]

# Chatty third-party loggers kept at WARNING regardless of the app level
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "sqlalchemy.engine")


def redact(value: str) -> str:
    for pat in REDACT_PATTERNS:
        value = pat.sub("***", value)
    return value


class RedactingFormatter(logging.Formatter):
    """Formatter that scrubs credentials from messages, arguments and tracebacks."""

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(redact(a) if isinstance(a, str) else a for a in record.args)
        # Tracebacks and stack info are rendered by the base class
        return redact(super().format(record))


def _level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: int | str = logging.INFO, quiet: Iterable[str] = QUIET_LOGGERS) -> None:
    root = logging.getLogger()
    root.setLevel(_level(level))
    # Reloads and repeated create_app() calls must not stack handlers
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(RedactingFormatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%SZ",
    ))
    root.addHandler(handler)

    for name in ("uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(root.level)
    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
