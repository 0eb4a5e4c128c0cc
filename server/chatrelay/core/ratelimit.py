from __future__ import annotations
import time
from collections import deque
from typing import Deque, Dict, Tuple
from fastapi import HTTPException, Request

# In-process sliding-window limiter keyed by client IP and route. One worker only.


def get_client_ip(request: Request) -> str:
    # Try common forwarding headers first
    xff = request.headers.get("x-forwarded-for")
    if xff:
        # Take the first IP
        return xff.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


class RateLimiter:
    def __init__(self, limit: int = 30, window_seconds: int = 60) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        # (ip, route) -> timestamps of accepted requests inside the window
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]

    def enforce(self, request: Request) -> None:
        now = time.monotonic()
        key = (get_client_ip(request), request.url.path)
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()
        if len(hits) >= self.limit:
            retry_after = max(1, int(self.window_seconds - (now - hits[0])))
            raise HTTPException(status_code=429, detail="Rate limit exceeded", headers={"Retry-After": str(retry_after)})
        hits.append(now)
        if len(self._hits) > 10_000:
            self._prune(now)
