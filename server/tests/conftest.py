import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx
import jwt
import pytest

from chatrelay.config import Settings
from chatrelay.main import create_app

JWT_SECRET = "test-secret-with-enough-bytes-for-hs256"
UPSTREAM_URL = "https://openrouter.test/api/v1"
STORAGE_URL = "https://storage.test/storage/v1"


def make_settings(tmp_path, **overrides) -> Settings:
    values: Dict[str, Any] = dict(
        openrouter_api_key="sk-or-v1-testkeytestkeytestkeytestkey",
        openrouter_base_url=UPSTREAM_URL,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/chatrelay-test.db",
        storage_url=STORAGE_URL,
        storage_service_key="service-key",
        auth_jwt_secret=JWT_SECRET,
        persist_interval_seconds=0.05,
        persist_char_threshold=800,
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def token_for(user_id: str) -> str:
    return jwt.encode({"sub": user_id, "aud": "authenticated"}, JWT_SECRET, algorithm="HS256")


def auth_headers(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user_id)}"}


def delta_frame(content: str = "", reasoning: str = "") -> Dict[str, Any]:
    delta: Dict[str, Any] = {}
    if reasoning:
        delta["reasoning"] = reasoning
    if content:
        delta["content"] = content
    return {"choices": [{"delta": delta}]}


DEFAULT_FRAMES = [
    delta_frame(reasoning="Think"),
    delta_frame(content="Hel"),
    delta_frame(reasoning=" more", content="lo"),
    delta_frame(content=" world"),
]


class FakeNetwork:
    """Stands in for OpenRouter, the attachment host and the object store.

    `gate`/`gate_after` hold the upstream body after that many frames until
    the test sets the event.
    """

    def __init__(self) -> None:
        self.frames: List[Dict[str, Any]] = list(DEFAULT_FRAMES)
        self.status = 200
        self.fail_times = 0
        self.gate: Optional[asyncio.Event] = None
        self.gate_after = 0
        self.title = "Greeting Chat"
        self.requests: List[Dict[str, Any]] = []
        self.upstream_headers: List[httpx.Headers] = []
        self.files: Dict[str, bytes] = {}
        self.storage_calls: List[Dict[str, Any]] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url == UPSTREAM_URL + "/chat/completions":
            return self._upstream(request)
        if url.startswith(STORAGE_URL):
            self.storage_calls.append({
                "method": request.method,
                "url": url,
                "json": json.loads(request.content or b"null"),
            })
            return httpx.Response(200, json=[])
        if url in self.files:
            return httpx.Response(200, content=self.files[url])
        return httpx.Response(404, text="not found")

    def _upstream(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        self.upstream_headers.append(request.headers)
        if self.fail_times > 0:
            self.fail_times -= 1
            return httpx.Response(503, json={"error": {"message": "busy"}})
        if self.status != 200:
            return httpx.Response(self.status, json={"error": {"message": "nope"}})
        if not payload.get("stream"):
            return httpx.Response(200, json={"choices": [{"message": {"content": self.title}}]})
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=self._body())

    async def _body(self):
        yield b": OPENROUTER PROCESSING\n\n"
        for i, frame in enumerate(self.frames):
            if self.gate is not None and i == self.gate_after:
                await self.gate.wait()
            yield ("data: " + json.dumps(frame) + "\n\n").encode("utf-8")
        yield b"data: [DONE]\n\n"

    def hold(self, after: int) -> asyncio.Event:
        self.gate = asyncio.Event()
        self.gate_after = after
        return self.gate


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
async def app(settings, network):
    application = create_app(settings, transport=httpx.MockTransport(network.handler))
    # ASGITransport does not run startup handlers
    await application.state.db.init()
    application.state.relay.upstream.backoff = 0.0
    yield application
    await application.state.tasks.drain(5)
    await application.state.db.dispose()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


async def settle(app) -> None:
    """Wait for detached relay tasks to finish writing."""
    await app.state.tasks.drain(5)


async def eventually(check, timeout: float = 3.0, interval: float = 0.01):
    """Poll an async check until it returns something truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = await check()
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)
