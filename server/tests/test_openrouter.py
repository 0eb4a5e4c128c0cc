import json

import httpx
import pytest

from chatrelay.core.errors import ConfigurationError, UpstreamError
from chatrelay.providers.openrouter import OpenRouterClient, UpstreamDelta, friendly_error

from conftest import make_settings


def _client(tmp_path, handler, **overrides):
    client = OpenRouterClient(make_settings(tmp_path, **overrides), transport=httpx.MockTransport(handler))
    client.backoff = 0.0
    return client


def _sse(*frames) -> bytes:
    return b"".join(("data: " + (f if isinstance(f, str) else json.dumps(f)) + "\n\n").encode() for f in frames)


async def _collect(client, payload):
    return [d async for d in client.stream(payload)]


def test_payload_pins_model_and_requests_reasoning(tmp_path):
    client = _client(tmp_path, lambda r: httpx.Response(200))
    payload = client.build_payload("openai/gpt-4o", [{"role": "user", "content": "hi"}])
    assert payload["models"] == ["openai/gpt-4o"]
    assert payload["provider"] == {"allow_fallbacks": False}
    assert payload["reasoning"] == {"effort": "high"}
    assert payload["stream"] is True


def test_free_models_may_fall_back(tmp_path):
    payload = _client(tmp_path, lambda r: httpx.Response(200)).build_payload("x/y:free", [])
    assert payload["provider"] == {"allow_fallbacks": True}
    assert "models" not in payload


async def test_stream_yields_deltas_and_stops_at_done(tmp_path):
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        body = _sse(
            {"choices": [{"delta": {"reasoning": "r1"}}]},
            {"choices": [{"delta": {"content": "a", "reasoning": "r2"}}]},
            {"choices": [{"delta": {}}]},
            "not json",
            {"choices": [{"message": {"content": "b"}}]},
            "[DONE]",
            {"choices": [{"delta": {"content": "ignored"}}]},
        )
        return httpx.Response(200, content=b": OPENROUTER PROCESSING\n\n" + body)

    client = _client(tmp_path, handler)
    deltas = await _collect(client, client.build_payload("m", []))
    assert deltas == [UpstreamDelta(reasoning="r1"), UpstreamDelta(reasoning="r2", content="a"), UpstreamDelta(content="b")]
    assert seen["auth"].startswith("Bearer sk-or-v1-")


async def test_retryable_status_is_retried_before_output(tmp_path):
    calls = []

    def handler(request):
        calls.append(1)
        if len(calls) < 3:
            return httpx.Response(503, json={"error": {"message": "busy"}})
        return httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "ok"}}]}, "[DONE]"))

    client = _client(tmp_path, handler)
    assert await _collect(client, client.build_payload("m", [])) == [UpstreamDelta(content="ok")]
    assert len(calls) == 3


async def test_client_errors_are_not_retried(tmp_path):
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(402, json={"error": {"message": "no credits"}})

    client = _client(tmp_path, handler)
    with pytest.raises(UpstreamError) as info:
        await _collect(client, client.build_payload("m", []))
    assert info.value.status_code == 402
    assert "Payment required" in str(info.value)
    assert len(calls) == 1


async def test_error_frame_mid_stream_raises(tmp_path):
    def handler(request):
        return httpx.Response(200, content=_sse(
            {"choices": [{"delta": {"content": "partial"}}]},
            {"error": {"message": "provider overloaded", "code": 502}},
        ))

    client = _client(tmp_path, handler)
    got = []
    with pytest.raises(UpstreamError, match="provider overloaded"):
        async for delta in client.stream(client.build_payload("m", [])):
            got.append(delta)
    assert got == [UpstreamDelta(content="partial")]


async def test_missing_key_is_a_configuration_error(tmp_path):
    client = _client(tmp_path, lambda r: httpx.Response(200), openrouter_api_key=None)
    assert not client.configured
    with pytest.raises(ConfigurationError):
        await _collect(client, client.build_payload("m", []))


def test_friendly_error_includes_upstream_detail():
    assert friendly_error(500, '{"error": {"message": "kaput"}}') == "[openrouter] request failed with status 500: kaput"
    assert "Too many requests" in friendly_error(429, None)
