import asyncio
import json

import aiohttp
import pytest

from codex_gateway.errors import BadGatewayError, NotAuthenticatedError
from codex_gateway.schemas import CodexTokens
from codex_gateway.store import TokenStore
from codex_gateway.upstream import (
    CHATGPT_RESPONSES_URL,
    CodexDispatcher,
    build_headers,
    build_payload,
    extract_upstream_error,
    iter_sse_events,
)

from conftest import FakeResponse, FakeSession, sse_bytes

INPUT = [{"type": "message", "role": "user", "content": [{"type": "input_text", "text": "hi"}]}]


def test_build_payload_without_reasoning():
    payload = build_payload("gpt-5", "sys", INPUT, [], "auto", False, None, "sid")
    assert payload == {
        "model": "gpt-5",
        "instructions": "sys",
        "input": INPUT,
        "tools": [],
        "tool_choice": "auto",
        "parallel_tool_calls": False,
        "store": False,
        "stream": True,
        "prompt_cache_key": "sid",
    }


def test_build_payload_with_reasoning_requests_encrypted_content():
    payload = build_payload("gpt-5", None, INPUT, [], "auto", True, {"effort": "high"}, "sid")
    assert payload["reasoning"] == {"effort": "high"}
    assert payload["include"] == ["reasoning.encrypted_content"]
    assert payload["parallel_tool_calls"] is True


def test_build_headers():
    headers = build_headers(CodexTokens(access_token="tok", account_id="acct"), "sid-1")
    assert headers["Authorization"] == "Bearer tok"
    assert headers["chatgpt-account-id"] == "acct"
    assert headers["OpenAI-Beta"] == "responses=experimental"
    assert headers["session_id"] == "sid-1"
    assert headers["Accept"] == "text/event-stream"


@pytest.mark.parametrize(
    "body, expected",
    [
        (json.dumps({"error": {"message": "Rate limited", "resets_in_seconds": 30}}), "Rate limited (resets in 30 seconds)"),
        (json.dumps({"error": {"message": "Bad model"}}), "Bad model"),
        (json.dumps({"error": "nope"}), "Upstream error"),
        ("<html>oops</html>", "Upstream error"),
    ],
)
def test_extract_upstream_error(body, expected):
    assert extract_upstream_error(body) == expected


@pytest.mark.asyncio
async def test_dispatch_requires_access_token(settings):
    session = FakeSession()
    dispatcher = CodexDispatcher(session, TokenStore(), settings)
    with pytest.raises(NotAuthenticatedError, match="not authenticated"):
        async with dispatcher.dispatch("gpt-5", None, INPUT, []):
            pass
    assert session.calls == []


@pytest.mark.asyncio
async def test_dispatch_requires_account_id(settings):
    session = FakeSession()
    store = TokenStore(tokens=CodexTokens(access_token="tok"))
    with pytest.raises(NotAuthenticatedError, match="account_id"):
        async with CodexDispatcher(session, store, settings).dispatch("gpt-5", None, INPUT, []):
            pass
    assert session.calls == []


@pytest.mark.asyncio
async def test_dispatch_posts_payload_and_releases_response(settings, authed_store):
    upstream = FakeResponse(200, chunks=[sse_bytes({"type": "response.created"})])
    session = FakeSession(upstream)
    dispatcher = CodexDispatcher(session, authed_store, settings)

    async with dispatcher.dispatch("gpt-5", "sys", INPUT, [], session_id="fixed") as resp:
        assert resp is upstream
        assert not upstream.released

    assert upstream.released
    call = session.calls[0]
    assert call["url"] == CHATGPT_RESPONSES_URL
    assert call["json"]["prompt_cache_key"] == "fixed"
    assert call["headers"]["session_id"] == "fixed"
    assert call["headers"]["Authorization"] == "Bearer at-123"


@pytest.mark.asyncio
async def test_dispatch_derives_session_id_when_absent(settings, authed_store):
    session = FakeSession(FakeResponse(200))
    async with CodexDispatcher(session, authed_store, settings).dispatch("gpt-5", "sys", INPUT, []):
        pass
    sid = session.calls[0]["json"]["prompt_cache_key"]
    assert len(sid) == 64
    assert session.calls[0]["headers"]["session_id"] == sid


@pytest.mark.asyncio
async def test_dispatch_maps_client_error_status(settings, authed_store):
    body = json.dumps({"error": {"message": "usage limit", "resets_in_seconds": 60}})
    rejected = FakeResponse(429, body=body)
    session = FakeSession(rejected)
    with pytest.raises(BadGatewayError, match=r"usage limit \(resets in 60 seconds\)"):
        async with CodexDispatcher(session, authed_store, settings).dispatch("gpt-5", None, INPUT, []):
            pass
    assert rejected.released
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_dispatch_retries_server_errors(settings, authed_store):
    ok = FakeResponse(200)
    session = FakeSession(FakeResponse(503, body="busy"), aiohttp.ClientConnectionError("reset"), ok)
    async with CodexDispatcher(session, authed_store, settings).dispatch("gpt-5", None, INPUT, []) as resp:
        assert resp is ok
    assert len(session.calls) == 3


@pytest.mark.asyncio
async def test_dispatch_gives_up_after_retries(settings, authed_store):
    settings.upstream_max_retries = 1
    session = FakeSession(aiohttp.ClientConnectionError("down"), aiohttp.ClientConnectionError("down"))
    with pytest.raises(BadGatewayError, match="Upstream request failed"):
        async with CodexDispatcher(session, authed_store, settings).dispatch("gpt-5", None, INPUT, []):
            pass
    assert len(session.calls) == 2


async def _collect(resp):
    return [ev async for ev in iter_sse_events(resp)]


@pytest.mark.asyncio
async def test_iter_sse_events_framing():
    raw = (
        b": keep-alive\n\n"
        b"event: response.created\nid: 7\nretry: 1500\ndata: {\"a\":\n"
        b"data: 1}\n\n"
        b"data: tail"
    )
    # split mid-line to exercise buffering
    resp = FakeResponse(200, chunks=[raw[:20], raw[20:47], raw[47:]])
    events = await _collect(resp)
    assert len(events) == 2
    first, second = events
    assert first.event == "response.created"
    assert first.id == "7"
    assert first.retry == 1500
    assert first.data == "{\"a\":\n1}"
    assert second.data == "tail"
    assert second.event is None


@pytest.mark.asyncio
async def test_iter_sse_events_handles_crlf():
    resp = FakeResponse(200, chunks=[b"data: one\r\n\r\ndata: two\r\n\r\n"])
    assert [e.data for e in await _collect(resp)] == ["one", "two"]


@pytest.mark.asyncio
async def test_iter_sse_events_wraps_transport_errors():
    resp = FakeResponse(200, chunks=[b"data: one\n\n"], error=aiohttp.ClientPayloadError("cut"))
    seen = []
    with pytest.raises(BadGatewayError, match="Upstream stream error"):
        async for ev in iter_sse_events(resp):
            seen.append(ev.data)
    assert seen == ["one"]


@pytest.mark.asyncio
async def test_dispatch_maps_broken_error_body(settings, authed_store):
    rejected = FakeResponse(429, body_error=aiohttp.ClientPayloadError("cut"))
    session = FakeSession(rejected)
    with pytest.raises(BadGatewayError, match="Upstream error"):
        async with CodexDispatcher(session, authed_store, settings).dispatch("gpt-5", None, INPUT, []):
            pass
    assert rejected.released
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_dispatch_retries_when_server_error_body_times_out(settings, authed_store):
    failing = FakeResponse(502, body_error=asyncio.TimeoutError())
    ok = FakeResponse(200)
    session = FakeSession(failing, ok)
    async with CodexDispatcher(session, authed_store, settings).dispatch("gpt-5", None, INPUT, []) as resp:
        assert resp is ok
    assert failing.released
