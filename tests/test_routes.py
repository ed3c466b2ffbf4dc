import json

import pytest
from fastapi.testclient import TestClient

from codex_gateway.app import create_app
from codex_gateway.config import ProxySettings
from codex_gateway.deps import get_http_client

from conftest import FakeResponse, FakeSession, sse_bytes

HELLO_EVENTS = sse_bytes(
    {"type": "response.created", "response": {"id": "resp_7"}},
    {"type": "response.output_text.delta", "delta": "He"},
    {"type": "response.output_text.delta", "delta": "llo"},
    {"type": "response.output_text.done"},
    {"type": "response.completed", "response": {"id": "resp_7", "usage": {"input_tokens": 2, "output_tokens": 3}}},
)

AUTH_JSON = {
    "OPENAI_API_KEY": None,
    "tokens": {"id_token": None, "access_token": "at", "refresh_token": None, "account_id": "acct"},
    "last_refresh": None,
}


def _make_client(tmp_path, session, auth=AUTH_JSON, **overrides):
    path = tmp_path / "auth.json"
    if auth is not None:
        path.write_text(json.dumps(auth))
    settings = ProxySettings(auth_path=str(path), retry_backoff_base=0.0, **overrides)
    app = create_app(settings)
    app.dependency_overrides[get_http_client] = lambda: session
    return TestClient(app)


def test_health(tmp_path):
    with _make_client(tmp_path, FakeSession()) as client:
        assert client.get("/health").json()["status"] == "ok"


def test_models_list(tmp_path):
    with _make_client(tmp_path, FakeSession()) as client:
        resp = client.get("/codex/v1/models")
    assert resp.status_code == 200
    assert [m["id"] for m in resp.json()["data"]] == ["gpt-5", "codex-mini-latest"]
    assert resp.headers["access-control-allow-origin"] == "*"


def test_chat_completion_aggregated(tmp_path):
    session = FakeSession(FakeResponse(200, chunks=[HELLO_EVENTS]))
    with _make_client(tmp_path, session) as client:
        resp = client.post(
            "/codex/v1/chat/completions",
            json={
                "model": "gpt-5-high",
                "messages": [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "hi"}],
            },
        )
    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == "resp_7"
    assert body["model"] == "gpt-5-high"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "Hello"}
    assert body["usage"] == {"prompt_tokens": 2, "completion_tokens": 3, "total_tokens": 5}

    sent = session.calls[0]["json"]
    assert sent["model"] == "gpt-5"
    assert sent["instructions"] == "Be brief."
    assert sent["reasoning"] == {"effort": "high", "summary": "auto"}
    assert sent["tool_choice"] == "auto"
    assert sent["parallel_tool_calls"] is False
    assert sent["stream"] is True


def test_chat_completion_streaming(tmp_path):
    session = FakeSession(FakeResponse(200, chunks=[HELLO_EVENTS[:37], HELLO_EVENTS[37:]]))
    with _make_client(tmp_path, session) as client:
        resp = client.post(
            "/codex/v1/chat/completions",
            json={
                "model": "gpt-5",
                "stream": True,
                "stream_options": {"include_usage": True},
                "messages": [{"role": "user", "content": "hi"}],
            },
        )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    frames = [f for f in resp.text.split("\n\n") if f]
    assert frames[-1] == "data: [DONE]"
    chunks = [json.loads(f[len("data: "):]) for f in frames if f.startswith("data: {")]
    contents = [c["choices"][0]["delta"].get("content") for c in chunks if "choices" in c]
    assert "He" in contents and "llo" in contents
    assert chunks[-1]["usage"]["total_tokens"] == 5


def test_session_header_is_forwarded(tmp_path):
    session = FakeSession(FakeResponse(200, chunks=[HELLO_EVENTS]))
    with _make_client(tmp_path, session) as client:
        client.post(
            "/codex/v1/chat/completions",
            headers={"x-session-id": "conversation-1"},
            json={"messages": [{"role": "user", "content": "hi"}]},
        )
    assert session.calls[0]["json"]["prompt_cache_key"] == "conversation-1"


def test_legacy_completion(tmp_path):
    session = FakeSession(FakeResponse(200, chunks=[HELLO_EVENTS]))
    with _make_client(tmp_path, session) as client:
        resp = client.post("/codex/v1/completions", json={"model": "codex", "prompt": ["Say ", "hello"]})
    body = resp.json()
    assert body["object"] == "text_completion"
    assert body["choices"][0]["text"] == "Hello"
    assert body["choices"][0]["logprobs"] is None

    sent = session.calls[0]["json"]
    assert sent["model"] == "codex-mini-latest"
    assert sent["tools"] == []
    assert sent["input"][0]["content"] == [{"type": "input_text", "text": "Say hello"}]


def test_double_encoded_body_is_accepted(tmp_path):
    session = FakeSession(FakeResponse(200, chunks=[HELLO_EVENTS]))
    inner = json.dumps({"messages": [{"role": "user", "content": "hi"}]})
    with _make_client(tmp_path, session) as client:
        resp = client.post(
            "/codex/v1/chat/completions",
            content=json.dumps(inner),
            headers={"content-type": "application/json"},
        )
    assert resp.status_code == 200


@pytest.mark.parametrize(
    "content",
    [b"", b"{not json", b"[1, 2]", json.dumps({"model": "gpt-5"}).encode()],
)
def test_bad_requests_never_reach_upstream(tmp_path, content):
    session = FakeSession()
    with _make_client(tmp_path, session) as client:
        resp = client.post(
            "/codex/v1/chat/completions",
            content=content,
            headers={"content-type": "application/json"},
        )
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "invalid_request_error"
    assert session.calls == []


def test_unauthenticated_gateway_returns_400(tmp_path):
    session = FakeSession()
    with _make_client(tmp_path, session, auth=None) as client:
        resp = client.post("/codex/v1/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 400
    assert "oauth/start" in resp.json()["error"]["message"]
    assert session.calls == []


def test_upstream_rejection_returns_502(tmp_path):
    body = json.dumps({"error": {"message": "usage limit reached", "resets_in_seconds": 90}})
    session = FakeSession(FakeResponse(429, body=body))
    with _make_client(tmp_path, session) as client:
        resp = client.post("/codex/v1/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 502
    assert resp.json()["error"]["message"] == "usage limit reached (resets in 90 seconds)"


def test_failed_event_returns_502(tmp_path):
    events = sse_bytes({"type": "response.failed", "response": {"error": {"message": "boom"}}})
    session = FakeSession(FakeResponse(200, chunks=[events]))
    with _make_client(tmp_path, session) as client:
        resp = client.post("/codex/v1/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 502
    assert resp.json()["error"]["message"] == "boom"


def test_bearer_guard(tmp_path):
    with _make_client(tmp_path, FakeSession(), api_keys=["secret"]) as client:
        assert client.get("/codex/v1/models").status_code == 401
        assert client.get("/codex/v1/models", headers={"Authorization": "Bearer wrong"}).status_code == 403
        assert client.get("/codex/v1/models", headers={"Authorization": "Bearer secret"}).status_code == 200


def test_admin_guard_and_oauth_start(tmp_path):
    with _make_client(tmp_path, FakeSession(), admin_key="admin") as client:
        assert client.get("/api/codex/oauth/start").status_code == 401
        resp = client.get("/api/codex/oauth/start", headers={"x-admin-key": "admin"})
    assert resp.status_code == 200
    assert resp.json()["auth_url"].startswith("https://auth.openai.com/oauth/authorize?")


def test_oauth_callback_state_mismatch_page(tmp_path):
    with _make_client(tmp_path, FakeSession()) as client:
        client.get("/api/codex/oauth/start")
        resp = client.get("/codex/oauth/callback", params={"code": "c", "state": "forged"})
        status = client.get("/api/codex/tokens").json()
    assert resp.status_code == 400
    assert "State mismatch" in resp.text
    assert status["authenticated"] is True
    assert status["account_id"] == "acct"


def test_logout_clears_credentials(tmp_path):
    with _make_client(tmp_path, FakeSession()) as client:
        assert client.post("/api/codex/logout").json() == {"ok": True}
        status = client.get("/api/codex/tokens").json()
    assert status == {"authenticated": False, "account_id": None, "has_access_token": False, "last_refresh": None}
    saved = json.loads((tmp_path / "auth.json").read_text())
    assert saved["tokens"]["access_token"] is None
