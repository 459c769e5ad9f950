import json

import httpx
from fastapi.testclient import TestClient

from conftest import assistant_event, sse_body
from relaygate.config.settings import settings
from relaygate.core import gateway

client = TestClient(gateway.app)


def _chat(body: dict, headers: dict | None = None) -> httpx.Response:
    return client.post("/v1/chat/completions", json=body, headers=headers or {})


def test_buffered_completion_from_cumulative_snapshots(fake_upstream):
    fake_upstream.conversation = lambda _request: httpx.Response(
        200,
        headers={"content-type": "text/event-stream; charset=utf-8"},
        content=sse_body(assistant_event("H"), assistant_event("Hello"), "[DONE]"),
    )
    response = _chat({"messages": [{"role": "user", "content": "hi"}], "stream": False})

    assert response.status_code == 200
    body = response.json()
    assert body["object"] == "chat.completion"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "Hello"}
    assert body["usage"]["total_tokens"] == 0
    assert body["id"].startswith("chatcmpl-")

    conversation_request = fake_upstream.calls[1]
    sent = json.loads(conversation_request.content)
    assert sent["messages"][-1]["content"]["parts"] == ["hi"]
    assert conversation_request.headers["openai-sentinel-chat-requirements-token"] == "req-token"
    assert conversation_request.headers["openai-sentinel-proof-token"].startswith("gAAAAAB")
    assert conversation_request.headers["oai-device-id"] == fake_upstream.calls[0].headers["oai-device-id"]


def test_streaming_completion_frames(fake_upstream):
    fake_upstream.conversation = lambda _request: httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=sse_body(assistant_event("He"), assistant_event("Hell"), assistant_event("Hello!"), "[DONE]"),
    )
    response = _chat({"messages": [{"role": "user", "content": "hi"}], "stream": True})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    frames = [frame[len("data: "):] for frame in response.text.split("\n\n") if frame]
    assert frames[-1] == "[DONE]"
    chunks = [json.loads(frame) for frame in frames[:-1]]
    assert [c["choices"][0]["delta"].get("content") for c in chunks[:-1]] == ["He", "ll", "o!"]
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert sum(1 for c in chunks if c["choices"][0]["finish_reason"] == "stop") == 1


def test_missing_messages_returns_envelope_without_upstream_calls(fake_upstream):
    response = _chat({"model": "gpt-3.5-turbo"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] is False
    assert body["error"]["type"] == "invalid_request_error"
    assert "Invalid request messages" in body["error"]["message"]
    assert fake_upstream.calls == []


def test_invalid_json_body_returns_envelope(fake_upstream):
    response = client.post(
        "/v1/chat/completions",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert response.json()["error"]["message"].startswith("Invalid request body")
    assert fake_upstream.calls == []


def test_requirements_network_failure_skips_conversation(fake_upstream):
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    fake_upstream.requirements = refuse
    response = _chat({"messages": [{"role": "user", "content": "hi"}]})

    body = response.json()
    assert body["status"] is False
    assert body["error"]["message"].startswith("Failed to meet chat requirements, ")
    assert fake_upstream.urls() == [settings.chat_requirements_url]


def test_incomplete_requirements_payload_is_session_failure(fake_upstream):
    fake_upstream.requirements = lambda _request: httpx.Response(200, json={"token": "t"})
    body = _chat({"messages": [{"role": "user", "content": "hi"}]}).json()
    assert body["error"]["message"].startswith("Failed to meet chat requirements, Invalid data")
    assert fake_upstream.urls() == [settings.chat_requirements_url]


def test_upstream_status_error_before_commit_returns_envelope(fake_upstream):
    fake_upstream.conversation = lambda _request: httpx.Response(429, text="Too many requests")
    response = _chat({"messages": [{"role": "user", "content": "hi"}], "stream": True})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/json")
    assert response.json()["error"]["message"] == "Invalid response code 429, Too many requests"


def test_cors_headers_on_every_response(fake_upstream):
    for response in (
        client.get("/v1/models"),
        _chat({}),
        client.get("/nope"),
    ):
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-allow-methods"] == "GET,POST,PUT,PATCH,DELETE"
        assert response.headers["access-control-allow-headers"] == "Content-Type,Authorization"


def test_models_listing():
    response = client.get("/v1/models")
    assert response.status_code == 200
    assert response.json()["data"][0]["id"] == "gpt-3.5-turbo"


def test_options_preflight_is_no_content():
    for path in ("/v1/chat/completions", "/v1/models"):
        response = client.options(path)
        assert response.status_code == 204
        assert response.content == b""


def test_unknown_route_and_method_are_not_found():
    for response in (client.get("/v1/unknown"), client.get("/v1/chat/completions")):
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "The requested endpoint was not found."


def test_shared_secret_authorization(monkeypatch, fake_upstream):
    monkeypatch.setattr(settings, "authorization", "Bearer s3cret")

    missing = client.get("/v1/models")
    wrong = client.get("/v1/models", headers={"Authorization": "Bearer nope"})
    ok = client.get("/v1/models", headers={"Authorization": "Bearer s3cret"})
    health = client.get("/health")

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert missing.json()["error"]["message"] == "No authorization header or invalid authorization value."
    assert missing.headers["access-control-allow-origin"] == "*"
    assert ok.status_code == 200
    assert health.status_code == 200

    blocked = _chat({"messages": [{"role": "user", "content": "hi"}]})
    assert blocked.status_code == 401
    assert fake_upstream.calls == []
