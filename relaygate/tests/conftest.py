import json
from typing import Any, Callable

import httpx
import pytest

from relaygate.adapters.openai_compat import upstream
from relaygate.config.settings import settings


def sse_body(*events: Any) -> bytes:
    chunks = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        chunks.append(f"data: {data}\n\n")
    return "".join(chunks).encode("utf-8")


def assistant_event(text: str) -> dict:
    return {
        "message": {
            "id": "m1",
            "author": {"role": "assistant"},
            "content": {"content_type": "text", "parts": [text]},
            "status": "in_progress",
        },
        "conversation_id": "c1",
        "error": None,
    }


class FakeUpstream:
    """Routes requests to the requirements / conversation handlers and records calls."""

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self.requirements: Callable[[httpx.Request], httpx.Response] = lambda _request: httpx.Response(
            200,
            json={"token": "req-token", "proofofwork": {"required": True, "seed": "0.42", "difficulty": "ffff"}},
        )
        self.conversation: Callable[[httpx.Request], httpx.Response] = lambda _request: httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=sse_body(assistant_event("Hi"), "[DONE]"),
        )

    def urls(self) -> list[str]:
        return [str(request.url) for request in self.calls]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if str(request.url) == settings.chat_requirements_url:
            return self.requirements(request)
        if str(request.url) == settings.conversation_url:
            return self.conversation(request)
        return httpx.Response(404, text="unknown upstream path")


@pytest.fixture
def fake_upstream(monkeypatch):
    fake = FakeUpstream()
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    monkeypatch.setattr(upstream, "_upstream_async_client", client)
    return fake
