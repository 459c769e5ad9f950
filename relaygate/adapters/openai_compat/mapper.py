"""OpenAI <-> upstream conversation mapping."""

from __future__ import annotations

import uuid
from typing import Any

from relaygate.config.settings import settings
from relaygate.core.errors import ValidationError
from relaygate.core.models import (
    ChatRequest,
    InboundMessage,
    UpstreamAuthor,
    UpstreamContent,
    UpstreamConversation,
    UpstreamMessage,
)


INVALID_MESSAGES = "Invalid request messages"
MERGE_POLICY_MERGE = "merge"
MERGE_POLICY_PASSTHROUGH = "passthrough"
_MERGE_POLICIES = frozenset({MERGE_POLICY_MERGE, MERGE_POLICY_PASSTHROUGH})
# 超过两条消息即视为携带历史，用户轮次需要指令标记包裹
_HISTORY_THRESHOLD = 2


def random_id() -> str:
    return str(uuid.uuid4())


def _extract_text(content: Any) -> str:
    """Plain string wins; a single-element array contributes its ``text``; anything else is empty."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        if len(content) != 1:
            return ""
        part = content[0]
        if isinstance(part, dict) and isinstance(part.get("text"), str):
            return part["text"]
    return ""


def parse_chat_request(payload: Any) -> ChatRequest:
    if not isinstance(payload, dict):
        raise ValidationError(INVALID_MESSAGES)
    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list) or not raw_messages:
        raise ValidationError(INVALID_MESSAGES)

    messages: list[InboundMessage] = []
    system_seen = False
    for item in raw_messages:
        if not isinstance(item, dict):
            raise ValidationError(INVALID_MESSAGES)
        role = item.get("role")
        if not isinstance(role, str) or not role:
            raise ValidationError(INVALID_MESSAGES)
        text = _extract_text(item.get("content"))
        if not text:
            raise ValidationError(INVALID_MESSAGES)
        if role == "system":
            if system_seen:
                raise ValidationError(INVALID_MESSAGES)
            system_seen = True
        messages.append(InboundMessage(role=role, content=text))

    model = payload.get("model")
    return ChatRequest(
        model=model if isinstance(model, str) else "",
        messages=messages,
        stream=payload.get("stream") is True,
    )


def _upstream_message(role: str, text: str) -> UpstreamMessage:
    return UpstreamMessage(
        id=random_id(),
        author=UpstreamAuthor(role=role),
        content=UpstreamContent(content_type="text", parts=[text]),
        metadata={},
    )


def _merged_messages(req: ChatRequest) -> list[UpstreamMessage]:
    has_history = len(req.messages) > _HISTORY_THRESHOLD
    system_prompt: str | None = None
    turns: list[str] = []
    for message in req.messages:
        if message.role == "system":
            system_prompt = message.content
        elif message.role == "user" and has_history:
            turns.append(f"[INST]{message.content}[/INST]")
        else:
            turns.append(message.content)

    out: list[UpstreamMessage] = []
    if system_prompt is not None:
        out.append(_upstream_message("system", system_prompt))
    out.append(_upstream_message("user", "\n".join(turns)))
    return out


def to_upstream_messages(req: ChatRequest, policy: str | None = None) -> list[UpstreamMessage]:
    resolved = (policy or settings.message_merge_policy).strip().lower()
    if resolved not in _MERGE_POLICIES:
        raise ValueError(f"unknown message merge policy: {resolved}")
    if resolved == MERGE_POLICY_PASSTHROUGH:
        return [_upstream_message(message.role, message.content) for message in req.messages]
    return _merged_messages(req)


def to_upstream_conversation(req: ChatRequest, policy: str | None = None) -> UpstreamConversation:
    return UpstreamConversation(
        messages=to_upstream_messages(req, policy=policy),
        parent_message_id=random_id(),
        model=settings.upstream_model,
        websocket_request_id=random_id(),
    )


def to_chat_response(completion_id: str, created: int, content: str) -> dict:
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created,
        "model": settings.public_model_name,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


def to_model_list() -> dict:
    model = settings.public_model_name
    return {
        "object": "list",
        "data": [
            {
                "id": model,
                "object": "model",
                "created": 1626777600,
                "owned_by": "openai",
                "permission": [
                    {
                        "id": "modelperm-001",
                        "object": "model_permission",
                        "created": 1626777600,
                        "allow_create_engine": True,
                        "allow_sampling": True,
                        "allow_logprobs": True,
                        "allow_search_indices": False,
                        "allow_view": True,
                        "allow_fine_tuning": False,
                        "organization": "*",
                        "group": None,
                        "is_blocking": False,
                    }
                ],
                "root": model,
                "parent": None,
            }
        ],
    }


def error_payload(message: str) -> dict:
    return {
        "status": False,
        "error": {
            "message": message,
            "type": "invalid_request_error",
        },
    }
