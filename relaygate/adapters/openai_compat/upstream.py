"""
上游 ChatGPT web 后端的 HTTP 访问：共享客户端、会话要求协商与会话 SSE 连接。
从 router 拆出，便于维护与单测。
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from pydantic import ValidationError as PydanticValidationError

from relaygate.config.settings import settings
from relaygate.core.errors import UpstreamSessionError, UpstreamTransportError
from relaygate.core.models import ChatRequirementsPayload, ProofToken, SessionRequirements, UpstreamConversation
from relaygate.util.debug_excerpt import excerpt_for_debug
from relaygate.util.logger import logger

_EVENT_STREAM_MEDIA_TYPE = "text/event-stream"

_upstream_async_client: httpx.AsyncClient | None = None
_upstream_client_lock: Any = None


def _upstream_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.upstream_max_connections)),
        max_keepalive_connections=max(5, int(settings.upstream_max_keepalive_connections)),
    )


def _upstream_http_timeout() -> httpx.Timeout:
    timeout = float(settings.upstream_timeout_seconds)
    return httpx.Timeout(connect=float(settings.connect_timeout_seconds), read=timeout, write=timeout, pool=timeout)


def _upstream_proxy() -> str | None:
    proxy = settings.all_proxy.strip()
    return proxy or None


async def _get_upstream_async_client() -> httpx.AsyncClient:
    global _upstream_async_client, _upstream_client_lock
    if _upstream_async_client is not None:
        return _upstream_async_client
    if _upstream_client_lock is None:
        _upstream_client_lock = asyncio.Lock()
    async with _upstream_client_lock:
        if _upstream_async_client is None:
            _upstream_async_client = httpx.AsyncClient(
                http2=False,
                timeout=_upstream_http_timeout(),
                limits=_upstream_http_limits(),
                proxy=_upstream_proxy(),
            )
    return _upstream_async_client


async def close_upstream_async_client() -> None:
    global _upstream_async_client
    if _upstream_async_client is not None:
        await _upstream_async_client.aclose()
        _upstream_async_client = None


def common_headers() -> dict[str, str]:
    origin = settings.upstream_origin.rstrip("/")
    return {
        "accept": "*/*",
        "accept-language": "en",
        "cache-control": "no-cache",
        "content-type": "application/json",
        "oai-language": "en-US",
        "origin": origin,
        "pragma": "no-cache",
        "priority": "u=1, i",
        "referer": f"{origin}/",
        "sec-ch-ua": '"Google Chrome"; v="123", "Not:A-Brand"; v="8", "Chromium"; v="123"',
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"Windows"',
        "sec-fetch-dest": "empty",
        "sec-fetch-mode": "cors",
        "sec-fetch-site": "same-origin",
        "user-agent": settings.user_agent,
    }


def _describe_validation_error(exc: PydanticValidationError) -> tuple[str, str]:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ())) or "payload"
    if first.get("type") == "missing":
        return "missing_field", f"missing field '{location}'"
    return "unexpected_type", f"unexpected type for '{location}'"


def parse_chat_requirements(body: bytes, device_id: str) -> SessionRequirements:
    try:
        data = json.loads(body.decode("utf-8", errors="replace"))
    except json.JSONDecodeError as exc:
        raise UpstreamSessionError(f"Invalid data, malformed json: {exc}", kind="malformed_json") from exc
    if not isinstance(data, dict):
        raise UpstreamSessionError(f"Invalid data, {excerpt_for_debug(json.dumps(data))}", kind="unexpected_type")
    try:
        payload = ChatRequirementsPayload.model_validate(data)
    except PydanticValidationError as exc:
        kind, detail = _describe_validation_error(exc)
        raise UpstreamSessionError(
            f"Invalid data, {detail}, {excerpt_for_debug(json.dumps(data, ensure_ascii=False))}",
            kind=kind,
        ) from exc
    return SessionRequirements(
        device_id=device_id,
        token=payload.token,
        seed=payload.proofofwork.seed,
        difficulty=payload.proofofwork.difficulty,
    )


async def fetch_chat_requirements(device_id: str) -> SessionRequirements:
    client = await _get_upstream_async_client()
    headers = common_headers()
    headers["oai-device-id"] = device_id
    logger.debug("chat requirements start url=%s device_id=%s", settings.chat_requirements_url, device_id)
    try:
        response = await client.post(settings.chat_requirements_url, content=b"{}", headers=headers)
    except httpx.HTTPError as exc:
        detail = (str(exc) or "").strip() or type(exc).__name__
        logger.warning("chat requirements http_error url=%s error=%s", settings.chat_requirements_url, detail)
        raise UpstreamSessionError(detail, kind="transport") from exc
    logger.debug("chat requirements done status=%s", response.status_code)
    return parse_chat_requirements(response.content, device_id)


def conversation_headers(requirements: SessionRequirements, proof_token: ProofToken) -> dict[str, str]:
    headers = common_headers()
    headers["accept"] = _EVENT_STREAM_MEDIA_TYPE
    headers["oai-device-id"] = requirements.device_id
    headers["openai-sentinel-chat-requirements-token"] = requirements.token
    headers["openai-sentinel-proof-token"] = proof_token.value
    return headers


async def _read_error_body(response: httpx.Response) -> str:
    body = await response.aread()
    return body.decode("utf-8", errors="replace")


async def _ensure_event_stream(response: httpx.Response) -> None:
    status = response.status_code
    if not response.is_success:
        try:
            text = await _read_error_body(response)
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(
                f"Invalid response, code {status}, {exc}",
                kind="invalid_status",
                status_code=status,
            ) from exc
        raise UpstreamTransportError(
            f"Invalid response code {status}, {text}",
            kind="invalid_status",
            status_code=status,
        )
    content_type = response.headers.get("content-type", "")
    if _EVENT_STREAM_MEDIA_TYPE not in content_type.lower():
        try:
            text = await _read_error_body(response)
        except httpx.HTTPError:
            text = ""
        raise UpstreamTransportError(
            f"The chatgpt api should return data as 'text/event-stream', but it isn't. {text}",
            kind="invalid_content_type",
            status_code=status,
        )


@asynccontextmanager
async def open_conversation_stream(
    conversation: UpstreamConversation,
    requirements: SessionRequirements,
    proof_token: ProofToken,
) -> AsyncIterator[httpx.Response]:
    """Open the conversation SSE stream; yields the response once it is known to be an event stream."""
    body = conversation.model_dump_json().encode("utf-8")
    client = await _get_upstream_async_client()
    headers = conversation_headers(requirements, proof_token)
    logger.debug(
        "conversation stream start url=%s payload_bytes=%d degraded_proof=%s",
        settings.conversation_url,
        len(body),
        proof_token.degraded,
    )
    try:
        async with client.stream("POST", settings.conversation_url, content=body, headers=headers) as response:
            logger.debug("conversation stream connected status=%s", response.status_code)
            await _ensure_event_stream(response)
            yield response
    except httpx.HTTPError as exc:
        raise classify_transport_error(exc) from exc


def classify_transport_error(exc: BaseException) -> UpstreamTransportError:
    if isinstance(exc, UpstreamTransportError):
        return exc
    detail = (str(exc) or "").strip() or type(exc).__name__
    return UpstreamTransportError(detail, kind="transport")
