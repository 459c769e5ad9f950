"""OpenAI-compatible routes."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from relaygate.adapters.openai_compat.assembler import ResponseAssembler
from relaygate.adapters.openai_compat.mapper import (
    error_payload,
    parse_chat_request,
    random_id,
    to_model_list,
    to_upstream_conversation,
)
from relaygate.adapters.openai_compat.relay import UpstreamStreamRelay
from relaygate.adapters.openai_compat.stream_utils import _build_streaming_response
from relaygate.adapters.openai_compat.upstream import fetch_chat_requirements, open_conversation_stream
from relaygate.config.settings import settings
from relaygate.core.errors import RelayGateError, UpstreamSessionError, ValidationError
from relaygate.core.models import ProofToken, SessionRequirements
from relaygate.core.proof_of_work import ProofOfWorkSolver
from relaygate.observability.logging import log_event
from relaygate.util.debug_excerpt import debug_log_original
from relaygate.util.logger import logger


router = APIRouter()

# 调试时完整请求内容最大输出长度，避免日志过长
_DEBUG_REQUEST_BODY_MAX_CHARS = 32000
_DEBUG_HEADERS_REDACT = frozenset({"authorization", "cookie"})


def _log_request_if_debug(request: Request, payload: Any) -> None:
    """当 log_level=debug 时打请求概要；正文按 log_full_request_body 决定是否打印。"""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    headers_safe = {
        k: ("***" if k.lower() in _DEBUG_HEADERS_REDACT else v) for k, v in request.headers.items()
    }
    try:
        body_str = json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        body_str = str(payload)
    logger.debug(
        "incoming request method=%s path=%s headers=%s body_size=%d",
        request.method,
        request.url.path,
        headers_safe,
        len(body_str),
    )
    if settings.log_full_request_body:
        debug_log_original("incoming_request_body", body_str, max_len=_DEBUG_REQUEST_BODY_MAX_CHARS)


def _error_response(exc: Exception, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_payload(str(exc)))


async def _read_payload(request: Request) -> Any:
    body = await request.body()
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Invalid request body, {exc}") from exc


async def _negotiate_session() -> SessionRequirements:
    try:
        return await fetch_chat_requirements(random_id())
    except UpstreamSessionError as exc:
        raise UpstreamSessionError(f"Failed to meet chat requirements, {exc}", kind=exc.kind) from exc


async def _solve_proof(solver: ProofOfWorkSolver, requirements: SessionRequirements) -> ProofToken:
    # CPU 密集，放到线程中执行，避免阻塞事件循环
    proof_token = await asyncio.to_thread(solver.solve, requirements.seed, requirements.difficulty)
    if proof_token.degraded:
        log_event("proof_of_work_degraded", difficulty=requirements.difficulty)
    return proof_token


@router.post("/chat/completions")
async def chat_completions(request: Request) -> Response:
    try:
        payload = await _read_payload(request)
        _log_request_if_debug(request, payload)
        chat_request = parse_chat_request(payload)
        conversation = to_upstream_conversation(chat_request)

        requirements = await _negotiate_session()
        proof_token = await _solve_proof(request.app.state.proof_solver, requirements)
        logger.debug(
            "session ready device_id=%s degraded_proof=%s messages=%d",
            requirements.device_id,
            proof_token.degraded,
            len(conversation.messages),
        )

        relay = UpstreamStreamRelay(conversation, requirements, proof_token, opener=open_conversation_stream)
        relay.start()
        assembler = ResponseAssembler(relay)
        await assembler.await_first()
    except RelayGateError as exc:
        logger.error("%s %s 200 %s", request.method, request.url.path, exc)
        return _error_response(exc)

    logger.info(
        "chat completion committed id=%s stream=%s",
        assembler.completion_id,
        chat_request.stream,
    )
    if chat_request.stream:
        return _build_streaming_response(assembler.stream())
    return JSONResponse(content=await assembler.buffered())


@router.get("/models")
async def list_models() -> JSONResponse:
    return JSONResponse(content=to_model_list())


@router.options("/chat/completions")
@router.options("/models")
async def preflight() -> Response:
    return Response(status_code=204)
