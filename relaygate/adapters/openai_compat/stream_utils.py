"""
流式 SSE 解析与 chunk 构建。从 router 拆出，便于维护与单测。
"""

from __future__ import annotations

import json
from typing import Any, AsyncGenerator, AsyncIterable, Iterable

from fastapi.responses import StreamingResponse

from relaygate.config.settings import settings

DONE_SENTINEL = "[DONE]"
_ZERO_USAGE = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def _extract_sse_data_payload(line: str) -> str | None:
    """Return the value of a ``data:`` field line, or None for any other line."""
    if not line.startswith("data:"):
        return None
    value = line[5:]
    if value.startswith(" "):
        value = value[1:]
    return value


async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncGenerator[str, None]:
    """Group SSE field lines into events and yield each event's data.

    Multiple ``data:`` lines of one event are joined with ``\\n``; comments and
    other fields are skipped. A trailing event without the blank separator is
    still delivered when the stream ends.
    """
    buffer: list[str] = []
    async for raw_line in lines:
        line = raw_line.rstrip("\r\n")
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        payload = _extract_sse_data_payload(line)
        if payload is not None:
            buffer.append(payload)
    if buffer:
        yield "\n".join(buffer)


def _sse_frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _chunk_payload(completion_id: str, created: int, delta: dict[str, Any], finish_reason: str | None) -> dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": settings.public_model_name,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }
        ],
    }


def _stream_text_sse_chunk(completion_id: str, created: int, text: str) -> bytes:
    # 首帧可能为空文本，此时携带 role，兼容只在首帧读取 role 的客户端
    delta = {"role": "assistant", "content": text} if not text else {"content": text}
    return _sse_frame(_chunk_payload(completion_id, created, delta, None)).encode("utf-8")


def _stream_done_sse_chunk() -> bytes:
    return f"data: {DONE_SENTINEL}\n\n".encode("utf-8")


def _stream_stop_sse_chunk(completion_id: str, created: int) -> bytes:
    """Terminal chunk plus the ``[DONE]`` sentinel in a single output unit."""
    payload = _chunk_payload(completion_id, created, {}, "stop")
    payload["usage"] = dict(_ZERO_USAGE)
    return _sse_frame(payload).encode("utf-8") + _stream_done_sse_chunk()


def _build_streaming_response(generator: Iterable[bytes] | AsyncIterable[bytes]) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
