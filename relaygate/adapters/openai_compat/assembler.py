"""
Response assembly around the commit point.

The first relay event decides the outcome: ``First(error)`` fails the call
before any HTTP response exists, ``First(None)`` commits. After the commit
the remaining events are rendered either as SSE chunks or as one buffered
completion document.
"""

from __future__ import annotations

import enum
import secrets
import string
import time
from contextlib import aclosing
from typing import Any, AsyncGenerator

from relaygate.adapters.openai_compat.mapper import to_chat_response
from relaygate.adapters.openai_compat.relay import UpstreamStreamRelay
from relaygate.adapters.openai_compat.stream_utils import _stream_stop_sse_chunk, _stream_text_sse_chunk
from relaygate.core.errors import UpstreamTransportError
from relaygate.core.models import Done, First, RelayEvent, TextDelta
from relaygate.util.logger import logger

_COMPLETION_ID_CHARSET = string.ascii_letters + string.digits
_COMPLETION_ID_LENGTH = 16


def generate_completion_id() -> str:
    suffix = "".join(secrets.choice(_COMPLETION_ID_CHARSET) for _ in range(_COMPLETION_ID_LENGTH))
    return f"chatcmpl-{suffix}"


class AssemblerState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_FIRST = "awaiting_first"
    FAILED = "failed"
    COMMITTED = "committed"
    DRAINING = "draining"
    COMPLETE = "complete"


class ResponseAssembler:
    def __init__(
        self,
        relay: UpstreamStreamRelay,
        *,
        completion_id: str | None = None,
        created: int | None = None,
    ) -> None:
        self.relay = relay
        self.completion_id = completion_id or generate_completion_id()
        self.created = int(created if created is not None else time.time())
        self.state = AssemblerState.IDLE

    def _transition(self, state: AssemblerState) -> None:
        logger.debug("assembler %s state %s -> %s", self.completion_id, self.state.value, state.value)
        self.state = state

    async def _next_event(self) -> RelayEvent | None:
        return await self.relay.channel.get()

    async def _fail(self, message: str, kind: str = "transport") -> UpstreamTransportError:
        self._transition(AssemblerState.FAILED)
        await self.relay.stop()
        return UpstreamTransportError(message, kind=kind)

    async def await_first(self) -> None:
        """Block until the relay reports the commit decision; raise on a pre-commit failure."""
        self._transition(AssemblerState.AWAITING_FIRST)
        try:
            event = await self._next_event()
        except BaseException:
            await self.relay.stop()
            raise
        if event is None:
            raise await self._fail("Upstream stream closed before responding", kind="stream_ended")
        if not isinstance(event, First):
            raise await self._fail(f"Unexpected upstream event before commit: {type(event).__name__}")
        if event.error is not None:
            raise await self._fail(event.error)
        self._transition(AssemblerState.COMMITTED)

    async def events(self) -> AsyncGenerator[RelayEvent, None]:
        """Remaining events after the commit, in arrival order, ending at ``Done`` or channel close."""
        if self.state is not AssemblerState.COMMITTED:
            raise RuntimeError(f"assembler not committed: {self.state.value}")
        self._transition(AssemblerState.DRAINING)
        completed = False
        try:
            while True:
                event = await self._next_event()
                if event is None:
                    break
                if isinstance(event, First):
                    continue
                yield event
                if isinstance(event, Done):
                    break
            completed = True
        finally:
            await self.relay.stop()
            if completed:
                self._transition(AssemblerState.COMPLETE)
            else:
                logger.info("assembler %s drained early (client gone or cancelled)", self.completion_id)

    async def stream(self) -> AsyncGenerator[bytes, None]:
        async with aclosing(self.events()) as events:
            async for event in events:
                if isinstance(event, TextDelta):
                    yield _stream_text_sse_chunk(self.completion_id, self.created, event.text)
                elif isinstance(event, Done):
                    yield _stream_stop_sse_chunk(self.completion_id, self.created)

    async def collect(self) -> str:
        parts: list[str] = []
        async with aclosing(self.events()) as events:
            async for event in events:
                if isinstance(event, TextDelta):
                    parts.append(event.text)
        return "".join(parts)

    async def buffered(self) -> dict[str, Any]:
        content = await self.collect()
        return to_chat_response(self.completion_id, self.created, content)
