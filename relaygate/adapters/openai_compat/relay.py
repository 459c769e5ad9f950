"""
Upstream conversation relay.

Reads the conversation SSE stream in its own task and publishes
``First`` / ``TextDelta`` / ``Done`` events into a capacity-one queue. The
upstream resends the whole assistant text on every event; the relay turns
those cumulative snapshots into deltas.
"""

from __future__ import annotations

import asyncio
import json
from typing import AsyncContextManager, Callable

import httpx
from pydantic import ValidationError as PydanticValidationError

from relaygate.adapters.openai_compat.stream_utils import DONE_SENTINEL, iter_sse_data
from relaygate.adapters.openai_compat.upstream import classify_transport_error, open_conversation_stream
from relaygate.core.errors import UpstreamTransportError
from relaygate.core.models import (
    ConversationEvent,
    Done,
    First,
    ProofToken,
    RelayEvent,
    SessionRequirements,
    TextDelta,
    UpstreamConversation,
)
from relaygate.util.logger import logger

StreamOpener = Callable[[UpstreamConversation, SessionRequirements, ProofToken], AsyncContextManager[httpx.Response]]


class SnapshotDeltaTracker:
    """Turns cumulative snapshots into deltas, counting characters rather than bytes."""

    def __init__(self) -> None:
        self.seen_chars = 0

    def advance(self, snapshot: str) -> str | None:
        delta = snapshot[self.seen_chars:]
        if not delta and self.seen_chars > 0:
            return None
        self.seen_chars = len(snapshot)
        return delta


def parse_conversation_event(data: str) -> ConversationEvent | None:
    try:
        raw = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("skip malformed conversation event bytes=%d", len(data))
        return None
    if not isinstance(raw, dict):
        return None
    try:
        return ConversationEvent.model_validate(raw)
    except PydanticValidationError:
        logger.debug("skip conversation event with unexpected shape keys=%s", sorted(raw)[:8])
        return None


class UpstreamStreamRelay:
    def __init__(
        self,
        conversation: UpstreamConversation,
        requirements: SessionRequirements,
        proof_token: ProofToken,
        *,
        opener: StreamOpener = open_conversation_stream,
    ) -> None:
        self.conversation = conversation
        self.requirements = requirements
        self.proof_token = proof_token
        self.channel: asyncio.Queue[RelayEvent | None] = asyncio.Queue(maxsize=1)
        self.stop_event = asyncio.Event()
        self._opener = opener
        self._first_sent = False
        self._tracker = SnapshotDeltaTracker()
        self._task: asyncio.Task[None] | None = None

    @property
    def first_sent(self) -> bool:
        return self._first_sent

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="relaygate-upstream-relay")
        return self._task

    async def stop(self) -> None:
        """Stop reading upstream; safe to call more than once."""
        self.stop_event.set()
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _send(self, event: RelayEvent | None) -> bool:
        """Put one event into the channel unless the consumer signalled stop first."""
        if self.stop_event.is_set():
            return False
        put_task = asyncio.ensure_future(self.channel.put(event))
        stop_task = asyncio.ensure_future(self.stop_event.wait())
        try:
            done, _ = await asyncio.wait({put_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (put_task, stop_task):
                if not pending.done():
                    pending.cancel()
        return put_task in done and not put_task.cancelled()

    async def _send_first(self, error: str | None) -> bool:
        if self._first_sent:
            return True
        self._first_sent = True
        return await self._send(First(error=error))

    def _handle_data(self, data: str) -> str | None:
        event = parse_conversation_event(data)
        if event is None:
            return None
        snapshot = event.assistant_snapshot()
        if snapshot is None:
            return None
        return self._tracker.advance(snapshot)

    async def _relay(self) -> None:
        async with self._opener(self.conversation, self.requirements, self.proof_token) as response:
            if not await self._send_first(None):
                return
            async for data in iter_sse_data(response.aiter_lines()):
                if self.stop_event.is_set():
                    logger.info("relay stopped by consumer seen_chars=%d", self._tracker.seen_chars)
                    return
                if data == DONE_SENTINEL:
                    await self._send(Done())
                    return
                delta = self._handle_data(data)
                if delta is None:
                    continue
                if not await self._send(TextDelta(text=delta)):
                    logger.info("relay consumer gone, stop reading upstream seen_chars=%d", self._tracker.seen_chars)
                    return
        logger.info("conversation stream ended without %s seen_chars=%d", DONE_SENTINEL, self._tracker.seen_chars)

    async def _fail(self, exc: UpstreamTransportError) -> None:
        if self._first_sent:
            # 已提交响应，无法再转换为错误包，只能结束输出
            logger.warning("conversation stream failed after commit kind=%s error=%s", exc.kind, exc)
            return
        logger.warning("conversation stream failed before commit kind=%s error=%s", exc.kind, exc)
        await self._send_first(str(exc))

    async def run(self) -> None:
        try:
            await self._relay()
        except asyncio.CancelledError:
            logger.debug("relay task cancelled seen_chars=%d", self._tracker.seen_chars)
            raise
        except UpstreamTransportError as exc:
            await self._fail(exc)
        except Exception as exc:
            logger.exception("relay task unexpected failure")
            await self._fail(classify_transport_error(exc))
        # None 作为通道关闭标记
        await self._send(None)

