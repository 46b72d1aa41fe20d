# MIT License © 2025 Motohiro Suzuki
"""
protocol/session.py

Per-connection key delivery state machine.

  IDLE --request_key--> GENERATING --complete/error--> IDLE
  IDLE | GENERATING --end_session / transport close--> CLOSED   (terminal)

Rules:
- one transaction at a time per session; a request_key arriving while
  GENERATING is queued and served after the running transaction's
  terminal message, so indices never interleave
- exactly one terminal message (session_complete or error) per transaction
- queue overflow is reported with an error only after the running
  transaction has terminated
- cancellation is checked at every chunk boundary; halt() also cancels a
  send that is blocked on a slow peer
- SessionAttachment (session_id, role, chunks_generated) is the only state
  that outlives a connection; key bytes are never stored on the session
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections import deque
from dataclasses import asdict, dataclass
from typing import Deque, Optional

from protocol.errors import CloseReason, EntropyUnavailable, ProtocolViolation, SessionClosed
from protocol.messages import (
    Connected,
    EndSession,
    ErrorMessage,
    KeyChunk,
    Progress,
    RequestKey,
    SessionComplete,
    decode_client_message,
    encode_message,
)
from protocol.pacing import PacingController, clamp_chunk_count
from transport.channel import MessageChannel, TransportClosed
from transport.wire import PING, PONG, encode_binary, encode_text

logger = logging.getLogger(__name__)

RANDOM_FAILED = "Random generation failed"
QUEUE_FULL = "too many queued requests"

MAX_PENDING = 16
EVICT_NOTICE_TIMEOUT_S = 5.0


class SessionPhase(enum.Enum):
    IDLE = "idle"
    GENERATING = "generating"
    CLOSED = "closed"


@dataclass
class SessionAttachment:
    session_id: str
    role: str = "sender"
    chunks_generated: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "SessionAttachment":
        try:
            d = json.loads(raw)
            return cls(
                session_id=str(d["session_id"]),
                role=str(d.get("role", "sender")),
                chunks_generated=int(d.get("chunks_generated", 0)),
            )
        except (ValueError, TypeError, KeyError) as e:
            raise ValueError(f"invalid session attachment: {e}") from e

    def copy(self) -> "SessionAttachment":
        return SessionAttachment(self.session_id, self.role, self.chunks_generated)


class KeySession:
    def __init__(
        self,
        attachment: SessionAttachment,
        channel: MessageChannel,
        *,
        pacer: PacingController,
        max_chunks: int,
        binary_frames: bool = False,
        strict_protocol: bool = True,
        max_pending: int = MAX_PENDING,
    ) -> None:
        self.attachment = attachment
        self.channel = channel
        self._pacer = pacer
        self._max_chunks = int(max_chunks)
        self._binary_frames = binary_frames
        self._strict = strict_protocol
        self._max_pending = int(max_pending)

        self._phase = SessionPhase.IDLE
        self._stopping = False
        self._ended = False
        self._task: Optional[asyncio.Task] = None
        self._pending: Deque[int] = deque()
        self._dropped = 0

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------
    @property
    def session_id(self) -> str:
        return self.attachment.session_id

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def closed(self) -> bool:
        return self._phase is SessionPhase.CLOSED

    @property
    def ended(self) -> bool:
        """True only when the client ended the session with end_session."""
        return self._ended

    @property
    def chunks_generated(self) -> int:
        return self.attachment.chunks_generated

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # inbound events
    # ------------------------------------------------------------------
    async def announce(self) -> None:
        a = self.attachment
        await self._send(Connected(session_id=a.session_id, role=a.role, chunks_generated=a.chunks_generated))

    async def handle_text(self, text: str) -> None:
        if self.closed:
            return

        if text == PING:
            await self.channel.send_text(PONG)
            return

        try:
            msg = decode_client_message(text)
        except ProtocolViolation as e:
            logger.warning("[session %s] protocol violation: %s", self.session_id, e)
            if self._strict:
                await self._send(ErrorMessage(message=str(e)))
            return

        if isinstance(msg, RequestKey):
            await self.request_key(msg.chunk_count)
        elif isinstance(msg, EndSession):
            await self.end_session()
        else:
            raise ProtocolViolation(f"unhandled message type: {type(msg).__name__}")

    async def request_key(self, chunk_count: int) -> None:
        if self.closed:
            raise SessionClosed(f"session {self.session_id} is closed")

        count = clamp_chunk_count(chunk_count, self._max_chunks)
        if count != chunk_count:
            logger.info("[session %s] clamped request %d -> %d", self.session_id, chunk_count, count)

        if self._phase is SessionPhase.GENERATING:
            if len(self._pending) >= self._max_pending:
                self._dropped += 1
                logger.warning("[session %s] request queue full, dropping request_key", self.session_id)
            else:
                self._pending.append(count)
                logger.info("[session %s] queued request_key %d (%d waiting)", self.session_id, count, len(self._pending))
            return

        self._phase = SessionPhase.GENERATING
        self._task = asyncio.create_task(self._serve(count), name=f"keygen-{self.session_id}")

    async def end_session(self) -> None:
        if self.closed:
            return
        self._stopping = True
        self._pending.clear()
        self._dropped = 0
        await self._join()

        self._phase = SessionPhase.CLOSED
        self._ended = True
        logger.info("[session %s] ended by client after %d chunks", self.session_id, self.chunks_generated)
        try:
            await self._send(SessionComplete(total_chunks=0))
            await self.channel.close(code=CloseReason.NORMAL, reason="session_complete")
        except TransportClosed:
            logger.debug("[session %s] transport gone before end ack", self.session_id)

    def halt(self) -> None:
        """Stop now: cancel the generation task (even mid-send) and enter CLOSED."""
        self._stopping = True
        self._pending.clear()
        self._dropped = 0
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._phase = SessionPhase.CLOSED

    async def detach(self) -> None:
        """Transport closed: stop generating, send nothing."""
        if self.closed and self._task is None:
            return
        self.halt()
        await self._join()

    async def evict(
        self,
        message: str,
        *,
        code: int = CloseReason.SERVICE_RESTART,
        notice_timeout_s: float = EVICT_NOTICE_TIMEOUT_S,
    ) -> None:
        """Host reclaims the session (replaced connection, shutdown)."""
        self.halt()
        await self._join()
        if self.channel.closed:
            return
        try:
            await asyncio.wait_for(self._notify(message, code), notice_timeout_s)
        except TransportClosed:
            logger.debug("[session %s] transport gone before eviction notice", self.session_id)
        except asyncio.TimeoutError:
            logger.warning("[session %s] peer not reading; eviction notice dropped", self.session_id)

    async def wait_idle(self) -> None:
        await self._join()

    # ------------------------------------------------------------------
    # generation task
    # ------------------------------------------------------------------
    async def _notify(self, message: str, code: int) -> None:
        await self._send(ErrorMessage(message=message))
        await self.channel.close(code=code, reason=message)

    async def _join(self) -> None:
        task = self._task
        if task is None:
            return
        if task is not asyncio.current_task():
            (result,) = await asyncio.gather(task, return_exceptions=True)
            if isinstance(result, Exception):
                logger.error("[session %s] generation task failed: %r", self.session_id, result)
        self._task = None

    async def _serve(self, count: int) -> None:
        try:
            while True:
                await self._run(count)
                if self._should_stop() or not self._pending:
                    break
                count = self._pending.popleft()
        finally:
            if self._phase is SessionPhase.GENERATING:
                self._phase = SessionPhase.IDLE

    async def _run(self, count: int) -> None:
        logger.info("[session %s] generating %d key chunks", self.session_id, count)
        terminal: Optional[ErrorMessage | SessionComplete] = None
        try:
            try:
                await self._pacer.run(count, self, should_stop=self._should_stop)
            except EntropyUnavailable as e:
                logger.error("[session %s] %s: %s", self.session_id, RANDOM_FAILED, e)
                terminal = ErrorMessage(message=RANDOM_FAILED)
            else:
                if not self._stopping:
                    terminal = SessionComplete(total_chunks=count)

            if terminal is not None:
                await self._send(terminal)
                logger.info("[session %s] sent %d key chunks (total %d)", self.session_id, count, self.chunks_generated)

            while self._dropped and not self._should_stop():
                self._dropped -= 1
                await self._send(ErrorMessage(message=QUEUE_FULL))
        except TransportClosed:
            logger.info("[session %s] transport closed mid-request", self.session_id)

    def _should_stop(self) -> bool:
        return self._stopping or self.channel.closed

    # ------------------------------------------------------------------
    # ChunkSink
    # ------------------------------------------------------------------
    async def send_chunk(self, index: int, chunk: memoryview) -> None:
        if self._binary_frames:
            await self.channel.send_bytes(encode_binary(chunk))
        else:
            await self._send(KeyChunk(index=index, data=encode_text(chunk)))
        self.attachment.chunks_generated += 1

    async def send_progress(self, current: int, total: int) -> None:
        await self._send(Progress(current=current, total=total))

    async def _send(self, msg) -> None:
        await self.channel.send_text(encode_message(msg))
