# MIT License © 2025 Motohiro Suzuki
"""
Async message channels (WebSocket, in-memory)

KeySession only sees MessageChannel: send_text / send_bytes / close.
Writes are serialized with a lock so the generation task and the reader
loop (pong, error replies) never interleave inside one frame.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

from starlette.websockets import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class TransportClosed(Exception):
    pass


@runtime_checkable
class MessageChannel(Protocol):
    @property
    def closed(self) -> bool:
        ...

    async def send_text(self, text: str) -> None:
        ...

    async def send_bytes(self, data: bytes) -> None:
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...


class WebSocketChannel:
    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_closed(self) -> None:
        self._closed = True

    async def send_text(self, text: str) -> None:
        async with self._lock:
            if self._closed:
                raise TransportClosed("channel closed")
            try:
                await self._ws.send_text(text)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                self._closed = True
                raise TransportClosed(f"send failed: {e!r}") from e

    async def send_bytes(self, data: bytes) -> None:
        async with self._lock:
            if self._closed:
                raise TransportClosed("channel closed")
            try:
                await self._ws.send_bytes(data)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                self._closed = True
                raise TransportClosed(f"send failed: {e!r}") from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                await self._ws.close(code=code, reason=reason)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.debug("close after peer went away: %r", e)


class MemoryChannel:
    """
    In-process channel: records every frame (str = text, bytes = binary).
    Used by the fuzz harness and tests.
    """

    def __init__(self) -> None:
        self.frames: list[str | bytes] = []
        self.close_code: int | None = None
        self.close_reason = ""
        self.sends_after_close = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def texts(self) -> list[str]:
        return [f for f in self.frames if isinstance(f, str)]

    async def send_text(self, text: str) -> None:
        self._check_open()
        self.frames.append(text)

    async def send_bytes(self, data: bytes) -> None:
        self._check_open()
        self.frames.append(bytes(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        self.close_code = code
        self.close_reason = reason

    def _check_open(self) -> None:
        if self._closed:
            self.sends_after_close += 1
            raise TransportClosed("channel closed")
