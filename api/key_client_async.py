# MIT License © 2025 Motohiro Suzuki
"""
Reference keyB client (websockets)

- connect /session/{session_id}?role=...
- wait for "connected"
- request_key {chunk_count}
- KeyStreamReceiver checks index order / chunk size and writes decoded
  chunks to a binary stream as they arrive (nothing is buffered)
- session_complete ends the transaction; error raises
- end_session, then close

keyA is generated on the client side and is not handled here.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import BinaryIO, Optional, Sequence
from urllib.parse import quote, urlencode

import websockets

from diagnostics.logging_config import setup_logging
from protocol.errors import KeyServiceError, ProtocolViolation
from protocol.messages import (
    Connected,
    EndSession,
    ErrorMessage,
    KeyChunk,
    Progress,
    RequestKey,
    SessionComplete,
    decode_server_message,
    encode_message,
)
from transport.wire import PONG, decode_text
from vernam_core.key_source import CHUNK_SIZE

logger = logging.getLogger(__name__)


class KeyDeliveryFailed(KeyServiceError):
    pass


@dataclass(frozen=True)
class ClientConfig:
    url: str = "ws://127.0.0.1:8787"
    session_id: str = "demo"
    role: str = "receiver"
    chunk_count: int = 1
    chunk_size: int = CHUNK_SIZE

    def session_url(self) -> str:
        base = self.url.rstrip("/")
        return f"{base}/session/{quote(self.session_id, safe='')}?{urlencode({'role': self.role})}"


class KeyStreamReceiver:
    """
    Consumes server messages for one request_key transaction.

    feed() returns True once the transaction is complete. The server may clamp
    a request; `clamped` tells whether fewer chunks than `expected` arrived.
    """

    def __init__(self, out: BinaryIO, *, expected: int, chunk_size: int = CHUNK_SIZE) -> None:
        self.out = out
        self.expected = int(expected)
        self.chunk_size = int(chunk_size)
        self.next_index = 0
        self.last_progress = 0
        self.bytes_written = 0
        self.done = False

    @property
    def clamped(self) -> bool:
        return self.done and self.next_index < self.expected

    def feed(self, msg) -> bool:
        if self.done:
            raise ProtocolViolation("message after transaction end")

        if isinstance(msg, KeyChunk):
            if self.next_index >= self.expected:
                raise ProtocolViolation(f"more chunks than requested ({self.expected})")
            if msg.index != self.next_index:
                raise ProtocolViolation(f"chunk index gap: expected {self.next_index}, got {msg.index}")
            data = decode_text(msg.data)
            if len(data) != self.chunk_size:
                raise ProtocolViolation(f"chunk {msg.index} has {len(data)} bytes, expected {self.chunk_size}")
            self.out.write(data)
            del data
            self.bytes_written += self.chunk_size
            self.next_index += 1
            return False

        if isinstance(msg, Progress):
            if msg.current < self.last_progress:
                raise ProtocolViolation("progress went backwards")
            self.last_progress = msg.current
            return False

        if isinstance(msg, SessionComplete):
            if msg.total_chunks != self.next_index:
                raise ProtocolViolation(
                    f"session_complete reports {msg.total_chunks} chunks, received {self.next_index}"
                )
            if msg.total_chunks < self.expected:
                logger.warning("server clamped the request: %d of %d chunks", msg.total_chunks, self.expected)
            self.done = True
            return True

        if isinstance(msg, ErrorMessage):
            self.done = True
            raise KeyDeliveryFailed(msg.message)

        if isinstance(msg, Connected):
            raise ProtocolViolation("unexpected connected message mid-transaction")

        raise ProtocolViolation(f"unexpected message: {type(msg).__name__}")


async def fetch_key(cfg: ClientConfig, out: BinaryIO) -> int:
    """Download cfg.chunk_count keyB chunks into `out`. Returns bytes written."""
    async with websockets.connect(cfg.session_url(), max_size=None) as ws:
        hello = decode_server_message(await ws.recv())
        if not isinstance(hello, Connected):
            raise ProtocolViolation(f"expected connected, got {hello.type}")
        logger.info("connected session=%s role=%s (server has sent %d chunks)",
                    hello.session_id, hello.role, hello.chunks_generated)

        await ws.send(encode_message(RequestKey(chunk_count=cfg.chunk_count)))
        rx = KeyStreamReceiver(out, expected=cfg.chunk_count, chunk_size=cfg.chunk_size)

        while True:
            raw = await ws.recv()
            if raw == PONG:
                continue
            msg = decode_server_message(raw)
            if isinstance(msg, Progress):
                logger.info("progress %d/%d", msg.current, msg.total)
            if rx.feed(msg):
                break

        await ws.send(encode_message(EndSession()))
        try:
            ack = decode_server_message(await ws.recv())
            if not isinstance(ack, SessionComplete):
                logger.warning("unexpected reply to end_session: %s", ack.type)
        except websockets.ConnectionClosed:
            logger.debug("server closed before end_session ack")

        return rx.bytes_written


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Fetch keyB from a key service session")
    p.add_argument("--url", default=ClientConfig.url)
    p.add_argument("--session", default=ClientConfig.session_id)
    p.add_argument("--role", default=ClientConfig.role, choices=["sender", "receiver"])
    p.add_argument("--chunks", type=int, default=1)
    p.add_argument("--out", required=True, help="file to write keyB to")
    return p


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging("INFO")
    cfg = ClientConfig(url=args.url, session_id=args.session, role=args.role, chunk_count=args.chunks)
    with open(args.out, "wb") as f:
        n = asyncio.run(fetch_key(cfg, f))
    print(f"[client] wrote {n} bytes of keyB to {args.out}")


if __name__ == "__main__":
    main()
