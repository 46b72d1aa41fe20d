# MIT License © 2025 Motohiro Suzuki
from __future__ import annotations

import json
import os

import pytest

from protocol.errors import EntropyUnavailable
from protocol.pacing import PacingController
from protocol.session import MAX_PENDING, KeySession, SessionAttachment
from transport.channel import MemoryChannel
from vernam_core.key_source import ChunkGenerator

SMALL_CHUNK = 32


class FailingKeySource:
    """os.urandom until `ok_calls` reads have been served, then EntropyUnavailable."""

    def __init__(self, ok_calls: int = 0, *, fail_times: int | None = None) -> None:
        self.ok_calls = ok_calls
        self.fail_times = fail_times
        self.calls = 0
        self.failures = 0

    def next_key(self, n: int) -> bytes:
        self.calls += 1
        if self.calls > self.ok_calls and (self.fail_times is None or self.failures < self.fail_times):
            self.failures += 1
            raise EntropyUnavailable("test: entropy source down")
        return os.urandom(n)


def decoded(channel: MemoryChannel) -> list[dict]:
    return [json.loads(t) for t in channel.texts() if t not in ("ping", "pong")]


def types(channel: MemoryChannel) -> list[str]:
    return [m["type"] for m in decoded(channel)]


def make_session(
    *,
    source=None,
    chunk_size: int = SMALL_CHUNK,
    max_chunks: int = 1000,
    progress_every: int = 100,
    binary_frames: bool = False,
    strict_protocol: bool = True,
    max_pending: int = MAX_PENDING,
    attachment: SessionAttachment | None = None,
) -> tuple[KeySession, MemoryChannel]:
    channel = MemoryChannel()
    pacer = PacingController(ChunkGenerator(source, chunk_size=chunk_size), progress_every=progress_every)
    session = KeySession(
        attachment or SessionAttachment(session_id="t1"),
        channel,
        pacer=pacer,
        max_chunks=max_chunks,
        binary_frames=binary_frames,
        strict_protocol=strict_protocol,
        max_pending=max_pending,
    )
    return session, channel


@pytest.fixture
def failing_source() -> FailingKeySource:
    return FailingKeySource()
