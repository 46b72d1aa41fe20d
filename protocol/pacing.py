# MIT License © 2025 Motohiro Suzuki
"""
protocol/pacing.py

Lazy, one-chunk-at-a-time generation loop.

For each index:
  generate -> sink.send_chunk (awaited) -> wipe -> progress (cadence) -> yield

Awaiting the send before generating the next chunk is the only flow control:
at most one chunk of key material is alive per session. The explicit yield
after every chunk lets the connection's reader loop run (end_session, ping)
and keeps one session from starving the others.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Protocol

from vernam_core.key_source import ChunkGenerator


class ChunkSink(Protocol):
    async def send_chunk(self, index: int, chunk: memoryview) -> None:
        ...

    async def send_progress(self, current: int, total: int) -> None:
        ...


def clamp_chunk_count(n: int, ceiling: int) -> int:
    return max(0, min(int(n), int(ceiling)))


def should_report(current: int, total: int, every: int) -> bool:
    return current == total or (current > 0 and every > 0 and current % every == 0)


def _never() -> bool:
    return False


class PacingController:
    def __init__(self, generator: ChunkGenerator, *, progress_every: int = 100) -> None:
        if progress_every <= 0:
            raise ValueError("progress_every must be positive")
        self.generator = generator
        self.progress_every = int(progress_every)

    async def run(self, total: int, sink: ChunkSink, *, should_stop: Callable[[], bool] = _never) -> int:
        """Deliver `total` chunks to `sink`. Returns how many were delivered."""
        sent = 0
        for index in range(total):
            if should_stop():
                break

            with self.generator.generate() as chunk:
                await sink.send_chunk(index, chunk.view)
            sent += 1

            if should_report(sent, total, self.progress_every):
                await sink.send_progress(sent, total)

            await asyncio.sleep(0)
        return sent
