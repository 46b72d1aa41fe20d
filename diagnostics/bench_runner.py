# MIT License © 2025 Motohiro Suzuki
"""
diagnostics/bench_runner.py

Benchmark runner (ALWAYS prints results)

What it measures:
- ChunkGenerator.generate throughput (os.urandom into a SecretBuffer + wipe)
- base64 text encoding of one chunk
- PacingController loop into an in-memory sink (generate + encode + yield)

Run:
  python3 -m diagnostics.bench_runner
  python3 -m diagnostics.bench_runner 2>&1 | tee bench.txt
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

from protocol.pacing import PacingController
from transport.wire import encode_text
from vernam_core.key_source import CHUNK_SIZE, ChunkGenerator


@dataclass(frozen=True)
class BenchResult:
    name: str
    ops: int
    seconds: float
    bytes_total: int

    @property
    def ops_per_sec(self) -> float:
        return self.ops / self.seconds if self.seconds > 0 else 0.0

    @property
    def mb_per_sec(self) -> float:
        return (self.bytes_total / (1024 * 1024)) / self.seconds if self.seconds > 0 else 0.0


def _now() -> float:
    return time.perf_counter()


def _bench_loop(name: str, ops: int, bytes_per_op: int, fn: Callable[[], None]) -> BenchResult:
    t0 = _now()
    for _ in range(ops):
        fn()
    t1 = _now()
    return BenchResult(name=name, ops=ops, seconds=(t1 - t0), bytes_total=ops * bytes_per_op)


def bench_generate(ops: int = 2_000, chunk_size: int = CHUNK_SIZE) -> BenchResult:
    gen = ChunkGenerator(chunk_size=chunk_size)

    def _gen() -> None:
        with gen.generate():
            pass

    return _bench_loop("ChunkGenerator.generate", ops=ops, bytes_per_op=chunk_size, fn=_gen)


def bench_encode_text(ops: int = 2_000, chunk_size: int = CHUNK_SIZE) -> BenchResult:
    gen = ChunkGenerator(chunk_size=chunk_size)
    chunk = gen.generate()

    def _enc() -> None:
        _ = encode_text(chunk.view)

    try:
        return _bench_loop("wire.encode_text", ops=ops, bytes_per_op=chunk_size, fn=_enc)
    finally:
        chunk.wipe()


class _CountingSink:
    def __init__(self) -> None:
        self.chunks = 0
        self.progress = 0

    async def send_chunk(self, index: int, chunk: memoryview) -> None:
        _ = encode_text(chunk)
        self.chunks += 1

    async def send_progress(self, current: int, total: int) -> None:
        self.progress += 1


def bench_pacing(chunks: int = 2_000, chunk_size: int = CHUNK_SIZE) -> BenchResult:
    pacer = PacingController(ChunkGenerator(chunk_size=chunk_size))
    sink = _CountingSink()

    t0 = _now()
    sent = asyncio.run(pacer.run(chunks, sink))
    t1 = _now()
    return BenchResult(name="PacingController.run", ops=sent, seconds=(t1 - t0), bytes_total=sent * chunk_size)


def _print(r: BenchResult) -> None:
    print(f"  {r.name}: ops={r.ops} time={r.seconds:.4f}s ops/s={r.ops_per_sec:,.0f} MB/s={r.mb_per_sec:,.2f}")


def main() -> None:
    print("=== Key Service Bench Runner ===")
    print(f"chunk_size={CHUNK_SIZE}")
    print("")

    for label, fn in (
        ("GENERATE", bench_generate),
        ("ENCODE", bench_encode_text),
        ("PACING", bench_pacing),
    ):
        try:
            r = fn()
            print(f"[{label}]")
            _print(r)
        except Exception as e:
            print(f"[{label}] bench failed: {e!r}")
        print("")

    print("=== DONE ===")


if __name__ == "__main__":
    main()
