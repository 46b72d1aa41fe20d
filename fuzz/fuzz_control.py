# MIT License © 2025 Motohiro Suzuki
"""
fuzz/fuzz_control.py

Fuzz harness for the session control channel (pure Python, no external fuzzer)

Each case drives one KeySession over a MemoryChannel with random input:
valid / aliased / oversized / negative request_key, end_session, ping,
unknown types, broken JSON, bit-flipped JSON; the key source fails at a
configurable rate. After every case the recorded output is checked:

- chunk indices gapless from 0 within a transaction
- overlapping request_key calls are served one transaction after another
- progress non-decreasing, never ahead of delivered chunks
- session_complete total matches delivered chunks
- end_session: session_complete{0} is the last frame, close code 1000
- nothing is sent after close

Run:
  python3 -m fuzz.fuzz_control
  python3 -m fuzz.fuzz_control --cases 200 --steps 40 --seed 1
"""

from __future__ import annotations

import argparse
import asyncio
import json
import random
from dataclasses import dataclass

from protocol.errors import CloseReason, EntropyUnavailable
from protocol.messages import ErrorMessage, KeyChunk, Progress, SessionComplete, decode_server_message
from protocol.pacing import PacingController
from protocol.session import RANDOM_FAILED, KeySession, SessionAttachment
from transport.channel import MemoryChannel
from transport.wire import PONG
from vernam_core.key_source import ChunkGenerator


class FuzzInvariantError(AssertionError):
    pass


@dataclass
class FuzzParams:
    steps: int = 30
    max_chunks: int = 40
    chunk_size: int = 48
    fail_rate: float = 0.01
    end_prob: float = 0.03


@dataclass
class FuzzStats:
    cases: int = 0
    inputs: int = 0
    chunks: int = 0
    completed: int = 0
    errors: int = 0
    entropy_failures: int = 0
    ended: int = 0


class FlakyKeySource:
    def __init__(self, rng: random.Random, fail_rate: float) -> None:
        self._rng = rng
        self._fail_rate = fail_rate

    def next_key(self, n: int) -> bytes:
        if self._rng.random() < self._fail_rate:
            raise EntropyUnavailable("fuzz: injected entropy failure")
        return self._rng.randbytes(n)


# ----------------------------
# Input generation
# ----------------------------
def _flip_one_bit(s: str, rng: random.Random) -> str:
    b = bytearray(s.encode("utf-8"))
    if not b:
        return s
    i = rng.randrange(len(b))
    b[i] ^= 1 << rng.randrange(7)
    return b.decode("utf-8", errors="replace")


def random_input(rng: random.Random, p: FuzzParams) -> str:
    r = rng.random()
    if r < p.end_prob:
        return json.dumps({"type": "end_session"})

    kind = rng.randrange(10)
    if kind <= 2:
        return json.dumps({"type": "request_key", "chunk_count": rng.randint(0, p.max_chunks // 2)})
    if kind == 3:
        return json.dumps({"type": "request_key", "count": rng.randint(0, 5)})
    if kind == 4:
        return json.dumps({"type": "request_key", "chunk_count": p.max_chunks * rng.randint(2, 10**6)})
    if kind == 5:
        return json.dumps({"type": "request_key", "chunk_count": rng.choice([-1, "3", 2.5, None, True])})
    if kind == 6:
        return "ping"
    if kind == 7:
        return json.dumps({"type": rng.choice(["hello", "key_chunk", "", "REQUEST_KEY"])})
    if kind == 8:
        return rng.choice(["", "{", "[]", "null", "42", '{"type":', "pong"])
    return _flip_one_bit(json.dumps({"type": "request_key", "chunk_count": 3}), rng)


# ----------------------------
# Invariant check
# ----------------------------
def check_transcript(channel: MemoryChannel, stats: FuzzStats | None = None) -> None:
    if channel.sends_after_close:
        raise FuzzInvariantError(f"{channel.sends_after_close} sends after close")

    next_index = 0
    last_progress = 0
    texts = [t for t in channel.texts() if t != PONG]

    for pos, raw in enumerate(texts):
        msg = decode_server_message(raw)

        if isinstance(msg, KeyChunk):
            if msg.index != next_index:
                raise FuzzInvariantError(f"index gap: expected {next_index}, got {msg.index}")
            next_index += 1
            if stats is not None:
                stats.chunks += 1
            continue

        if isinstance(msg, Progress):
            if msg.current < last_progress or msg.current > next_index:
                raise FuzzInvariantError(f"bad progress {msg.current} (last={last_progress}, sent={next_index})")
            last_progress = msg.current
            continue

        if isinstance(msg, SessionComplete):
            is_last = pos == len(texts) - 1
            ending = is_last and channel.close_code == CloseReason.NORMAL
            if not ending and msg.total_chunks != next_index:
                raise FuzzInvariantError(f"session_complete {msg.total_chunks} after {next_index} chunks")
            if ending and msg.total_chunks != 0:
                raise FuzzInvariantError("end_session must report 0")
            if stats is not None:
                if ending:
                    stats.ended += 1
                else:
                    stats.completed += 1
            next_index = 0
            last_progress = 0
            continue

        if isinstance(msg, ErrorMessage):
            if stats is not None:
                stats.errors += 1
            if msg.message == RANDOM_FAILED:
                if stats is not None:
                    stats.entropy_failures += 1
                next_index = 0
                last_progress = 0
            continue

        raise FuzzInvariantError(f"unexpected server message {msg.type}")

    if channel.close_code == CloseReason.NORMAL:
        if not texts or decode_server_message(texts[-1]) != SessionComplete(total_chunks=0):
            raise FuzzInvariantError("closed without session_complete{0}")


# ----------------------------
# Runner
# ----------------------------
async def run_case(rng: random.Random, p: FuzzParams, stats: FuzzStats) -> MemoryChannel:
    channel = MemoryChannel()
    pacer = PacingController(
        _generator(rng, p),
        progress_every=rng.choice([1, 3, 7, 100]),
    )
    session = KeySession(
        SessionAttachment(session_id=f"fuzz-{stats.cases}"),
        channel,
        pacer=pacer,
        max_chunks=p.max_chunks,
    )

    for _ in range(p.steps):
        await session.handle_text(random_input(rng, p))
        stats.inputs += 1
        for _ in range(rng.randint(0, 4)):
            await asyncio.sleep(0)
        if session.closed:
            break

    await session.wait_idle()
    stats.cases += 1
    check_transcript(channel, stats)
    return channel


def _generator(rng: random.Random, p: FuzzParams) -> ChunkGenerator:
    return ChunkGenerator(FlakyKeySource(rng, p.fail_rate), chunk_size=p.chunk_size)


def run_fuzz(*, cases: int, seed: int, params: FuzzParams | None = None) -> FuzzStats:
    p = params or FuzzParams()
    rng = random.Random(seed)
    stats = FuzzStats()

    async def _all() -> None:
        for _ in range(cases):
            await run_case(rng, p, stats)

    asyncio.run(_all())
    return stats


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--cases", type=int, default=100)
    ap.add_argument("--steps", type=int, default=30)
    ap.add_argument("--seed", type=int, default=155)
    ap.add_argument("--fail-rate", type=float, default=0.01)
    args = ap.parse_args()

    print("=== Control Channel Fuzz ===")
    params = FuzzParams(steps=args.steps, fail_rate=args.fail_rate)
    stats = run_fuzz(cases=args.cases, seed=args.seed, params=params)
    print(f"  cases={stats.cases} inputs={stats.inputs}")
    print(f"  chunks={stats.chunks} completed={stats.completed} ended={stats.ended}")
    print(f"  errors={stats.errors} entropy_failures={stats.entropy_failures}")
    print("=== DONE ===")


if __name__ == "__main__":
    main()
