# MIT License © 2025 Motohiro Suzuki
from __future__ import annotations

import asyncio
import base64
import io
import json

import pytest

from conftest import SMALL_CHUNK, FailingKeySource, decoded, make_session, types
from api.key_client_async import KeyStreamReceiver
from protocol.errors import CloseReason, SessionClosed
from protocol.messages import decode_server_message
from protocol.session import QUEUE_FULL, RANDOM_FAILED, SessionAttachment, SessionPhase

REQ3 = '{"type":"request_key","chunk_count":3}'
END = '{"type":"end_session"}'


def _req(n: int) -> str:
    return json.dumps({"type": "request_key", "chunk_count": n})


async def _spin(n: int) -> None:
    for _ in range(n):
        await asyncio.sleep(0)


def test_request_key_sequence() -> None:
    async def scenario():
        session, ch = make_session()
        await session.announce()
        await session.handle_text(REQ3)
        await session.wait_idle()
        return session, ch

    session, ch = asyncio.run(scenario())
    msgs = decoded(ch)
    assert msgs[0] == {"type": "connected", "session_id": "t1", "role": "sender", "chunks_generated": 0}
    assert [m["type"] for m in msgs[1:]] == ["key_chunk"] * 3 + ["progress", "session_complete"]
    assert [m["index"] for m in msgs[1:4]] == [0, 1, 2]
    assert all(len(base64.b64decode(m["data"])) == SMALL_CHUNK for m in msgs[1:4])
    assert msgs[4] == {"type": "progress", "current": 3, "total": 3}
    assert msgs[5] == {"type": "session_complete", "total_chunks": 3}
    assert session.phase is SessionPhase.IDLE
    assert session.chunks_generated == 3


def test_zero_chunk_request_completes_immediately() -> None:
    async def scenario():
        session, ch = make_session()
        await session.handle_text(_req(0))
        await session.wait_idle()
        return ch

    assert decoded(asyncio.run(scenario())) == [{"type": "session_complete", "total_chunks": 0}]


def test_each_transaction_restarts_indices() -> None:
    async def scenario():
        session, ch = make_session(progress_every=2)
        await session.handle_text(_req(3))
        await session.wait_idle()
        await session.handle_text(_req(2))
        await session.wait_idle()
        return session, ch

    session, ch = asyncio.run(scenario())
    chunks = [m["index"] for m in decoded(ch) if m["type"] == "key_chunk"]
    progress = [(m["current"], m["total"]) for m in decoded(ch) if m["type"] == "progress"]
    assert chunks == [0, 1, 2, 0, 1]
    assert progress == [(2, 3), (3, 3), (2, 2)]
    assert session.chunks_generated == 5


def test_oversized_request_is_clamped() -> None:
    async def run(n: int) -> list[str]:
        session, ch = make_session(max_chunks=5)
        await session.handle_text(_req(n))
        await session.wait_idle()
        return types(ch)

    big = asyncio.run(run(50))
    exact = asyncio.run(run(5))
    assert big == exact == ["key_chunk"] * 5 + ["progress", "session_complete"]


def test_count_alias_is_accepted() -> None:
    async def scenario():
        session, ch = make_session()
        await session.handle_text('{"type":"request_key","count":2}')
        await session.wait_idle()
        return ch

    assert decoded(asyncio.run(scenario()))[-1] == {"type": "session_complete", "total_chunks": 2}


def test_ping_gets_pong_without_state_change() -> None:
    async def scenario():
        session, ch = make_session()
        await session.handle_text("ping")
        return session, ch

    session, ch = asyncio.run(scenario())
    assert ch.frames == ["pong"]
    assert session.phase is SessionPhase.IDLE


def test_ping_is_answered_mid_transaction() -> None:
    async def scenario():
        session, ch = make_session()
        await session.handle_text(_req(20))
        await _spin(3)
        await session.handle_text("ping")
        await session.wait_idle()
        return ch

    ch = asyncio.run(scenario())
    assert "pong" in ch.frames
    assert [m["index"] for m in decoded(ch) if m["type"] == "key_chunk"] == list(range(20))


def test_malformed_message_strict_reports_error() -> None:
    async def scenario():
        session, ch = make_session()
        await session.handle_text("{not json")
        await session.handle_text('{"type":"bogus"}')
        await session.handle_text(_req(1))
        await session.wait_idle()
        return ch

    msgs = decoded(asyncio.run(scenario()))
    assert msgs[0] == {"type": "error", "message": "invalid JSON"}
    assert msgs[1] == {"type": "error", "message": "unknown message type"}
    assert msgs[-1] == {"type": "session_complete", "total_chunks": 1}


def test_malformed_message_lenient_is_dropped() -> None:
    async def scenario():
        session, ch = make_session(strict_protocol=False)
        await session.handle_text("{not json")
        await session.handle_text('{"type":"request_key","chunk_count":-4}')
        return ch

    assert asyncio.run(scenario()).frames == []


def _feed_transaction(rx: KeyStreamReceiver, msgs: list) -> list:
    """Feed messages until rx reports completion; return what is left."""
    for i, m in enumerate(msgs):
        if rx.feed(m):
            return msgs[i + 1 :]
    raise AssertionError("transaction never completed")


def test_overlapping_request_is_queued() -> None:
    async def scenario():
        session, ch = make_session()
        await session.handle_text(_req(10))
        await _spin(2)
        await session.handle_text(_req(4))
        assert session.pending == 1
        await session.wait_idle()
        return session, ch

    session, ch = asyncio.run(scenario())
    assert types(ch) == (
        ["key_chunk"] * 10 + ["progress", "session_complete"] + ["key_chunk"] * 4 + ["progress", "session_complete"]
    )
    assert session.chunks_generated == 14

    # a client waiting on the first request sees one clean transaction
    msgs = [decode_server_message(t) for t in ch.texts()]
    first, second = io.BytesIO(), io.BytesIO()
    rest = _feed_transaction(KeyStreamReceiver(first, expected=10, chunk_size=SMALL_CHUNK), msgs)
    assert len(first.getvalue()) == 10 * SMALL_CHUNK
    assert _feed_transaction(KeyStreamReceiver(second, expected=4, chunk_size=SMALL_CHUNK), rest) == []
    assert len(second.getvalue()) == 4 * SMALL_CHUNK


def test_queue_overflow_is_reported_after_terminal() -> None:
    async def scenario():
        session, ch = make_session(max_pending=1)
        await session.handle_text(_req(5))
        await _spin(1)
        await session.handle_text(_req(2))
        await session.handle_text(_req(3))
        await session.wait_idle()
        return ch

    msgs = decoded(asyncio.run(scenario()))
    kinds = [m["type"] for m in msgs]
    assert kinds == ["key_chunk"] * 5 + ["progress", "session_complete", "error"] + ["key_chunk"] * 2 + [
        "progress",
        "session_complete",
    ]
    assert msgs[7] == {"type": "error", "message": QUEUE_FULL}
    assert msgs[6] == {"type": "session_complete", "total_chunks": 5}


def test_end_session_drops_queued_requests() -> None:
    async def scenario():
        session, ch = make_session()
        await session.handle_text(_req(1000))
        await _spin(3)
        await session.handle_text(_req(5))
        await session.handle_text(END)
        await _spin(10)
        return session, ch

    session, ch = asyncio.run(scenario())
    msgs = decoded(ch)
    assert msgs[-1] == {"type": "session_complete", "total_chunks": 0}
    assert [m for m in msgs if m["type"] == "session_complete"] == [msgs[-1]]
    assert session.pending == 0


def test_end_session_interrupts_generation() -> None:
    async def scenario():
        session, ch = make_session()
        await session.handle_text(_req(1000))
        await _spin(5)
        await session.handle_text(END)
        frames_at_end = len(ch.frames)
        await _spin(20)
        return session, ch, frames_at_end

    session, ch, frames_at_end = asyncio.run(scenario())
    msgs = decoded(ch)
    chunks = [m["index"] for m in msgs if m["type"] == "key_chunk"]
    assert 0 < len(chunks) < 1000
    assert chunks == list(range(len(chunks)))
    assert msgs[-1] == {"type": "session_complete", "total_chunks": 0}
    assert len(ch.frames) == frames_at_end
    assert ch.close_code == CloseReason.NORMAL
    assert ch.sends_after_close == 0
    assert session.phase is SessionPhase.CLOSED
    assert session.ended


def test_end_session_when_idle() -> None:
    async def scenario():
        session, ch = make_session()
        await session.handle_text(END)
        await session.handle_text(REQ3)
        return session, ch

    session, ch = asyncio.run(scenario())
    assert decoded(ch) == [{"type": "session_complete", "total_chunks": 0}]
    assert ch.close_code == CloseReason.NORMAL
    assert session.closed


def test_request_after_close_raises() -> None:
    async def scenario():
        session, _ = make_session()
        await session.end_session()
        await session.request_key(1)

    with pytest.raises(SessionClosed):
        asyncio.run(scenario())


def test_entropy_failure_is_reported_and_session_survives() -> None:
    async def scenario():
        session, ch = make_session(source=FailingKeySource(ok_calls=2, fail_times=1))
        await session.handle_text(_req(5))
        await session.wait_idle()
        phase_after_failure = session.phase
        await session.handle_text(_req(2))
        await session.wait_idle()
        return phase_after_failure, ch

    phase_after_failure, ch = asyncio.run(scenario())
    msgs = decoded(ch)
    assert phase_after_failure is SessionPhase.IDLE
    assert [m["type"] for m in msgs[:3]] == ["key_chunk", "key_chunk", "error"]
    assert msgs[2]["message"] == RANDOM_FAILED
    assert "session_complete" not in [m["type"] for m in msgs[:3]]
    assert msgs[-1] == {"type": "session_complete", "total_chunks": 2}
    assert ch.close_code is None


def test_detach_stops_silently() -> None:
    async def scenario():
        session, ch = make_session()
        await session.handle_text(_req(1000))
        await _spin(3)
        await ch.close(1001)
        await session.detach()
        return session, ch

    session, ch = asyncio.run(scenario())
    assert session.closed
    assert not session.ended
    assert "session_complete" not in types(ch)
    assert session.chunks_generated == len([t for t in types(ch) if t == "key_chunk"])


def test_evict_sends_error_and_closes() -> None:
    async def scenario():
        session, ch = make_session()
        await session.handle_text(_req(1000))
        await _spin(2)
        await session.evict("bye", code=CloseReason.SERVICE_RESTART)
        return ch

    ch = asyncio.run(scenario())
    assert decoded(ch)[-1] == {"type": "error", "message": "bye"}
    assert ch.close_code == CloseReason.SERVICE_RESTART


def test_binary_frames_carry_raw_chunks() -> None:
    async def scenario():
        session, ch = make_session(binary_frames=True)
        await session.handle_text(_req(2))
        await session.wait_idle()
        return ch

    ch = asyncio.run(scenario())
    binary = [f for f in ch.frames if isinstance(f, bytes)]
    assert [len(b) for b in binary] == [SMALL_CHUNK, SMALL_CHUNK]
    assert types(ch) == ["progress", "session_complete"]


def test_attachment_round_trip() -> None:
    a = SessionAttachment(session_id="abc", role="receiver", chunks_generated=42)
    assert SessionAttachment.from_json(a.to_json()) == a
    assert SessionAttachment.from_json('{"session_id":"x"}') == SessionAttachment("x")
    for bad in ("", "[]", '{"role":"sender"}', '{"session_id":"x","chunks_generated":"many"}'):
        with pytest.raises(ValueError):
            SessionAttachment.from_json(bad)
