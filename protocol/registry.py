# MIT License © 2025 Motohiro Suzuki
"""
protocol/registry.py

Session host: exactly one live KeySession per session_id.

- open()    : resume a suspended attachment, replace a live connection,
              or create a fresh attachment
- release() : connection gone -> keep the attachment as "suspended" for
              resume_ttl_s (unless the client ended the session)
- sweep()   : evict suspended attachments whose TTL expired

Only attachments (identity + counters) are kept between connections.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from protocol.errors import CloseReason
from protocol.messages import ROLES
from protocol.pacing import PacingController
from protocol.session import EVICT_NOTICE_TIMEOUT_S, KeySession, SessionAttachment
from transport.channel import MessageChannel

logger = logging.getLogger(__name__)

REPLACED = "another connection joined; disconnecting"


@dataclass
class _Suspended:
    attachment: SessionAttachment
    expires_at: float


class SessionRegistry:
    def __init__(
        self,
        pacer: PacingController,
        *,
        max_chunks: int,
        strict_protocol: bool = True,
        resume_ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        evict_timeout_s: float = EVICT_NOTICE_TIMEOUT_S,
    ) -> None:
        self._pacer = pacer
        self._max_chunks = int(max_chunks)
        self._strict = strict_protocol
        self._ttl = float(resume_ttl_s)
        self._clock = clock
        self._evict_timeout = float(evict_timeout_s)

        self._live: Dict[str, KeySession] = {}
        self._suspended: Dict[str, _Suspended] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._live or session_id in self._suspended

    def get(self, session_id: str) -> Optional[KeySession]:
        return self._live.get(session_id)

    def attachment(self, session_id: str) -> Optional[SessionAttachment]:
        live = self._live.get(session_id)
        if live is not None:
            return live.attachment.copy()
        s = self._suspended.get(session_id)
        return s.attachment.copy() if s is not None else None

    def suspended_count(self) -> int:
        return len(self._suspended)

    def sweep(self) -> int:
        now = self._clock()
        expired = [sid for sid, s in self._suspended.items() if now >= s.expires_at]
        for sid in expired:
            self._suspended.pop(sid, None)
            logger.info("[registry] evicted suspended session %s", sid)
        return len(expired)

    async def open(self, session_id: str, role: str, channel: MessageChannel) -> KeySession:
        if role not in ROLES:
            raise ValueError(f"role must be one of {'|'.join(ROLES)}")

        # no awaits under the lock; eviction of a replaced session happens after it
        async with self._lock:
            self.sweep()

            old = self._live.pop(session_id, None)
            if old is not None:
                old.halt()
                attachment = old.attachment.copy()
            else:
                parked = self._suspended.pop(session_id, None)
                if parked is not None:
                    attachment = parked.attachment
                    logger.info(
                        "[registry] session %s resumed as %s (%d chunks so far)",
                        session_id, attachment.role, attachment.chunks_generated,
                    )
                else:
                    attachment = SessionAttachment(session_id=session_id, role=role)
                    logger.info("[registry] session %s connected as %s", session_id, role)

            if attachment.role != role:
                logger.info("[registry] session %s keeps role %s (requested %s)", session_id, attachment.role, role)

            session = KeySession(
                attachment,
                channel,
                pacer=self._pacer,
                max_chunks=self._max_chunks,
                strict_protocol=self._strict,
            )
            self._live[session_id] = session

        if old is not None:
            logger.info("[registry] session %s replaced by a new connection", session_id)
            await old.evict(REPLACED, notice_timeout_s=self._evict_timeout)
        return session

    async def release(self, session: KeySession) -> None:
        # parked before the first await: the caller may be cancelled during detach()
        self._park(session)
        await session.detach()

    def _park(self, session: KeySession) -> None:
        sid = session.session_id
        if self._live.get(sid) is not session:
            return
        del self._live[sid]
        if session.ended or self._ttl <= 0:
            logger.info("[registry] session %s closed", sid)
            return
        self._suspended[sid] = _Suspended(session.attachment.copy(), self._clock() + self._ttl)
        logger.info("[registry] session %s suspended (%d chunks)", sid, session.chunks_generated)

    async def close_all(self) -> None:
        async with self._lock:
            live = list(self._live.values())
            self._live.clear()
            self._suspended.clear()
        await asyncio.gather(
            *(
                s.evict("server shutting down", code=CloseReason.GOING_AWAY, notice_timeout_s=self._evict_timeout)
                for s in live
            )
        )
