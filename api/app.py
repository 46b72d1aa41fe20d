# MIT License © 2025 Motohiro Suzuki
"""
HTTP / WebSocket edge of the key service (FastAPI)

  GET     /key/{count}              bulk: count chunks in one binary body
  WS      /ws                       stateless stream: binary chunk frames
  WS      /session/{session_id}     session stream: base64 key_chunk messages
  GET     /health                   liveness
  OPTIONS *                         CORS preflight

Every HTTP response carries Access-Control-Allow-Origin: *.
Plain GET on a WebSocket path -> 400 "WebSocket required".
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from protocol.errors import CloseReason, EntropyUnavailable, TransportRequired
from protocol.messages import ROLES, ErrorMessage, encode_message
from protocol.pacing import PacingController, clamp_chunk_count
from protocol.registry import SessionRegistry
from protocol.session import KeySession, SessionAttachment
from transport.channel import MessageChannel, TransportClosed, WebSocketChannel
from vernam_core.config import ServiceConfig
from vernam_core.key_source import ChunkGenerator, KeySource
from vernam_core.secret_buffer import SecretBuffer

logger = logging.getLogger(__name__)

HEALTH_BODY = "Key service OK"

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}
PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


USIZE_MAX = 2**64 - 1


def parse_chunk_count(raw: str, ceiling: int) -> int:
    """
    Unsigned decimal, optional leading "+", ASCII digits only; anything
    else (sign, whitespace, "_", non-ASCII digits, > 64 bits) counts as 1.
    """
    digits = raw[1:] if raw.startswith("+") else raw
    if digits.isascii() and digits.isdigit():
        n = int(digits)
        if n > USIZE_MAX:
            n = 1
    else:
        n = 1
    return clamp_chunk_count(n, ceiling)


def generate_bulk(generator: ChunkGenerator, count: int) -> bytes:
    with SecretBuffer(count * generator.chunk_size) as buf:
        view = buf.view
        step = generator.chunk_size
        for off in range(0, len(buf), step):
            generator.fill(view[off : off + step])
        body = bytes(view)
        view.release()
    return body


async def _pump(websocket: WebSocket, session: KeySession) -> None:
    while not session.closed:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        text = message.get("text")
        if text is None:
            data = message.get("bytes")
            if data is None:
                continue
            text = data.decode("utf-8", errors="replace")
        await session.handle_text(text)


async def refuse(channel: MessageChannel, message: str, *, reason: str, code: int = CloseReason.POLICY_VIOLATION) -> None:
    try:
        await channel.send_text(encode_message(ErrorMessage(message=message)))
        await channel.close(code=code, reason=reason)
    except TransportClosed:
        logger.debug("peer gone before refusal: %s", reason)


def create_app(config: ServiceConfig | None = None, *, source: KeySource | None = None) -> FastAPI:
    cfg = config or ServiceConfig()
    generator = ChunkGenerator(source, chunk_size=cfg.chunk_size)
    pacer = PacingController(generator, progress_every=cfg.progress_every)
    registry = SessionRegistry(
        pacer,
        max_chunks=cfg.stream_max_chunks,
        strict_protocol=cfg.strict_protocol,
        resume_ttl_s=cfg.resume_ttl_s,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await registry.close_all()

    app = FastAPI(title="vernam-keyd", lifespan=lifespan)
    app.state.config = cfg
    app.state.generator = generator
    app.state.registry = registry

    @app.middleware("http")
    async def cors(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=PREFLIGHT_HEADERS)
        response = await call_next(request)
        response.headers.setdefault("Access-Control-Allow-Origin", "*")
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=CORS_HEADERS)

    @app.exception_handler(TransportRequired)
    async def transport_required(request: Request, exc: TransportRequired):
        return PlainTextResponse(str(exc), status_code=400, headers=CORS_HEADERS)

    @app.exception_handler(EntropyUnavailable)
    async def entropy_unavailable(request: Request, exc: EntropyUnavailable):
        logger.error("bulk request failed: %s", exc)
        return PlainTextResponse(
            "Random generation failed",
            status_code=503,
            headers={**CORS_HEADERS, "Cache-Control": "no-store"},
        )

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------
    @app.get("/health")
    def health():
        return PlainTextResponse(HEALTH_BODY, headers=CORS_HEADERS)

    @app.get("/key/{count}")
    def bulk_key(count: str):
        n = parse_chunk_count(count, cfg.bulk_max_chunks)
        body = generate_bulk(generator, n)
        logger.info("bulk: sent %d key chunks", n)
        return Response(
            content=body,
            media_type="application/octet-stream",
            headers={
                **CORS_HEADERS,
                "Cache-Control": "no-store",
                "X-Chunk-Count": str(n),
                "X-Chunk-Size": str(generator.chunk_size),
            },
        )

    @app.get("/ws")
    @app.get("/session/{session_id}")
    def websocket_required():
        raise TransportRequired("WebSocket required")

    # ------------------------------------------------------------------
    # WebSocket
    # ------------------------------------------------------------------
    @app.websocket("/ws")
    async def stream_socket(websocket: WebSocket):
        await websocket.accept()
        channel = WebSocketChannel(websocket)
        attachment = SessionAttachment(session_id=uuid.uuid4().hex)
        session = KeySession(
            attachment,
            channel,
            pacer=pacer,
            max_chunks=cfg.stream_max_chunks,
            binary_frames=True,
            strict_protocol=cfg.strict_protocol,
        )
        logger.info("[stream %s] connected", attachment.session_id)
        try:
            await _pump(websocket, session)
        except TransportClosed as e:
            logger.debug("[stream %s] peer went away: %s", attachment.session_id, e)
        finally:
            channel.mark_closed()
            await session.detach()
            logger.info("[stream %s] disconnected after %d chunks", attachment.session_id, session.chunks_generated)

    @app.websocket("/session/{session_id}")
    async def session_socket(websocket: WebSocket, session_id: str, role: str = "sender"):
        await websocket.accept()
        channel = WebSocketChannel(websocket)

        if role not in ROLES:
            await refuse(channel, f"role must be one of {'|'.join(ROLES)}", reason="invalid role")
            return

        session = await registry.open(session_id, role, channel)
        try:
            await session.announce()
            await _pump(websocket, session)
        except TransportClosed as e:
            logger.debug("[session %s] peer went away: %s", session_id, e)
        finally:
            channel.mark_closed()
            await registry.release(session)
            logger.info("[session %s] disconnected", session_id)

    return app
