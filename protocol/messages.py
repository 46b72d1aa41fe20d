# MIT License © 2025 Motohiro Suzuki
"""
protocol/messages.py

JSON control messages. Every message is an object discriminated by "type".

client -> server
  request_key      {chunk_count}   ("count" accepted as an alias)
  end_session      {}

server -> client
  connected        {session_id, role, chunks_generated}
  key_chunk        {index, data}   data = base64 chunk
  progress         {current, total}
  session_complete {total_chunks}
  error            {message}

"ping"/"pong" are plain-text sentinels (transport.wire) and never reach
this module.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from protocol.errors import ProtocolViolation

ROLES = ("sender", "receiver")


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


# ---- client -> server ----
class RequestKey(_Message):
    type: Literal["request_key"] = "request_key"
    chunk_count: int = Field(
        ge=0,
        strict=True,
        validation_alias=AliasChoices("chunk_count", "count"),
    )


class EndSession(_Message):
    type: Literal["end_session"] = "end_session"


# ---- server -> client ----
class Connected(_Message):
    type: Literal["connected"] = "connected"
    session_id: str
    role: str
    chunks_generated: int = 0


class KeyChunk(_Message):
    type: Literal["key_chunk"] = "key_chunk"
    index: int
    data: str


class Progress(_Message):
    type: Literal["progress"] = "progress"
    current: int
    total: int


class SessionComplete(_Message):
    type: Literal["session_complete"] = "session_complete"
    total_chunks: int


class ErrorMessage(_Message):
    type: Literal["error"] = "error"
    message: str


ClientMessage = Annotated[Union[RequestKey, EndSession], Field(discriminator="type")]
ServerMessage = Annotated[
    Union[Connected, KeyChunk, Progress, SessionComplete, ErrorMessage],
    Field(discriminator="type"),
]

_CLIENT = TypeAdapter(ClientMessage)
_SERVER = TypeAdapter(ServerMessage)


def _describe(err: ValidationError) -> str:
    first = err.errors()[0] if err.errors() else {}
    kind = first.get("type", "")
    if kind == "json_invalid":
        return "invalid JSON"
    if kind in ("union_tag_not_found", "model_type", "model_attributes_type"):
        return "message must be a JSON object with a type field"
    if kind == "union_tag_invalid":
        return "unknown message type"
    loc = ".".join(str(p) for p in first.get("loc", ())[1:]) or "message"
    return f"invalid {loc}: {first.get('msg', kind)}"


def decode_client_message(text: str | bytes) -> RequestKey | EndSession:
    try:
        return _CLIENT.validate_json(text)
    except ValidationError as e:
        raise ProtocolViolation(_describe(e)) from e


def decode_server_message(text: str | bytes) -> Connected | KeyChunk | Progress | SessionComplete | ErrorMessage:
    try:
        return _SERVER.validate_json(text)
    except ValidationError as e:
        raise ProtocolViolation(_describe(e)) from e


def encode_message(msg: _Message) -> str:
    return msg.model_dump_json()
