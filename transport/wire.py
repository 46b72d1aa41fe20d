# MIT License © 2025 Motohiro Suzuki
"""
Wire encoding for key chunks

- binary : raw chunk bytes, one WebSocket binary frame / HTTP body slice per chunk
- text   : standard base64 ("=" padded, no line wrapping), embedded in a
           JSON key_chunk control message

Every call allocates in proportion to one chunk; nothing is carried over
between calls.

Liveness sentinels are plain text and never go through JSON.
"""

from __future__ import annotations

import base64
import binascii

PING = "ping"
PONG = "pong"


def encode_binary(chunk: bytes | bytearray | memoryview) -> bytes:
    return bytes(chunk)


def encode_text(chunk: bytes | bytearray | memoryview) -> str:
    return base64.b64encode(chunk).decode("ascii")


def decode_text(data: str) -> bytes:
    if not isinstance(data, str):
        raise TypeError("data must be str")
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64 chunk: {e}") from e


def encoded_text_len(chunk_size: int) -> int:
    return 4 * ((int(chunk_size) + 2) // 3)
