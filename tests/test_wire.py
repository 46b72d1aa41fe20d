# MIT License © 2025 Motohiro Suzuki
from __future__ import annotations

import os

import pytest

from transport.wire import decode_text, encode_binary, encode_text, encoded_text_len
from vernam_core.key_source import CHUNK_SIZE


def test_text_encoding_is_standard_padded_base64() -> None:
    assert encode_text(b"\x00\x01\x02") == "AAEC"
    assert encode_text(b"\xff") == "/w=="
    assert encode_text(b"\xfb\xff") == "+/8="
    assert encode_text(b"") == ""


def test_full_chunk_has_no_line_breaks() -> None:
    chunk = os.urandom(CHUNK_SIZE)
    text = encode_text(memoryview(chunk))
    assert "\n" not in text
    assert len(text) == encoded_text_len(CHUNK_SIZE) == 21848
    assert decode_text(text) == chunk


def test_binary_encoding_is_identity_copy() -> None:
    buf = bytearray(b"abc")
    out = encode_binary(memoryview(buf))
    assert out == b"abc"
    buf[0] = 0
    assert out == b"abc"


def test_decode_rejects_invalid_input() -> None:
    with pytest.raises(ValueError):
        decode_text("not base64!")
    with pytest.raises(ValueError):
        decode_text("AAE")
    with pytest.raises(ValueError):
        decode_text("ключ")
    with pytest.raises(TypeError):
        decode_text(b"AAEC")  # type: ignore[arg-type]
