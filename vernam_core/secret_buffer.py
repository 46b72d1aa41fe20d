# MIT License © 2025 Motohiro Suzuki
"""
Scoped buffer for transient key material.

- backing store is a bytearray (mutable, so it can be overwritten in place)
- wipe() zeroes it with ctypes.memset
- used as a context manager: wiped on every exit path (return, error, cancel)

Immutable copies handed to a transport (bytes / base64 str) cannot be zeroed
from Python; they are dropped as soon as the frame has been written.
"""

from __future__ import annotations

import ctypes


class SecretBuffer:
    def __init__(self, size: int) -> None:
        if not isinstance(size, int) or size < 0:
            raise ValueError("size must be non-negative int")
        self._buf = bytearray(size)
        self._wiped = False

    def __len__(self) -> int:
        return len(self._buf)

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    @property
    def view(self) -> memoryview:
        if self._wiped:
            raise ValueError("buffer already wiped")
        return memoryview(self._buf)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        n = len(self._buf)
        if n:
            raw = (ctypes.c_char * n).from_buffer(self._buf)
            ctypes.memset(ctypes.addressof(raw), 0, n)
            del raw
        self._wiped = True

    def is_zero(self) -> bool:
        return not any(self._buf)
