# MIT License © 2025 Motohiro Suzuki
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from protocol.errors import EntropyUnavailable
from vernam_core.secret_buffer import SecretBuffer

CHUNK_SIZE = 16 * 1024  # shared by server and clients; changing it breaks the protocol


@runtime_checkable
class KeySource(Protocol):
    """
    Random byte source interface.
    ChunkGenerator expects `next_key(n)` to return exactly n fresh bytes
    or raise EntropyUnavailable.
    """
    def next_key(self, n: int) -> bytes:
        ...


@dataclass(frozen=True)
class OsRandomKeySource:
    """
    OS CSPRNG (os.urandom). Fails closed: no fallback source.
    """
    source_type: str = "os-urandom"

    def next_key(self, n: int) -> bytes:
        if not isinstance(n, int) or n <= 0:
            raise ValueError("n must be positive int")
        try:
            return os.urandom(n)
        except (OSError, NotImplementedError) as e:
            raise EntropyUnavailable(f"random source failed: {e}") from e


class ChunkGenerator:
    """
    Produces SecretBuffer chunks from a KeySource.

    Holds no state besides the source and chunk size, so one instance can be
    shared by every session.
    """

    def __init__(self, source: KeySource | None = None, *, chunk_size: int = CHUNK_SIZE) -> None:
        if not isinstance(chunk_size, int) or chunk_size <= 0:
            raise ValueError("chunk_size must be positive int")
        self.source: KeySource = source if source is not None else OsRandomKeySource()
        self.chunk_size = chunk_size

    def generate(self, size: int | None = None) -> SecretBuffer:
        n = self.chunk_size if size is None else int(size)
        buf = SecretBuffer(n)
        try:
            self.fill(buf.view)
        except BaseException:
            buf.wipe()
            raise
        return buf

    def fill(self, view: memoryview) -> None:
        n = len(view)
        if n == 0:
            return
        try:
            data = self.source.next_key(n)
        except EntropyUnavailable:
            raise
        except (OSError, NotImplementedError) as e:
            raise EntropyUnavailable(f"random source failed: {e}") from e

        if not isinstance(data, (bytes, bytearray)) or len(data) != n:
            raise EntropyUnavailable(f"random source returned a short or invalid read (expected {n} bytes)")
        view[:] = data
        del data
