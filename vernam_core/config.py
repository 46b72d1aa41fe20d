# MIT License © 2025 Motohiro Suzuki
"""
Service configuration.

Defaults live on the dataclass; deployment wiring may override them with
VERNAM_* environment variables (see ServiceConfig.from_env).
chunk_size is a protocol constant and is never read from the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from vernam_core.key_source import CHUNK_SIZE

BULK_MAX_CHUNKS = 8000  # whole payload sits in one response buffer
STREAM_MAX_CHUNKS = 100_000  # ~1.6 GB at 16 KiB
PROGRESS_EVERY = 100

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _read_int_env(env: Mapping[str, str], name: str, default: int) -> int:
    v = env.get(name, "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {v!r}") from e


def _read_float_env(env: Mapping[str, str], name: str, default: float) -> float:
    v = env.get(name, "").strip()
    if not v:
        return default
    try:
        return float(v)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {v!r}") from e


def _read_bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    v = env.get(name, "").strip().lower()
    if not v:
        return default
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {v!r}")


@dataclass(frozen=True)
class ServiceConfig:
    host: str = "127.0.0.1"
    port: int = 8787

    # ---- protocol ----
    chunk_size: int = CHUNK_SIZE
    bulk_max_chunks: int = BULK_MAX_CHUNKS
    stream_max_chunks: int = STREAM_MAX_CHUNKS
    progress_every: int = PROGRESS_EVERY
    strict_protocol: bool = True  # False: drop malformed messages silently

    # ---- session host ----
    resume_ttl_s: float = 300.0

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        for name in ("chunk_size", "bulk_max_chunks", "stream_max_chunks", "progress_every"):
            v = getattr(self, name)
            if not isinstance(v, int) or v <= 0:
                raise ValueError(f"{name} must be positive int, got {v!r}")
        if not (0 < self.port < 65536):
            raise ValueError(f"port out of range: {self.port}")
        if self.resume_ttl_s < 0:
            raise ValueError("resume_ttl_s must be >= 0")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServiceConfig":
        env = os.environ if environ is None else environ
        d = cls()
        return cls(
            host=env.get("VERNAM_HOST", "").strip() or d.host,
            port=_read_int_env(env, "VERNAM_PORT", d.port),
            bulk_max_chunks=_read_int_env(env, "VERNAM_BULK_MAX_CHUNKS", d.bulk_max_chunks),
            stream_max_chunks=_read_int_env(env, "VERNAM_STREAM_MAX_CHUNKS", d.stream_max_chunks),
            progress_every=_read_int_env(env, "VERNAM_PROGRESS_EVERY", d.progress_every),
            strict_protocol=_read_bool_env(env, "VERNAM_STRICT_PROTOCOL", d.strict_protocol),
            resume_ttl_s=_read_float_env(env, "VERNAM_RESUME_TTL_S", d.resume_ttl_s),
            log_level=env.get("VERNAM_LOG_LEVEL", "").strip().upper() or d.log_level,
        )
