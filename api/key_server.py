# MIT License © 2025 Motohiro Suzuki
"""
Key service runner (uvicorn)

- ServiceConfig from VERNAM_* environment, then CLI overrides
- logging via diagnostics.logging_config
- serves api.app.create_app()

Run:
  python3 run_server.py --port 8787
  vernam-keyd --host 0.0.0.0
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
from typing import Sequence

import uvicorn

from api.app import create_app
from diagnostics.logging_config import setup_logging
from vernam_core.config import ServiceConfig

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Split one-time-pad keyB delivery service")
    p.add_argument("--host", default=None, help="listen address (default: VERNAM_HOST or 127.0.0.1)")
    p.add_argument("--port", type=int, default=None, help="listen port (default: VERNAM_PORT or 8787)")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ... (default: VERNAM_LOG_LEVEL or INFO)")
    return p


def load_config(argv: Sequence[str] | None = None) -> ServiceConfig:
    args = build_parser().parse_args(argv)
    cfg = ServiceConfig.from_env()
    overrides = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.log_level is not None:
        overrides["log_level"] = args.log_level.upper()
    return dataclasses.replace(cfg, **overrides) if overrides else cfg


def main(argv: Sequence[str] | None = None) -> None:
    cfg = load_config(argv)
    setup_logging(cfg.log_level)
    logger.info(
        "listening on %s:%d (bulk<=%d, stream<=%d chunks)",
        cfg.host, cfg.port, cfg.bulk_max_chunks, cfg.stream_max_chunks,
    )
    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port, log_level=cfg.log_level.lower())


if __name__ == "__main__":
    main()
