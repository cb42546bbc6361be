#!/usr/bin/env python3
"""
EscrowFlow Service Runner — starts the escrow REST API with:
  - one shared ledger gateway connection
  - the escrow orchestrator and signer resolver
  - the Verification Gate (when an attestation service is configured)
  - periodic cleanup of expired requirement sets

Usage:
    python run_service.py --config escrowflow.toml --port 8080

Environment variables (alternative to flags):
    ESCROWFLOW_LEDGER_URL, ESCROWFLOW_API_PORT, ESCROWFLOW_LOG_LEVEL, ...
    (see escrowflow_core/config.py for the full list)
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from escrowflow_core.api import APIServer  # noqa: E402
from escrowflow_core.config import load_config  # noqa: E402
from escrowflow_core.logging_config import setup_logging  # noqa: E402
from escrowflow_core.service import EscrowService  # noqa: E402

logger = logging.getLogger("escrowflow")

# Requirement-set cleanup interval (seconds)
CLEANUP_INTERVAL = 3600


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="EscrowFlow escrow service")
    p.add_argument("--config", default=os.environ.get("ESCROWFLOW_CONFIG"),
                   help="Path to escrowflow.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--ledger-url", default=None, help="Ledger WebSocket URL")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    return p.parse_args()


async def _cleanup_loop(service: EscrowService) -> None:
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL)
        if service.gate is not None:
            service.gate.cleanup()


async def main() -> None:
    args = parse_args()

    # Load config (TOML + env overrides); CLI flags override both
    cfg = load_config(args.config)
    if args.host:
        cfg.api.host = args.host
    if args.port:
        cfg.api.port = args.port
    if args.ledger_url:
        cfg.ledger.url = args.ledger_url
    if args.log_level:
        cfg.logging.level = args.log_level.upper()

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    service = EscrowService.from_config(cfg)
    if not cfg.api.api_key:
        logger.warning(
            "Running WITHOUT an API key - POST endpoints are open. "
            "Set [api] api_key or ESCROWFLOW_API_KEY in production."
        )

    api = APIServer(service, cfg.api.host, cfg.api.port, api_config=cfg.api)
    await api.start()
    cleanup = asyncio.ensure_future(_cleanup_loop(service))
    logger.info("EscrowFlow ready (ledger %s)", cfg.ledger.url)

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        cleanup.cancel()
        await api.stop()
        await service.close()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
