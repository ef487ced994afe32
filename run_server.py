#!/usr/bin/env python3
"""
LumenRelay server runner — starts the payment relay with:
  - Operator key custody (configured secret or ephemeral keypair)
  - Horizon ledger gateway
  - Best-effort friendbot funding of the signing account
  - REST API

Usage:
    python run_server.py --config lumenrelay.toml --port 5000

Environment variables (alternative to flags):
    SERVER_SECRET, PORT, LUMENRELAY_HORIZON_URL, LUMENRELAY_LOG_LEVEL, ...
    (see lumenrelay_core/config.py for the full list)
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys

from lumenrelay_core.api import APIServer
from lumenrelay_core.assembler import TransactionAssembler
from lumenrelay_core.config import RelayConfig, load_config
from lumenrelay_core.custody import KeyCustody
from lumenrelay_core.errors import InvalidCredentialError
from lumenrelay_core.gateway import HorizonGateway
from lumenrelay_core.logging_config import setup_logging
from lumenrelay_core.pipeline import SubmissionPipeline

logger = logging.getLogger("lumenrelay")


class RelayServer:
    """Wires custody, gateway, pipeline and API into one runnable service."""

    def __init__(
        self,
        config: RelayConfig,
        custody: KeyCustody,
        gateway: HorizonGateway | None = None,
    ):
        self.config = config
        self.custody = custody
        self.gateway = gateway or HorizonGateway(
            config.horizon.url,
            timeout=config.horizon.timeout_seconds,
            friendbot_url=config.horizon.friendbot_url,
        )
        self.pipeline = SubmissionPipeline(
            self.gateway,
            custody,
            TransactionAssembler(
                config.horizon.network_passphrase,
                base_fee=config.pipeline.base_fee,
                validity_window=config.pipeline.validity_window_seconds,
            ),
            serialize_submissions=config.pipeline.serialize_submissions,
        )
        self.api = APIServer(self.pipeline, self.gateway, custody, api_config=config.api)
        # Background task references (prevent GC)
        self._bg_tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        await self.gateway.start()
        if self.config.signing.auto_fund and self.config.horizon.friendbot_url:
            self._bg_tasks.append(asyncio.create_task(self.custody.ensure_funded(self.gateway)))
        await self.api.start()
        if not self.pipeline.serializes_submissions:
            logger.info(
                "Submissions are not serialized: concurrent payments may be "
                "rejected with a sequence conflict and must be resubmitted"
            )

    async def stop(self) -> None:
        try:
            for task in self._bg_tasks:
                task.cancel()
            results = await asyncio.gather(*self._bg_tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Background task failed: {result!r}")
            self._bg_tasks.clear()
        finally:
            try:
                await self.api.stop()
            finally:
                await self.gateway.close()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="LumenRelay payment relay server")
    p.add_argument("--config", default=None, help="Path to a TOML config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--horizon-url", default=None, help="Horizon server URL")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    p.add_argument("--log-format", choices=("human", "json"), default=None,
                   help="Console log format")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> RelayConfig:
    """Load config (TOML + env overrides), then apply CLI flags on top."""
    cfg = load_config(args.config)
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
    if args.horizon_url:
        cfg.horizon.url = args.horizon_url
    if args.log_level:
        cfg.logging.level = args.log_level.upper()
    if args.log_format:
        cfg.logging.format = args.log_format
    return cfg


async def main(argv: list[str] | None = None) -> int:
    cfg = build_config(parse_args(argv))
    setup_logging(level=cfg.logging.level, fmt=cfg.logging.format, log_file=cfg.logging.file)

    try:
        custody = KeyCustody.resolve(cfg.signing.secret)
    except InvalidCredentialError as exc:
        logger.critical(f"{exc.message}; refusing to start")
        return 1

    server = RelayServer(cfg, custody)
    await server.start()
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await server.stop()
    return 0


def main_sync() -> None:
    """Synchronous entry point for console_scripts."""
    code = 0
    with contextlib.suppress(KeyboardInterrupt):
        code = asyncio.run(main())
    sys.exit(code)


if __name__ == "__main__":
    main_sync()
