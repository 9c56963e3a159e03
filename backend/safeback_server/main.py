"""
SafeBack Server - Main entry point.

This module starts the snapshot engine with all components:
- TenantStore (domain tables) and the provider registry
- SnapshotStore (engine metadata) and the payload store
- SnapshotOrchestrator
- HTTP server

Usage:
    python -m backend.safeback_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The registry is frozen before the server accepts requests
    - Graceful shutdown closes the payload store after the HTTP server stops

How to change safely:
    - Wire new components in build_engine() so the CLI picks them up too
    - Test the shutdown sequence when adding components
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter
from aiohttp import web

from .api import create_http_app
from .config import ServerConfig
from .engine import SnapshotOrchestrator
from .providers import build_default_registry
from .storage import PayloadStore, SnapshotStore, TenantStore, create_payload_store

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


def build_engine(config: ServerConfig) -> tuple[SnapshotOrchestrator, PayloadStore]:
    """Construct stores, registry and orchestrator from configuration.

    Returns:
        (orchestrator, payload store) - the caller owns closing the payload store
    """
    data_dir = Path(config.storage.data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)

    tenant_store = TenantStore(
        data_dir=str(data_dir / "tenants"),
        wal_mode=config.storage.wal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
    )
    snapshot_store = SnapshotStore(
        data_dir=str(data_dir),
        wal_mode=config.storage.wal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
    )
    payload_store = create_payload_store(config.payload, str(data_dir))
    registry = build_default_registry(tenant_store, config.limits)

    engine = SnapshotOrchestrator(
        registry=registry,
        snapshot_store=snapshot_store,
        payload_store=payload_store,
        config=config.engine,
    )
    return engine, payload_store


class Server:
    """SafeBack server lifecycle.

    Attributes:
        config: Server configuration
        engine: Snapshot orchestrator
        payload_store: Payload blob store

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.engine: SnapshotOrchestrator | None = None
        self.payload_store: PayloadStore | None = None
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting SafeBack server")
        self.config.log_config()

        try:
            self.engine, self.payload_store = build_engine(self.config)
            await self.payload_store.start()
            logger.info(
                "Provider registry ready",
                extra={"providers": [p.id for p in self.engine.registry.all()]},
            )

            app = create_http_app(self.engine, self.config.http)
            self._runner = web.AppRunner(app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.config.http.host, self.config.http.port)
            await site.start()

            self._running = True
            logger.info(
                "SafeBack server started",
                extra={"host": self.config.http.host, "port": self.config.http.port},
            )

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping SafeBack server")

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        if self.payload_store:
            await self.payload_store.close()

        self._running = False
        logger.info("SafeBack server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
