"""
Buildboard Server - Main entry point.

This module starts the Buildboard server with all components:
- Document store (SQLite)
- Social services (relationships, engagement, builds, leaderboard)
- Reconciler loop (repairs suspects, periodic sweeps)
- HTTP server

Usage:
    python -m backend.buildboard_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store schema exists before the HTTP server accepts requests
    - Services and the Reconciler share one Reconciler instance (and its locks)

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import Services, start_http_server
from .config import ServerConfig
from .social import (
    BuildService,
    EngagementService,
    LeaderboardService,
    Reconciler,
    RelationshipService,
)
from .store import DocumentStore, EngagementStore, RelationshipStore, ScoreStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def build_services(documents: DocumentStore, config: ServerConfig) -> Services:
    """Wire the stores, Reconciler and services around one document store."""
    relationships = RelationshipStore(documents)
    engagement = EngagementStore(documents)
    scores = ScoreStore(documents)

    reconciler = Reconciler(relationships, engagement, scores, config=config.reconciler)
    read_repair = config.reconciler.read_repair
    relationship_service = RelationshipService(relationships, reconciler, read_repair=read_repair)

    return Services(
        documents=documents,
        relationships=relationship_service,
        engagement=EngagementService(engagement, reconciler, read_repair=read_repair),
        builds=BuildService(documents, relationship_service),
        leaderboard=LeaderboardService(scores, reconciler, relationship_service),
        reconciler=reconciler,
    )


class Server:
    """Buildboard Server orchestrator.

    Manages the lifecycle of all server components:
    - Document store
    - HTTP server
    - Reconciler background loop

    Attributes:
        config: Server configuration
        documents: SQLite document store
        services: Services exposed over HTTP

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.documents: DocumentStore | None = None
        self.services: Services | None = None
        self.http_runner: web.AppRunner | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and all components, then wait for shutdown."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting Buildboard server")
        self.config.log_config()

        try:
            storage = self.config.storage
            self.documents = DocumentStore(
                data_dir=storage.data_dir,
                db_filename=storage.db_filename,
                wal_mode=storage.wal_mode,
                busy_timeout_ms=storage.busy_timeout_ms,
                cache_size_pages=storage.cache_size_pages,
            )
            await self.documents.initialize()

            self.services = build_services(self.documents, self.config)

            if self.config.reconciler.enabled:
                reconciler_task = asyncio.create_task(self.services.reconciler.start())
                self._tasks.append(reconciler_task)
            else:
                logger.info("Reconciler sweep loop disabled; read repair only")

            self.http_runner = await start_http_server(self.services, self.config.http)

            self._running = True
            logger.info("Buildboard server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully. Safe to call more than once."""
        logger.info("Stopping Buildboard server")

        if self.http_runner:
            await self.http_runner.cleanup()
            self.http_runner = None

        if self.services:
            await self.services.reconciler.stop()

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        self._running = False
        logger.info("Buildboard server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
