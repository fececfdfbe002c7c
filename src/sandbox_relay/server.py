"""Relay Server — FastAPI application that ties all components together.

Startup sequence:
1. Load config (YAML + environment overrides)
2. Open the SQLite activity log
3. Build the sandbox provider
4. Build registry, artifact scanner and command pipeline
5. Prune expired activity history and start the idle reaper's background sweep
6. Begin accepting requests

Shutdown:
1. Stop the background sweep
2. Cancel in-flight stream executions (each stream ends with an error event)
3. Kill every remaining sandbox (bounded by sessions.shutdown_deadline)
4. Close the activity log
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from sandbox_relay.activity import ActivityLogger
from sandbox_relay.api import configure as configure_api
from sandbox_relay.api import router as api_router
from sandbox_relay.artifacts import ArtifactScanner
from sandbox_relay.config import RelayConfig, load_config
from sandbox_relay.executor import CommandPipeline
from sandbox_relay.registry import SessionRegistry
from sandbox_relay.sandbox import SandboxProvider, create_provider
from sandbox_relay.streaming import cancel_background_tasks

logger = logging.getLogger(__name__)


class RelayServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(
        self,
        config_path: Path | None = None,
        *,
        config: RelayConfig | None = None,
        provider: SandboxProvider | None = None,
    ):
        self.config_path = config_path
        self.config = config
        self.provider = provider

        # Components (initialized in start())
        self.activity_logger: ActivityLogger | None = None
        self.registry: SessionRegistry | None = None
        self.pipeline: CommandPipeline | None = None

    async def start(self) -> None:
        """Initialize all components."""
        logger.info("Starting sandbox-relay server")

        if self.config is None:
            self.config = load_config(self.config_path)
        config = self.config

        if config.activity.enabled:
            db_path = config.activity_db_path
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self.activity_logger = ActivityLogger(str(db_path))
            await self.activity_logger.initialize()

        if self.provider is None:
            self.provider = create_provider(config.sandbox)
        logger.info("Sandbox provider: %s", self.provider.name)

        if not config.sandbox.agent_api_key:
            logger.warning(
                "%s is not set; agents in new sandboxes will have no gateway credentials",
                config.sandbox.agent_api_key_env,
            )

        self.registry = SessionRegistry(
            self.provider,
            config.sandbox,
            idle_timeout=config.sessions.idle_timeout,
            activity=self.activity_logger,
        )
        self.pipeline = CommandPipeline(
            self.registry,
            ArtifactScanner(config.artifacts),
            config.execution,
            config.git,
        )
        configure_api(self.registry, self.pipeline, self.activity_logger)

        await self.registry.reaper.start(
            config.sessions.sweep_interval,
            retention_hours=config.activity.retention_hours,
        )

        logger.info("sandbox-relay server started successfully")

    async def stop(self) -> None:
        """Graceful shutdown — reap everything, then close storage."""
        logger.info("sandbox-relay server shutting down")

        if self.registry:
            await self.registry.reaper.stop()
            await cancel_background_tasks()
            deadline = self.config.sessions.shutdown_deadline if self.config else 10.0
            drained = await self.registry.reaper.drain(deadline=deadline)
            if drained:
                logger.info("Terminated %d sandbox(es) at shutdown", len(drained))
        if self.activity_logger:
            await self.activity_logger.close()
            self.activity_logger = None

        logger.info("sandbox-relay server stopped")


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = RelayServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(
    config_path: Path | None = None,
    *,
    config: RelayConfig | None = None,
    provider: SandboxProvider | None = None,
) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = RelayServer(config_path, config=config, provider=provider)

    app = FastAPI(
        title="sandbox-relay",
        version="0.1.0",
        description="Ephemeral sandbox sessions and streaming command execution for coding agents",
        lifespan=lifespan,
    )

    # Mount routes
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with session counts."""
        sessions = await _server.registry.list() if _server.registry else []
        return {
            "status": "ok",
            "provider": _server.provider.name if _server.provider else None,
            "sessions": len(sessions),
            "running": sum(1 for s in sessions if s.running),
            "idle_timeout": _server.config.sessions.idle_timeout if _server.config else None,
        }

    return app
