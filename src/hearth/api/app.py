"""Sync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens and closes the process-wide sync services
- Health endpoint at GET /api/health
- The calendar sync router under /api/calendar
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hearth.api.deps import init_services, shutdown_services, wire_service_dependencies
from hearth.api.middleware import register_error_handlers
from hearth.api.routers import sync as sync_router_module
from hearth.config import resolve_config

logger = logging.getLogger(__name__)

_ROUTER_MODULES = [sync_router_module]


def _make_lifespan(config_dir: str | Path | None, realtime: bool):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open sync services on startup; close them on shutdown."""
        config = resolve_config(config_dir)
        try:
            await init_services(config, realtime=realtime)
            wire_service_dependencies(app, _ROUTER_MODULES)
            logger.info("Sync services initialized for %s", config.name)
        except Exception:
            logger.warning("Failed to initialize sync services; sync endpoints will be unavailable")

        yield

        await shutdown_services()

    return lifespan


def create_app(
    cors_origins: list[str] | None = None,
    *,
    config_dir: str | Path | None = None,
    realtime: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    cors_origins:
        Allowed CORS origins. Defaults to ["http://localhost:5173"] for the
        local dev server.
    config_dir:
        Directory holding ``hearth.toml``. Falls back to ``HEARTH_CONFIG_DIR``
        and then to built-in defaults.
    realtime:
        Start the LISTEN feed, dispatcher loop and cross-context poll.
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    app = FastAPI(
        title="Hearth Calendar Sync API",
        version="0.1.0",
        lifespan=_make_lifespan(config_dir, realtime),
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    for module in _ROUTER_MODULES:
        app.include_router(module.router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
