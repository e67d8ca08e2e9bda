"""Service singleton and FastAPI dependencies for the sync API.

The lifespan handler opens one :class:`~hearth.services.SyncServices` and
wires it into every router's ``_get_services`` stub. Tests override the stub
directly with ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from hearth.config import HearthConfig
from hearth.services import SyncServices, open_services

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singleton for FastAPI dependency injection
# ---------------------------------------------------------------------------

_services: SyncServices | None = None


async def init_services(config: HearthConfig, *, realtime: bool = True) -> SyncServices:
    """Open the process-wide services. Called once from the lifespan handler."""
    global _services  # noqa: PLW0603

    services = await open_services(config)
    if realtime:
        await services.start_realtime()
    _services = services
    return services


async def shutdown_services() -> None:
    """Close the process-wide services. Called during app shutdown."""
    global _services  # noqa: PLW0603

    if _services is not None:
        await _services.close()
        _services = None


def get_services() -> SyncServices:
    """FastAPI dependency: the SyncServices singleton."""
    if _services is None:
        raise RuntimeError("SyncServices not initialized; call init_services() first")
    return _services


def wire_service_dependencies(app: FastAPI, modules: list) -> None:
    """Override each router module's ``_get_services`` stub with the singleton."""
    for module in modules:
        stub = getattr(module, "_get_services", None)
        if stub is not None:
            app.dependency_overrides[stub] = get_services
