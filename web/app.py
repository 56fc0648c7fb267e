"""FastAPI application factory.

This module creates the FastAPI application with all routers and
dependency injection configured. The manager serves it on the metrics
bind address; it can also be run on its own against a store.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from forge_build import __version__
from forge_build.store.sql import open_store
from web.routers import builds, health

if TYPE_CHECKING:
    from forge_build.runtime.manager import Manager
    from forge_build.store.client import ObjectStore


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Opens the configured store on startup unless one was injected.
    """
    if app.state.store is None:
        app.state.store = open_store()
    yield


def create_app(store: ObjectStore | None = None, manager: Manager | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        store: Object store to serve; opened from settings when omitted.
        manager: Running manager whose state backs the readiness probe.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="forge-build API",
        description="Health probes and read-only Build inspection",
        version=__version__,
        lifespan=lifespan,
    )
    application.state.store = store
    application.state.manager = manager

    application.include_router(health.router, tags=["health"])
    application.include_router(builds.router, prefix="/builds", tags=["builds"])

    return application
