"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Routes are thin proxies to core APIs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from isobuild import __version__
from isobuild.db import create_all_tables, get_engine, get_session_factory
from web.routers import config, health, recipes, runs


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables on startup.
    """
    engine = get_engine()
    create_all_tables(engine)
    app.state.session_factory = get_session_factory(engine)
    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="isobuild API",
        description="HTTP API for validating recipes, rendering two-stage "
        "Dockerfiles, and running the build-artifact isolation pipeline",
        version=__version__,
        lifespan=lifespan,
    )

    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(recipes.router, prefix="/recipes", tags=["recipes"])
    application.include_router(runs.router, prefix="/runs", tags=["runs"])

    return application


# Create the default application instance
app = create_app()
