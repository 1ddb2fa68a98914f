"""FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the DB pool, wires services and runs the
  periodic sweep of expired pending authorizations
- Health endpoint at GET /api/health
- Authorization, availability and calendar routers
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calbridge import __version__
from calbridge.api.deps import Services, services_for_pool
from calbridge.api.middleware import register_error_handlers
from calbridge.api.routers.availability import router as availability_router
from calbridge.api.routers.calendar import router as calendar_router
from calbridge.api.routers.oauth import router as oauth_router
from calbridge.config import AppConfig, load_config, validate_for_serving
from calbridge.db import Database
from calbridge.handshake import AuthorizationHandshake

logger = logging.getLogger(__name__)


async def run_sweeper(handshake: AuthorizationHandshake, interval_s: float) -> None:
    """Delete expired pending authorizations every *interval_s* seconds until cancelled."""
    while True:
        await asyncio.sleep(interval_s)
        try:
            await handshake.sweep_expired()
        except Exception:
            logger.exception("Pending authorization sweep failed; retrying next interval")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the DB pool, HTTP clients and sweeper."""
    config: AppConfig = app.state.config
    services: Services | None = app.state.services
    owns_services = services is None

    if services is None:
        validate_for_serving(config)
        database = Database.from_config(config.database)
        await database.connect()
        services = services_for_pool(config, database)
        app.state.services = services

    sweeper = asyncio.create_task(
        run_sweeper(services.handshake, config.handshake.sweep_interval_s),
        name="calbridge-pending-sweeper",
    )
    logger.info("calbridge started (public base url %s)", config.public_base_url)

    yield

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    if owns_services:
        await services.aclose()
        app.state.services = None


def create_app(
    config: AppConfig | None = None,
    *,
    services: Services | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Service configuration.  Loaded with :func:`~calbridge.config.load_config`
        when omitted.
    services:
        Prebuilt services (tests).  When omitted the lifespan connects to
        PostgreSQL and builds them.
    cors_origins:
        Allowed CORS origins.  Defaults to the public base URL.
    """
    if config is None:
        config = services.config if services is not None else load_config()
    if cors_origins is None:
        cors_origins = [config.public_base_url]

    app = FastAPI(
        title="calbridge",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(oauth_router)
    app.include_router(availability_router)
    app.include_router(calendar_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
