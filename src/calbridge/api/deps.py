"""Service wiring and FastAPI dependencies.

:class:`Services` bundles every long-lived component.  The app lifespan builds
it from an asyncpg pool (:func:`services_for_pool`); tests pass a prebuilt
instance to :func:`calbridge.api.app.create_app` instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import httpx
from fastapi import Depends, Header, Request

from calbridge.availability import AvailabilityService
from calbridge.calendar_client import GoogleCalendarClient
from calbridge.core.logging import set_tenant_context
from calbridge.credential_store import CredentialStore
from calbridge.handshake import AuthorizationHandshake
from calbridge.identity import (
    IdentityResolver,
    Principal,
    ResolvedPrincipal,
    principal_from_headers,
)
from calbridge.lifecycle import CredentialLifecycleManager
from calbridge.oauth_client import GoogleOAuthClient
from calbridge.pending import PendingStore
from calbridge.signing import Signer
from calbridge.tenants import TenantStore

if TYPE_CHECKING:
    from calbridge.config import AppConfig
    from calbridge.db import Database

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Long-lived components shared by all requests."""

    config: AppConfig
    credentials: CredentialStore
    tenants: TenantStore
    pending: PendingStore
    oauth_client: GoogleOAuthClient
    lifecycle: CredentialLifecycleManager
    handshake: AuthorizationHandshake
    identity: IdentityResolver
    calendar: GoogleCalendarClient
    availability: AvailabilityService
    database: Database | None = None

    async def aclose(self) -> None:
        await self.calendar.aclose()
        await self.oauth_client.aclose()
        if self.database is not None:
            await self.database.close()


def build_services(
    config: AppConfig,
    *,
    credentials: Any,
    tenants: Any,
    pending: Any,
    oauth_client: Any = None,
    calendar_http_client: httpx.AsyncClient | None = None,
    database: Database | None = None,
) -> Services:
    """Assemble :class:`Services` around the given stores."""
    if oauth_client is None:
        oauth_client = GoogleOAuthClient(
            client_id=config.oauth.client_id,
            client_secret=config.oauth.client_secret,
            redirect_uri=config.oauth.redirect_uri,
            scopes=config.oauth.scopes,
            timeout_s=config.oauth.timeout_s,
        )
    signer = Signer(config.signing.secret)
    identity = IdentityResolver(
        signer, tenants, token_ttl_s=config.signing.access_token_ttl_s
    )
    lifecycle = CredentialLifecycleManager(
        credentials,
        tenants,
        oauth_client,
        skew_buffer=timedelta(seconds=config.lifecycle.skew_buffer_seconds),
        refresh_timeout_s=config.lifecycle.refresh_timeout_s,
        transient_retries=config.lifecycle.transient_retries,
        retry_backoff_seconds=config.lifecycle.retry_backoff_seconds,
    )
    handshake = AuthorizationHandshake(
        signer=signer,
        oauth_client=oauth_client,
        pending=pending,
        tenants=tenants,
        identity=identity,
        session_ttl=timedelta(minutes=config.handshake.session_ttl_minutes),
        remote_timeout_s=config.oauth.timeout_s,
    )
    calendar = GoogleCalendarClient(
        lifecycle,
        http_client=calendar_http_client,
        default_timezone=config.availability.default_timezone,
    )
    availability = AvailabilityService(
        calendar, granularity=timedelta(minutes=config.availability.granularity_minutes)
    )
    return Services(
        config=config,
        credentials=credentials,
        tenants=tenants,
        pending=pending,
        oauth_client=oauth_client,
        lifecycle=lifecycle,
        handshake=handshake,
        identity=identity,
        calendar=calendar,
        availability=availability,
        database=database,
    )


def services_for_pool(config: AppConfig, database: Database) -> Services:
    """Build services backed by PostgreSQL stores on *database*'s pool."""
    pool = database.require_pool()
    credentials = CredentialStore(pool)
    return build_services(
        config,
        credentials=credentials,
        tenants=TenantStore(pool, credentials),
        pending=PendingStore(pool),
        database=database,
    )


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services are not initialized")
    return services


async def get_principal(
    request: Request,
    authorization: str | None = Header(default=None),
    x_channel_id: str | None = Header(default=None),
) -> Principal:
    """Parse the presented principal once and remember it on the request."""
    principal = principal_from_headers(authorization, x_channel_id)
    request.state.principal = principal
    return principal


async def get_resolved_principal(
    request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> ResolvedPrincipal:
    """Resolve the request's principal to a tenant."""
    resolved = await services.identity.resolve(principal)
    request.state.resolved = resolved
    set_tenant_context(resolved.tenant_id)
    return resolved
