"""Shared fixtures for the calbridge test suite.

Component fixtures are wired to the in-memory fakes in :mod:`tests.fakes` and
a :class:`~tests.fakes.FrozenClock`, so tests control time explicitly.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx
import pytest

from calbridge.config import AppConfig, OAuthConfig, SigningConfig
from calbridge.handshake import AuthorizationHandshake
from calbridge.identity import IdentityResolver
from calbridge.lifecycle import CredentialLifecycleManager
from calbridge.signing import Signer
from tests.fakes import (
    SIGNING_SECRET,
    FakeCredentialStore,
    FakeOAuthClient,
    FakePendingStore,
    FakeTenantStore,
    FrozenClock,
)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def credentials() -> FakeCredentialStore:
    return FakeCredentialStore()


@pytest.fixture
def pending() -> FakePendingStore:
    return FakePendingStore()


@pytest.fixture
def tenants(credentials: FakeCredentialStore, pending: FakePendingStore) -> FakeTenantStore:
    return FakeTenantStore(credentials, pending)


@pytest.fixture
def oauth(clock: FrozenClock) -> FakeOAuthClient:
    return FakeOAuthClient(clock)


@pytest.fixture
def signer() -> Signer:
    return Signer(SIGNING_SECRET)


@pytest.fixture
def identity(signer: Signer, tenants: FakeTenantStore) -> IdentityResolver:
    return IdentityResolver(signer, tenants)


@pytest.fixture
def lifecycle(
    credentials: FakeCredentialStore,
    tenants: FakeTenantStore,
    oauth: FakeOAuthClient,
    clock: FrozenClock,
) -> CredentialLifecycleManager:
    return CredentialLifecycleManager(
        credentials, tenants, oauth, retry_backoff_seconds=0.0, clock=clock
    )


@pytest.fixture
def handshake(
    signer: Signer,
    oauth: FakeOAuthClient,
    pending: FakePendingStore,
    tenants: FakeTenantStore,
    identity: IdentityResolver,
    clock: FrozenClock,
) -> AuthorizationHandshake:
    return AuthorizationHandshake(
        signer=signer,
        oauth_client=oauth,
        pending=pending,
        tenants=tenants,
        identity=identity,
        clock=clock,
    )


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        oauth=OAuthConfig(
            client_id="client-id.apps.googleusercontent.com",
            client_secret="client-secret",
            redirect_uri="http://test/api/oauth/callback",
        ),
        signing=SigningConfig(secret=SIGNING_SECRET),
    )


# ---------------------------------------------------------------------------
# API harness
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    """An ASGI client over an app wired to the in-memory stores.

    Calendar API traffic is answered by ``calendar_handler``; tests assign it.
    """

    client: httpx.AsyncClient
    services: object
    credentials: FakeCredentialStore
    tenants: FakeTenantStore
    pending: FakePendingStore
    oauth: FakeOAuthClient
    calendar_requests: list[httpx.Request] = field(default_factory=list)
    calendar_handler: Callable[[httpx.Request], httpx.Response] | None = None


@pytest.fixture
async def api(
    app_config: AppConfig,
    credentials: FakeCredentialStore,
    tenants: FakeTenantStore,
    pending: FakePendingStore,
) -> AsyncIterator[ApiHarness]:
    from calbridge.api.app import create_app
    from calbridge.api.deps import build_services

    oauth = FakeOAuthClient(lambda: datetime.now(UTC))
    harness: ApiHarness

    def _route(request: httpx.Request) -> httpx.Response:
        harness.calendar_requests.append(request)
        if harness.calendar_handler is None:
            return httpx.Response(500, json={"error": {"message": "no handler"}})
        return harness.calendar_handler(request)

    calendar_http = httpx.AsyncClient(transport=httpx.MockTransport(_route))
    services = build_services(
        app_config,
        credentials=credentials,
        tenants=tenants,
        pending=pending,
        oauth_client=oauth,
        calendar_http_client=calendar_http,
    )
    app = create_app(services=services)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        harness = ApiHarness(
            client=client,
            services=services,
            credentials=credentials,
            tenants=tenants,
            pending=pending,
            oauth=oauth,
        )
        yield harness
    await calendar_http.aclose()
