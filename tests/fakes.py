"""In-memory stand-ins for the PostgreSQL stores and the Google OAuth client.

The fakes implement the same async methods as the real components.
``FakeTenantStore.complete_authorization`` performs its check-and-write without
awaiting in between, which gives it the same all-or-nothing behaviour as the
single-transaction implementation.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from calbridge.credential_store import StoredCredential
from calbridge.errors import SessionExpired, UnknownTenant
from calbridge.oauth_client import OAuthProviderError, RemoteIdentity, TokenGrant
from calbridge.pending import PendingAuthorization, new_session_token
from calbridge.tenants import PrincipalKind, Tenant

SIGNING_SECRET = "test-signing-secret-0123456789abcdef"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)

# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class FakeCredentialStore:
    def __init__(self) -> None:
        self.rows: dict[str, StoredCredential] = {}
        self.cas_calls = 0

    async def load(self, tenant_id: str) -> StoredCredential | None:
        row = self.rows.get(tenant_id)
        return row.model_copy() if row is not None else None

    def put(self, tenant_id: str, grant: TokenGrant) -> StoredCredential:
        existing = self.rows.get(tenant_id)
        stored = StoredCredential(
            tenant_id=tenant_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or (existing.refresh_token if existing else None),
            expiry=grant.expires_at,
            scope=grant.scope or (existing.scope if existing else None),
            version=(existing.version + 1) if existing else 1,
        )
        self.rows[tenant_id] = stored
        return stored.model_copy()

    async def save_grant(self, tenant_id: str, grant: TokenGrant, *, conn=None) -> StoredCredential:
        return self.put(tenant_id, grant)

    async def compare_and_set(
        self, tenant_id: str, expected_version: int, grant: TokenGrant
    ) -> StoredCredential | None:
        self.cas_calls += 1
        existing = self.rows.get(tenant_id)
        if existing is None or existing.version != expected_version:
            return None
        return self.put(tenant_id, grant)

    async def delete(self, tenant_id: str, *, conn=None) -> bool:
        return self.rows.pop(tenant_id, None) is not None

class FakePendingStore:
    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], PendingAuthorization] = {}

    async def create(
        self, channel_id: str, *, ttl: timedelta, now: datetime | None = None
    ) -> PendingAuthorization:
        created = now or datetime.now(UTC)
        row = PendingAuthorization(
            channel_id=channel_id,
            session_token=new_session_token(),
            expires_at=created + ttl,
            created_at=created,
        )
        self.rows[(channel_id, row.session_token)] = row
        return row.model_copy()

    async def get(self, channel_id: str, session_token: str) -> PendingAuthorization | None:
        row = self.rows.get((channel_id, session_token))
        return row.model_copy() if row is not None else None

    def claim(self, channel_id: str, session_token: str, tenant_id: str, now: datetime) -> bool:
        row = self.rows.get((channel_id, session_token))
        if row is None or not row.is_usable(now):
            return False
        row.resolved_tenant_id = tenant_id
        row.resolved_at = now
        return True

    async def sweep_expired(self, now: datetime | None = None) -> int:
        cutoff = now or datetime.now(UTC)
        expired = [key for key, row in self.rows.items() if row.expires_at <= cutoff]
        for key in expired:
            del self.rows[key]
        return len(expired)

class FakeTenantStore:
    def __init__(self, credentials: FakeCredentialStore, pending: FakePendingStore) -> None:
        self.credentials = credentials
        self.pending = pending
        self.tenants: dict[str, Tenant] = {}
        self.links: dict[str, str] = {}

    def add(self, tenant_id: str | None = None, **fields) -> Tenant:
        tenant = Tenant(
            tenant_id=tenant_id or str(uuid.uuid4()),
            principal_kind=fields.pop("principal_kind", PrincipalKind.direct),
            **fields,
        )
        self.tenants[tenant.tenant_id] = tenant
        return tenant

    async def get(self, tenant_id: str) -> Tenant | None:
        return self.tenants.get(tenant_id)

    async def tenant_for_channel(self, channel_id: str) -> str | None:
        return self.links.get(channel_id)

    async def channel_for_tenant(self, tenant_id: str) -> str | None:
        for channel_id, linked in self.links.items():
            if linked == tenant_id:
                return channel_id
        return None

    async def complete_authorization(
        self,
        *,
        identity: RemoteIdentity,
        grant: TokenGrant,
        principal_kind: PrincipalKind,
        channel_id: str | None = None,
        session_token: str | None = None,
        tenant_id: str | None = None,
        now: datetime | None = None,
    ) -> Tenant:
        current = now or datetime.now(UTC)
        if tenant_id is not None:
            tenant = self.tenants.get(tenant_id)
            if tenant is None:
                raise UnknownTenant(tenant_id)
        else:
            tenant = next(
                (t for t in self.tenants.values() if t.remote_subject == identity.subject),
                None,
            ) or next(
                (
                    t
                    for t in self.tenants.values()
                    if identity.email is not None and t.email == identity.email
                ),
                None,
            )
        if channel_id is not None:
            row = self.pending.rows.get((channel_id, session_token))
            if row is None or not row.is_usable(current):
                raise SessionExpired()

        if tenant is None:
            tenant = Tenant(tenant_id=str(uuid.uuid4()), principal_kind=principal_kind)
        tenant = tenant.model_copy(
            update={
                "remote_subject": identity.subject,
                "email": identity.email or tenant.email,
                "display_name": identity.name or identity.email or tenant.display_name,
            }
        )
        self.tenants[tenant.tenant_id] = tenant
        if channel_id is not None:
            self.pending.claim(channel_id, session_token, tenant.tenant_id, current)
            for linked_channel in [c for c, t in self.links.items() if t == tenant.tenant_id]:
                del self.links[linked_channel]
            self.links[channel_id] = tenant.tenant_id
        self.credentials.put(tenant.tenant_id, grant)
        return tenant

    async def delete(self, tenant_id: str) -> bool:
        await self.credentials.delete(tenant_id)
        for channel_id in [c for c, t in self.links.items() if t == tenant_id]:
            del self.links[channel_id]
        return self.tenants.pop(tenant_id, None) is not None

# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class FakeOAuthClient:
    """Scripted stand-in for :class:`calbridge.oauth_client.GoogleOAuthClient`."""

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self.clock = clock
        self.refresh_calls = 0
        self.exchange_calls = 0
        self.revoked: list[str] = []
        self.refresh_error: Exception | None = None
        self.exchange_error: Exception | None = None
        self.revoke_error: Exception | None = None
        self.refresh_gate: asyncio.Event | None = None
        self.exchange_gate: asyncio.Event | None = None
        self.rotate_refresh_token = False
        self.identity = RemoteIdentity(
            subject="google-sub-1", email="owner@example.com", name="Owner"
        )

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.example.test/auth?state={state}"

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls += 1
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenGrant(
            access_token=f"access-refreshed-{self.refresh_calls}",
            refresh_token=f"refresh-rotated-{self.refresh_calls}"
            if self.rotate_refresh_token
            else None,
            expires_at=self.clock() + timedelta(hours=1),
        )

    async def exchange_code(self, code: str) -> TokenGrant:
        self.exchange_calls += 1
        if self.exchange_gate is not None:
            await self.exchange_gate.wait()
        if self.exchange_error is not None:
            raise self.exchange_error
        return TokenGrant(
            access_token=f"access-from-{code}",
            refresh_token=f"refresh-from-{code}",
            expires_at=self.clock() + timedelta(hours=1),
            scope="https://www.googleapis.com/auth/calendar",
        )

    async def fetch_identity(self, access_token: str) -> RemoteIdentity:
        return self.identity

    async def revoke(self, token: str) -> None:
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append(token)

    async def aclose(self) -> None:
        return None

def invalid_grant() -> OAuthProviderError:
    return OAuthProviderError(
        "Token endpoint returned HTTP 400", status_code=400, error_code="invalid_grant"
    )

def make_grant(
    access_token: str, *, expires_at: datetime | None, refresh_token: str | None = None
) -> TokenGrant:
    return TokenGrant(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)
