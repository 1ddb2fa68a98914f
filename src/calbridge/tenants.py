"""Tenants and channel links.

A tenant is the human owner whose calendar is accessed.  It is created the
first time any principal completes a handshake, matched on the provider
account id (``remote_subject``) and falling back to the email address, and is
deleted only by an explicit disconnect.

:meth:`TenantStore.complete_authorization` is the single write transaction of
a successful OAuth callback: claim the pending session, upsert the tenant, its
credential and its channel link.  Either all of it commits or none of it does.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from calbridge.credential_store import CredentialStore
from calbridge.errors import SessionExpired, UnknownTenant
from calbridge.oauth_client import RemoteIdentity, TokenGrant
from calbridge.pending import CLAIM_PENDING_SQL

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_COLUMNS = (
    "tenant_id, principal_kind, display_name, email, remote_subject, avatar_url, "
    "created_at, updated_at"
)


class PrincipalKind(StrEnum):
    direct = "direct"
    channel_linked = "channel_linked"


class Tenant(BaseModel):
    """A calendar owner."""

    model_config = ConfigDict(extra="forbid")

    tenant_id: str
    principal_kind: PrincipalKind
    display_name: str | None = None
    email: str | None = None
    remote_subject: str | None = None
    avatar_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


def tenant_from_row(row: Any) -> Tenant:
    return Tenant(
        tenant_id=str(row["tenant_id"]),
        principal_kind=PrincipalKind(row["principal_kind"]),
        display_name=row["display_name"],
        email=row["email"],
        remote_subject=row["remote_subject"],
        avatar_url=row["avatar_url"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class TenantStore:
    """Async access to tenants and channel links.

    *credentials* writes the grant inside the authorization transaction; it
    defaults to a :class:`~calbridge.credential_store.CredentialStore` on the
    same pool.
    """

    def __init__(self, pool: asyncpg.Pool, credentials: CredentialStore | None = None) -> None:
        self.pool = pool
        self.credentials = credentials if credentials is not None else CredentialStore(pool)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, tenant_id: str) -> Tenant | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM tenants WHERE tenant_id = $1", tenant_id
            )
        return tenant_from_row(row) if row is not None else None

    async def tenant_for_channel(self, channel_id: str) -> str | None:
        """Return the tenant id linked to *channel_id*, if any."""
        async with self.pool.acquire() as conn:
            tenant_id = await conn.fetchval(
                "SELECT tenant_id FROM channel_links WHERE channel_id = $1", channel_id
            )
        return str(tenant_id) if tenant_id is not None else None

    async def channel_for_tenant(self, tenant_id: str) -> str | None:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT channel_id FROM channel_links WHERE tenant_id = $1", tenant_id
            )

    # ------------------------------------------------------------------
    # Handshake resolution
    # ------------------------------------------------------------------

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
        """Resolve the tenant for a completed consent and persist everything.

        Parameters
        ----------
        identity:
            The provider account that granted consent.
        grant:
            Tokens from the code exchange.
        principal_kind:
            Kind recorded when a new tenant is created.
        channel_id, session_token:
            For channel flows: the pending session to claim and the channel to
            link.  Both or neither must be given.
        tenant_id:
            For direct re-consent: the tenant named in the signed state, which
            wins over identity matching.
        now:
            Clock used for the pending-session expiry check.

        Raises
        ------
        SessionExpired
            The pending session was already consumed or expired.  Nothing is
            written.
        UnknownTenant
            *tenant_id* names a tenant that no longer exists.
        """
        if (channel_id is None) != (session_token is None):
            raise ValueError("channel_id and session_token must be given together")
        current = now or datetime.now(UTC)

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                tenant = await self._resolve_tenant(conn, identity, principal_kind, tenant_id)

                if channel_id is not None:
                    claimed = await conn.fetchrow(
                        CLAIM_PENDING_SQL, channel_id, session_token, tenant.tenant_id, current
                    )
                    if claimed is None:
                        raise SessionExpired()

                await self.credentials.save_grant(tenant.tenant_id, grant, conn=conn)

                if channel_id is not None:
                    await conn.execute(
                        "DELETE FROM channel_links WHERE tenant_id = $1 AND channel_id <> $2",
                        tenant.tenant_id,
                        channel_id,
                    )
                    await conn.execute(
                        """
                        INSERT INTO channel_links (channel_id, tenant_id)
                        VALUES ($1, $2)
                        ON CONFLICT (channel_id) DO UPDATE SET
                            tenant_id  = EXCLUDED.tenant_id,
                            updated_at = now()
                        """,
                        channel_id,
                        tenant.tenant_id,
                    )

        logger.info(
            "Authorization completed: tenant=%s kind=%s channel_linked=%s",
            tenant.tenant_id,
            tenant.principal_kind,
            channel_id is not None,
        )
        return tenant

    async def _resolve_tenant(
        self,
        conn: Any,
        identity: RemoteIdentity,
        principal_kind: PrincipalKind,
        tenant_id: str | None,
    ) -> Tenant:
        display_name = identity.name or identity.email

        if tenant_id is not None:
            row = await conn.fetchrow(
                f"""
                UPDATE tenants SET
                    remote_subject = $2,
                    email          = COALESCE($3, email),
                    display_name   = COALESCE($4, display_name),
                    avatar_url     = COALESCE($5, avatar_url),
                    updated_at     = now()
                WHERE tenant_id = $1
                RETURNING {_COLUMNS}
                """,
                tenant_id,
                identity.subject,
                identity.email,
                display_name,
                identity.picture,
            )
            if row is None:
                raise UnknownTenant(tenant_id)
            return tenant_from_row(row)

        existing_id = await conn.fetchval(
            """
            SELECT tenant_id FROM tenants
            WHERE remote_subject = $1 OR ($2::text IS NOT NULL AND email = $2)
            ORDER BY (remote_subject = $1) DESC NULLS LAST, created_at
            LIMIT 1
            FOR UPDATE
            """,
            identity.subject,
            identity.email,
        )
        if existing_id is not None:
            row = await conn.fetchrow(
                f"""
                UPDATE tenants SET
                    remote_subject = $2,
                    email          = COALESCE($3, email),
                    display_name   = COALESCE($4, display_name),
                    avatar_url     = COALESCE($5, avatar_url),
                    updated_at     = now()
                WHERE tenant_id = $1
                RETURNING {_COLUMNS}
                """,
                existing_id,
                identity.subject,
                identity.email,
                display_name,
                identity.picture,
            )
            return tenant_from_row(row)

        row = await conn.fetchrow(
            f"""
            INSERT INTO tenants
                (tenant_id, principal_kind, display_name, email, remote_subject, avatar_url)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {_COLUMNS}
            """,
            str(uuid.uuid4()),
            str(principal_kind),
            display_name,
            identity.email,
            identity.subject,
            identity.picture,
        )
        logger.info("Tenant created: tenant=%s kind=%s", row["tenant_id"], principal_kind)
        return tenant_from_row(row)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    async def delete(self, tenant_id: str) -> bool:
        """Delete the tenant with its credential and channel link in one transaction."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM credentials WHERE tenant_id = $1", tenant_id)
                await conn.execute("DELETE FROM channel_links WHERE tenant_id = $1", tenant_id)
                result = await conn.execute("DELETE FROM tenants WHERE tenant_id = $1", tenant_id)
        deleted = result == "DELETE 1"
        if deleted:
            logger.info("Tenant deleted: tenant=%s", tenant_id)
        return deleted
