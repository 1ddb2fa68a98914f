"""Per-tenant OAuth credential storage backed by the ``credentials`` table.

One row per tenant holds the current access token, the refresh token (if the
provider ever issued one), the access-token expiry and a ``version`` counter.

Write paths:

- :meth:`CredentialStore.save_grant` is the handshake's overwrite path.  The
  refresh token is coalesced with the stored one, so a re-consent that does
  not return a refresh token keeps the existing one.
- :meth:`CredentialStore.compare_and_set` is the refresh path.  It only
  writes when the row is still at the version the refresh started from, so a
  slow refresh can never clobber a newer credential.

Every write bumps ``version`` and ``updated_at`` in the same statement.  Token
values are never logged; ``StoredCredential.__repr__`` redacts them.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from calbridge.oauth_client import TokenGrant

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "credentials"

_COLUMNS = "tenant_id, access_token, refresh_token, expiry, scope, version, updated_at"

UPSERT_CREDENTIAL_SQL = f"""
    INSERT INTO {_TABLE} (tenant_id, access_token, refresh_token, expiry, scope, version)
    VALUES ($1, $2, $3, $4, $5, 1)
    ON CONFLICT (tenant_id) DO UPDATE SET
        access_token  = EXCLUDED.access_token,
        refresh_token = COALESCE(EXCLUDED.refresh_token, {_TABLE}.refresh_token),
        expiry        = EXCLUDED.expiry,
        scope         = COALESCE(EXCLUDED.scope, {_TABLE}.scope),
        version       = {_TABLE}.version + 1,
        updated_at    = now()
    RETURNING {_COLUMNS}
"""

_COMPARE_AND_SET_SQL = f"""
    UPDATE {_TABLE} SET
        access_token  = $3,
        refresh_token = COALESCE($4, refresh_token),
        expiry        = $5,
        scope         = COALESCE($6, scope),
        version       = version + 1,
        updated_at    = now()
    WHERE tenant_id = $1 AND version = $2
    RETURNING {_COLUMNS}
"""


class StoredCredential(BaseModel):
    """A tenant's persisted OAuth credential."""

    model_config = ConfigDict(extra="forbid")

    tenant_id: str
    access_token: str
    refresh_token: str | None = None
    expiry: datetime | None = None
    scope: str | None = None
    version: int = 1
    updated_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"StoredCredential(tenant_id={self.tenant_id!r}, access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expiry={self.expiry!r}, version={self.version})"
        )

    __str__ = __repr__

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


def credential_from_row(row: Any) -> StoredCredential:
    return StoredCredential(
        tenant_id=str(row["tenant_id"]),
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expiry=row["expiry"],
        scope=row["scope"],
        version=row["version"],
        updated_at=row["updated_at"],
    )


@asynccontextmanager
async def acquire_conn(pool: asyncpg.Pool, conn: Any = None) -> AsyncIterator[Any]:
    """Yield *conn* when the caller already holds one, else acquire from *pool*."""
    if conn is not None:
        yield conn
        return
    async with pool.acquire() as acquired:
        yield acquired


class CredentialStore:
    """Async store for tenant credentials.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.  Each call acquires a connection for its
        own duration unless the caller passes ``conn=`` to join a transaction.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def load(self, tenant_id: str) -> StoredCredential | None:
        """Return the tenant's credential, or ``None`` if it has none."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE tenant_id = $1",
                tenant_id,
            )
        if row is None:
            return None
        return credential_from_row(row)

    async def save_grant(
        self, tenant_id: str, grant: TokenGrant, *, conn: Any = None
    ) -> StoredCredential:
        """Insert or overwrite the tenant's credential from a fresh grant.

        Returns the row as stored, with the coalesced refresh token.
        """
        async with acquire_conn(self.pool, conn) as c:
            row = await c.fetchrow(
                UPSERT_CREDENTIAL_SQL,
                tenant_id,
                grant.access_token,
                grant.refresh_token,
                grant.expires_at,
                grant.scope,
            )
        stored = credential_from_row(row)
        logger.info(
            "Credential stored: tenant=%s version=%d has_refresh_token=%s",
            tenant_id,
            stored.version,
            stored.can_refresh,
        )
        return stored

    async def compare_and_set(
        self, tenant_id: str, expected_version: int, grant: TokenGrant
    ) -> StoredCredential | None:
        """Write a refreshed grant only if the row is still at *expected_version*.

        Returns the new row, or ``None`` when another writer got there first
        (or the row was deleted).
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                _COMPARE_AND_SET_SQL,
                tenant_id,
                expected_version,
                grant.access_token,
                grant.refresh_token,
                grant.expires_at,
                grant.scope,
            )
        if row is None:
            logger.info(
                "Credential write skipped: tenant=%s expected version %d is stale",
                tenant_id,
                expected_version,
            )
            return None
        return credential_from_row(row)

    async def delete(self, tenant_id: str, *, conn: Any = None) -> bool:
        """Delete the tenant's credential.  Returns ``True`` if a row was removed."""
        async with acquire_conn(self.pool, conn) as c:
            result = await c.execute(f"DELETE FROM {_TABLE} WHERE tenant_id = $1", tenant_id)
        deleted = result == "DELETE 1"
        if deleted:
            logger.info("Credential deleted: tenant=%s", tenant_id)
        return deleted
