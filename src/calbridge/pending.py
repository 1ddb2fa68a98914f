"""Pending channel authorizations (``pending_authorizations`` table).

A row is created when a channel principal asks for a consent link and is
consumed at most once by the OAuth callback.  Consumption happens inside the
tenant resolution transaction (see :meth:`calbridge.tenants.TenantStore.complete_authorization`)
through :data:`CLAIM_PENDING_SQL`, whose ``WHERE`` clause is the only guard
that decides whether a session is still usable.
"""

from __future__ import annotations

import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "pending_authorizations"

SESSION_TOKEN_BYTES = 32

_COLUMNS = "channel_id, session_token, expires_at, resolved_tenant_id, resolved_at, created_at"

CLAIM_PENDING_SQL = f"""
    UPDATE {_TABLE}
    SET resolved_tenant_id = $3, resolved_at = $4
    WHERE channel_id = $1
      AND session_token = $2
      AND resolved_tenant_id IS NULL
      AND expires_at > $4
    RETURNING {_COLUMNS}
"""


def new_session_token() -> str:
    """Return a random 64-character hex session token."""
    return secrets.token_hex(SESSION_TOKEN_BYTES)


class PendingAuthorization(BaseModel):
    """An outstanding (or consumed) channel authorization."""

    model_config = ConfigDict(extra="forbid")

    channel_id: str
    session_token: str
    expires_at: datetime
    resolved_tenant_id: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"PendingAuthorization(channel_id={self.channel_id!r}, session_token=<REDACTED>, "
            f"expires_at={self.expires_at!r}, resolved_tenant_id={self.resolved_tenant_id!r})"
        )

    def is_usable(self, now: datetime) -> bool:
        return self.resolved_tenant_id is None and self.expires_at > now


def pending_from_row(row: Any) -> PendingAuthorization:
    resolved = row["resolved_tenant_id"]
    return PendingAuthorization(
        channel_id=row["channel_id"],
        session_token=row["session_token"],
        expires_at=row["expires_at"],
        resolved_tenant_id=str(resolved) if resolved is not None else None,
        resolved_at=row["resolved_at"],
        created_at=row["created_at"],
    )


class PendingStore:
    """Async access to pending authorizations."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def create(
        self,
        channel_id: str,
        *,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> PendingAuthorization:
        """Insert a fresh pending authorization for *channel_id*.

        Earlier unresolved sessions of the same channel stay valid until they
        expire; each consent link carries its own session token.
        """
        created = now or datetime.now(UTC)
        session_token = new_session_token()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {_TABLE} (channel_id, session_token, expires_at, created_at)
                VALUES ($1, $2, $3, $4)
                RETURNING {_COLUMNS}
                """,
                channel_id,
                session_token,
                created + ttl,
                created,
            )
        logger.info("Pending authorization created: channel=%s", channel_id)
        return pending_from_row(row)

    async def get(self, channel_id: str, session_token: str) -> PendingAuthorization | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE channel_id = $1 AND session_token = $2",
                channel_id,
                session_token,
            )
        return pending_from_row(row) if row is not None else None

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete rows whose ``expires_at`` has passed.  Returns the count removed."""
        cutoff = now or datetime.now(UTC)
        async with self.pool.acquire() as conn:
            result = await conn.execute(f"DELETE FROM {_TABLE} WHERE expires_at <= $1", cutoff)
        try:
            removed = int(result.split()[-1])
        except (AttributeError, IndexError, ValueError):
            removed = 0
        if removed:
            logger.info("Swept %d expired pending authorization(s)", removed)
        return removed
