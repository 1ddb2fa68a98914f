"""Unit tests for calbridge.credential_store.CredentialStore.

All tests mock the asyncpg pool; no real database required.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from calbridge.credential_store import (
    UPSERT_CREDENTIAL_SQL,
    CredentialStore,
    StoredCredential,
)
from calbridge.oauth_client import TokenGrant

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


def _make_pool(
    *,
    fetchrow_return=None,
    execute_return: str = "DELETE 0",
) -> MagicMock:
    """Build a minimal asyncpg pool mock."""
    conn = AsyncMock()
    conn.fetchrow.return_value = fetchrow_return
    conn.execute.return_value = execute_return

    cm = AsyncMock()
    cm.__aenter__ = AsyncMock(return_value=conn)
    cm.__aexit__ = AsyncMock(return_value=False)

    pool = MagicMock()
    pool.acquire.return_value = cm
    # Stash conn for easy assertion access
    pool._conn = conn
    return pool


def _make_row(**kwargs) -> MagicMock:
    """Build a mock asyncpg Record-like object."""
    row = MagicMock()
    row.__getitem__ = lambda self, key: kwargs[key]
    return row


def _credential_row(**overrides) -> MagicMock:
    values = {
        "tenant_id": "t1",
        "access_token": "ya29.access",
        "refresh_token": "1//refresh",
        "expiry": _NOW + timedelta(hours=1),
        "scope": "https://www.googleapis.com/auth/calendar",
        "version": 3,
        "updated_at": _NOW,
    }
    values.update(overrides)
    return _make_row(**values)


# ---------------------------------------------------------------------------
# load()
# ---------------------------------------------------------------------------


class TestLoad:
    async def test_load_returns_credential(self) -> None:
        pool = _make_pool(fetchrow_return=_credential_row())
        store = CredentialStore(pool)

        credential = await store.load("t1")

        assert credential is not None
        assert credential.access_token == "ya29.access"
        assert credential.version == 3
        assert credential.can_refresh is True
        sql, tenant_id = pool._conn.fetchrow.call_args[0]
        assert "WHERE tenant_id = $1" in sql
        assert tenant_id == "t1"

    async def test_load_missing_returns_none(self) -> None:
        store = CredentialStore(_make_pool(fetchrow_return=None))
        assert await store.load("t1") is None


# ---------------------------------------------------------------------------
# save_grant()
# ---------------------------------------------------------------------------


class TestSaveGrant:
    async def test_save_grant_upserts_with_coalesced_refresh_token(self) -> None:
        pool = _make_pool(fetchrow_return=_credential_row(version=4))
        store = CredentialStore(pool)
        grant = TokenGrant(access_token="ya29.new", expires_at=_NOW)

        stored = await store.save_grant("t1", grant)

        assert stored.version == 4
        args = pool._conn.fetchrow.call_args[0]
        assert args[0] == UPSERT_CREDENTIAL_SQL
        assert args[1:] == ("t1", "ya29.new", None, _NOW, None)
        assert "COALESCE(EXCLUDED.refresh_token" in UPSERT_CREDENTIAL_SQL
        assert "version + 1" in UPSERT_CREDENTIAL_SQL

    async def test_save_grant_joins_callers_connection(self) -> None:
        pool = _make_pool()
        conn = AsyncMock()
        conn.fetchrow.return_value = _credential_row()
        store = CredentialStore(pool)

        await store.save_grant("t1", TokenGrant(access_token="a"), conn=conn)

        pool.acquire.assert_not_called()
        conn.fetchrow.assert_awaited_once()


# ---------------------------------------------------------------------------
# compare_and_set()
# ---------------------------------------------------------------------------


class TestCompareAndSet:
    async def test_write_is_guarded_by_version(self) -> None:
        pool = _make_pool(fetchrow_return=_credential_row(version=4))
        store = CredentialStore(pool)
        grant = TokenGrant(access_token="ya29.fresh", refresh_token="1//rotated", expires_at=_NOW)

        stored = await store.compare_and_set("t1", 3, grant)

        assert stored is not None and stored.version == 4
        sql, *params = pool._conn.fetchrow.call_args[0]
        assert "WHERE tenant_id = $1 AND version = $2" in sql
        assert params == ["t1", 3, "ya29.fresh", "1//rotated", _NOW, None]

    async def test_stale_version_returns_none(self) -> None:
        store = CredentialStore(_make_pool(fetchrow_return=None))
        assert await store.compare_and_set("t1", 2, TokenGrant(access_token="a")) is None


# ---------------------------------------------------------------------------
# delete()
# ---------------------------------------------------------------------------


class TestDelete:
    async def test_delete_existing(self) -> None:
        store = CredentialStore(_make_pool(execute_return="DELETE 1"))
        assert await store.delete("t1") is True

    async def test_delete_missing(self) -> None:
        store = CredentialStore(_make_pool(execute_return="DELETE 0"))
        assert await store.delete("t1") is False


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


class TestRedaction:
    def test_stored_credential_repr_hides_tokens(self) -> None:
        credential = StoredCredential(
            tenant_id="t1", access_token="ya29.secret", refresh_token="1//secret"
        )
        text = repr(credential)
        assert "ya29.secret" not in text
        assert "1//secret" not in text
        assert str(credential) == text

    def test_token_grant_repr_hides_tokens(self) -> None:
        grant = TokenGrant(access_token="ya29.secret", refresh_token="1//secret")
        assert "secret" not in repr(grant)
