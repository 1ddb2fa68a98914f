"""Credential lifecycle: hand out valid access tokens, refreshing on demand.

``acquire()`` returns the stored access token while it is still comfortably
valid (now + skew buffer < expiry) and otherwise refreshes it through the
provider.  Guarantees:

- **Singleflight per tenant.**  Concurrent callers for one tenant share a
  single ``asyncio.Lock``; callers that waited re-read the store and reuse a
  token refreshed while they were queued.  Different tenants never contend.
- **Linearizable writes.**  A refresh persists through a version-guarded
  compare-and-set.  A refresh that started at version N never overwrites
  version N+1; on a lost race the newer stored token is returned.
- **Explicit persistence.**  The refreshed grant flows back synchronously to
  :meth:`CredentialLifecycleManager.persist_refreshed_credential`; the write
  is shielded from cancellation so a completed provider response is never
  lost half-way.
- **Error mapping.**  ``invalid_grant`` means the refresh token is dead:
  :class:`~calbridge.errors.ReauthRequired`, stored row untouched.  Anything
  else (timeouts, 5xx, network) is :class:`~calbridge.errors.TransientRefreshError`.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from calbridge.errors import NoCredential, ReauthRequired, TransientRefreshError
from calbridge.oauth_client import OAuthProviderError, TokenGrant

if TYPE_CHECKING:
    from calbridge.credential_store import CredentialStore, StoredCredential
    from calbridge.oauth_client import GoogleOAuthClient
    from calbridge.tenants import TenantStore

logger = logging.getLogger(__name__)

DEFAULT_SKEW_BUFFER = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CredentialState(StrEnum):
    connected = "connected"
    expired = "expired"
    needs_reauth = "needs_reauth"
    not_connected = "not_connected"


class CredentialStatus(BaseModel):
    """Connection status of a tenant, computed without remote calls."""

    model_config = ConfigDict(extra="forbid")

    state: CredentialState
    expiry: datetime | None = None
    has_refresh_token: bool = False
    scope: str | None = None


class CredentialLifecycleManager:
    """Issue valid access tokens for tenants.

    Parameters
    ----------
    credentials:
        Store holding one credential row per tenant.
    tenants:
        Tenant store, used by :meth:`disconnect`.
    oauth_client:
        Provider client performing refresh and revoke.
    skew_buffer:
        A token is refreshed once ``now + skew_buffer`` reaches its expiry.
    refresh_timeout_s:
        Default bound on a single remote refresh.
    transient_retries, retry_backoff_seconds:
        Retry policy of :meth:`acquire_with_retry`.
    clock:
        Returns the current tz-aware time; injectable for tests.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        tenants: TenantStore,
        oauth_client: GoogleOAuthClient,
        *,
        skew_buffer: timedelta = DEFAULT_SKEW_BUFFER,
        refresh_timeout_s: float = 15.0,
        transient_retries: int = 1,
        retry_backoff_seconds: float = 0.5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._credentials = credentials
        self._tenants = tenants
        self._oauth = oauth_client
        self._skew_buffer = skew_buffer
        self._refresh_timeout_s = refresh_timeout_s
        self._transient_retries = transient_retries
        self._retry_backoff_seconds = retry_backoff_seconds
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    def _is_fresh(self, credential: StoredCredential) -> bool:
        if credential.expiry is None:
            return True
        return self._clock() + self._skew_buffer < credential.expiry

    def _usable(self, credential: StoredCredential, stale_token: str | None) -> bool:
        if stale_token is not None and credential.access_token == stale_token:
            return False
        return self._is_fresh(credential)

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    async def acquire(
        self,
        tenant_id: str,
        *,
        stale_token: str | None = None,
        timeout: float | None = None,
    ) -> str:
        """Return a valid access token for *tenant_id*.

        Parameters
        ----------
        tenant_id:
            The tenant whose token is needed.
        stale_token:
            A token the provider just rejected.  When the stored token is
            still this one it is refreshed even if its expiry looks fine.
        timeout:
            Bound on the remote refresh, overriding the configured default.

        Raises
        ------
        NoCredential
            The tenant has no stored credential.
        ReauthRequired
            The credential cannot be refreshed (no refresh token, or the
            provider answered ``invalid_grant``).
        TransientRefreshError
            The refresh failed for any other reason.
        """
        credential = await self._credentials.load(tenant_id)
        if credential is None:
            raise NoCredential(tenant_id)
        if self._usable(credential, stale_token):
            return credential.access_token

        async with self._lock_for(tenant_id):
            # Another caller may have refreshed while we waited for the lock.
            credential = await self._credentials.load(tenant_id)
            if credential is None:
                raise NoCredential(tenant_id)
            if self._usable(credential, stale_token):
                return credential.access_token
            return await self._refresh(credential, timeout=timeout)

    async def acquire_with_retry(
        self,
        tenant_id: str,
        *,
        stale_token: str | None = None,
        timeout: float | None = None,
    ) -> str:
        """Like :meth:`acquire`, retrying transient refresh failures with backoff."""
        attempt = 0
        while True:
            try:
                return await self.acquire(tenant_id, stale_token=stale_token, timeout=timeout)
            except TransientRefreshError:
                if attempt >= self._transient_retries:
                    raise
                delay = self._retry_backoff_seconds * (2**attempt)
                attempt += 1
                logger.info(
                    "Transient refresh failure for tenant=%s; retry %d in %.2fs",
                    tenant_id,
                    attempt,
                    delay,
                )
                await asyncio.sleep(delay)

    async def _refresh(self, credential: StoredCredential, *, timeout: float | None) -> str:
        tenant_id = credential.tenant_id
        if not credential.refresh_token:
            logger.warning("Credential for tenant=%s expired with no refresh token", tenant_id)
            raise ReauthRequired(tenant_id)

        try:
            async with asyncio.timeout(timeout or self._refresh_timeout_s):
                grant = await self._oauth.refresh(credential.refresh_token)
        except TimeoutError as exc:
            logger.warning("Token refresh timed out for tenant=%s", tenant_id)
            raise TransientRefreshError(tenant_id, "Token refresh timed out") from exc
        except OAuthProviderError as exc:
            if exc.is_invalid_grant:
                logger.warning("Refresh token rejected (invalid_grant) for tenant=%s", tenant_id)
                raise ReauthRequired(tenant_id) from exc
            logger.warning(
                "Token refresh failed for tenant=%s: status=%s error=%s",
                tenant_id,
                exc.status_code,
                exc.error_code,
            )
            raise TransientRefreshError(tenant_id) from exc

        stored = await asyncio.shield(
            self.persist_refreshed_credential(tenant_id, credential.version, grant)
        )
        logger.info("Access token refreshed for tenant=%s (version %d)", tenant_id, stored.version)
        return stored.access_token

    # ------------------------------------------------------------------
    # Write paths
    # ------------------------------------------------------------------

    async def persist_refreshed_credential(
        self, tenant_id: str, version: int, grant: TokenGrant
    ) -> StoredCredential:
        """Atomically store a refreshed grant read at *version*.

        The refresh token is replaced only when *grant* carries one.  If the
        row moved past *version* in the meantime the newer row is returned
        untouched.

        Raises
        ------
        NoCredential
            The credential was deleted (disconnect) while refreshing.
        """
        stored = await self._credentials.compare_and_set(tenant_id, version, grant)
        if stored is not None:
            return stored
        newer = await self._credentials.load(tenant_id)
        if newer is None:
            raise NoCredential(tenant_id)
        return newer

    # ------------------------------------------------------------------
    # Status / disconnect
    # ------------------------------------------------------------------

    async def status(self, tenant_id: str) -> CredentialStatus:
        """Report connection status from the stored row only."""
        credential = await self._credentials.load(tenant_id)
        if credential is None:
            return CredentialStatus(state=CredentialState.not_connected)
        if self._is_fresh(credential):
            state = CredentialState.connected
        elif credential.can_refresh:
            state = CredentialState.expired
        else:
            state = CredentialState.needs_reauth
        return CredentialStatus(
            state=state,
            expiry=credential.expiry,
            has_refresh_token=credential.can_refresh,
            scope=credential.scope,
        )

    async def disconnect(self, tenant_id: str) -> bool:
        """Revoke the grant at the provider (best effort) and forget the tenant.

        Returns ``True`` if the tenant existed.
        """
        credential = await self._credentials.load(tenant_id)
        if credential is not None:
            token = credential.refresh_token or credential.access_token
            try:
                async with asyncio.timeout(self._refresh_timeout_s):
                    await self._oauth.revoke(token)
            except (OAuthProviderError, TimeoutError) as exc:
                logger.warning("Token revoke failed for tenant=%s: %s", tenant_id, exc)

        async with self._lock_for(tenant_id):
            deleted = await self._tenants.delete(tenant_id)
        logger.info("Tenant disconnected: tenant=%s existed=%s", tenant_id, deleted)
        return deleted
