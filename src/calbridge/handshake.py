"""OAuth authorization handshake for channel-linked and direct principals.

Lifecycle of one attempt::

    INITIATED --callback--> CALLBACK_RECEIVED --ok--> RESOLVED
        |                          |
        +--ttl elapses--> EXPIRED  +--any failure--> FAILED

Channel flows persist a :class:`~calbridge.pending.PendingAuthorization`
(30-minute lifetime) and carry ``channel_id`` + ``session_token`` in the
signed ``state``.  The callback claims that row exactly once inside the
resolution transaction; a second callback with the same state, or one after
expiry, gets :class:`~calbridge.errors.SessionExpired`.

Direct flows carry no pending row.  Their ``state`` holds an ``expires_at``
and a one-time nonce tracked in a process-local TTL store, so a late or
replayed callback is rejected the same way.  A successful direct callback
returns a freshly issued bearer token.

A resolved attempt reports its terminal state on :attr:`HandshakeResult.state`.
The other terminal states surface as exceptions:
:class:`~calbridge.errors.SessionExpired` for EXPIRED,
:class:`~calbridge.errors.InvalidState` or
:class:`~calbridge.errors.ProviderExchangeFailed` for FAILED.

Failures after the callback arrives leave the pending row unresolved; it
simply expires and is removed by :meth:`AuthorizationHandshake.sweep_expired`.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from calbridge.errors import InvalidState, ProviderExchangeFailed, SessionExpired
from calbridge.oauth_client import OAuthProviderError
from calbridge.signing import SignatureError
from calbridge.tenants import PrincipalKind

if TYPE_CHECKING:
    from calbridge.identity import IdentityResolver
    from calbridge.oauth_client import GoogleOAuthClient
    from calbridge.pending import PendingStore
    from calbridge.signing import Signer
    from calbridge.tenants import TenantStore

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(minutes=30)

FLOW_CHANNEL = "channel"
FLOW_DIRECT = "direct"

DEFAULT_MAX_NONCES = 10_000


def _utcnow() -> datetime:
    return datetime.now(UTC)


class HandshakeState(StrEnum):
    initiated = "initiated"
    callback_received = "callback_received"
    resolved = "resolved"
    expired = "expired"
    failed = "failed"


class AuthorizationLink(BaseModel):
    """A consent URL handed to the principal."""

    model_config = ConfigDict(extra="forbid")

    url: str
    expires_at: datetime
    channel_id: str | None = None


class HandshakeResult(BaseModel):
    """Outcome of a successful callback."""

    model_config = ConfigDict(extra="forbid")

    tenant_id: str
    principal_kind: PrincipalKind
    display_name: str | None = None
    email: str | None = None
    channel_id: str | None = None
    access_token: str | None = None
    state: HandshakeState = HandshakeState.resolved

    def __repr__(self) -> str:
        return (
            f"HandshakeResult(tenant_id={self.tenant_id!r}, "
            f"principal_kind={self.principal_kind!r}, "
            f"channel_id={self.channel_id!r}, "
            f"state={self.state.value!r}, "
            f"access_token={'<REDACTED>' if self.access_token else None})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# One-time nonce store for direct flows
# ---------------------------------------------------------------------------


class NonceStore:
    """Process-local one-time nonces with an expiry.

    At most *max_entries* nonces are held; past that the oldest are dropped,
    which makes their links fail as expired.

    NOTE: process-local.  With several worker processes a direct callback must
    reach the process that issued its link.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_NONCES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        # Maps nonce -> expiry (monotonic), in insertion order
        self._entries: dict[str, float] = {}

    def add(self, nonce: str, ttl_s: float) -> None:
        self._entries.pop(nonce, None)
        self._entries[nonce] = time.monotonic() + ttl_s
        self._evict_expired()
        while len(self._entries) > self._max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            logger.warning("Nonce store full (%d); dropped oldest direct link", self._max_entries)

    def consume(self, nonce: str) -> bool:
        """Return True if *nonce* was known and unexpired, removing it either way."""
        self._evict_expired()
        expiry = self._entries.pop(nonce, None)
        if expiry is None:
            return False
        return time.monotonic() < expiry

    def _evict_expired(self) -> None:
        now = time.monotonic()
        expired = [k for k, exp in self._entries.items() if now >= exp]
        for k in expired:
            del self._entries[k]

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


class AuthorizationHandshake:
    """Drive consent links and OAuth callbacks to a persisted credential."""

    def __init__(
        self,
        *,
        signer: Signer,
        oauth_client: GoogleOAuthClient,
        pending: PendingStore,
        tenants: TenantStore,
        identity: IdentityResolver,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        remote_timeout_s: float = 15.0,
        nonces: NonceStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._signer = signer
        self._oauth = oauth_client
        self._pending = pending
        self._tenants = tenants
        self._identity = identity
        self._session_ttl = session_ttl
        self._remote_timeout_s = remote_timeout_s
        self._nonces = nonces if nonces is not None else NonceStore()
        self._clock = clock

    # ------------------------------------------------------------------
    # INITIATED
    # ------------------------------------------------------------------

    async def initiate_channel(self, channel_id: str) -> AuthorizationLink:
        """Create a pending authorization for *channel_id* and return its consent link."""
        channel_id = channel_id.strip()
        if not channel_id:
            raise InvalidState("channel id must be non-empty")
        now = self._clock()
        pending = await self._pending.create(channel_id, ttl=self._session_ttl, now=now)
        state = self._signer.sign(
            {
                "flow": FLOW_CHANNEL,
                "channel_id": channel_id,
                "session_token": pending.session_token,
                "nonce": secrets.token_urlsafe(16),
                "iat": int(now.timestamp()),
            }
        )
        logger.info("Handshake %s: channel=%s", HandshakeState.initiated, channel_id)
        return AuthorizationLink(
            url=self._oauth.authorization_url(state),
            expires_at=pending.expires_at,
            channel_id=channel_id,
        )

    async def initiate_direct(self, tenant_id: str | None = None) -> AuthorizationLink:
        """Return a consent link for a direct principal.

        *tenant_id* is ``None`` for a first sign-in and names the tenant on
        re-consent.
        """
        now = self._clock()
        expires_at = now + self._session_ttl
        nonce = secrets.token_urlsafe(24)
        self._nonces.add(nonce, self._session_ttl.total_seconds())
        payload: dict[str, object] = {
            "flow": FLOW_DIRECT,
            "nonce": nonce,
            "iat": int(now.timestamp()),
            "expires_at": int(expires_at.timestamp()),
        }
        if tenant_id is not None:
            payload["tenant_id"] = tenant_id
        logger.info("Handshake %s: direct tenant=%s", HandshakeState.initiated, tenant_id)
        return AuthorizationLink(
            url=self._oauth.authorization_url(self._signer.sign(payload)),
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # CALLBACK_RECEIVED -> RESOLVED | EXPIRED | FAILED
    # ------------------------------------------------------------------

    def _parse_state(self, state: str) -> dict:
        if not state:
            raise InvalidState()
        try:
            payload = self._signer.verify(state, now=self._clock().timestamp())
        except SignatureError as exc:
            logger.warning("Handshake callback with invalid state: %s", exc)
            raise InvalidState() from exc
        flow = payload.get("flow")
        if flow == FLOW_CHANNEL:
            for key in ("channel_id", "session_token"):
                if not isinstance(payload.get(key), str) or not payload[key]:
                    raise InvalidState()
        elif flow == FLOW_DIRECT:
            if not isinstance(payload.get("nonce"), str) or not isinstance(
                payload.get("expires_at"), int
            ):
                raise InvalidState()
            tenant_id = payload.get("tenant_id")
            if tenant_id is not None and not isinstance(tenant_id, str):
                raise InvalidState()
        else:
            raise InvalidState()
        return payload

    async def handle_callback(
        self, code: str, state: str, *, timeout: float | None = None
    ) -> HandshakeResult:
        """Complete the handshake for an OAuth callback.

        *timeout* bounds the code exchange and identity lookup; it defaults to
        the handshake's ``remote_timeout_s``.

        Raises
        ------
        InvalidState
            ``state`` is missing, tampered with, or malformed.
        SessionExpired
            The pending session (or direct nonce) is unknown, expired or
            already consumed.
        ProviderExchangeFailed
            The code exchange or identity lookup failed.
        """
        payload = self._parse_state(state)
        flow = payload["flow"]
        now = self._clock()
        logger.info("Handshake %s: flow=%s", HandshakeState.callback_received, flow)

        channel_id: str | None = None
        session_token: str | None = None
        tenant_id: str | None = None
        if flow == FLOW_CHANNEL:
            channel_id = payload["channel_id"]
            session_token = payload["session_token"]
            pending = await self._pending.get(channel_id, session_token)
            if pending is None or not pending.is_usable(now):
                logger.info("Handshake %s: channel=%s", HandshakeState.expired, channel_id)
                raise SessionExpired()
        else:
            fresh_nonce = self._nonces.consume(payload["nonce"])
            if not fresh_nonce or payload["expires_at"] <= now.timestamp():
                logger.info(
                    "Handshake %s: direct link expired or already used", HandshakeState.expired
                )
                raise SessionExpired()
            tenant_id = payload.get("tenant_id")

        if not code:
            logger.warning("Handshake %s: callback without code", HandshakeState.failed)
            raise ProviderExchangeFailed("Missing authorization code")

        try:
            async with asyncio.timeout(timeout if timeout is not None else self._remote_timeout_s):
                grant = await self._oauth.exchange_code(code)
                remote = await self._oauth.fetch_identity(grant.access_token)
        except (OAuthProviderError, TimeoutError) as exc:
            logger.warning("Handshake %s: provider exchange error: %s", HandshakeState.failed, exc)
            raise ProviderExchangeFailed() from exc

        kind = PrincipalKind.channel_linked if flow == FLOW_CHANNEL else PrincipalKind.direct
        try:
            tenant = await self._tenants.complete_authorization(
                identity=remote,
                grant=grant,
                principal_kind=kind,
                channel_id=channel_id,
                session_token=session_token,
                tenant_id=tenant_id,
                now=now,
            )
        except SessionExpired:
            logger.info("Handshake %s: session claimed concurrently", HandshakeState.expired)
            raise

        result = HandshakeResult(
            tenant_id=tenant.tenant_id,
            principal_kind=tenant.principal_kind,
            display_name=tenant.display_name,
            email=tenant.email,
            channel_id=channel_id,
            access_token=self._identity.issue_token(tenant.tenant_id)
            if flow == FLOW_DIRECT
            else None,
            state=HandshakeState.resolved,
        )
        logger.info(
            "Handshake %s: tenant=%s flow=%s", HandshakeState.resolved, tenant.tenant_id, flow
        )
        return result

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete pending authorizations past their expiry."""
        return await self._pending.sweep_expired(now or self._clock())
