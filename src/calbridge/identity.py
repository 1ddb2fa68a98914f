"""Resolve an incoming principal to a tenant id.

Two principal kinds exist:

- :class:`DirectToken` -- a self-issued bearer token (signed, 7-day lifetime)
  that names its tenant in ``sub``.
- :class:`ChannelPrincipal` -- a messaging channel id (e.g. a Telegram chat)
  mapped to a tenant through the ``channel_links`` table.

The HTTP boundary turns headers into one of these exactly once
(:func:`principal_from_headers`); everything downstream works with the
resolved tenant id.  Resolution has no side effects.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from calbridge.errors import ChannelNotLinked, InvalidPrincipal, UnknownTenant
from calbridge.signing import SignatureError, Signer
from calbridge.tenants import PrincipalKind

if TYPE_CHECKING:
    from calbridge.tenants import TenantStore

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KIND = "access"
DEFAULT_TOKEN_TTL_S = 7 * 24 * 3600


@dataclass(frozen=True)
class DirectToken:
    token: str

    def __repr__(self) -> str:
        return "DirectToken(token=<REDACTED>)"


@dataclass(frozen=True)
class ChannelPrincipal:
    channel_id: str


Principal = DirectToken | ChannelPrincipal


@dataclass(frozen=True)
class ResolvedPrincipal:
    tenant_id: str
    principal_kind: PrincipalKind


def principal_from_headers(
    authorization: str | None,
    channel_id: str | None,
) -> Principal:
    """Build a principal from ``Authorization`` / ``X-Channel-Id`` header values.

    A bearer token wins when both are present.

    Raises
    ------
    InvalidPrincipal
        Neither header is usable.
    """
    if authorization:
        scheme, _, credentials = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not credentials.strip():
            raise InvalidPrincipal("Authorization header must use the Bearer scheme")
        return DirectToken(credentials.strip())
    if channel_id and channel_id.strip():
        return ChannelPrincipal(channel_id.strip())
    raise InvalidPrincipal("Missing bearer token or channel id")


class IdentityResolver:
    """Map principals to tenants and mint direct bearer tokens."""

    def __init__(
        self,
        signer: Signer,
        tenants: TenantStore,
        *,
        token_ttl_s: int = DEFAULT_TOKEN_TTL_S,
    ) -> None:
        self._signer = signer
        self._tenants = tenants
        self._token_ttl_s = token_ttl_s

    async def resolve(self, principal: Principal) -> ResolvedPrincipal:
        """Return the tenant behind *principal*.

        Raises
        ------
        InvalidPrincipal
            Malformed, badly signed or expired direct token.
        UnknownTenant
            The token names a tenant that does not exist.
        ChannelNotLinked
            No tenant is linked to the channel.
        """
        match principal:
            case DirectToken(token=token):
                tenant_id = self._verify_token(token)
                tenant = await self._tenants.get(tenant_id)
                if tenant is None:
                    raise UnknownTenant(tenant_id)
                return ResolvedPrincipal(tenant_id, PrincipalKind.direct)
            case ChannelPrincipal(channel_id=channel_id):
                tenant_id = await self._tenants.tenant_for_channel(channel_id)
                if tenant_id is None:
                    raise ChannelNotLinked(channel_id)
                return ResolvedPrincipal(tenant_id, PrincipalKind.channel_linked)
        raise InvalidPrincipal(f"Unsupported principal type: {type(principal).__name__}")

    def _verify_token(self, token: str) -> str:
        try:
            payload = self._signer.verify(token)
        except SignatureError as exc:
            logger.info("Rejected direct token: %s", exc)
            raise InvalidPrincipal() from exc
        if payload.get("kind") != ACCESS_TOKEN_KIND or "exp" not in payload:
            raise InvalidPrincipal()
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidPrincipal()
        return subject

    def issue_token(self, tenant_id: str, *, now: float | None = None) -> str:
        """Mint a direct bearer token for *tenant_id*."""
        issued_at = int(time.time() if now is None else now)
        return self._signer.sign(
            {
                "sub": tenant_id,
                "kind": ACCESS_TOKEN_KIND,
                "iat": issued_at,
                "exp": issued_at + self._token_ttl_s,
            }
        )
