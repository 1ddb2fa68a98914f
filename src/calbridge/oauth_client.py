"""Google OAuth 2.0 client: consent URL, code exchange, refresh, identity, revoke.

All calls go through one shared ``httpx.AsyncClient`` with a bounded timeout.
Failures surface as :class:`OAuthProviderError` carrying the provider's
``error`` code (e.g. ``invalid_grant``) so callers can classify them.  Token
values never appear in exception messages or logs.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

_DEFAULT_EXPIRES_IN_SECONDS = 3600


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TokenGrant(BaseModel):
    """Tokens returned by a code exchange or a refresh."""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None

    @field_validator("access_token")
    @classmethod
    def _strip_access_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    @field_validator("refresh_token", "scope")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r}, scope={self.scope!r})"
        )

    __str__ = __repr__


class RemoteIdentity(BaseModel):
    """The provider-side account that granted consent."""

    model_config = ConfigDict(extra="ignore")

    subject: str = Field(min_length=1)
    email: str | None = None
    name: str | None = None
    picture: str | None = None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class OAuthProviderError(Exception):
    """A call to the provider's OAuth endpoints failed.

    ``status_code`` is ``None`` for transport failures (timeouts, DNS,
    connection resets); ``error_code`` is the provider's ``error`` field
    when the response carried one.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def is_invalid_grant(self) -> bool:
        return self.error_code == "invalid_grant"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or _DEFAULT_EXPIRES_IN_SECONDS
    return _DEFAULT_EXPIRES_IN_SECONDS


def _provider_error_code(response: httpx.Response) -> tuple[str | None, str | None]:
    """Return ``(error, error_description)`` from an OAuth error body."""
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return None, None
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    description = body.get("error_description")
    if isinstance(error, dict):
        # Google API (non-OAuth) error envelope: {"error": {"status": ..., "message": ...}}
        status = error.get("status")
        return (status if isinstance(status, str) else None), None
    return (
        error if isinstance(error, str) else None,
        " ".join(description.split())[:200] if isinstance(description, str) else None,
    )


def _grant_from_payload(payload: Any, *, now: datetime | None = None) -> TokenGrant:
    if not isinstance(payload, dict):
        raise OAuthProviderError("Token endpoint returned a non-object payload")
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise OAuthProviderError("Token response is missing a non-empty access_token")
    issued_at = now or datetime.now(UTC)
    expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
    refresh_token = payload.get("refresh_token")
    scope = payload.get("scope")
    return TokenGrant(
        access_token=access_token,
        refresh_token=refresh_token if isinstance(refresh_token, str) else None,
        expires_at=issued_at + timedelta(seconds=expires_in),
        scope=scope if isinstance(scope, str) else None,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GoogleOAuthClient:
    """Thin async wrapper over Google's OAuth and userinfo endpoints.

    Parameters
    ----------
    client_id, client_secret:
        OAuth client credentials.
    redirect_uri:
        Callback URL registered with the provider; must match exactly.
    scopes:
        Fixed scope set requested at consent time.
    http_client:
        Optional shared client.  When omitted one is created with *timeout_s*
        and closed by :meth:`aclose`.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: tuple[str, ...] | list[str],
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._scopes = tuple(scopes)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_s)

    def __repr__(self) -> str:
        return (
            f"GoogleOAuthClient(client_id={self._client_id!r}, client_secret=<REDACTED>, "
            f"redirect_uri={self._redirect_uri!r})"
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def authorization_url(self, state: str) -> str:
        """Build the consent URL that yields a refresh token on first consent."""
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _post_token_endpoint(self, data: dict[str, str], *, action: str) -> TokenGrant:
        try:
            response = await self._http.post(
                GOOGLE_TOKEN_URL, data=data, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise OAuthProviderError(
                f"Network error during token {action}: {type(exc).__name__}"
            ) from exc

        if response.status_code != 200:
            error_code, description = _provider_error_code(response)
            # Log status code and error code but not the raw body
            logger.warning(
                "OAuth token %s failed HTTP %d error=%s", action, response.status_code, error_code
            )
            raise OAuthProviderError(
                f"Token endpoint returned HTTP {response.status_code}"
                + (f" ({error_code}: {description})" if description else ""),
                status_code=response.status_code,
                error_code=error_code,
            )

        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise OAuthProviderError(
                "Invalid JSON in token response", status_code=response.status_code
            ) from exc
        return _grant_from_payload(payload)

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for tokens.

        Raises
        ------
        OAuthProviderError
            On transport failure, a non-200 response, or an unusable payload.
        """
        return await self._post_token_endpoint(
            {
                "code": code,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri,
                "grant_type": "authorization_code",
            },
            action="exchange",
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Obtain a new access token.  ``refresh_token`` on the result is set
        only when the provider rotated it."""
        return await self._post_token_endpoint(
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            action="refresh",
        )

    async def fetch_identity(self, access_token: str) -> RemoteIdentity:
        """Return the account that owns *access_token*."""
        try:
            response = await self._http.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise OAuthProviderError(
                f"Network error fetching user info: {type(exc).__name__}"
            ) from exc
        if response.status_code != 200:
            raise OAuthProviderError(
                f"Userinfo endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise OAuthProviderError("Invalid JSON in userinfo response") from exc
        if not isinstance(payload, dict) or not payload.get("id"):
            raise OAuthProviderError("Userinfo response is missing the account id")
        return RemoteIdentity(
            subject=str(payload["id"]),
            email=payload.get("email"),
            name=payload.get("name"),
            picture=payload.get("picture"),
        )

    async def revoke(self, token: str) -> None:
        """Revoke *token* at the provider."""
        try:
            response = await self._http.post(GOOGLE_REVOKE_URL, data={"token": token})
        except httpx.HTTPError as exc:
            raise OAuthProviderError(f"Network error during revoke: {type(exc).__name__}") from exc
        if response.status_code != 200:
            error_code, _ = _provider_error_code(response)
            raise OAuthProviderError(
                f"Revoke endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
                error_code=error_code,
            )
