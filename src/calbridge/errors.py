"""Error taxonomy for identity, credential lifecycle, handshake and availability.

Every domain error carries a stable ``code``, the HTTP ``status_code`` the API
boundary maps it to, and a ``needs_auth`` flag.  Errors with ``needs_auth`` set
are answered with a fresh authorization URL so the caller can restart the
handshake without manual support.

Error messages are safe to log: they never include token or secret values.
"""

from __future__ import annotations


class CalbridgeError(Exception):
    """Base class for all domain errors raised by calbridge."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    needs_auth: bool = False
    default_message: str = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Identity resolution
# ---------------------------------------------------------------------------


class InvalidPrincipal(CalbridgeError):
    """The presented bearer token is malformed, badly signed, or expired."""

    code = "INVALID_PRINCIPAL"
    status_code = 401
    default_message = "Invalid or expired access token"


class UnknownTenant(CalbridgeError):
    """The token names a tenant that no longer exists."""

    code = "UNKNOWN_TENANT"
    status_code = 401
    needs_auth = True
    default_message = "Tenant not found"

    def __init__(self, tenant_id: str, message: str | None = None) -> None:
        self.tenant_id = tenant_id
        super().__init__(message or f"Tenant not found: {tenant_id}")


class ChannelNotLinked(CalbridgeError):
    """No tenant is linked to the channel identifier.

    Not a hard failure: callers should offer the initiate-handshake path.
    """

    code = "CHANNEL_NOT_LINKED"
    status_code = 401
    needs_auth = True
    default_message = "Channel is not linked to any calendar account"

    def __init__(self, channel_id: str, message: str | None = None) -> None:
        self.channel_id = channel_id
        super().__init__(message)


# ---------------------------------------------------------------------------
# Credential lifecycle
# ---------------------------------------------------------------------------


class NoCredential(CalbridgeError):
    """The tenant has never completed a handshake (or has disconnected)."""

    code = "NO_CREDENTIAL"
    status_code = 401
    needs_auth = True
    default_message = "Calendar account is not connected"

    def __init__(self, tenant_id: str, message: str | None = None) -> None:
        self.tenant_id = tenant_id
        super().__init__(message)


class ReauthRequired(CalbridgeError):
    """The stored grant can no longer be refreshed; the user must re-consent."""

    code = "REAUTH_REQUIRED"
    status_code = 401
    needs_auth = True
    default_message = "Calendar authorization expired or was revoked"

    def __init__(self, tenant_id: str, message: str | None = None) -> None:
        self.tenant_id = tenant_id
        super().__init__(message)


class TransientRefreshError(CalbridgeError):
    """Refreshing failed for a reason other than a dead refresh token."""

    code = "TRANSIENT_REFRESH_ERROR"
    status_code = 503
    default_message = "Calendar provider is temporarily unavailable"

    def __init__(self, tenant_id: str, message: str | None = None) -> None:
        self.tenant_id = tenant_id
        super().__init__(message)


# ---------------------------------------------------------------------------
# Authorization handshake
# ---------------------------------------------------------------------------


class InvalidState(CalbridgeError):
    """The callback ``state`` is missing, malformed, or fails verification."""

    code = "INVALID_STATE"
    status_code = 400
    default_message = "State parameter is invalid. Please restart the authorization flow."


class SessionExpired(CalbridgeError):
    """The pending authorization is unknown, expired, or already consumed."""

    code = "SESSION_EXPIRED"
    status_code = 400
    default_message = (
        "This authorization link has expired or was already used. "
        "Please request a new one."
    )


class ProviderExchangeFailed(CalbridgeError):
    """Exchanging the authorization code (or fetching the identity) failed."""

    code = "PROVIDER_EXCHANGE_FAILED"
    status_code = 400
    default_message = (
        "Failed to exchange the authorization code. "
        "The code may have expired or already been used. Please restart the flow."
    )


# ---------------------------------------------------------------------------
# Availability / calendar collaborator
# ---------------------------------------------------------------------------


class InvalidWindow(CalbridgeError):
    """The availability query is malformed (e.g. non-positive duration)."""

    code = "INVALID_WINDOW"
    status_code = 400
    default_message = "Invalid availability window"


class CalendarRequestError(CalbridgeError):
    """The calendar provider rejected a request."""

    code = "CALENDAR_REQUEST_FAILED"
    status_code = 502
    default_message = "Calendar provider request failed"

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.provider_status = status_code
        super().__init__(f"Calendar provider request failed ({status_code}): {message}")
