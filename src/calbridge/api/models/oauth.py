"""Pydantic models for the authorization endpoints."""

from __future__ import annotations

from datetime import datetime

from calbridge.api.models import CamelModel
from calbridge.lifecycle import CredentialState
from calbridge.tenants import PrincipalKind


class AuthorizeResponse(CamelModel):
    """Consent link returned when ``redirect=false``."""

    authorization_url: str
    expires_at: datetime
    principal_kind: PrincipalKind


class CallbackSuccess(CamelModel):
    """Successful callback payload.

    ``access_token`` is present only for direct principals: it is the bearer
    token to present on later requests.
    """

    success: bool = True
    message: str = "Calendar connected successfully."
    tenant_id: str
    principal_kind: PrincipalKind
    display_name: str | None = None
    email: str | None = None
    channel_id: str | None = None
    access_token: str | None = None
    token_type: str | None = None


class CallbackError(CamelModel):
    """Failed callback payload.  Never echoes raw provider error strings."""

    success: bool = False
    error_code: str
    message: str


class AuthStatusResponse(CamelModel):
    tenant_id: str
    principal_kind: PrincipalKind
    state: CredentialState
    expiry: datetime | None = None
    has_refresh_token: bool = False
    scope: str | None = None
    channel_id: str | None = None


class DisconnectResponse(CamelModel):
    success: bool
    tenant_id: str
