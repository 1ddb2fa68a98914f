"""Authorization endpoints.

The flow:
  1. GET /api/auth/authorize
     - ``?principal=<channel_id>``: channel flow.  Creates a pending
       authorization (30 minutes) and links the consenting account to the
       channel on success.
     - Bearer token, no principal: direct re-consent for that tenant.
     - Neither: first sign-in of a direct principal.
     Redirects to the provider's consent page, or returns the URL as JSON
     with ``?redirect=false``.

  2. GET /api/oauth/callback
     - Verifies the signed state, claims the pending session exactly once,
       exchanges the code and persists tenant, credential and channel link.
     - Direct flows receive their bearer token in the JSON response.

  3. GET /api/auth/status, POST /api/auth/disconnect
     - Connection status without remote calls; revoke-and-forget.

Security notes:
  - Sessions and direct nonces are one-time-use.
  - Error messages are sanitized; provider error strings are never echoed.
  - Token values are never logged.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from calbridge.api.deps import Services, get_resolved_principal, get_services
from calbridge.api.models.oauth import (
    AuthorizeResponse,
    AuthStatusResponse,
    CallbackError,
    CallbackSuccess,
    DisconnectResponse,
)
from calbridge.errors import (
    InvalidPrincipal,
    InvalidState,
    ProviderExchangeFailed,
    SessionExpired,
    UnknownTenant,
)
from calbridge.identity import ResolvedPrincipal, principal_from_headers
from calbridge.tenants import PrincipalKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["oauth"])

# ---------------------------------------------------------------------------
# Error sanitization
# ---------------------------------------------------------------------------

_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "Access was denied. Calendar connection cancelled.",
    "invalid_request": "The authorization request was malformed. Please restart the flow.",
    "unauthorized_client": "This application is not authorized to use Google OAuth.",
    "unsupported_response_type": "Unsupported response type. Please restart the flow.",
    "invalid_scope": "One or more requested calendar permissions are invalid.",
    "server_error": "Google encountered an internal error. Please try again.",
    "temporarily_unavailable": "Google sign-in is temporarily unavailable. Please try again later.",
}


def _sanitize_provider_error(error: str) -> str:
    """Convert a provider error code into a safe, actionable user message.

    Unknown error codes are replaced with a generic message.
    """
    return _KNOWN_PROVIDER_ERRORS.get(
        error,
        "The authorization failed. Please restart the flow.",
    )


def _callback_error(status_code: int, error_code: str, message: str) -> JSONResponse:
    payload = CallbackError(error_code=error_code, message=message)
    return JSONResponse(status_code=status_code, content=payload.model_dump(by_alias=True))


# ---------------------------------------------------------------------------
# Authorize
# ---------------------------------------------------------------------------


@router.get(
    "/auth/authorize",
    responses={
        200: {"model": AuthorizeResponse, "description": "JSON payload (redirect=false)"},
        302: {"description": "Redirect to the provider's consent page"},
    },
)
async def authorize(
    principal: str | None = Query(
        default=None, description="Channel id (e.g. a Telegram chat id) to link."
    ),
    redirect: bool = Query(
        default=True,
        description="If true (default), redirect to the consent page; otherwise return JSON.",
    ),
    authorization: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> Response:
    """Begin an authorization handshake and hand out the consent link."""
    if principal:
        link = await services.handshake.initiate_channel(principal)
        kind = PrincipalKind.channel_linked
    else:
        tenant_id: str | None = None
        if authorization:
            try:
                resolved = await services.identity.resolve(
                    principal_from_headers(authorization, None)
                )
                tenant_id = resolved.tenant_id
            except (InvalidPrincipal, UnknownTenant) as exc:
                # The consent itself identifies the account; start a first sign-in.
                logger.info("Direct authorize with unusable token (%s); starting sign-in", exc.code)
        link = await services.handshake.initiate_direct(tenant_id)
        kind = PrincipalKind.direct

    if redirect:
        return RedirectResponse(url=link.url, status_code=302)

    payload = AuthorizeResponse(
        authorization_url=link.url, expires_at=link.expires_at, principal_kind=kind
    )
    return JSONResponse(content=payload.model_dump(mode="json", by_alias=True))


# ---------------------------------------------------------------------------
# Callback
# ---------------------------------------------------------------------------


@router.get("/oauth/callback")
async def oauth_callback(
    code: str | None = Query(default=None, description="Authorization code."),
    state: str | None = Query(default=None, description="Signed state."),
    error: str | None = Query(default=None, description="OAuth error code from the provider."),
    services: Services = Depends(get_services),
) -> Response:
    """Complete the handshake after the user answered the consent page."""
    if error:
        logger.warning("OAuth provider error on callback: %s", error)
        return _callback_error(400, "provider_error", _sanitize_provider_error(error))

    if not code:
        return _callback_error(
            400, "missing_code", "Authorization code is missing from the callback."
        )
    if not state:
        return _callback_error(
            400, "missing_state", "State parameter is missing from the callback."
        )

    try:
        result = await services.handshake.handle_callback(code, state)
    except (InvalidState, SessionExpired, ProviderExchangeFailed, UnknownTenant) as exc:
        return _callback_error(exc.status_code, exc.code.lower(), exc.message)

    payload = CallbackSuccess(
        tenant_id=result.tenant_id,
        principal_kind=result.principal_kind,
        display_name=result.display_name,
        email=result.email,
        channel_id=result.channel_id,
        access_token=result.access_token,
        token_type="Bearer" if result.access_token else None,
    )
    return JSONResponse(content=payload.model_dump(mode="json", by_alias=True, exclude_none=True))


# ---------------------------------------------------------------------------
# Status / disconnect
# ---------------------------------------------------------------------------


@router.get("/auth/status", response_model=AuthStatusResponse)
async def auth_status(
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> AuthStatusResponse:
    """Report whether the tenant's calendar connection is usable."""
    status = await services.lifecycle.status(resolved.tenant_id)
    return AuthStatusResponse(
        tenant_id=resolved.tenant_id,
        principal_kind=resolved.principal_kind,
        state=status.state,
        expiry=status.expiry,
        has_refresh_token=status.has_refresh_token,
        scope=status.scope,
        channel_id=await services.tenants.channel_for_tenant(resolved.tenant_id),
    )


@router.post("/auth/disconnect", response_model=DisconnectResponse)
async def disconnect(
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> DisconnectResponse:
    """Revoke the grant and delete the tenant with its credential and link."""
    deleted = await services.lifecycle.disconnect(resolved.tenant_id)
    return DisconnectResponse(success=deleted, tenant_id=resolved.tenant_id)
