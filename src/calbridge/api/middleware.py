"""API error handling: domain exceptions become one JSON envelope.

Every error response has the shape::

    {"error": {"code": "...", "message": "..."}, "needsAuth": false}

Errors that require the owner to (re)authorize answer 401 with
``"needsAuth": true`` plus a freshly generated ``authUrl`` for the same
principal, so a chat bot can forward the link without another round trip.

Status code mapping:
- :class:`~calbridge.errors.CalbridgeError` -> its ``status_code``
- ``ValueError`` -> 400 Bad Request
- Any other ``Exception`` -> 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calbridge.api.models import ErrorDetail, ErrorResponse
from calbridge.errors import CalbridgeError, ChannelNotLinked, UnknownTenant
from calbridge.identity import ChannelPrincipal

logger = logging.getLogger(__name__)


async def fresh_auth_url(request: Request, exc: CalbridgeError) -> str | None:
    """Start a new handshake for the request's principal and return its URL.

    Returns ``None`` when no link can be produced; the error response is still
    sent without it.
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        return None
    principal = getattr(request.state, "principal", None)
    resolved = getattr(request.state, "resolved", None)
    try:
        if isinstance(exc, ChannelNotLinked):
            link = await services.handshake.initiate_channel(exc.channel_id)
        elif isinstance(principal, ChannelPrincipal):
            link = await services.handshake.initiate_channel(principal.channel_id)
        elif resolved is not None and not isinstance(exc, UnknownTenant):
            link = await services.handshake.initiate_direct(resolved.tenant_id)
        else:
            link = await services.handshake.initiate_direct(None)
    except Exception:
        logger.warning("Could not generate a fresh authorization link", exc_info=True)
        return None
    return link.url


async def _handle_calbridge_error(request: Request, exc: CalbridgeError) -> JSONResponse:
    """Map a domain error to its status code and the standard envelope."""
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
    auth_url = await fresh_auth_url(request, exc) if exc.needs_auth else None
    body = ErrorResponse(
        error=ErrorDetail(code=exc.code, message=exc.message),
        needs_auth=exc.needs_auth,
        auth_url=auth_url,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    body = ErrorResponse(error=ErrorDetail(code="VALIDATION_ERROR", message=str(exc)))
    return JSONResponse(
        status_code=400, content=body.model_dump(mode="json", by_alias=True, exclude_none=True)
    )


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so exceptions not caught
    by ``add_exception_handler`` still use the standard envelope.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            body = ErrorResponse(
                error=ErrorDetail(code="INTERNAL_ERROR", message="Internal server error")
            )
            return JSONResponse(
                status_code=500,
                content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
            )


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(CalbridgeError, _handle_calbridge_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
