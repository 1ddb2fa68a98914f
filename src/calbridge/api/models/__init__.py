"""Shared Pydantic response models for the HTTP API.

JSON field names are camelCase on the wire; Python attributes stay
snake_case.  Routes return these models and FastAPI serializes them by alias.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str


class ErrorResponse(CamelModel):
    """Standard error response envelope.

    ``needsAuth`` tells the caller to restart authorization; ``authUrl`` is a
    fresh consent link when one could be produced.
    """

    error: ErrorDetail
    needs_auth: bool = False
    auth_url: str | None = None
