"""Shared fixtures for API tests.

The ``api`` harness itself lives in ``tests/conftest.py``; this module adds
seeded tenants on top of it.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from calbridge.tenants import PrincipalKind
from tests.fakes import make_grant

CHANNEL_ID = "telegram:4242"
TENANT_ID = "tenant-linked"


@pytest.fixture
def linked_tenant(api) -> str:
    """A channel-linked tenant holding a credential valid for another hour."""
    api.tenants.add(
        TENANT_ID,
        principal_kind=PrincipalKind.channel_linked,
        email="owner@example.com",
        remote_subject="google-sub-1",
    )
    api.tenants.links[CHANNEL_ID] = TENANT_ID
    api.credentials.put(
        TENANT_ID,
        make_grant(
            "access-1",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
            refresh_token="refresh-1",
        ),
    )
    return TENANT_ID
