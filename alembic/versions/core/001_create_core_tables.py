"""create_core_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS tenants (
            tenant_id UUID PRIMARY KEY,
            principal_kind TEXT NOT NULL
                CHECK (principal_kind IN ('direct', 'channel_linked')),
            display_name TEXT,
            email TEXT,
            remote_subject TEXT UNIQUE,
            avatar_url TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_tenants_email ON tenants (email)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS credentials (
            tenant_id UUID PRIMARY KEY REFERENCES tenants (tenant_id) ON DELETE CASCADE,
            access_token TEXT NOT NULL,
            refresh_token TEXT,
            expiry TIMESTAMPTZ,
            scope TEXT,
            version BIGINT NOT NULL DEFAULT 1,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS channel_links (
            channel_id TEXT PRIMARY KEY,
            tenant_id UUID NOT NULL UNIQUE REFERENCES tenants (tenant_id) ON DELETE CASCADE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    # No foreign key on resolved_tenant_id: a consumed session stays consumed
    # after its tenant is deleted.
    op.execute("""
        CREATE TABLE IF NOT EXISTS pending_authorizations (
            channel_id TEXT NOT NULL,
            session_token TEXT NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            resolved_tenant_id UUID,
            resolved_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (channel_id, session_token)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_pending_authorizations_expires_at
            ON pending_authorizations (expires_at)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS pending_authorizations")
    op.execute("DROP TABLE IF EXISTS channel_links")
    op.execute("DROP TABLE IF EXISTS credentials")
    op.execute("DROP TABLE IF EXISTS tenants")
