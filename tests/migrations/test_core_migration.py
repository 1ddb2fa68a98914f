"""Tests for the core schema migration (core_001) and the migration runner."""

from __future__ import annotations

import importlib.util
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from calbridge.migrations import ALEMBIC_DIR, build_alembic_config, run_migrations

pytestmark = pytest.mark.unit

MIGRATION_DIR = Path(__file__).resolve().parent.parent.parent / "alembic" / "versions" / "core"
MIGRATION_FILE = MIGRATION_DIR / "001_create_core_tables.py"


def _load_migration():
    spec = importlib.util.spec_from_file_location("core_001_create_core_tables", MIGRATION_FILE)
    assert spec is not None
    assert spec.loader is not None
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def _executed_sql(mod, fn_name: str) -> list[str]:
    op = MagicMock()
    with patch.object(mod, "op", op):
        getattr(mod, fn_name)()
    return [" ".join(c.args[0].split()) for c in op.execute.call_args_list]


class TestRevisionMetadata:
    def test_revision_heads_the_core_branch(self) -> None:
        mod = _load_migration()
        assert mod.revision == "core_001"
        assert mod.down_revision is None
        assert mod.branch_labels == ("core",)


class TestUpgrade:
    def test_creates_all_tables(self) -> None:
        statements = _executed_sql(_load_migration(), "upgrade")
        created = [s for s in statements if s.startswith("CREATE TABLE")]
        assert [s.split()[5] for s in created] == [
            "tenants",
            "credentials",
            "channel_links",
            "pending_authorizations",
        ]

    def test_credentials_carry_a_version_column(self) -> None:
        statements = _executed_sql(_load_migration(), "upgrade")
        credentials = next(s for s in statements if "TABLE IF NOT EXISTS credentials" in s)
        assert "version BIGINT NOT NULL DEFAULT 1" in credentials
        assert "ON DELETE CASCADE" in credentials

    def test_pending_sessions_keyed_by_channel_and_token(self) -> None:
        statements = _executed_sql(_load_migration(), "upgrade")
        pending = next(s for s in statements if "TABLE IF NOT EXISTS pending_authorizations" in s)
        assert "PRIMARY KEY (channel_id, session_token)" in pending
        assert "REFERENCES" not in pending

    def test_one_channel_per_tenant(self) -> None:
        statements = _executed_sql(_load_migration(), "upgrade")
        links = next(s for s in statements if "TABLE IF NOT EXISTS channel_links" in s)
        assert "channel_id TEXT PRIMARY KEY" in links
        assert "tenant_id UUID NOT NULL UNIQUE" in links


class TestDowngrade:
    def test_drops_in_dependency_order(self) -> None:
        statements = _executed_sql(_load_migration(), "downgrade")
        assert statements == [
            "DROP TABLE IF EXISTS pending_authorizations",
            "DROP TABLE IF EXISTS channel_links",
            "DROP TABLE IF EXISTS credentials",
            "DROP TABLE IF EXISTS tenants",
        ]


class TestRunner:
    def test_config_points_at_core_versions(self) -> None:
        config = build_alembic_config("postgresql://u:p%40ss@h/cal")
        assert config.get_main_option("script_location") == str(ALEMBIC_DIR)
        assert config.get_main_option("version_locations") == str(MIGRATION_DIR.resolve())
        assert config.get_main_option("sqlalchemy.url") == "postgresql://u:p%40ss@h/cal"

    def test_run_migrations_upgrades_to_revision(self) -> None:
        with patch("calbridge.migrations.command.upgrade") as upgrade:
            run_migrations("postgresql://u:p@h/cal", "core@head")
        config, revision = upgrade.call_args.args
        assert revision == "core@head"
        assert config.get_main_option("sqlalchemy.url") == "postgresql://u:p@h/cal"
