"""Programmatic Alembic migration runner.

Lets ``calbridge migrate`` upgrade the schema without shelling out to the
Alembic CLI.  Revisions are raw SQL under ``alembic/versions/core``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CORE_CHAIN = "core"


def build_alembic_config(db_url: str) -> Config:
    """Build an Alembic Config pointing at the core version directory."""
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; percent-encoded DB URLs
    # must escape '%' as '%%'.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CORE_CHAIN))
    return config


def run_migrations(db_url: str, revision: str = "heads") -> None:
    """Upgrade the database at *db_url* to *revision*."""
    if not ALEMBIC_DIR.is_dir():
        raise FileNotFoundError(f"Alembic directory not found: {ALEMBIC_DIR}")
    logger.info("Running migrations to %s", revision)
    command.upgrade(build_alembic_config(db_url), revision)
