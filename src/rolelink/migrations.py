"""Programmatic Alembic migration runner for rolelink.

Lets the CLI run migrations without shelling out to the Alembic CLI. There is
a single version chain, ``core``, under ``alembic/versions/core``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)


def _find_alembic_dir(module_file: Path = Path(__file__)) -> Path:
    """Locate the migration scripts.

    Built wheels carry them inside the package as ``rolelink/alembic``. A
    source checkout, including an editable install, keeps them at the
    repository root next to ``src/``.
    """
    package_dir = module_file.resolve().parent
    packaged = package_dir / "alembic"
    if packaged.is_dir():
        return packaged
    return package_dir.parent.parent / "alembic"


ALEMBIC_DIR = _find_alembic_dir()

CORE_CHAIN = "core"


def _build_alembic_config(db_url: str) -> Config:
    """Build an Alembic Config pointing at the core version directory."""
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; percent-encoded DB URLs
    # must escape '%' as '%%'.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CORE_CHAIN))
    return config


def run_migrations(db_url: str) -> None:
    """Upgrade the database at *db_url* to the latest revision."""
    config = _build_alembic_config(db_url)
    logger.info("Running migration chain to head (chain=%s)", CORE_CHAIN)
    command.upgrade(config, "heads")
