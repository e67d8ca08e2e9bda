"""Programmatic Alembic migration runner for hearth.

Lets ``hearth migrate`` and test fixtures upgrade a database without
shelling out to the Alembic CLI.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CHAINS = ["hearth"]
_TARGET_SCHEMA_OPTION = "hearth.target_schema"
_VERSION_TABLE_SCHEMA_OPTION = "version_table_schema"
_VALID_SCHEMA_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _normalize_schema(schema: str | None) -> str | None:
    """Normalize and validate a schema name for migration execution."""
    if schema is None:
        return None
    normalized = schema.strip()
    if not normalized:
        return None
    if _VALID_SCHEMA_RE.fullmatch(normalized) is None:
        raise ValueError(f"Invalid migration schema name: {schema!r}")
    return normalized


def build_alembic_config(db_url: str, target_schema: str | None = None) -> Config:
    """Build an Alembic Config pointing at the hearth version directories.

    Args:
        db_url: SQLAlchemy-compatible database URL.
        target_schema: Optional target schema for schema-scoped migration runs.
    """
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; '%' in URLs must be escaped.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    normalized_schema = _normalize_schema(target_schema)
    if normalized_schema is not None:
        config.set_main_option(_TARGET_SCHEMA_OPTION, normalized_schema)
        config.set_main_option(_VERSION_TABLE_SCHEMA_OPTION, normalized_schema)
    config.set_main_option(
        "version_locations",
        " ".join(str(ALEMBIC_DIR / "versions" / chain) for chain in CHAINS),
    )
    return config


def upgrade_to_head(db_url: str, schema: str | None = None) -> None:
    """Blocking upgrade of every chain to head."""
    config = build_alembic_config(db_url, target_schema=schema)
    for chain in CHAINS:
        logger.info(
            "Running migration chain to head (chain=%s, schema=%s)", chain, schema or "<default>"
        )
        command.upgrade(config, f"{chain}@head")


async def run_migrations(db_url: str, schema: str | None = None) -> None:
    """Upgrade the database to the latest revision without blocking the loop."""
    await asyncio.to_thread(upgrade_to_head, db_url, schema)
