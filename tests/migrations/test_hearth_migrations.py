"""Tests for the hearth migration chain and the programmatic runner."""

from __future__ import annotations

import importlib.util
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from hearth.migrations import build_alembic_config, run_migrations, upgrade_to_head

pytestmark = pytest.mark.unit

ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"
MIGRATION_FILE = ALEMBIC_DIR / "versions" / "hearth" / "hearth_001_calendar_sync_tables.py"


def _load_migration():
    """Load the hearth_001 migration module dynamically."""
    spec = importlib.util.spec_from_file_location("migration_hearth_001", MIGRATION_FILE)
    assert spec is not None
    assert spec.loader is not None
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def _executed_sql(op: MagicMock) -> str:
    return "\n".join(" ".join(str(c.args[0]).split()) for c in op.execute.call_args_list)


# ---------------------------------------------------------------------------
# hearth_001
# ---------------------------------------------------------------------------


class TestHearth001:
    def test_revision_identifiers(self):
        mod = _load_migration()
        assert mod.revision == "hearth_001"
        assert mod.down_revision is None
        assert mod.branch_labels == ("hearth",)

    def test_upgrade_creates_sync_tables(self):
        mod = _load_migration()
        op = MagicMock()
        with patch.object(mod, "op", op):
            mod.upgrade()

        sql = _executed_sql(op)
        for table in (
            "state",
            "people",
            "provider_tokens",
            "provider_calendars",
            "calendar_events",
            "calendar_sync_cursors",
            "calendar_sync_log",
            "calendar_watch_channels",
        ):
            assert f"CREATE TABLE IF NOT EXISTS {table} (" in sql
        assert "uq_calendar_events_provider_identity" in sql

    def test_upgrade_installs_change_triggers(self):
        mod = _load_migration()
        op = MagicMock()
        with patch.object(mod, "op", op):
            mod.upgrade()

        sql = _executed_sql(op)
        assert "pg_notify( 'hearth_changes'" in sql
        for table in mod._WATCHED_TABLES:
            assert f"ON {table}" in sql

    def test_downgrade_drops_everything_upgrade_creates(self):
        mod = _load_migration()
        op = MagicMock()
        with patch.object(mod, "op", op):
            mod.downgrade()

        sql = _executed_sql(op)
        assert "DROP FUNCTION IF EXISTS hearth_notify_change()" in sql
        assert "DROP TABLE IF EXISTS calendar_events" in sql
        assert "DROP TABLE IF EXISTS calendar_watch_channels" in sql
        assert "DROP TABLE IF EXISTS state" in sql


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class TestRunner:
    def test_config_points_at_hearth_chain(self):
        config = build_alembic_config("postgresql://u:p%40ss@pg:5432/hearth", "sync")

        assert config.get_main_option("script_location") == str(ALEMBIC_DIR)
        assert config.get_main_option("sqlalchemy.url") == "postgresql://u:p%40ss@pg:5432/hearth"
        assert config.get_main_option("version_locations") == str(
            ALEMBIC_DIR / "versions" / "hearth"
        )
        assert config.get_main_option("hearth.target_schema") == "sync"
        assert config.get_main_option("version_table_schema") == "sync"

    def test_config_without_schema(self):
        config = build_alembic_config("postgresql://u:p@pg:5432/hearth", "  ")
        assert config.get_main_option("hearth.target_schema") is None

    def test_invalid_schema_rejected(self):
        with pytest.raises(ValueError, match="Invalid migration schema name"):
            build_alembic_config("postgresql://u:p@pg:5432/hearth", "bad-schema")

    @patch("hearth.migrations.command")
    def test_upgrade_to_head(self, command: MagicMock):
        upgrade_to_head("postgresql://u:p@pg:5432/hearth")

        (call,) = command.upgrade.call_args_list
        assert call.args[1] == "hearth@head"

    @patch("hearth.migrations.command")
    async def test_run_migrations_off_loop(self, command: MagicMock):
        await run_migrations("postgresql://u:p@pg:5432/hearth", "sync")

        config = command.upgrade.call_args.args[0]
        assert config.get_main_option("hearth.target_schema") == "sync"
