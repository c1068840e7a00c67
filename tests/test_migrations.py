from unittest.mock import MagicMock, patch

from app.config import Settings
from app.utils.migrations import get_migration_state, run_migrations_if_enabled


class TestRunMigrationsIfEnabled:
    def test_disabled_does_nothing(self):
        engine = MagicMock()
        with patch("app.config.get_settings", return_value=Settings(run_migrations_on_startup="")):
            run_migrations_if_enabled(engine)
        engine.raw_connection.assert_not_called()

    def test_non_postgres_upgrades_without_lock(self):
        engine = MagicMock()
        engine.dialect.name = "sqlite"
        engine.url.render_as_string.return_value = "sqlite:///./local.db"
        with patch("app.config.get_settings", return_value=Settings(run_migrations_on_startup="true")), \
                patch("alembic.command.upgrade") as upgrade:
            run_migrations_if_enabled(engine)
        upgrade.assert_called_once()
        assert upgrade.call_args[0][1] == "head"
        engine.raw_connection.assert_not_called()

    def test_postgres_takes_advisory_lock(self):
        engine = MagicMock()
        engine.dialect.name = "postgresql"
        engine.url.render_as_string.return_value = "postgresql://u:p@db/pms"
        cursor = engine.raw_connection.return_value.cursor.return_value
        with patch("app.config.get_settings", return_value=Settings(run_migrations_on_startup="true")), \
                patch("alembic.command.upgrade"):
            run_migrations_if_enabled(engine)
        statements = [c[0][0] for c in cursor.execute.call_args_list]
        assert statements == ["SELECT pg_advisory_lock(%s)", "SELECT pg_advisory_unlock(%s)"]


class TestMigrationState:
    def test_head_is_single_revision(self):
        engine = MagicMock()
        engine.connect.side_effect = RuntimeError("no database")
        state = get_migration_state(engine)
        assert state["head_revision"] == "pms_sync_v1"
        assert state["current_revision"] == "unknown"
        assert state["migration_pending"] is True
