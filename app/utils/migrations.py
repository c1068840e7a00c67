import logging
import os
import sys

from sqlalchemy import text

logger = logging.getLogger(__name__)

ADVISORY_LOCK_KEY = 7310418

_INI_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "alembic.ini")


def _alembic_config(engine=None):
    from alembic.config import Config

    cfg = Config(_INI_PATH)
    if engine is not None:
        cfg.set_main_option("sqlalchemy.url", engine.url.render_as_string(hide_password=False))
    return cfg


def _get_head_revision() -> str:
    from alembic.script import ScriptDirectory

    script = ScriptDirectory.from_config(_alembic_config())
    head = script.get_current_head()
    return head or "unknown"


def _get_current_revision(engine) -> str:
    try:
        with engine.connect() as conn:
            row = conn.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).fetchone()
            return row[0] if row else "none"
    except Exception:
        return "unknown"


def get_migration_state(engine) -> dict:
    current = _get_current_revision(engine)
    head = _get_head_revision()
    return {
        "current_revision": current,
        "head_revision": head,
        "migration_pending": current != head,
    }


def run_migrations_if_enabled(engine) -> None:
    from ..config import get_settings

    settings = get_settings()
    enabled = settings.run_migrations_on_startup.lower() == "true"

    if not enabled:
        logger.info("RUN_MIGRATIONS_ON_STARTUP is not enabled; skipping auto-migration")
        return

    from alembic import command

    cfg = _alembic_config(engine)

    if engine.dialect.name != "postgresql":
        # No advisory locks; assumes a single process runs the upgrade.
        logger.info("Running alembic upgrade head on %s without a lock", engine.dialect.name)
        command.upgrade(cfg, "head")
        return

    logger.info("RUN_MIGRATIONS_ON_STARTUP is enabled; acquiring advisory lock %d", ADVISORY_LOCK_KEY)
    raw_conn = engine.raw_connection()
    try:
        cursor = raw_conn.cursor()
        cursor.execute("SELECT pg_advisory_lock(%s)", (ADVISORY_LOCK_KEY,))
        logger.info("Advisory lock acquired; running alembic upgrade head")

        command.upgrade(cfg, "head")
        logger.info("Migrations complete")

        cursor.execute("SELECT pg_advisory_unlock(%s)", (ADVISORY_LOCK_KEY,))
        logger.info("Advisory lock released")
    except Exception as exc:
        logger.error("Migration failed: %s", exc)
        print(f"[startup] MIGRATION FAILED: {exc}")
        raw_conn.close()
        sys.exit(1)
    finally:
        raw_conn.close()
