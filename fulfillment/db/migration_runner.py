"""
Migration Runner - applies pending Alembic revisions at startup.

Alembic's command API is synchronous, so the asyncpg URL from settings is
rewritten to psycopg2 before use.
"""

from dataclasses import dataclass
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import Engine, create_engine

from fulfillment.config import settings
from fulfillment.observability.logging import get_logger

logger = get_logger(__name__)

ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    """Current vs head revision."""

    current_revision: str | None
    head_revision: str | None

    @property
    def pending(self) -> bool:
        return self.current_revision != self.head_revision


def sync_database_url(url: str | None = None) -> str:
    """Rewrite an async driver URL into a psycopg2 one."""
    return (url or settings.database_url).replace("+asyncpg", "+psycopg2")


def _alembic_config() -> Config:
    cfg = Config(str(ALEMBIC_INI_PATH))
    cfg.set_main_option("sqlalchemy.url", sync_database_url().replace("%", "%%"))
    return cfg


def _current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


def check_migrations_status() -> MigrationStatus:
    """Report current and head revisions without applying anything."""
    cfg = _alembic_config()
    engine = create_engine(sync_database_url())
    try:
        return MigrationStatus(
            current_revision=_current_revision(engine),
            head_revision=ScriptDirectory.from_config(cfg).get_current_head(),
        )
    finally:
        engine.dispose()


def run_migrations() -> None:
    """
    Upgrade the schema to head if anything is pending.

    Raises:
        RuntimeError: the upgrade failed
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    try:
        status = check_migrations_status()
        if not status.pending:
            logger.info("schema_up_to_date", revision=status.current_revision)
            return

        logger.info(
            "migrations_starting",
            from_revision=status.current_revision,
            to_revision=status.head_revision,
        )
        command.upgrade(_alembic_config(), "head")
        logger.info("migrations_complete", revision=status.head_revision)

    except Exception as e:
        logger.error("migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e
