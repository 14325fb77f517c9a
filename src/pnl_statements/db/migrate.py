from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from pnl_statements.config.settings import get_settings
from pnl_statements.db.models import Base
from pnl_statements.utils.logging import get_logger, kv

logger = get_logger(__name__)

SQLITE_EXTRA_INDEXES = [
    "CREATE INDEX IF NOT EXISTS ix_report_versions_key_version ON report_versions (natural_key, version)",
    "CREATE INDEX IF NOT EXISTS ix_pipeline_exceptions_type_severity ON pipeline_exceptions (type, severity)",
    "CREATE INDEX IF NOT EXISTS ix_audit_events_account_id ON audit_events (account_id, id)",
]

# Child tables first so foreign keys never block the wipe.
RESET_ORDER = [
    "report_active_versions",
    "report_version_archivals",
    "report_versions",
    "tax_reports",
    "pipeline_exceptions",
    "audit_events",
    "clients",
]


def _enable_sqlite_pragmas(engine: Engine, *, in_memory: bool) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragmas(dbapi_connection, _connection_record):  # pragma: no cover - driver callback
        cursor = dbapi_connection.cursor()
        pragmas = ["PRAGMA foreign_keys=ON", "PRAGMA busy_timeout=5000"]
        if not in_memory:
            pragmas.extend(["PRAGMA journal_mode=WAL", "PRAGMA synchronous=NORMAL"])
        for statement in pragmas:
            try:
                cursor.execute(statement)
            except Exception:
                # Keep startup resilient if a pragma is unsupported by a specific SQLite mode.
                continue
        cursor.close()


def _ensure_sqlite_indexes(engine: Engine) -> None:
    if engine.dialect.name != "sqlite":
        return
    with engine.begin() as conn:
        for statement in SQLITE_EXTRA_INDEXES:
            conn.execute(text(statement))


def build_engine(database_url: str | None = None) -> Engine:
    settings = get_settings()
    url = database_url or settings.database_url

    in_memory = url in {"sqlite://", "sqlite:///:memory:"}
    if url.startswith("sqlite:///") and not in_memory:
        sqlite_path = Path(url.removeprefix("sqlite:///")).expanduser()
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)

    if in_memory:
        # One shared connection, otherwise every thread sees its own empty database.
        engine = create_engine(
            url, future=True, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    else:
        engine = create_engine(url, future=True)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_pragmas(engine, in_memory=in_memory)
    return engine


def migrate(database_url: str | None = None) -> Engine:
    url = database_url or get_settings().database_url
    engine = build_engine(database_url=url)
    Base.metadata.create_all(bind=engine)
    _ensure_sqlite_indexes(engine)
    logger.info("schema ready %s", kv(dialect=engine.dialect.name))
    return engine


if __name__ == "__main__":
    migrate()
