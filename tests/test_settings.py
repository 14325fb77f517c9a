from __future__ import annotations

from pnl_statements.config.paths import default_db_path
from pnl_statements.config.settings import StoreBackend, get_settings
from pnl_statements.db.sql_store import SqlStore
from pnl_statements.db.store import InMemoryStore, build_store

ENV_NAMES = (
    "APP_ENV",
    "DATABASE_URL",
    "PNL_STORE_BACKEND",
    "PNL_TAX_RATE",
    "PNL_TAX_JURISDICTION",
    "PNL_RECONCILIATION_TOLERANCE",
    "PNL_PROCESSING_TIMEOUT_SECONDS",
    "PNL_ALLOW_STATE_RESET",
)


def _clear(monkeypatch) -> None:
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_when_env_unset(monkeypatch, tmp_path) -> None:
    _clear(monkeypatch)
    monkeypatch.setenv("PNL_STATEMENTS_DATA_DIR", str(tmp_path))

    settings = get_settings()

    assert settings.store_backend == StoreBackend.MEMORY
    assert settings.database_url == f"sqlite:///{default_db_path().as_posix()}"
    assert default_db_path().parent == tmp_path
    assert settings.source_report_type == "broker_pnl_report"
    assert settings.tax_rate == 0.25
    assert settings.tax_jurisdiction == "Israel"
    assert settings.reconciliation_tolerance == 0.02
    assert settings.processing_timeout_seconds == 30.0
    assert settings.allow_state_reset is True


def test_numeric_env_values_fall_back_on_garbage(monkeypatch) -> None:
    _clear(monkeypatch)
    monkeypatch.setenv("PNL_TAX_RATE", "0.3")
    monkeypatch.setenv("PNL_RECONCILIATION_TOLERANCE", "two cents")

    settings = get_settings()

    assert settings.tax_rate == 0.3
    assert settings.reconciliation_tolerance == 0.02


def test_production_disables_state_reset_unless_explicitly_allowed(monkeypatch) -> None:
    _clear(monkeypatch)
    monkeypatch.setenv("APP_ENV", "production")
    assert get_settings().allow_state_reset is False

    monkeypatch.setenv("PNL_ALLOW_STATE_RESET", "yes")
    assert get_settings().allow_state_reset is True


def test_store_backend_selects_store_implementation(monkeypatch) -> None:
    _clear(monkeypatch)
    assert isinstance(build_store(get_settings()), InMemoryStore)

    monkeypatch.setenv("PNL_STORE_BACKEND", "SQL")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    store = build_store(get_settings())
    try:
        assert isinstance(store, SqlStore)
    finally:
        store.engine.dispose()

    monkeypatch.setenv("PNL_STORE_BACKEND", "mongo")
    assert get_settings().store_backend == StoreBackend.MEMORY
