from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum

from pnl_statements.config.paths import default_db_path

DEFAULT_SOURCE_REPORT_TYPE = "broker_pnl_report"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = str(os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class StoreBackend(str, Enum):
    MEMORY = "memory"
    SQL = "sql"


def _env_store_backend(name: str, default: StoreBackend) -> StoreBackend:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if raw == StoreBackend.SQL.value:
        return StoreBackend.SQL
    if raw == StoreBackend.MEMORY.value:
        return StoreBackend.MEMORY
    return default


@dataclass(frozen=True)
class Settings:
    app_env: str
    database_url: str
    store_backend: StoreBackend
    source_report_type: str
    tax_rate: float
    tax_jurisdiction: str
    reconciliation_tolerance: float
    processing_timeout_seconds: float
    allow_state_reset: bool


def get_settings() -> Settings:
    app_env = os.getenv("APP_ENV", "development")
    db_default = f"sqlite:///{default_db_path().as_posix()}"
    return Settings(
        app_env=app_env,
        database_url=os.getenv("DATABASE_URL", db_default),
        store_backend=_env_store_backend("PNL_STORE_BACKEND", StoreBackend.MEMORY),
        source_report_type=os.getenv("PNL_SOURCE_REPORT_TYPE", DEFAULT_SOURCE_REPORT_TYPE),
        tax_rate=_env_float("PNL_TAX_RATE", 0.25),
        tax_jurisdiction=os.getenv("PNL_TAX_JURISDICTION", "Israel"),
        reconciliation_tolerance=_env_float("PNL_RECONCILIATION_TOLERANCE", 0.02),
        processing_timeout_seconds=_env_float("PNL_PROCESSING_TIMEOUT_SECONDS", 30.0),
        allow_state_reset=_env_bool("PNL_ALLOW_STATE_RESET", app_env != "production"),
    )
