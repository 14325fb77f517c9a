from __future__ import annotations

from copy import deepcopy
from typing import Any, Callable

import pytest

from pnl_statements.config.settings import Settings, StoreBackend
from pnl_statements.db.sql_store import SqlStore
from pnl_statements.db.store import InMemoryStore, Store
from pnl_statements.services.orchestrator import IngestionPipeline

MONTHLY_ROWS = [
    {
        "month": "January",
        "trade_date": "{year}-01",
        "total_comm": 80.0,
        "sec_fee": 6.25,
        "nasd_fee": 2.0,
        "ecn_take": 16.0,
        "ecn_add": 4.5,
        "routing_fee": 5.0,
        "nscc_fee": 2.5,
        "net_pnl": 2000.0,
        "net_cash": 1950.0,
    },
    {
        "month": "February",
        "trade_date": "{year}-02",
        "total_comm": 70.0,
        "sec_fee": 6.0,
        "nasd_fee": 1.75,
        "ecn_take": 14.0,
        "ecn_add": 4.0,
        "routing_fee": 5.0,
        "nscc_fee": 2.5,
        "net_pnl": 1500.0,
        "net_cash": 1480.0,
    },
]

# Fees total 219.50; net P&L 3500.00.
GRAND_TOTALS = {
    "total_comm": 150.0,
    "sec_fee": 12.25,
    "nasd_fee": 3.75,
    "ecn_take": 30.0,
    "ecn_add": 8.5,
    "routing_fee": 10.0,
    "nscc_fee": 5.0,
    "net_pnl": 3500.0,
    "net_cash": 3430.0,
}


def build_statement(
    *,
    account_id: str = "U1001",
    year: Any = 2024,
    username: str = "dlevi",
    display_name: str = "Dana Levi",
    source_file_name: str | None = None,
) -> dict[str, Any]:
    rows = deepcopy(MONTHLY_ROWS)
    for row in rows:
        row["trade_date"] = row["trade_date"].format(year=year)
    return {
        "report_header": {
            "account_id": account_id,
            "year": year,
            "client_display_name": display_name,
            "username": username,
            "report_period_start": f"01.01.{year}",
            "report_period_end": f"31.12.{year}",
            "source_file_name": source_file_name or f"{account_id}_{year}.pdf",
        },
        "summary_totals": {
            "opening_balance": 10000.0,
            "total_deposit_withdrawal": 0.0,
            "total_credit_debit": 0.0,
            "profit_loss": 3500.0,
            "closing_balance_equity": 13500.0,
        },
        "monthly_rows": rows,
        "grand_totals_row": deepcopy(GRAND_TOTALS),
        "template_version": "v1",
    }


@pytest.fixture
def make_statement() -> Callable[..., dict[str, Any]]:
    return build_statement


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="test",
        database_url="sqlite://",
        store_backend=StoreBackend.MEMORY,
        source_report_type="broker_pnl_report",
        tax_rate=0.25,
        tax_jurisdiction="Israel",
        reconciliation_tolerance=0.02,
        processing_timeout_seconds=30.0,
        allow_state_reset=True,
    )


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def sql_store() -> SqlStore:
    store = SqlStore.from_url("sqlite://")
    yield store
    store.engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request) -> Store:
    if request.param == "memory":
        return InMemoryStore()
    sql = SqlStore.from_url("sqlite://")
    request.addfinalizer(sql.engine.dispose)
    return sql


@pytest.fixture
def pipeline(store: Store, settings: Settings) -> IngestionPipeline:
    return IngestionPipeline(store, settings)
