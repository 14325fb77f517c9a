from __future__ import annotations

from datetime import datetime

from pnl_statements.db.records import (
    format_audit_id,
    format_tax_report_id,
    normalize_year,
    parse_sequence,
    utcnow,
)
from pnl_statements.utils.logging import get_logger, kv
from pnl_statements.utils.money import format_usd, percent_of, round_money, sum_money


def test_money_helpers_round_half_up_on_cents():
    assert round_money(2.675) == 2.68
    assert round_money(None) == 0.0
    assert sum_money([0.1, 0.2, None]) == 0.3
    assert percent_of(875.0, 3719.5) == 23.52
    assert percent_of(1.0, 0) is None
    assert format_usd(-1200) == "$-1,200.00"
    assert format_usd(3719.5) == "$3,719.50"


def test_record_ids_and_years():
    assert format_audit_id(7) == "AUD-00007"
    assert format_tax_report_id(12) == "TR-0012"
    assert parse_sequence("TR-0012", "TR") == 12
    assert parse_sequence("EXC-00001", "TR") is None
    assert normalize_year(" 2024 ") == 2024
    assert normalize_year("FY2024") == "FY2024"
    assert utcnow().tzinfo is None
    assert isinstance(utcnow(), datetime)


def test_logging_helpers_prefix_names_and_skip_empty_fields():
    assert get_logger("ingest").name == "pnl_statements.ingest"
    assert get_logger("pnl_statements.db.store").name == "pnl_statements.db.store"
    assert kv(account_id="U1001", version=None, state="NEW") == "account_id=U1001 state=NEW"
