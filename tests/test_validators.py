from __future__ import annotations

import pytest

from pnl_statements.db.models import ExceptionType, Severity, ValidationStatus
from pnl_statements.ingest.submission import Submission
from pnl_statements.ingest.validators import parse_float, period_year, validate


def _types(result) -> list[ExceptionType]:
    return [issue.exception_type for issue in result.issues]


def test_clean_statement_is_validated_with_all_checks_passing(make_statement):
    result = validate(Submission.from_payload(make_statement()))

    assert result.status == ValidationStatus.VALIDATED
    assert all(result.checks.values())
    assert result.warnings == ()
    assert result.issues == ()


def test_blank_header_field_fails_required_fields(make_statement):
    payload = make_statement()
    payload["report_header"]["username"] = "  "

    result = validate(Submission.from_payload(payload))

    assert result.status == ValidationStatus.FAILED
    assert result.checks["required_fields_present"] is False
    assert _types(result) == [ExceptionType.MISSING_HEADER_FIELD]
    assert result.issues[0].context == {"field": "username"}
    assert result.issues[0].severity == Severity.HIGH


def test_missing_sections_each_raise_their_own_exception_type(make_statement):
    payload = make_statement()
    del payload["summary_totals"]
    del payload["grand_totals_row"]
    payload["monthly_rows"] = "not a table"

    result = validate(Submission.from_payload(payload))

    assert result.status == ValidationStatus.FAILED
    assert _types(result) == [
        ExceptionType.MISSING_SUMMARY_TOTALS,
        ExceptionType.MISSING_MONTHLY_ROWS,
        ExceptionType.MISSING_GRAND_TOTALS,
    ]
    assert result.checks["table_headers_match_template"] is False


def test_text_amounts_are_numeric_parse_errors_per_field(make_statement):
    payload = make_statement()
    payload["monthly_rows"][0]["sec_fee"] = "6.25"
    payload["grand_totals_row"]["net_pnl"] = "3,500.00"
    payload["summary_totals"]["opening_balance"] = "N/A"

    result = validate(Submission.from_payload(payload))

    assert result.status == ValidationStatus.FAILED
    assert result.checks["numeric_parse"] is False
    assert set(_types(result)) == {
        ExceptionType.NUMERIC_PARSE_ERROR_SUMMARY,
        ExceptionType.NUMERIC_PARSE_ERROR_SEC_FEE,
        ExceptionType.NUMERIC_PARSE_ERROR_GRAND_NET_PNL,
    }
    monthly = next(issue for issue in result.issues if issue.exception_type == ExceptionType.NUMERIC_PARSE_ERROR_SEC_FEE)
    assert monthly.context == {"month": "January", "field": "sec_fee", "value": "6.25"}


def test_trade_date_outside_header_year_requires_review(make_statement):
    payload = make_statement()
    payload["monthly_rows"][1]["trade_date"] = "2023-02"

    result = validate(Submission.from_payload(payload))

    assert result.status == ValidationStatus.REVIEW_REQUIRED
    assert result.checks["header_period_present"] is False
    assert _types(result) == [ExceptionType.HEADER_YEAR_MONTH_MISMATCH]
    assert len(result.warnings) == 1


def test_period_end_in_another_year_requires_review(make_statement):
    payload = make_statement()
    payload["report_header"]["report_period_end"] = "31.12.2025"

    result = validate(Submission.from_payload(payload))

    assert result.status == ValidationStatus.REVIEW_REQUIRED
    assert _types(result) == [ExceptionType.PERIOD_YEAR_MISMATCH]
    assert result.issues[0].context["period_year"] == "2025"
    assert result.issues[0].severity == Severity.MEDIUM


def test_low_confidence_metadata_requires_review(make_statement):
    payload = make_statement()
    payload["metadata"] = {"confidence": "low"}

    result = validate(Submission.from_payload(payload))

    assert result.status == ValidationStatus.REVIEW_REQUIRED
    assert _types(result) == [ExceptionType.LOW_CONFIDENCE_PAYLOAD]
    assert result.to_dict()["exceptions"][0]["type"] == "LOW_CONFIDENCE_PAYLOAD"


def test_failures_outrank_consistency_warnings(make_statement):
    payload = make_statement()
    payload["report_header"]["report_period_start"] = "01.01.2023"
    payload["grand_totals_row"]["net_cash"] = None
    payload["summary_totals"]["profit_loss"] = None

    result = validate(Submission.from_payload(payload))

    assert result.status == ValidationStatus.FAILED
    assert ExceptionType.MISSING_SUMMARY_FIELD in _types(result)
    assert ExceptionType.PERIOD_YEAR_MISMATCH in _types(result)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("01.01.2024", "2024"),
        ("2024-12-31", "2024"),
        ("31/12/2024", "2024"),
        ("", None),
        ("not a date", None),
    ],
)
def test_period_year_reads_common_date_spellings(value, expected):
    assert period_year(value) == expected


def test_parse_float_accepts_currency_text_and_rejects_junk():
    assert parse_float("$1,250.50") == 1250.5
    assert parse_float(7) == 7.0
    assert parse_float(True) is None
    assert parse_float("n/a") is None
    assert parse_float(float("nan")) is None
