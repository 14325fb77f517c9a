from __future__ import annotations

import math

from pnl_statements.analytics.reconciliation import reconcile
from pnl_statements.analytics.tax_derivation import (
    RECONCILIATION_WARNING,
    STATUS_BADGES,
    derive,
    gate,
    rules_for,
)
from pnl_statements.db.models import (
    ClassificationState,
    TaxDerivationStatus,
    ValidationStatus,
)
from pnl_statements.ingest.submission import Submission
from pnl_statements.ingest.validators import validate


def _derive(payload, state=ClassificationState.NEW, **kwargs):
    submission = Submission.from_payload(payload)
    return derive(submission, validate(submission), reconcile(submission), state, **kwargs)


def _loss_statement(make_statement):
    payload = make_statement()
    payload["monthly_rows"][0]["net_pnl"] = -500.0
    payload["monthly_rows"][1]["net_pnl"] = -700.0
    payload["grand_totals_row"]["net_pnl"] = -1200.0
    return payload


def test_profit_year_adds_fees_back_and_taxes_net_pnl(make_statement):
    result = _derive(make_statement())

    assert result.status == TaxDerivationStatus.GENERATED
    annual = result.tax_data["annual_summary"]
    assert annual["net_taxable_pnl"] == 3500.0
    assert math.isclose(annual["total_deductible_fees"], 219.5)
    assert math.isclose(annual["gross_trading_pnl"], 3719.5)
    assert annual["computed_tax_liability"] == 875.0
    assert annual["effective_tax_rate"] == 23.52
    assert annual["carry_forward_loss"] == 0.0
    assert annual["is_profit_year"] is True
    assert result.tax_data["fee_schedule"]["commissions"] == 150.0
    assert result.tax_data["fee_schedule"]["fee_to_gross_pnl_ratio"] == 5.9


def test_loss_year_owes_nothing_and_records_carry_forward(make_statement):
    result = _derive(_loss_statement(make_statement))

    annual = result.tax_data["annual_summary"]
    assert annual["computed_tax_liability"] == 0.0
    assert annual["carry_forward_loss"] == 1200.0
    assert annual["taxable_gain_after_offset"] == 0.0
    assert result.tax_data["loss_analysis"]["net_position"] == "LOSS"
    assert result.tax_data["loss_analysis"]["loss_months"] == 2
    titles = [step["title"] for step in result.tax_data["explanations"]]
    assert titles[4] == "Loss Year -- No Tax Liability"


def test_explanations_walk_through_seven_steps(make_statement):
    steps = _derive(make_statement()).tax_data["explanations"]

    assert [step["step"] for step in steps] == [1, 2, 3, 4, 5, 6, 7]
    assert steps[5]["title"] == "Tax Liability Calculation"
    assert "$875.00" in steps[5]["formula"]
    assert "legal_basis" in steps[5]


def test_monthly_breakdown_accumulates_pnl_and_fees(make_statement):
    months = _derive(make_statement()).tax_data["monthly_breakdown"]

    assert [item["month"] for item in months] == ["January", "February"]
    assert months[0]["fees"] == 116.25
    assert months[0]["gross_pnl"] == 2116.25
    assert months[1]["cumulative_pnl"] == 3500.0
    assert months[1]["cumulative_fees"] == 219.5


def test_summary_preview_shows_reserve_and_badges(make_statement):
    preview = _derive(make_statement()).summary_preview

    assert preview == {
        "reported_annual_pnl": 3500.0,
        "annual_fee_total": 219.5,
        "annual_net_cash": 3430.0,
        "estimated_tax_reserve": 875.0,
        "tax_rate_display": "25%",
        "status_badges": list(STATUS_BADGES),
    }


def test_identical_statements_derive_identical_tax_data(make_statement):
    assert _derive(make_statement()).tax_data == _derive(make_statement()).tax_data


def test_reconciliation_mismatch_adds_warning_note(make_statement):
    payload = make_statement()
    payload["grand_totals_row"]["net_cash"] = 3500.0

    notes = _derive(payload).tax_data["compliance_notes"]

    assert notes[-1] == RECONCILIATION_WARNING


def test_gate_blocks_conflicts_and_failed_validation_and_skips_duplicates():
    assert gate(ValidationStatus.VALIDATED, ClassificationState.CONFLICT).status == TaxDerivationStatus.BLOCKED
    assert gate(ValidationStatus.FAILED, ClassificationState.NEW).status == TaxDerivationStatus.BLOCKED
    assert gate(ValidationStatus.VALIDATED, ClassificationState.DUPLICATE).status == TaxDerivationStatus.SKIPPED
    assert gate(ValidationStatus.REVIEW_REQUIRED, ClassificationState.REVISION) is None


def test_failed_validation_produces_no_tax_data(make_statement):
    payload = make_statement()
    payload["grand_totals_row"]["net_pnl"] = "3500"

    result = _derive(payload)

    assert result.status == TaxDerivationStatus.BLOCKED
    assert result.tax_data is None


def test_other_jurisdictions_use_configured_rate_without_legal_text(make_statement):
    result = _derive(make_statement(), tax_rate=0.2, jurisdiction="Cyprus")

    annual = result.tax_data["annual_summary"]
    assert annual["computed_tax_liability"] == 700.0
    assert annual["tax_rate_display"] == "20%"
    assert result.tax_data["report_metadata"]["applicable_law"] is None
    assert rules_for("israel").applicable_law is not None
