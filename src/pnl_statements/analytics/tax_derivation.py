"""Jurisdiction tax computation derived from one annual broker statement.

Conventions:
- The broker's reported net P&L already has commissions and direct trading
  fees deducted, so it is the taxable figure.
- Gross P&L adds every itemized fee back, including ECN add fees.
- A loss year owes nothing and records the loss as carry-forward for this
  period only; no carry-forward from earlier periods is applied.
- ``tax_data`` is a pure function of its inputs (no wall-clock values), so
  identical statements produce identical output.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping

from pnl_statements.analytics.reconciliation import ReconciliationResult
from pnl_statements.config.settings import DEFAULT_SOURCE_REPORT_TYPE
from pnl_statements.db.models import (
    ClassificationState,
    ReconciliationStatus,
    TaxDerivationStatus,
    ValidationStatus,
)
from pnl_statements.ingest.submission import Submission
from pnl_statements.ingest.validators import ValidationResult, is_numeric
from pnl_statements.utils.money import format_usd, percent_of, round_money, sum_money

DEFAULT_TAX_RATE = 0.25
STATUS_BADGES = ("TAX-CLEANED", "NON-OFFICIAL", "BROKER_PNL_SOURCE")

# grand-totals field -> fee schedule label
FEE_COMPONENTS = (
    ("total_comm", "commissions", "Trading Commissions"),
    ("sec_fee", "sec_fee", "SEC Fees"),
    ("nasd_fee", "nasd_fee", "NASD/FINRA Fees"),
    ("ecn_take", "ecn_take", "ECN Take Fees"),
    ("ecn_add", "ecn_add", "ECN Add Fees"),
    ("routing_fee", "routing_fee", "Routing Fees"),
    ("nscc_fee", "nscc_fee", "NSCC Fees"),
)

RECONCILIATION_WARNING = (
    "WARNING: This report has reconciliation mismatches. Review the source data "
    "before relying on these calculations."
)


@dataclass(frozen=True)
class TaxRules:
    jurisdiction: str
    rate: float
    applicable_law: str | None = None
    rate_basis: str | None = None
    expense_basis: str | None = None
    loss_basis: str | None = None
    official_form_note: str | None = None
    currency_note: str | None = None
    profit_action: str = "Recommended action: Ensure this tax liability is accounted for in your annual filing."
    loss_action: str = (
        "Recommended action: Record this carry-forward loss for future tax years. "
        "Ensure it is reported in your annual filing."
    )


ISRAEL = TaxRules(
    jurisdiction="Israel",
    rate=DEFAULT_TAX_RATE,
    applicable_law="Israeli Income Tax Ordinance (Pkudat Mas Hachnasa)",
    rate_basis="Section 91(b)(1) -- 25% on real capital gains from securities",
    expense_basis=(
        "Section 17 of the Israeli Income Tax Ordinance -- expenses incurred in the "
        "production of income are deductible."
    ),
    loss_basis=(
        "Section 92 of the Israeli Income Tax Ordinance -- capital losses may be carried "
        "forward indefinitely and offset against future capital gains. Foreign-source "
        "losses must first be offset against foreign-source gains."
    ),
    official_form_note="This report is NOT an official Israel Tax Authority Form 867.",
    currency_note=(
        "For ITA filing purposes, USD amounts should be converted to NIS at the "
        "representative exchange rate on the date of each transaction, or at the average "
        "annual rate as applicable."
    ),
    profit_action=(
        "Recommended action: Ensure this tax liability is accounted for in your annual "
        "ITA filing (Form 1301)."
    ),
    loss_action=(
        "Recommended action: Record this carry-forward loss for future tax years. Ensure "
        "it is reported in your annual ITA filing."
    ),
)


def rules_for(jurisdiction: str | None = None, rate: float | None = None) -> TaxRules:
    name = (jurisdiction or ISRAEL.jurisdiction).strip()
    if name.casefold() == ISRAEL.jurisdiction.casefold():
        base = ISRAEL
    else:
        base = TaxRules(jurisdiction=name, rate=DEFAULT_TAX_RATE)
    return replace(base, rate=rate) if rate is not None else base


@dataclass(frozen=True)
class TaxDerivation:
    status: TaxDerivationStatus
    tax_data: dict[str, Any] | None = None
    reason: str | None = None
    summary_preview: dict[str, Any] | None = None

    @property
    def generated(self) -> bool:
        return self.status is TaxDerivationStatus.GENERATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "summary_preview": dict(self.summary_preview) if self.summary_preview else None,
        }


def _num(value: Any) -> float:
    return float(value) if is_numeric(value) else 0.0


def _rate_display(rate: float) -> str:
    return f"{round_money(rate * 100):g}%"


def gate(
    validation_status: ValidationStatus, state: ClassificationState
) -> TaxDerivation | None:
    """Return the BLOCKED/SKIPPED outcome, or ``None`` when derivation may run."""
    if state is ClassificationState.CONFLICT:
        return TaxDerivation(
            TaxDerivationStatus.BLOCKED,
            reason="Report state is CONFLICT -- cannot generate tax-cleaned outputs",
        )
    if validation_status is ValidationStatus.FAILED:
        return TaxDerivation(
            TaxDerivationStatus.BLOCKED,
            reason="Validation failed -- cannot generate tax-cleaned outputs",
        )
    if state is ClassificationState.DUPLICATE:
        return TaxDerivation(
            TaxDerivationStatus.SKIPPED,
            reason="Duplicate report -- tax-cleaned already exists for this version",
        )
    return None


def _fee_breakdown(row: Mapping[str, Any]) -> dict[str, float]:
    return {label: round_money(_num(row.get(source))) for source, label, _ in FEE_COMPONENTS}


def _monthly_breakdown(rows: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    breakdown: list[dict[str, Any]] = []
    cumulative_pnl = 0.0
    cumulative_fees = 0.0
    gain_months = 0
    loss_months = 0
    best: dict[str, Any] | None = None
    worst: dict[str, Any] | None = None

    for row in rows:
        fees = _fee_breakdown(row)
        month_fees = sum_money(fees.values())
        month_net = round_money(_num(row.get("net_pnl")))
        cumulative_pnl = sum_money([cumulative_pnl, month_net])
        cumulative_fees = sum_money([cumulative_fees, month_fees])

        if month_net > 0:
            gain_months += 1
        elif month_net < 0:
            loss_months += 1

        marker = {"month": row.get("month"), "trade_date": row.get("trade_date"), "net_pnl": month_net}
        if best is None or month_net > best["net_pnl"]:
            best = marker
        if worst is None or month_net < worst["net_pnl"]:
            worst = marker

        breakdown.append(
            {
                "month": row.get("month"),
                "trade_date": row.get("trade_date"),
                "gross_pnl": sum_money([month_net, month_fees]),
                "fees": month_fees,
                "fee_breakdown": fees,
                "net_pnl": month_net,
                "net_cash": round_money(_num(row.get("net_cash"))),
                "cumulative_pnl": cumulative_pnl,
                "cumulative_fees": cumulative_fees,
                "is_profit": month_net > 0,
                "is_loss": month_net < 0,
            }
        )

    stats = {
        "gain_months": gain_months,
        "loss_months": loss_months,
        "zero_months": len(rows) - gain_months - loss_months,
        "best_month": best,
        "worst_month": worst,
    }
    return breakdown, stats


def _explanations(
    header: Mapping[str, Any],
    rules: TaxRules,
    *,
    fees: dict[str, float],
    total_fees: float,
    net_pnl: float,
    gross_pnl: float,
    taxable_gain: float,
    loss_offset: float,
    carry_forward: float,
    liability: float,
    effective_rate: float,
    fee_ratio: float | None,
) -> list[dict[str, Any]]:
    year = header.get("year")
    rate_text = _rate_display(rules.rate)
    steps: list[dict[str, Any]] = [
        {
            "step": 1,
            "title": "Source Data",
            "text": (
                f"This report is based on the broker P&L report for account "
                f"{header.get('account_id')} ({header.get('client_display_name')}) for tax year "
                f"{year}, covering the period {header.get('report_period_start')} to "
                f"{header.get('report_period_end')}."
            ),
        },
        {
            "step": 2,
            "title": "Gross Trading P&L",
            "text": (
                f"Your gross trading profit/loss before any fee deductions was "
                f"{format_usd(gross_pnl)}. This is calculated by adding back all deductible "
                f"fees to your reported net P&L."
            ),
            "formula": (
                f"Gross P&L = Net P&L ({format_usd(net_pnl)}) + Total Fees "
                f"({format_usd(total_fees)}) = {format_usd(gross_pnl)}"
            ),
        },
    ]

    expenses: dict[str, Any] = {
        "step": 3,
        "title": "Deductible Trading Expenses",
        "text": (
            f"Trading expenses incurred in the production of capital gains are deductible. "
            f"Your total deductible expenses are {format_usd(total_fees)}, itemized as follows:"
        ),
        "items": [
            f"{title}: {format_usd(fees[label])}"
            for _, label, title in FEE_COMPONENTS
            if fees[label] > 0
        ],
    }
    if rules.expense_basis:
        expenses["legal_basis"] = rules.expense_basis
    steps.append(expenses)

    steps.append(
        {
            "step": 4,
            "title": "Net Taxable P&L",
            "text": (
                f"Your net taxable P&L after fee deductions is {format_usd(net_pnl)}. The "
                f"broker's reported Net P&L already includes trading commissions and direct "
                f"trading fees, so these fees are already deducted from the reported figure."
            ),
            "formula": f"Net Taxable P&L = Reported Net P&L = {format_usd(net_pnl)}",
        }
    )

    if net_pnl <= 0:
        loss_step: dict[str, Any] = {
            "step": 5,
            "title": "Loss Year -- No Tax Liability",
            "text": (
                f"Your net trading result for {year} is a loss of {format_usd(abs(net_pnl))}. "
                f"Capital losses can be carried forward to offset future capital gains. This "
                f"loss of {format_usd(carry_forward)} is recorded for potential carry-forward."
            ),
        }
        if rules.loss_basis:
            loss_step["legal_basis"] = rules.loss_basis
        steps.append(loss_step)
        steps.append(
            {
                "step": 6,
                "title": "Tax Liability",
                "text": f"No capital gains tax is due for {year}. Your computed tax liability is {format_usd(0)}.",
            }
        )
    else:
        if loss_offset > 0:
            offset_text = (
                f"A prior carry-forward loss of {format_usd(loss_offset)} has been applied to "
                f"reduce your taxable gain."
            )
        else:
            offset_text = "No prior carry-forward losses are available to offset against this year's gain."
        steps.append(
            {
                "step": 5,
                "title": "Loss Offset",
                "text": offset_text,
                "formula": (
                    f"Taxable Gain After Offset = {format_usd(net_pnl)} - {format_usd(loss_offset)} "
                    f"= {format_usd(taxable_gain)}"
                ),
            }
        )
        liability_step: dict[str, Any] = {
            "step": 6,
            "title": "Tax Liability Calculation",
            "text": (
                f"Capital gains from securities are taxed at a flat rate of {rate_text} in "
                f"{rules.jurisdiction}. Your computed tax liability on a taxable gain of "
                f"{format_usd(taxable_gain)} is {format_usd(liability)}."
            ),
            "formula": (
                f"Tax Liability = Taxable Gain ({format_usd(taxable_gain)}) x {rate_text} "
                f"= {format_usd(liability)}"
            ),
        }
        if rules.rate_basis:
            liability_step["legal_basis"] = rules.rate_basis
        steps.append(liability_step)

    if net_pnl > 0:
        summary_text = (
            f"After accounting for {format_usd(total_fees)} in deductible trading expenses, "
            f"your effective tax rate on gross trading income is {effective_rate:g}%. The "
            f"fee-to-P&L ratio shows that {fee_ratio or 0:g}% of your gross trading income was "
            f"consumed by trading costs."
        )
    else:
        summary_text = (
            f"This was a loss year with no tax liability. Your total trading expenses were "
            f"{format_usd(total_fees)}. The loss of {format_usd(carry_forward)} can be carried "
            f"forward to offset future gains."
        )
    steps.append({"step": 7, "title": "Summary", "text": summary_text})
    return steps


def _compliance_notes(rules: TaxRules, profit_year: bool, reconciliation_status: ReconciliationStatus) -> list[str]:
    notes = ["This is a derived tax calculation report based on broker P&L data."]
    if rules.official_form_note:
        notes.append(rules.official_form_note)
    notes.append("All amounts are in USD as reported by the broker.")
    if rules.currency_note:
        notes.append(rules.currency_note)
    notes.extend(
        [
            "This report covers trading P&L only. Dividends, interest, and other income types are not included.",
            "Individual tax circumstances may vary. Consult a licensed tax advisor before filing.",
            rules.profit_action if profit_year else rules.loss_action,
        ]
    )
    if reconciliation_status is ReconciliationStatus.MISMATCH:
        notes.append(RECONCILIATION_WARNING)
    return notes


def derive(
    submission: Submission,
    validation: ValidationResult,
    reconciliation: ReconciliationResult,
    state: ClassificationState,
    *,
    tax_rate: float | None = None,
    jurisdiction: str | None = None,
    source_report_type: str | None = None,
) -> TaxDerivation:
    blocked = gate(validation.status, state)
    if blocked is not None:
        return blocked

    rules = rules_for(jurisdiction, tax_rate)
    header = submission.header
    grand_totals = submission.grand_totals
    rows = submission.rows
    summary = submission.summary

    fees = _fee_breakdown(grand_totals)
    total_fees = sum_money(fees.values())
    net_pnl = round_money(_num(grand_totals.get("net_pnl")))
    gross_pnl = sum_money([net_pnl, total_fees])

    loss_offset = 0.0
    if net_pnl > 0:
        taxable_gain = net_pnl
        carry_forward = 0.0
    else:
        taxable_gain = 0.0
        carry_forward = round_money(abs(net_pnl))

    liability = round_money(taxable_gain * rules.rate)
    effective_rate = percent_of(liability, gross_pnl) or 0.0
    fee_ratio = percent_of(total_fees, gross_pnl)

    monthly, month_stats = _monthly_breakdown(rows)
    if net_pnl > 0:
        position = "PROFIT"
    elif net_pnl < 0:
        position = "LOSS"
    else:
        position = "BREAKEVEN"

    tax_data = {
        "client_summary": {
            "account_id": header.get("account_id"),
            "client_name": header.get("client_display_name"),
            "username": header.get("username"),
            "tax_year": header.get("year"),
            "report_period": f"{header.get('report_period_start')} -- {header.get('report_period_end')}",
            "source_file": header.get("source_file_name"),
            "active_months": len(rows),
        },
        "annual_summary": {
            "gross_trading_pnl": gross_pnl,
            "total_deductible_fees": total_fees,
            "net_taxable_pnl": net_pnl,
            "loss_offset_applied": loss_offset,
            "taxable_gain_after_offset": taxable_gain,
            "tax_rate": rules.rate,
            "tax_rate_display": _rate_display(rules.rate),
            "computed_tax_liability": liability,
            "effective_tax_rate": effective_rate,
            "is_profit_year": net_pnl > 0,
            "carry_forward_loss": carry_forward,
        },
        "monthly_breakdown": monthly,
        "fee_schedule": {**fees, "total": total_fees, "fee_to_gross_pnl_ratio": fee_ratio},
        "loss_analysis": {
            **month_stats,
            "net_position": position,
            "carry_forward_amount": carry_forward,
        },
        "account_summary": {
            name: round_money(_num(summary.get(name)))
            for name in (
                "opening_balance",
                "total_deposit_withdrawal",
                "total_credit_debit",
                "profit_loss",
                "closing_balance_equity",
            )
        },
        "explanations": _explanations(
            header,
            rules,
            fees=fees,
            total_fees=total_fees,
            net_pnl=net_pnl,
            gross_pnl=gross_pnl,
            taxable_gain=taxable_gain,
            loss_offset=loss_offset,
            carry_forward=carry_forward,
            liability=liability,
            effective_rate=effective_rate,
            fee_ratio=fee_ratio,
        ),
        "compliance_notes": _compliance_notes(rules, net_pnl > 0, reconciliation.status),
        "report_metadata": {
            "source_report_type": header.get("source_report_type")
            or source_report_type
            or DEFAULT_SOURCE_REPORT_TYPE,
            "template_version": submission.template_version,
            "tax_jurisdiction": rules.jurisdiction,
            "applicable_law": rules.applicable_law,
            "tax_rate_basis": rules.rate_basis,
            "status_badges": list(STATUS_BADGES),
            "reconciliation_status": reconciliation.status.value,
            "validation_status": validation.status.value,
        },
    }

    preview = {
        "reported_annual_pnl": net_pnl,
        "annual_fee_total": total_fees,
        "annual_net_cash": round_money(_num(grand_totals.get("net_cash"))),
        "estimated_tax_reserve": liability,
        "tax_rate_display": _rate_display(rules.rate),
        "status_badges": list(STATUS_BADGES),
    }
    return TaxDerivation(TaxDerivationStatus.GENERATED, tax_data=tax_data, summary_preview=preview)
