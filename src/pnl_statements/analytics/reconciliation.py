from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pnl_statements.db.models import ReconciliationStatus
from pnl_statements.ingest.submission import Submission
from pnl_statements.ingest.validators import parse_float
from pnl_statements.utils.money import round_money

DEFAULT_TOLERANCE = 0.02
# Float noise only; a 0.024 difference still exceeds a 0.02 tolerance.
FLOAT_EPSILON = 1e-9
RECONCILE_FIELDS = ("net_pnl", "net_cash")


def check_name(field_name: str) -> str:
    return f"monthly_{field_name}_sum_matches_grand_total"


@dataclass(frozen=True)
class ReconciliationResult:
    status: ReconciliationStatus
    checks: dict[str, bool] = field(default_factory=dict)
    details: tuple[dict[str, Any], ...] = ()
    reason: str | None = None

    @classmethod
    def skipped(cls, reason: str) -> "ReconciliationResult":
        return cls(status=ReconciliationStatus.SKIPPED, reason=reason)

    @property
    def mismatched_fields(self) -> list[str]:
        if self.status is not ReconciliationStatus.MISMATCH:
            return []
        return [item["field"] for item in self.details if "difference" in item]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status.value,
            "checks": dict(self.checks),
            "details": [dict(item) for item in self.details],
        }
        if self.reason:
            data["reason"] = self.reason
        return data


def _partial(detail_field: str, message: str) -> ReconciliationResult:
    return ReconciliationResult(
        status=ReconciliationStatus.PARTIAL,
        checks={check_name(name): False for name in RECONCILE_FIELDS},
        details=({"field": detail_field, "message": message},),
    )


def reconcile(submission: Submission, tolerance: float = DEFAULT_TOLERANCE) -> ReconciliationResult:
    """Compare the sum of monthly rows with the grand-totals row per tracked field.

    The tolerance only absorbs float/rounding noise; it is not a business
    allowance.
    """
    rows = submission.monthly_rows
    if not isinstance(rows, list) or not rows:
        return _partial("monthly_rows", "No monthly rows to reconcile")
    if not isinstance(submission.grand_totals_row, dict):
        return _partial("grand_totals_row", "Grand totals row missing; cannot reconcile")

    grand_totals = submission.grand_totals_row
    month_rows = submission.rows
    checks: dict[str, bool] = {}
    details: list[dict[str, Any]] = []
    has_mismatch = False
    has_unparsed = len(month_rows) != len(rows)

    for name in RECONCILE_FIELDS:
        raw_values = [row.get(name) for row in month_rows]
        monthly_sum = 0.0
        for value in raw_values:
            parsed = parse_float(value)
            if parsed is None:
                has_unparsed = True
                continue
            monthly_sum += parsed

        grand_value = parse_float(grand_totals.get(name))
        if grand_value is None:
            has_unparsed = True
            checks[check_name(name)] = False
            details.append(
                {
                    "field": name,
                    "message": f"Grand total {name} is not a valid number",
                    "monthly_sum": round_money(monthly_sum),
                    "grand_total": grand_totals.get(name),
                }
            )
            continue

        difference = abs(monthly_sum - grand_value)
        matches = difference <= tolerance + FLOAT_EPSILON
        checks[check_name(name)] = matches
        if not matches:
            has_mismatch = True
            details.append(
                {
                    "field": name,
                    "message": (
                        f"Sum of monthly {name} ({monthly_sum:.2f}) does not match grand total "
                        f"({grand_value:.2f}). Difference: {difference:.2f}"
                    ),
                    "monthly_sum": round_money(monthly_sum),
                    "grand_total": grand_value,
                    "difference": round_money(difference),
                }
            )

    if has_mismatch:
        status = ReconciliationStatus.MISMATCH
    elif has_unparsed:
        status = ReconciliationStatus.PARTIAL
    else:
        status = ReconciliationStatus.RECONCILED
    return ReconciliationResult(status=status, checks=checks, details=tuple(details))
