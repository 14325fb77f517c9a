from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Mapping

from pnl_statements.errors import SubmissionError

REQUIRED_HEADER_FIELDS = (
    "account_id",
    "year",
    "client_display_name",
    "username",
    "report_period_start",
    "report_period_end",
)

REQUIRED_SUMMARY_FIELDS = (
    "opening_balance",
    "total_deposit_withdrawal",
    "total_credit_debit",
    "profit_loss",
    "closing_balance_equity",
)

FEE_FIELDS = (
    "total_comm",
    "sec_fee",
    "nasd_fee",
    "ecn_take",
    "ecn_add",
    "routing_fee",
    "nscc_fee",
)

MONTHLY_NUMERIC_FIELDS = FEE_FIELDS + ("net_pnl", "net_cash")

# Header fields that do not change the economic content of a statement.
INCIDENTAL_HEADER_FIELDS = frozenset({"source_file_name"})

_SECTIONS = (
    "report_header",
    "summary_totals",
    "monthly_rows",
    "grand_totals_row",
    "metadata",
    "template_version",
)


@dataclass(frozen=True)
class Submission:
    """One broker P&L statement as received.

    Sections keep whatever shape they arrived in (``monthly_rows`` may not be a
    list); the validator is the place that judges them.
    """

    report_header: Any = None
    summary_totals: Any = None
    monthly_rows: Any = None
    grand_totals_row: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)
    template_version: Any = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Submission":
        if not isinstance(payload, Mapping):
            raise SubmissionError(f"Submission must be a mapping, got {type(payload).__name__}")
        data = deepcopy(dict(payload))
        metadata = data.get("metadata")
        return cls(
            report_header=data.get("report_header"),
            summary_totals=data.get("summary_totals"),
            monthly_rows=data.get("monthly_rows"),
            grand_totals_row=data.get("grand_totals_row"),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
            template_version=data.get("template_version"),
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for name in _SECTIONS:
            value = getattr(self, name)
            if value is None or (name == "metadata" and not value):
                continue
            payload[name] = deepcopy(value)
        return payload

    @property
    def header(self) -> dict[str, Any]:
        return dict(self.report_header) if isinstance(self.report_header, Mapping) else {}

    @property
    def account_id(self) -> str | None:
        value = self.header.get("account_id")
        return str(value) if value not in (None, "") else None

    @property
    def tax_year(self) -> Any:
        return self.header.get("year")

    @property
    def source_file_name(self) -> str | None:
        return self.header.get("source_file_name")

    @property
    def rows(self) -> list[dict[str, Any]]:
        if not isinstance(self.monthly_rows, list):
            return []
        return [row for row in self.monthly_rows if isinstance(row, Mapping)]

    @property
    def grand_totals(self) -> dict[str, Any]:
        return dict(self.grand_totals_row) if isinstance(self.grand_totals_row, Mapping) else {}

    @property
    def summary(self) -> dict[str, Any]:
        return dict(self.summary_totals) if isinstance(self.summary_totals, Mapping) else {}

    @property
    def is_low_confidence(self) -> bool:
        return (
            self.metadata.get("confidence") == "low"
            or self.metadata.get("low_confidence") is True
        )

    def require_identity(self) -> str:
        """Return the account id, or raise when the statement cannot be attributed."""
        if not isinstance(self.report_header, Mapping):
            raise SubmissionError("report_header is missing; submission cannot be identified")
        account_id = self.account_id
        if account_id is None:
            raise SubmissionError("report_header.account_id is missing; submission cannot be identified")
        return account_id
