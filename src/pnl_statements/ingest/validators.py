from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

import pandas as pd

from pnl_statements.db.models import ExceptionType, Severity, ValidationStatus
from pnl_statements.ingest.submission import (
    MONTHLY_NUMERIC_FIELDS,
    REQUIRED_HEADER_FIELDS,
    REQUIRED_SUMMARY_FIELDS,
    Submission,
)

DOTTED_DATE_RE = re.compile(r"^\s*(\d{1,2})\.(\d{1,2})\.(\d{4})\s*$")
ISO_DATE_RE = re.compile(r"^\s*(\d{4})-(\d{2})-(\d{2})")

CHECK_NAMES = (
    "required_fields_present",
    "numeric_parse",
    "header_period_present",
    "table_headers_match_template",
)


def is_numeric(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_float(value: Any) -> float | None:
    """Lenient numeric read: numbers pass, ``"$1,250.50"`` style text is parsed."""
    if is_numeric(value):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip().replace("$", "").replace(",", "")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def period_year(value: Any) -> str | None:
    if _is_blank(value):
        return None
    text = str(value)
    match = DOTTED_DATE_RE.match(text)
    if match:
        return match.group(3)
    match = ISO_DATE_RE.match(text)
    if match:
        return match.group(1)
    parsed = pd.to_datetime(text, errors="coerce", dayfirst=True)
    if pd.notna(parsed):
        return str(parsed.year)
    return None


@dataclass(frozen=True)
class ValidationIssue:
    exception_type: ExceptionType
    detail: str
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> Severity:
        return self.exception_type.default_severity

    def to_dict(self) -> dict[str, Any]:
        return {**self.context, "type": self.exception_type.value, "detail": self.detail}


@dataclass(frozen=True)
class ValidationResult:
    status: ValidationStatus
    checks: dict[str, bool]
    warnings: tuple[str, ...] = ()
    issues: tuple[ValidationIssue, ...] = ()
    reason: str | None = None

    @classmethod
    def skipped(cls, reason: str) -> "ValidationResult":
        return cls(status=ValidationStatus.SKIPPED, checks={}, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status.value,
            "checks": dict(self.checks),
            "warnings": list(self.warnings),
            "exceptions": [issue.to_dict() for issue in self.issues],
        }
        if self.reason:
            data["reason"] = self.reason
        return data


class _Collector:
    def __init__(self) -> None:
        self.checks = {name: True for name in CHECK_NAMES}
        self.warnings: list[str] = []
        self.issues: list[ValidationIssue] = []

    def fail(self, check: str | None, exception_type: ExceptionType, detail: str, **context: Any) -> None:
        if check:
            self.checks[check] = False
        self.issues.append(ValidationIssue(exception_type, detail, context))

    def warn(self, message: str) -> None:
        self.warnings.append(message)


def _check_header(header: Any, out: _Collector) -> None:
    if not isinstance(header, Mapping):
        out.fail("required_fields_present", ExceptionType.MISSING_REPORT_HEADER, "report_header is missing")
        return
    for name in REQUIRED_HEADER_FIELDS:
        if _is_blank(header.get(name)):
            out.fail(
                "required_fields_present",
                ExceptionType.MISSING_HEADER_FIELD,
                f"Missing required header field: {name}",
                field=name,
            )


def _check_summary(summary: Any, out: _Collector) -> None:
    if not isinstance(summary, Mapping):
        out.fail("required_fields_present", ExceptionType.MISSING_SUMMARY_TOTALS, "summary_totals is missing")
        return
    for name in REQUIRED_SUMMARY_FIELDS:
        value = summary.get(name)
        if value is None:
            out.fail(
                "required_fields_present",
                ExceptionType.MISSING_SUMMARY_FIELD,
                f"Missing required summary field: {name}",
                field=name,
            )
        elif not is_numeric(value):
            out.fail(
                "numeric_parse",
                ExceptionType.NUMERIC_PARSE_ERROR_SUMMARY,
                f"Non-numeric summary field: {name} = {value!r}",
                field=name,
                value=value,
            )


def _check_monthly_rows(rows: Any, header: Any, out: _Collector) -> None:
    if not isinstance(rows, list):
        out.fail(
            "table_headers_match_template",
            ExceptionType.MISSING_MONTHLY_ROWS,
            "monthly_rows is missing or not a list",
        )
        return

    year = header.get("year") if isinstance(header, Mapping) else None
    for index, row in enumerate(rows):
        if not isinstance(row, Mapping):
            out.fail(
                "table_headers_match_template",
                ExceptionType.MISSING_MONTHLY_ROWS,
                f"monthly_rows[{index}] is not a row object",
                index=index,
            )
            continue
        month = row.get("month")
        for name in MONTHLY_NUMERIC_FIELDS:
            value = row.get(name)
            if value is not None and not is_numeric(value):
                out.fail(
                    "numeric_parse",
                    ExceptionType.numeric_parse_error(name),
                    f"Non-numeric value in monthly row {month}: {name} = {value!r}",
                    month=month,
                    field=name,
                    value=value,
                )

        trade_date = row.get("trade_date")
        if year is not None and trade_date and not str(trade_date).startswith(str(year)):
            out.checks["header_period_present"] = False
            out.warn(f'Monthly trade_date "{trade_date}" year does not match header year {year}')
            out.fail(
                None,
                ExceptionType.HEADER_YEAR_MONTH_MISMATCH,
                f'trade_date "{trade_date}" inconsistent with header year {year}',
                month=month,
                trade_date=trade_date,
            )


def _check_grand_totals(grand_totals: Any, out: _Collector) -> None:
    if not isinstance(grand_totals, Mapping):
        out.fail(
            "table_headers_match_template",
            ExceptionType.MISSING_GRAND_TOTALS,
            "grand_totals_row is missing",
        )
        return
    for name in MONTHLY_NUMERIC_FIELDS:
        value = grand_totals.get(name)
        if value is not None and not is_numeric(value):
            out.fail(
                "numeric_parse",
                ExceptionType.numeric_parse_error(name, grand_total=True),
                f"Non-numeric grand total field: {name} = {value!r}",
                field=name,
                value=value,
            )


def _check_period(header: Any, out: _Collector) -> None:
    if not isinstance(header, Mapping) or _is_blank(header.get("year")):
        return
    expected = str(header.get("year")).strip()
    for name, label in (("report_period_start", "start"), ("report_period_end", "end")):
        found = period_year(header.get(name))
        if found is None or found == expected:
            continue
        out.warn(f"Period {label} year {found} does not match header year {expected}")
        out.fail(
            None,
            ExceptionType.PERIOD_YEAR_MISMATCH,
            f"{name} year {found} != header year {expected}",
            field=name,
            period_year=found,
            header_year=expected,
        )


def _status(out: _Collector, low_confidence: bool) -> ValidationStatus:
    types = [issue.exception_type for issue in out.issues]
    if any(item.is_numeric_parse_error or item.is_missing for item in types):
        return ValidationStatus.FAILED
    if any(item.is_consistency for item in types):
        return ValidationStatus.REVIEW_REQUIRED
    if out.warnings or low_confidence:
        return ValidationStatus.REVIEW_REQUIRED
    return ValidationStatus.VALIDATED


def validate(submission: Submission) -> ValidationResult:
    """Structural and numeric checks. Pure: issues are returned, never raised."""
    out = _Collector()
    header = submission.report_header

    _check_header(header, out)
    _check_summary(submission.summary_totals, out)
    _check_monthly_rows(submission.monthly_rows, header, out)
    _check_grand_totals(submission.grand_totals_row, out)
    _check_period(header, out)

    low_confidence = submission.is_low_confidence
    if low_confidence:
        out.warn("Low confidence structured payload; manual review recommended")
        out.fail(None, ExceptionType.LOW_CONFIDENCE_PAYLOAD, "Payload flagged as low confidence")

    return ValidationResult(
        status=_status(out, low_confidence),
        checks=out.checks,
        warnings=tuple(out.warnings),
        issues=tuple(out.issues),
    )
