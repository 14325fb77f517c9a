"""Natural key and content fingerprint for a submission.

The natural key groups every version of one logical statement. The
fingerprint detects a resubmission of the same economic content; the
originating file name and the ``metadata`` section are not part of it.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, ClassVar, Mapping

from pnl_statements.config.settings import get_settings
from pnl_statements.ingest.submission import INCIDENTAL_HEADER_FIELDS, Submission


@dataclass(frozen=True)
class NaturalKey:
    SEPARATOR: ClassVar[str] = "|"

    account_id: Any
    year: Any
    report_period_start: Any
    report_period_end: Any
    source_report_type: str

    def as_string(self) -> str:
        parts = (
            self.account_id,
            self.year,
            self.report_period_start,
            self.report_period_end,
            self.source_report_type,
        )
        return self.SEPARATOR.join("" if part is None else str(part) for part in parts)

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.as_string().encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "year": self.year,
            "report_period_start": self.report_period_start,
            "report_period_end": self.report_period_end,
            "source_report_type": self.source_report_type,
        }


def natural_key(header: Mapping[str, Any], source_report_type: str | None = None) -> NaturalKey:
    report_type = (
        header.get("source_report_type")
        or source_report_type
        or get_settings().source_report_type
    )
    return NaturalKey(
        account_id=header.get("account_id"),
        year=header.get("year"),
        report_period_start=header.get("report_period_start"),
        report_period_end=header.get("report_period_end"),
        source_report_type=str(report_type),
    )


def _canonical(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _canonical(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        # 3500 and 3500.0 are the same amount.
        return float(value)
    return value


def _economic_content(submission: Submission) -> dict[str, Any]:
    header = submission.report_header
    if isinstance(header, Mapping):
        header = {
            key: value for key, value in header.items() if key not in INCIDENTAL_HEADER_FIELDS
        }
    return {
        "report_header": header,
        "summary_totals": submission.summary_totals,
        "monthly_rows": submission.monthly_rows,
        "grand_totals_row": submission.grand_totals_row,
    }


def canonical_json(submission: Submission) -> str:
    return json.dumps(
        _canonical(_economic_content(submission)),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def fingerprint(submission: Submission) -> str:
    return hashlib.sha256(canonical_json(submission).encode("utf-8")).hexdigest()


def short_fingerprint(value: str, length: int = 16) -> str:
    """Display form only; comparisons always use the full digest."""
    return value[:length]
