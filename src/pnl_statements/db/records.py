"""Plain records exchanged between the pipeline and a store backend.

Records are frozen; a change produces a new record via ``dataclasses.replace``.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from pnl_statements.db.models import (
    AuditEventType,
    ClassificationState,
    ClientStatus,
    ExceptionResolution,
    ExceptionStatus,
    ExceptionType,
    Severity,
    TaxReportStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def normalize_year(value: Any) -> int | str:
    """Years arrive as ints or strings; keep ints where the text is all digits."""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, int):
        return value
    text = str(value or "").strip()
    return int(text) if text.isdigit() else text


def format_audit_id(sequence: int) -> str:
    return f"AUD-{sequence:05d}"


def format_exception_id(sequence: int) -> str:
    return f"EXC-{sequence:05d}"


def format_tax_report_id(sequence: int) -> str:
    return f"TR-{sequence:04d}"


def parse_sequence(record_id: str, prefix: str) -> int | None:
    head, _, tail = str(record_id or "").partition("-")
    if head != prefix or not tail.isdigit():
        return None
    return int(tail)


@dataclass(frozen=True)
class DisplayNameChange:
    previous: str | None
    new_value: str | None
    changed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous": self.previous,
            "new_value": self.new_value,
            "changed_at": iso(self.changed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DisplayNameChange":
        return cls(
            previous=data.get("previous"),
            new_value=data.get("new_value"),
            changed_at=datetime.fromisoformat(data["changed_at"]),
        )


@dataclass(frozen=True)
class Client:
    account_id: str
    username: str | None
    display_name: str | None
    created_at: datetime
    updated_at: datetime
    status: ClientStatus = ClientStatus.ACTIVE
    years_on_file: tuple[int | str, ...] = ()
    report_count: int = 0
    display_name_history: tuple[DisplayNameChange, ...] = ()
    linked_usernames: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "username": self.username,
            "client_display_name": self.display_name,
            "status": self.status.value,
            "years_on_file": list(self.years_on_file),
            "report_count": self.report_count,
            "display_name_history": [item.to_dict() for item in self.display_name_history],
            "linked_usernames": list(self.linked_usernames),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


@dataclass(frozen=True)
class ReportVersion:
    """One accepted submission.

    ``is_active``/``archived_at``/``archived_reason`` are never set on the
    stored record; stores fill them in on read from their active-pointer and
    archival indexes.
    """

    version_id: str
    natural_key: str
    natural_key_fields: dict[str, Any]
    account_id: str
    version: int
    state: ClassificationState
    fingerprint: str
    payload: dict[str, Any]
    validation: dict[str, Any]
    reconciliation: dict[str, Any]
    tax_derivation: dict[str, Any]
    stored_at: datetime
    scenario_id: str | None = None
    is_active: bool = False
    archived_at: datetime | None = None
    archived_reason: str | None = None

    def with_status(
        self,
        *,
        is_active: bool,
        archived_at: datetime | None = None,
        archived_reason: str | None = None,
    ) -> "ReportVersion":
        return replace(
            self,
            is_active=is_active,
            archived_at=archived_at,
            archived_reason=archived_reason,
        )

    @property
    def header(self) -> dict[str, Any]:
        return dict(self.payload.get("report_header") or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.version_id,
            "natural_key": dict(self.natural_key_fields),
            "natural_key_hash": self.natural_key,
            "account_id": self.account_id,
            "version": self.version,
            "state": self.state.value,
            "payload_hash": self.fingerprint,
            "is_active": self.is_active,
            "header": self.header,
            "payload": deepcopy(self.payload),
            "validation_result": deepcopy(self.validation),
            "reconciliation_result": deepcopy(self.reconciliation),
            "tax_derivation_result": deepcopy(self.tax_derivation),
            "scenario_id": self.scenario_id,
            "stored_at": iso(self.stored_at),
            "archived_at": iso(self.archived_at),
            "archived_reason": self.archived_reason,
        }


@dataclass(frozen=True)
class AuditEvent:
    event_id: str
    event_type: AuditEventType
    timestamp: datetime
    account_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            **deepcopy(self.payload),
            "id": self.event_id,
            "timestamp": iso(self.timestamp),
            "event_type": self.event_type.value,
            "account_id": self.account_id,
        }


@dataclass(frozen=True)
class ExceptionRecord:
    exception_id: str
    exception_type: ExceptionType
    severity: Severity
    account_id: str
    detail: str
    created_at: datetime
    context: dict[str, Any] = field(default_factory=dict)
    status: ExceptionStatus = ExceptionStatus.OPEN
    resolution: ExceptionResolution | None = None
    resolution_notes: str | None = None
    resolved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.exception_id,
            "type": self.exception_type.value,
            "severity": self.severity.value,
            "account_id": self.account_id,
            "detail": self.detail,
            "payload_context": deepcopy(self.context),
            "status": self.status.value,
            "resolution": self.resolution.value if self.resolution else None,
            "resolution_notes": self.resolution_notes,
            "created_at": iso(self.created_at),
            "resolved_at": iso(self.resolved_at),
        }


@dataclass(frozen=True)
class TaxReport:
    report_id: str
    account_id: str
    year: int | str
    tax_data: dict[str, Any]
    generated_at: datetime
    client_name: str | None = None
    source_files: tuple[str, ...] = ()
    status: TaxReportStatus = TaxReportStatus.DRAFT
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    review_notes: str | None = None
    version: int = 1

    @property
    def computed_tax_liability(self) -> float:
        summary = (self.tax_data or {}).get("annual_summary") or {}
        return float(summary.get("computed_tax_liability") or 0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.report_id,
            "account_id": self.account_id,
            "year": self.year,
            "client_name": self.client_name,
            "status": self.status.value,
            "tax_data": deepcopy(self.tax_data),
            "source_files": list(self.source_files),
            "generated_at": iso(self.generated_at),
            "approved_by": self.approved_by,
            "approved_at": iso(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejected_at": iso(self.rejected_at),
            "review_notes": self.review_notes,
            "version": self.version,
        }
