from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from pnl_statements.db.models import AuditEventType, TaxReportStatus
from pnl_statements.db.records import TaxReport, normalize_year, utcnow
from pnl_statements.db.store import Store
from pnl_statements.errors import UnknownWorkflowActionError
from pnl_statements.services.audit_log import AuditLog
from pnl_statements.utils.logging import get_logger, kv
from pnl_statements.utils.money import sum_money

logger = get_logger(__name__)

DEFAULT_ACTOR = "ops_user"
DEFAULT_FLAG_NOTES = "Flagged for review"


class WorkflowAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    FLAG = "flag"

    @classmethod
    def parse(cls, value: "WorkflowAction | str") -> "WorkflowAction":
        try:
            return cls(str(getattr(value, "value", value)).strip().lower())
        except ValueError as exc:
            raise UnknownWorkflowActionError(str(value)) from exc


def store_tax_report(
    store: Store,
    *,
    account_id: str,
    year: Any,
    tax_data: dict[str, Any],
    client_name: str | None = None,
    source_files: Iterable[str] = (),
    now: datetime | None = None,
) -> TaxReport:
    """Insert or regenerate the report for (account, year).

    Regeneration keeps the id, bumps ``version`` and returns the report to
    DRAFT with approval and rejection metadata cleared.
    """
    existing = store.get_tax_report_for(account_id, year)
    report = TaxReport(
        report_id=existing.report_id if existing else "",
        account_id=account_id,
        year=normalize_year(year),
        tax_data=tax_data,
        generated_at=now or utcnow(),
        client_name=client_name,
        source_files=tuple(name for name in source_files if name),
        status=TaxReportStatus.DRAFT,
        version=existing.version + 1 if existing else 1,
    )
    stored = store.save_tax_report(report)
    logger.info(
        "tax report saved %s",
        kv(id=stored.report_id, account_id=account_id, year=year, version=stored.version),
    )
    return stored


def _record(audit: AuditLog | None, event_type: AuditEventType, report: TaxReport, **payload: Any) -> None:
    if audit is None:
        return
    audit.log_event(
        event_type,
        account_id=report.account_id,
        tax_report_id=report.report_id,
        year=report.year,
        version=report.version,
        **payload,
    )


def approve_tax_report(
    store: Store,
    report_id: str,
    *,
    approved_by: str | None = None,
    notes: str | None = None,
    audit: AuditLog | None = None,
) -> TaxReport | None:
    with store.transaction():
        report = store.get_tax_report(report_id)
        if report is None:
            return None
        updated = store.save_tax_report(
            replace(
                report,
                status=TaxReportStatus.APPROVED,
                approved_by=approved_by or DEFAULT_ACTOR,
                approved_at=utcnow(),
                review_notes=notes or None,
                rejected_by=None,
                rejected_at=None,
            )
        )
        _record(audit, AuditEventType.TAX_REPORT_APPROVED, updated, actor=updated.approved_by, notes=notes)
    return updated


def reject_tax_report(
    store: Store,
    report_id: str,
    *,
    rejected_by: str | None = None,
    notes: str | None = None,
    audit: AuditLog | None = None,
) -> TaxReport | None:
    with store.transaction():
        report = store.get_tax_report(report_id)
        if report is None:
            return None
        updated = store.save_tax_report(
            replace(
                report,
                status=TaxReportStatus.REJECTED,
                rejected_by=rejected_by or DEFAULT_ACTOR,
                rejected_at=utcnow(),
                review_notes=notes or None,
                approved_by=None,
                approved_at=None,
            )
        )
        _record(audit, AuditEventType.TAX_REPORT_REJECTED, updated, actor=updated.rejected_by, notes=notes)
    return updated


def flag_tax_report(
    store: Store,
    report_id: str,
    *,
    notes: str | None = None,
    flagged_by: str | None = None,
    audit: AuditLog | None = None,
) -> TaxReport | None:
    with store.transaction():
        report = store.get_tax_report(report_id)
        if report is None:
            return None
        updated = store.save_tax_report(
            replace(report, status=TaxReportStatus.NEEDS_REVIEW, review_notes=notes or DEFAULT_FLAG_NOTES)
        )
        _record(
            audit,
            AuditEventType.TAX_REPORT_FLAGGED,
            updated,
            actor=flagged_by or DEFAULT_ACTOR,
            notes=updated.review_notes,
        )
    return updated


def transition_tax_report(
    store: Store,
    report_id: str,
    action: WorkflowAction | str,
    *,
    actor: str | None = None,
    notes: str | None = None,
    audit: AuditLog | None = None,
) -> TaxReport | None:
    parsed = WorkflowAction.parse(action)
    if parsed is WorkflowAction.APPROVE:
        return approve_tax_report(store, report_id, approved_by=actor, notes=notes, audit=audit)
    if parsed is WorkflowAction.REJECT:
        return reject_tax_report(store, report_id, rejected_by=actor, notes=notes, audit=audit)
    return flag_tax_report(store, report_id, notes=notes, flagged_by=actor, audit=audit)


def list_tax_reports(
    store: Store, *, status: TaxReportStatus | str | None = None, year: Any = None
) -> list[TaxReport]:
    return store.list_tax_reports(
        status=TaxReportStatus(status) if status else None,
        year=year if year not in (None, "") else None,
    )


def tax_report_stats(store: Store) -> dict[str, Any]:
    reports = store.list_tax_reports()
    by_status = {status: 0 for status in TaxReportStatus}
    for report in reports:
        by_status[report.status] += 1
    return {
        "total": len(reports),
        "draft": by_status[TaxReportStatus.DRAFT],
        "approved": by_status[TaxReportStatus.APPROVED],
        "rejected": by_status[TaxReportStatus.REJECTED],
        "needs_review": by_status[TaxReportStatus.NEEDS_REVIEW],
        "total_tax_liability": sum_money(report.computed_tax_liability for report in reports),
        "total_clients": len({report.account_id for report in reports}),
    }
