"""Read and operator-action surface for collaborators (UI, API handlers)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pnl_statements.analytics import tax_reports
from pnl_statements.config.settings import Settings, get_settings
from pnl_statements.db.models import (
    AuditEventType,
    ExceptionResolution,
    ExceptionStatus,
    ExceptionType,
    Severity,
    TaxReportStatus,
)
from pnl_statements.db.records import AuditEvent, Client, ExceptionRecord, ReportVersion, TaxReport
from pnl_statements.db.store import Store
from pnl_statements.errors import StateResetNotAllowedError
from pnl_statements.services.audit_log import AuditLog
from pnl_statements.utils.logging import get_logger, kv

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClientDetail:
    client: Client
    versions: list[ReportVersion]
    audit_events: list[AuditEvent]
    exceptions: list[ExceptionRecord]

    @property
    def active_versions(self) -> list[ReportVersion]:
        return [item for item in self.versions if item.is_active]

    def to_dict(self) -> dict[str, Any]:
        return {
            "client": self.client.to_dict(),
            "reports": [item.to_dict() for item in self.versions],
            "active_reports": [item.to_dict() for item in self.active_versions],
            "audit_events": [item.to_dict() for item in self.audit_events],
            "exceptions": [item.to_dict() for item in self.exceptions],
        }


def _optional_enum(enum_cls, value):
    if value in (None, ""):
        return None
    return enum_cls(str(getattr(value, "value", value)).upper())


class OpsQueries:
    def __init__(self, store: Store, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()
        self.audit = AuditLog(store)

    # clients
    def list_clients(self) -> list[Client]:
        return self.store.list_clients()

    def client_detail(self, account_id: str) -> ClientDetail | None:
        client = self.store.get_client(account_id)
        if client is None:
            return None
        return ClientDetail(
            client=client,
            versions=self.store.list_versions(account_id),
            audit_events=self.store.list_audit_events(account_id=account_id),
            exceptions=self.store.list_exceptions(account_id=account_id),
        )

    # exceptions
    def list_exceptions(
        self,
        *,
        status: ExceptionStatus | str | None = None,
        account_id: str | None = None,
        exception_type: ExceptionType | str | None = None,
        severity: Severity | str | None = None,
    ) -> list[ExceptionRecord]:
        return self.audit.exceptions(
            status=_optional_enum(ExceptionStatus, status),
            account_id=account_id or None,
            exception_type=_optional_enum(ExceptionType, exception_type),
            severity=_optional_enum(Severity, severity),
        )

    def resolve_exception(
        self, exception_id: str, resolution: ExceptionResolution | str, notes: str | None = None
    ) -> ExceptionRecord | None:
        return self.audit.resolve_exception(exception_id, resolution, notes)

    def audit_events(
        self, *, account_id: str | None = None, event_type: AuditEventType | str | None = None
    ) -> list[AuditEvent]:
        return self.audit.events(
            account_id=account_id, event_type=_optional_enum(AuditEventType, event_type)
        )

    # tax reports
    def list_tax_reports(
        self, *, status: TaxReportStatus | str | None = None, year: Any = None
    ) -> list[TaxReport]:
        return tax_reports.list_tax_reports(
            self.store, status=_optional_enum(TaxReportStatus, status), year=year
        )

    def get_tax_report(self, report_id: str) -> TaxReport | None:
        return self.store.get_tax_report(report_id)

    def transition_tax_report(
        self,
        report_id: str,
        action: tax_reports.WorkflowAction | str,
        *,
        actor: str | None = None,
        notes: str | None = None,
    ) -> TaxReport | None:
        return tax_reports.transition_tax_report(
            self.store, report_id, action, actor=actor, notes=notes, audit=self.audit
        )

    def tax_report_stats(self) -> dict[str, Any]:
        return tax_reports.tax_report_stats(self.store)

    # control
    def reset_all(self) -> None:
        if not self.settings.allow_state_reset:
            raise StateResetNotAllowedError(
                f"State reset is disabled in the {self.settings.app_env!r} environment"
            )
        self.store.reset()
        logger.warning("all state cleared %s", kv(app_env=self.settings.app_env))
