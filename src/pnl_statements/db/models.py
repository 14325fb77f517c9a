from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class ClassificationState(str, Enum):
    NEW = "NEW"
    DUPLICATE = "DUPLICATE"
    REVISION = "REVISION"
    CONFLICT = "CONFLICT"


class ValidationStatus(str, Enum):
    VALIDATED = "VALIDATED"
    FAILED = "FAILED"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    SKIPPED = "SKIPPED"


class ReconciliationStatus(str, Enum):
    RECONCILED = "RECONCILED"
    MISMATCH = "MISMATCH"
    PARTIAL = "PARTIAL"
    SKIPPED = "SKIPPED"


class TaxDerivationStatus(str, Enum):
    GENERATED = "GENERATED"
    BLOCKED = "BLOCKED"
    SKIPPED = "SKIPPED"


class TaxReportStatus(str, Enum):
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    NEEDS_REVIEW = "NEEDS_REVIEW"


class ClientStatus(str, Enum):
    ACTIVE = "ACTIVE"


class ClientAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    MANUAL_REVIEW_REQUIRED = "MANUAL_REVIEW_REQUIRED"


class OverallStatus(str, Enum):
    SUCCESS = "SUCCESS"
    CONFLICT = "CONFLICT"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    RECONCILIATION_MISMATCH = "RECONCILIATION_MISMATCH"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    DUPLICATE_SKIPPED = "DUPLICATE_SKIPPED"
    ERROR = "ERROR"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ExceptionStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class ExceptionResolution(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class AuditEventType(str, Enum):
    REPORT_INGESTED = "REPORT_INGESTED"
    DUPLICATE_SKIPPED = "DUPLICATE_SKIPPED"
    VALIDATION_COMPLETED = "VALIDATION_COMPLETED"
    RECONCILIATION_COMPLETED = "RECONCILIATION_COMPLETED"
    TAX_DERIVATION_COMPLETED = "TAX_DERIVATION_COMPLETED"
    REPORT_STORED = "REPORT_STORED"
    PRIOR_VERSION_ARCHIVED = "PRIOR_VERSION_ARCHIVED"
    PROCESSING_COMPLETED = "PROCESSING_COMPLETED"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    EXCEPTION_CREATED = "EXCEPTION_CREATED"
    EXCEPTION_RESOLVED = "EXCEPTION_RESOLVED"
    TAX_REPORT_GENERATED = "TAX_REPORT_GENERATED"
    TAX_REPORT_APPROVED = "TAX_REPORT_APPROVED"
    TAX_REPORT_REJECTED = "TAX_REPORT_REJECTED"
    TAX_REPORT_FLAGGED = "TAX_REPORT_FLAGGED"


class ExceptionType(str, Enum):
    MISSING_REPORT_HEADER = "MISSING_REPORT_HEADER"
    MISSING_HEADER_FIELD = "MISSING_HEADER_FIELD"
    MISSING_SUMMARY_TOTALS = "MISSING_SUMMARY_TOTALS"
    MISSING_SUMMARY_FIELD = "MISSING_SUMMARY_FIELD"
    MISSING_MONTHLY_ROWS = "MISSING_MONTHLY_ROWS"
    MISSING_GRAND_TOTALS = "MISSING_GRAND_TOTALS"

    NUMERIC_PARSE_ERROR_SUMMARY = "NUMERIC_PARSE_ERROR_SUMMARY"
    NUMERIC_PARSE_ERROR_TOTAL_COMM = "NUMERIC_PARSE_ERROR_TOTAL_COMM"
    NUMERIC_PARSE_ERROR_SEC_FEE = "NUMERIC_PARSE_ERROR_SEC_FEE"
    NUMERIC_PARSE_ERROR_NASD_FEE = "NUMERIC_PARSE_ERROR_NASD_FEE"
    NUMERIC_PARSE_ERROR_ECN_TAKE = "NUMERIC_PARSE_ERROR_ECN_TAKE"
    NUMERIC_PARSE_ERROR_ECN_ADD = "NUMERIC_PARSE_ERROR_ECN_ADD"
    NUMERIC_PARSE_ERROR_ROUTING_FEE = "NUMERIC_PARSE_ERROR_ROUTING_FEE"
    NUMERIC_PARSE_ERROR_NSCC_FEE = "NUMERIC_PARSE_ERROR_NSCC_FEE"
    NUMERIC_PARSE_ERROR_NET_PNL = "NUMERIC_PARSE_ERROR_NET_PNL"
    NUMERIC_PARSE_ERROR_NET_CASH = "NUMERIC_PARSE_ERROR_NET_CASH"
    NUMERIC_PARSE_ERROR_GRAND_TOTAL_COMM = "NUMERIC_PARSE_ERROR_GRAND_TOTAL_COMM"
    NUMERIC_PARSE_ERROR_GRAND_SEC_FEE = "NUMERIC_PARSE_ERROR_GRAND_SEC_FEE"
    NUMERIC_PARSE_ERROR_GRAND_NASD_FEE = "NUMERIC_PARSE_ERROR_GRAND_NASD_FEE"
    NUMERIC_PARSE_ERROR_GRAND_ECN_TAKE = "NUMERIC_PARSE_ERROR_GRAND_ECN_TAKE"
    NUMERIC_PARSE_ERROR_GRAND_ECN_ADD = "NUMERIC_PARSE_ERROR_GRAND_ECN_ADD"
    NUMERIC_PARSE_ERROR_GRAND_ROUTING_FEE = "NUMERIC_PARSE_ERROR_GRAND_ROUTING_FEE"
    NUMERIC_PARSE_ERROR_GRAND_NSCC_FEE = "NUMERIC_PARSE_ERROR_GRAND_NSCC_FEE"
    NUMERIC_PARSE_ERROR_GRAND_NET_PNL = "NUMERIC_PARSE_ERROR_GRAND_NET_PNL"
    NUMERIC_PARSE_ERROR_GRAND_NET_CASH = "NUMERIC_PARSE_ERROR_GRAND_NET_CASH"

    HEADER_YEAR_MONTH_MISMATCH = "HEADER_YEAR_MONTH_MISMATCH"
    PERIOD_YEAR_MISMATCH = "PERIOD_YEAR_MISMATCH"
    LOW_CONFIDENCE_PAYLOAD = "LOW_CONFIDENCE_PAYLOAD"

    TOTALS_MISMATCH_NET_PNL = "TOTALS_MISMATCH_NET_PNL"
    TOTALS_MISMATCH_NET_CASH = "TOTALS_MISMATCH_NET_CASH"

    IDENTITY_CONFLICT_USERNAME_MISMATCH = "IDENTITY_CONFLICT_USERNAME_MISMATCH"
    REPORT_VERSION_CONFLICT = "REPORT_VERSION_CONFLICT"

    @classmethod
    def numeric_parse_error(cls, field: str, *, grand_total: bool = False) -> "ExceptionType":
        prefix = "NUMERIC_PARSE_ERROR_GRAND_" if grand_total else "NUMERIC_PARSE_ERROR_"
        return cls(f"{prefix}{field.upper()}")

    @classmethod
    def totals_mismatch(cls, field: str) -> "ExceptionType":
        return cls(f"TOTALS_MISMATCH_{field.upper()}")

    @property
    def is_numeric_parse_error(self) -> bool:
        return self.value.startswith("NUMERIC_PARSE_ERROR")

    @property
    def is_missing(self) -> bool:
        return self.value.startswith("MISSING_")

    @property
    def is_consistency(self) -> bool:
        return "MISMATCH" in self.value or "CONFLICT" in self.value

    @property
    def default_severity(self) -> Severity:
        if self.is_missing:
            return Severity.HIGH
        if self.value.startswith(("TOTALS_MISMATCH_", "IDENTITY_CONFLICT_")):
            return Severity.HIGH
        if self is ExceptionType.REPORT_VERSION_CONFLICT:
            return Severity.HIGH
        return Severity.MEDIUM


class ClientRow(Base):
    __tablename__ = "clients"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str | None] = mapped_column(String(128), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[ClientStatus] = mapped_column(
        SqlEnum(ClientStatus, native_enum=False), nullable=False, default=ClientStatus.ACTIVE
    )
    years_on_file: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    report_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    display_name_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    linked_usernames: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)


class ReportVersionRow(Base):
    __tablename__ = "report_versions"
    __table_args__ = (
        UniqueConstraint("natural_key", "version", name="uq_report_versions_key_version"),
        Index("ix_report_versions_account_stored", "account_id", "stored_at"),
    )

    version_id: Mapped[str] = mapped_column(String(160), primary_key=True)
    natural_key: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    natural_key_fields: Mapped[dict] = mapped_column(JSON, nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[ClassificationState] = mapped_column(
        SqlEnum(ClassificationState, native_enum=False), nullable=False
    )
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    validation: Mapped[dict] = mapped_column(JSON, nullable=False)
    reconciliation: Mapped[dict] = mapped_column(JSON, nullable=False)
    tax_derivation: Mapped[dict] = mapped_column(JSON, nullable=False)
    scenario_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    stored_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)


class ActiveVersionRow(Base):
    __tablename__ = "report_active_versions"

    natural_key: Mapped[str] = mapped_column(String(512), primary_key=True)
    version_id: Mapped[str] = mapped_column(
        String(160), ForeignKey("report_versions.version_id"), nullable=False
    )


class VersionArchivalRow(Base):
    __tablename__ = "report_version_archivals"

    version_id: Mapped[str] = mapped_column(
        String(160), ForeignKey("report_versions.version_id"), primary_key=True
    )
    archived_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)


class AuditEventRow(Base):
    __tablename__ = "audit_events"
    __table_args__ = (Index("ix_audit_events_account_type", "account_id", "event_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[AuditEventType] = mapped_column(
        SqlEnum(AuditEventType, native_enum=False), nullable=False, index=True
    )
    account_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)


class ExceptionRow(Base):
    __tablename__ = "pipeline_exceptions"
    __table_args__ = (
        Index("ix_pipeline_exceptions_status_account", "status", "account_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exception_type: Mapped[ExceptionType] = mapped_column(
        "type", SqlEnum(ExceptionType, native_enum=False, length=64), nullable=False, index=True
    )
    severity: Mapped[Severity] = mapped_column(
        SqlEnum(Severity, native_enum=False), nullable=False
    )
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    detail: Mapped[str] = mapped_column(Text, nullable=False, default="")
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[ExceptionStatus] = mapped_column(
        SqlEnum(ExceptionStatus, native_enum=False), nullable=False, default=ExceptionStatus.OPEN
    )
    resolution: Mapped[ExceptionResolution | None] = mapped_column(
        SqlEnum(ExceptionResolution, native_enum=False), nullable=True
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class TaxReportRow(Base):
    __tablename__ = "tax_reports"
    __table_args__ = (
        UniqueConstraint("account_id", "year", name="uq_tax_reports_account_year"),
        Index("ix_tax_reports_status_year", "status", "year"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    year: Mapped[str] = mapped_column(String(16), nullable=False)
    client_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[TaxReportStatus] = mapped_column(
        SqlEnum(TaxReportStatus, native_enum=False), nullable=False, default=TaxReportStatus.DRAFT
    )
    tax_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    source_files: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
