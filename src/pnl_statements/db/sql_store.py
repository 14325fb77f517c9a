"""SQLAlchemy-backed :class:`~pnl_statements.db.store.Store`."""

from __future__ import annotations

import threading
import weakref
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from pnl_statements.db.migrate import RESET_ORDER, migrate
from pnl_statements.db.models import (
    ActiveVersionRow,
    AuditEventRow,
    AuditEventType,
    Base,
    ClientRow,
    ExceptionRow,
    ExceptionStatus,
    ExceptionType,
    ReportVersionRow,
    Severity,
    TaxReportRow,
    TaxReportStatus,
    VersionArchivalRow,
)
from pnl_statements.db.records import (
    AuditEvent,
    Client,
    DisplayNameChange,
    ExceptionRecord,
    ReportVersion,
    TaxReport,
    format_audit_id,
    format_exception_id,
    format_tax_report_id,
    normalize_year,
    parse_sequence,
    utcnow,
)
from pnl_statements.db.store import Store, _tax_report_sort_key
from pnl_statements.utils.logging import get_logger, kv

logger = get_logger(__name__)


def _client_from_row(row: ClientRow) -> Client:
    return Client(
        account_id=row.account_id,
        username=row.username,
        display_name=row.display_name,
        created_at=row.created_at,
        updated_at=row.updated_at,
        status=row.status,
        years_on_file=tuple(row.years_on_file or ()),
        report_count=int(row.report_count or 0),
        display_name_history=tuple(
            DisplayNameChange.from_dict(item) for item in (row.display_name_history or [])
        ),
        linked_usernames=tuple(row.linked_usernames or ()),
    )


def _version_from_row(row: ReportVersionRow) -> ReportVersion:
    return ReportVersion(
        version_id=row.version_id,
        natural_key=row.natural_key,
        natural_key_fields=dict(row.natural_key_fields or {}),
        account_id=row.account_id,
        version=int(row.version),
        state=row.state,
        fingerprint=row.fingerprint,
        payload=dict(row.payload or {}),
        validation=dict(row.validation or {}),
        reconciliation=dict(row.reconciliation or {}),
        tax_derivation=dict(row.tax_derivation or {}),
        stored_at=row.stored_at,
        scenario_id=row.scenario_id,
    )


def _event_from_row(row: AuditEventRow) -> AuditEvent:
    return AuditEvent(
        event_id=format_audit_id(row.id),
        event_type=row.event_type,
        timestamp=row.timestamp,
        account_id=row.account_id,
        payload=dict(row.payload or {}),
    )


def _exception_from_row(row: ExceptionRow) -> ExceptionRecord:
    return ExceptionRecord(
        exception_id=format_exception_id(row.id),
        exception_type=row.exception_type,
        severity=row.severity,
        account_id=row.account_id,
        detail=row.detail,
        created_at=row.created_at,
        context=dict(row.context or {}),
        status=row.status,
        resolution=row.resolution,
        resolution_notes=row.resolution_notes,
        resolved_at=row.resolved_at,
    )


def _tax_report_from_row(row: TaxReportRow) -> TaxReport:
    return TaxReport(
        report_id=format_tax_report_id(row.id),
        account_id=row.account_id,
        year=normalize_year(row.year),
        tax_data=dict(row.tax_data or {}),
        generated_at=row.generated_at,
        client_name=row.client_name,
        source_files=tuple(row.source_files or ()),
        status=row.status,
        approved_by=row.approved_by,
        approved_at=row.approved_at,
        rejected_by=row.rejected_by,
        rejected_at=row.rejected_at,
        review_notes=row.review_notes,
        version=int(row.version),
    )


class SqlStore(Store):
    def __init__(self, engine: Engine, *, create_schema: bool = True) -> None:
        self._engine = engine
        if create_schema:
            Base.metadata.create_all(bind=engine)
        self._write_lock = threading.RLock()
        self._key_locks_guard = threading.Lock()
        # Entries vanish once no caller holds the lock.
        self._key_locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._local = threading.local()

    @classmethod
    def from_url(cls, database_url: str) -> "SqlStore":
        return cls(migrate(database_url), create_schema=False)

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        current = getattr(self._local, "session", None)
        if current is not None:
            yield current
            return
        with Session(self._engine, expire_on_commit=False) as session:
            with session.begin():
                yield session

    # -- clients ---------------------------------------------------------
    def get_client(self, account_id: str) -> Client | None:
        with self._session() as session:
            row = session.get(ClientRow, account_id)
            return _client_from_row(row) if row is not None else None

    def put_client(self, client: Client) -> None:
        with self._session() as session:
            row = session.get(ClientRow, client.account_id)
            if row is None:
                row = ClientRow(account_id=client.account_id)
                session.add(row)
            row.username = client.username
            row.display_name = client.display_name
            row.status = client.status
            row.years_on_file = list(client.years_on_file)
            row.report_count = client.report_count
            row.display_name_history = [item.to_dict() for item in client.display_name_history]
            row.linked_usernames = list(client.linked_usernames)
            row.created_at = client.created_at
            row.updated_at = client.updated_at

    def list_clients(self) -> list[Client]:
        with self._session() as session:
            rows = session.scalars(select(ClientRow).order_by(ClientRow.account_id)).all()
            return [_client_from_row(row) for row in rows]

    # -- report versions -------------------------------------------------
    def _view(self, session: Session, row: ReportVersionRow) -> ReportVersion:
        record = _version_from_row(row)
        pointer = session.get(ActiveVersionRow, row.natural_key)
        is_active = pointer is not None and pointer.version_id == row.version_id
        archival = session.get(VersionArchivalRow, row.version_id)
        if archival is None:
            return record.with_status(is_active=is_active)
        return record.with_status(
            is_active=is_active,
            archived_at=archival.archived_at,
            archived_reason=archival.reason,
        )

    def versions_for_key(self, natural_key: str) -> list[ReportVersion]:
        with self._session() as session:
            rows = session.scalars(
                select(ReportVersionRow)
                .where(ReportVersionRow.natural_key == natural_key)
                .order_by(ReportVersionRow.version.asc())
            ).all()
            return [self._view(session, row) for row in rows]

    def active_version(self, natural_key: str) -> ReportVersion | None:
        with self._session() as session:
            pointer = session.get(ActiveVersionRow, natural_key)
            if pointer is None:
                return None
            row = session.get(ReportVersionRow, pointer.version_id)
            return self._view(session, row) if row is not None else None

    def append_version(
        self,
        version: ReportVersion,
        *,
        activate: bool,
        archive_reason: str,
        archived_at: datetime | None = None,
    ) -> list[str]:
        stamp = archived_at or utcnow()
        with self._session() as session:
            if session.get(ReportVersionRow, version.version_id) is not None:
                raise ValueError(f"Version already stored: {version.version_id}")

            prior_ids = list(
                session.scalars(
                    select(ReportVersionRow.version_id)
                    .where(ReportVersionRow.natural_key == version.natural_key)
                    .order_by(ReportVersionRow.version.asc())
                ).all()
            )
            session.add(
                ReportVersionRow(
                    version_id=version.version_id,
                    natural_key=version.natural_key,
                    natural_key_fields=dict(version.natural_key_fields),
                    account_id=version.account_id,
                    version=version.version,
                    state=version.state,
                    fingerprint=version.fingerprint,
                    payload=version.payload,
                    validation=version.validation,
                    reconciliation=version.reconciliation,
                    tax_derivation=version.tax_derivation,
                    scenario_id=version.scenario_id,
                    stored_at=version.stored_at,
                )
            )
            session.flush()

            archived_ids: list[str] = []
            if not activate:
                session.add(
                    VersionArchivalRow(
                        version_id=version.version_id, archived_at=stamp, reason=archive_reason
                    )
                )
                return archived_ids

            already_archived = set(
                session.scalars(
                    select(VersionArchivalRow.version_id).where(
                        VersionArchivalRow.version_id.in_(prior_ids)
                    )
                ).all()
            ) if prior_ids else set()
            for prior_id in prior_ids:
                if prior_id in already_archived:
                    continue
                session.add(
                    VersionArchivalRow(version_id=prior_id, archived_at=stamp, reason=archive_reason)
                )
                archived_ids.append(prior_id)

            pointer = session.get(ActiveVersionRow, version.natural_key)
            if pointer is None:
                session.add(
                    ActiveVersionRow(natural_key=version.natural_key, version_id=version.version_id)
                )
            else:
                pointer.version_id = version.version_id
            session.flush()
            return archived_ids

    def get_version(self, version_id: str) -> ReportVersion | None:
        with self._session() as session:
            row = session.get(ReportVersionRow, version_id)
            return self._view(session, row) if row is not None else None

    def list_versions(
        self, account_id: str | None = None, *, active_only: bool = False
    ) -> list[ReportVersion]:
        stmt = select(ReportVersionRow)
        if account_id is not None:
            stmt = stmt.where(ReportVersionRow.account_id == account_id)
        if active_only:
            stmt = stmt.join(
                ActiveVersionRow, ActiveVersionRow.version_id == ReportVersionRow.version_id
            )
        stmt = stmt.order_by(ReportVersionRow.stored_at.asc(), ReportVersionRow.version.asc())
        with self._session() as session:
            return [self._view(session, row) for row in session.scalars(stmt).all()]

    # -- tax reports -----------------------------------------------------
    def get_tax_report(self, report_id: str) -> TaxReport | None:
        sequence = parse_sequence(report_id, "TR")
        if sequence is None:
            return None
        with self._session() as session:
            row = session.get(TaxReportRow, sequence)
            return _tax_report_from_row(row) if row is not None else None

    def get_tax_report_for(self, account_id: str, year: int | str) -> TaxReport | None:
        with self._session() as session:
            row = session.scalars(
                select(TaxReportRow).where(
                    TaxReportRow.account_id == account_id, TaxReportRow.year == str(year)
                )
            ).first()
            return _tax_report_from_row(row) if row is not None else None

    def save_tax_report(self, report: TaxReport) -> TaxReport:
        with self._session() as session:
            row: TaxReportRow | None
            if report.report_id:
                row = session.get(TaxReportRow, parse_sequence(report.report_id, "TR"))
                if row is None:
                    raise KeyError(report.report_id)
            else:
                row = session.scalars(
                    select(TaxReportRow).where(
                        TaxReportRow.account_id == report.account_id,
                        TaxReportRow.year == str(report.year),
                    )
                ).first()
                if row is None:
                    row = TaxReportRow(account_id=report.account_id, year=str(report.year))
                    session.add(row)
            row.client_name = report.client_name
            row.status = report.status
            row.tax_data = report.tax_data
            row.source_files = list(report.source_files)
            row.approved_by = report.approved_by
            row.approved_at = report.approved_at
            row.rejected_by = report.rejected_by
            row.rejected_at = report.rejected_at
            row.review_notes = report.review_notes
            row.version = report.version
            row.generated_at = report.generated_at
            session.flush()
            return _tax_report_from_row(row)

    def list_tax_reports(
        self, *, status: TaxReportStatus | None = None, year: int | str | None = None
    ) -> list[TaxReport]:
        stmt = select(TaxReportRow)
        if status is not None:
            stmt = stmt.where(TaxReportRow.status == status)
        if year is not None:
            stmt = stmt.where(TaxReportRow.year == str(year))
        with self._session() as session:
            reports = [_tax_report_from_row(row) for row in session.scalars(stmt).all()]
        return sorted(reports, key=_tax_report_sort_key)

    # -- audit trail -----------------------------------------------------
    def insert_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._session() as session:
            row = AuditEventRow(
                event_type=event.event_type,
                account_id=event.account_id,
                timestamp=event.timestamp,
                payload=event.payload,
            )
            session.add(row)
            session.flush()
            return _event_from_row(row)

    def list_audit_events(
        self, *, account_id: str | None = None, event_type: AuditEventType | None = None
    ) -> list[AuditEvent]:
        stmt = select(AuditEventRow)
        if account_id is not None:
            stmt = stmt.where(AuditEventRow.account_id == account_id)
        if event_type is not None:
            stmt = stmt.where(AuditEventRow.event_type == event_type)
        with self._session() as session:
            rows = session.scalars(stmt.order_by(AuditEventRow.id.asc())).all()
            return [_event_from_row(row) for row in rows]

    def insert_exception(self, record: ExceptionRecord) -> ExceptionRecord:
        with self._session() as session:
            row = ExceptionRow(
                exception_type=record.exception_type,
                severity=record.severity,
                account_id=record.account_id,
                detail=record.detail,
                context=record.context,
                status=record.status,
                resolution=record.resolution,
                resolution_notes=record.resolution_notes,
                created_at=record.created_at,
                resolved_at=record.resolved_at,
            )
            session.add(row)
            session.flush()
            return _exception_from_row(row)

    def update_exception(self, record: ExceptionRecord) -> ExceptionRecord:
        with self._session() as session:
            row = session.get(ExceptionRow, parse_sequence(record.exception_id, "EXC"))
            if row is None:
                raise KeyError(record.exception_id)
            row.status = record.status
            row.resolution = record.resolution
            row.resolution_notes = record.resolution_notes
            row.resolved_at = record.resolved_at
            session.flush()
            return _exception_from_row(row)

    def get_exception(self, exception_id: str) -> ExceptionRecord | None:
        sequence = parse_sequence(exception_id, "EXC")
        if sequence is None:
            return None
        with self._session() as session:
            row = session.get(ExceptionRow, sequence)
            return _exception_from_row(row) if row is not None else None

    def list_exceptions(
        self,
        *,
        status: ExceptionStatus | None = None,
        account_id: str | None = None,
        exception_type: ExceptionType | None = None,
        severity: Severity | None = None,
    ) -> list[ExceptionRecord]:
        stmt = select(ExceptionRow)
        if status is not None:
            stmt = stmt.where(ExceptionRow.status == status)
        if account_id is not None:
            stmt = stmt.where(ExceptionRow.account_id == account_id)
        if exception_type is not None:
            stmt = stmt.where(ExceptionRow.exception_type == exception_type)
        if severity is not None:
            stmt = stmt.where(ExceptionRow.severity == severity)
        with self._session() as session:
            rows = session.scalars(stmt.order_by(ExceptionRow.id.asc())).all()
            return [_exception_from_row(row) for row in rows]

    # -- control ---------------------------------------------------------
    @contextmanager
    def key_lock(self, natural_key: str) -> Iterator[None]:
        with self._key_locks_guard:
            lock = self._key_locks.get(natural_key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[natural_key] = lock
        with lock:
            yield

    @contextmanager
    def transaction(self) -> Iterator["SqlStore"]:
        if getattr(self._local, "session", None) is not None:
            yield self
            return
        with self._write_lock:
            with Session(self._engine, expire_on_commit=False) as session:
                with session.begin():
                    self._local.session = session
                    try:
                        yield self
                    finally:
                        self._local.session = None

    def reset(self) -> None:
        with self.transaction():
            session = self._local.session
            for table_name in RESET_ORDER:
                session.execute(delete(Base.metadata.tables[table_name]))
        logger.info("store reset %s", kv(backend=self._engine.dialect.name))
