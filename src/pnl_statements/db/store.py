"""Store abstraction for clients, report versions, tax reports and the audit trail.

The pipeline only talks to :class:`Store`. :class:`InMemoryStore` keeps all
state in process memory; ``pnl_statements.db.sql_store.SqlStore`` persists the
same shapes through SQLAlchemy.
"""

from __future__ import annotations

import threading
import weakref
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterator

from pnl_statements.config.settings import Settings, StoreBackend, get_settings
from pnl_statements.db.models import (
    AuditEventType,
    ExceptionStatus,
    ExceptionType,
    Severity,
    TaxReportStatus,
)
from pnl_statements.db.records import (
    AuditEvent,
    Client,
    ExceptionRecord,
    ReportVersion,
    TaxReport,
    format_audit_id,
    format_exception_id,
    format_tax_report_id,
    utcnow,
)
from pnl_statements.utils.logging import get_logger, kv

logger = get_logger(__name__)


class Store(ABC):
    """Backend-agnostic persistence used by the ingestion pipeline.

    Writers hold ``key_lock(natural_key)`` from classification to commit and
    group their writes in ``transaction()``. ``reset()`` clears every
    collection in one step.
    """

    # -- clients ---------------------------------------------------------
    @abstractmethod
    def get_client(self, account_id: str) -> Client | None: ...

    @abstractmethod
    def put_client(self, client: Client) -> None: ...

    @abstractmethod
    def list_clients(self) -> list[Client]: ...

    # -- report versions -------------------------------------------------
    @abstractmethod
    def versions_for_key(self, natural_key: str) -> list[ReportVersion]: ...

    @abstractmethod
    def active_version(self, natural_key: str) -> ReportVersion | None: ...

    @abstractmethod
    def append_version(
        self,
        version: ReportVersion,
        *,
        activate: bool,
        archive_reason: str,
        archived_at: datetime | None = None,
    ) -> list[str]:
        """Add ``version`` under its natural key.

        ``activate=True`` archives every not-yet-archived version of the key
        with ``archive_reason`` and points the key at ``version``.
        ``activate=False`` records ``version`` as archived immediately.
        Returns the ids archived by this call.
        """

    @abstractmethod
    def get_version(self, version_id: str) -> ReportVersion | None: ...

    @abstractmethod
    def list_versions(
        self, account_id: str | None = None, *, active_only: bool = False
    ) -> list[ReportVersion]: ...

    # -- tax reports -----------------------------------------------------
    @abstractmethod
    def get_tax_report(self, report_id: str) -> TaxReport | None: ...

    @abstractmethod
    def get_tax_report_for(self, account_id: str, year: int | str) -> TaxReport | None: ...

    @abstractmethod
    def save_tax_report(self, report: TaxReport) -> TaxReport:
        """Insert (empty ``report_id``) or update a tax report; returns the stored record."""

    @abstractmethod
    def list_tax_reports(
        self, *, status: TaxReportStatus | None = None, year: int | str | None = None
    ) -> list[TaxReport]: ...

    # -- audit trail -----------------------------------------------------
    @abstractmethod
    def insert_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    @abstractmethod
    def list_audit_events(
        self, *, account_id: str | None = None, event_type: AuditEventType | None = None
    ) -> list[AuditEvent]: ...

    @abstractmethod
    def insert_exception(self, record: ExceptionRecord) -> ExceptionRecord: ...

    @abstractmethod
    def update_exception(self, record: ExceptionRecord) -> ExceptionRecord: ...

    @abstractmethod
    def get_exception(self, exception_id: str) -> ExceptionRecord | None: ...

    @abstractmethod
    def list_exceptions(
        self,
        *,
        status: ExceptionStatus | None = None,
        account_id: str | None = None,
        exception_type: ExceptionType | None = None,
        severity: Severity | None = None,
    ) -> list[ExceptionRecord]: ...

    # -- control ---------------------------------------------------------
    @abstractmethod
    def key_lock(self, natural_key: str): ...

    @abstractmethod
    def transaction(self): ...

    @abstractmethod
    def reset(self) -> None: ...


def _tax_report_sort_key(report: TaxReport) -> tuple[str, str]:
    return (report.account_id, f"{report.year!s:>8}")


@dataclass
class _MemoryState:
    clients: dict[str, Client] = field(default_factory=dict)
    versions: dict[str, ReportVersion] = field(default_factory=dict)
    versions_by_key: dict[str, tuple[str, ...]] = field(default_factory=dict)
    version_order: tuple[str, ...] = ()
    active: dict[str, str] = field(default_factory=dict)
    archivals: dict[str, tuple[datetime, str]] = field(default_factory=dict)
    tax_reports: dict[str, TaxReport] = field(default_factory=dict)
    tax_report_keys: dict[tuple[str, str], str] = field(default_factory=dict)
    audit_events: tuple[AuditEvent, ...] = ()
    exceptions: dict[str, ExceptionRecord] = field(default_factory=dict)
    audit_sequence: int = 0
    exception_sequence: int = 0
    tax_report_sequence: int = 0

    def snapshot(self) -> "_MemoryState":
        return replace(
            self,
            clients=dict(self.clients),
            versions=dict(self.versions),
            versions_by_key=dict(self.versions_by_key),
            active=dict(self.active),
            archivals=dict(self.archivals),
            tax_reports=dict(self.tax_reports),
            tax_report_keys=dict(self.tax_report_keys),
            exceptions=dict(self.exceptions),
        )


class InMemoryStore(Store):
    """Process-local store; versions are an append-only arena plus indexes."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        # Entries vanish once no caller holds the lock.
        self._key_locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._state = _MemoryState()
        self._depth = 0

    # -- clients ---------------------------------------------------------
    def get_client(self, account_id: str) -> Client | None:
        with self._lock:
            return self._state.clients.get(account_id)

    def put_client(self, client: Client) -> None:
        with self._lock:
            self._state.clients[client.account_id] = client

    def list_clients(self) -> list[Client]:
        with self._lock:
            return sorted(self._state.clients.values(), key=lambda item: item.account_id)

    # -- report versions -------------------------------------------------
    def _view(self, version_id: str) -> ReportVersion:
        record = self._state.versions[version_id]
        archived = self._state.archivals.get(version_id)
        is_active = self._state.active.get(record.natural_key) == version_id
        if archived is None:
            return record.with_status(is_active=is_active)
        archived_at, reason = archived
        return record.with_status(
            is_active=is_active, archived_at=archived_at, archived_reason=reason
        )

    def versions_for_key(self, natural_key: str) -> list[ReportVersion]:
        with self._lock:
            ids = self._state.versions_by_key.get(natural_key, ())
            return [self._view(version_id) for version_id in ids]

    def active_version(self, natural_key: str) -> ReportVersion | None:
        with self._lock:
            version_id = self._state.active.get(natural_key)
            return self._view(version_id) if version_id else None

    def append_version(
        self,
        version: ReportVersion,
        *,
        activate: bool,
        archive_reason: str,
        archived_at: datetime | None = None,
    ) -> list[str]:
        stamp = archived_at or utcnow()
        with self._lock:
            state = self._state
            if version.version_id in state.versions:
                raise ValueError(f"Version already stored: {version.version_id}")

            stored = version.with_status(is_active=False)
            prior_ids = state.versions_by_key.get(version.natural_key, ())
            archived_ids: list[str] = []
            if activate:
                for prior_id in prior_ids:
                    if prior_id in state.archivals:
                        continue
                    state.archivals[prior_id] = (stamp, archive_reason)
                    archived_ids.append(prior_id)
                state.active[version.natural_key] = version.version_id
            else:
                state.archivals[version.version_id] = (stamp, archive_reason)

            state.versions[version.version_id] = stored
            state.versions_by_key[version.natural_key] = prior_ids + (version.version_id,)
            state.version_order = state.version_order + (version.version_id,)
            return archived_ids

    def get_version(self, version_id: str) -> ReportVersion | None:
        with self._lock:
            if version_id not in self._state.versions:
                return None
            return self._view(version_id)

    def list_versions(
        self, account_id: str | None = None, *, active_only: bool = False
    ) -> list[ReportVersion]:
        with self._lock:
            views = [self._view(version_id) for version_id in self._state.version_order]
        if account_id is not None:
            views = [item for item in views if item.account_id == account_id]
        if active_only:
            views = [item for item in views if item.is_active]
        return views

    # -- tax reports -----------------------------------------------------
    def get_tax_report(self, report_id: str) -> TaxReport | None:
        with self._lock:
            return self._state.tax_reports.get(report_id)

    def get_tax_report_for(self, account_id: str, year: int | str) -> TaxReport | None:
        with self._lock:
            report_id = self._state.tax_report_keys.get((account_id, str(year)))
            return self._state.tax_reports.get(report_id) if report_id else None

    def save_tax_report(self, report: TaxReport) -> TaxReport:
        with self._lock:
            state = self._state
            if not report.report_id:
                key = (report.account_id, str(report.year))
                existing_id = state.tax_report_keys.get(key)
                if existing_id is None:
                    state.tax_report_sequence += 1
                    existing_id = format_tax_report_id(state.tax_report_sequence)
                    state.tax_report_keys[key] = existing_id
                report = replace(report, report_id=existing_id)
            state.tax_reports[report.report_id] = report
            return report

    def list_tax_reports(
        self, *, status: TaxReportStatus | None = None, year: int | str | None = None
    ) -> list[TaxReport]:
        with self._lock:
            reports = list(self._state.tax_reports.values())
        if status is not None:
            reports = [item for item in reports if item.status == status]
        if year is not None:
            reports = [item for item in reports if str(item.year) == str(year)]
        return sorted(reports, key=_tax_report_sort_key)

    # -- audit trail -----------------------------------------------------
    def insert_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._lock:
            state = self._state
            state.audit_sequence += 1
            stored = replace(event, event_id=format_audit_id(state.audit_sequence))
            state.audit_events = state.audit_events + (stored,)
            return stored

    def list_audit_events(
        self, *, account_id: str | None = None, event_type: AuditEventType | None = None
    ) -> list[AuditEvent]:
        with self._lock:
            events = list(self._state.audit_events)
        if account_id is not None:
            events = [item for item in events if item.account_id == account_id]
        if event_type is not None:
            events = [item for item in events if item.event_type == event_type]
        return events

    def insert_exception(self, record: ExceptionRecord) -> ExceptionRecord:
        with self._lock:
            state = self._state
            state.exception_sequence += 1
            stored = replace(record, exception_id=format_exception_id(state.exception_sequence))
            state.exceptions[stored.exception_id] = stored
            return stored

    def update_exception(self, record: ExceptionRecord) -> ExceptionRecord:
        with self._lock:
            if record.exception_id not in self._state.exceptions:
                raise KeyError(record.exception_id)
            self._state.exceptions[record.exception_id] = record
            return record

    def get_exception(self, exception_id: str) -> ExceptionRecord | None:
        with self._lock:
            return self._state.exceptions.get(exception_id)

    def list_exceptions(
        self,
        *,
        status: ExceptionStatus | None = None,
        account_id: str | None = None,
        exception_type: ExceptionType | None = None,
        severity: Severity | None = None,
    ) -> list[ExceptionRecord]:
        with self._lock:
            records = list(self._state.exceptions.values())
        if status is not None:
            records = [item for item in records if item.status == status]
        if account_id is not None:
            records = [item for item in records if item.account_id == account_id]
        if exception_type is not None:
            records = [item for item in records if item.exception_type == exception_type]
        if severity is not None:
            records = [item for item in records if item.severity == severity]
        return records

    # -- control ---------------------------------------------------------
    @contextmanager
    def key_lock(self, natural_key: str) -> Iterator[None]:
        with self._lock:
            lock = self._key_locks.get(natural_key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[natural_key] = lock
        with lock:
            yield

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        with self._lock:
            backup = self._state.snapshot() if self._depth == 0 else None
            self._depth += 1
            try:
                yield self
            except BaseException:
                if backup is not None:
                    self._state = backup
                raise
            finally:
                self._depth -= 1

    def reset(self) -> None:
        with self._lock:
            self._state = _MemoryState()
        logger.info("store reset %s", kv(backend="memory"))


def build_store(settings: Settings | None = None) -> Store:
    settings = settings or get_settings()
    if settings.store_backend == StoreBackend.SQL:
        from pnl_statements.db.sql_store import SqlStore

        return SqlStore.from_url(settings.database_url)
    return InMemoryStore()
