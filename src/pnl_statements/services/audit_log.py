"""Append-only audit trail and the exception queue.

Events are never edited or removed. Exceptions are created OPEN; resolving
one (ACCEPT/REJECT with notes) is the only mutation either collection allows.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping

from pnl_statements.db.models import (
    AuditEventType,
    ExceptionResolution,
    ExceptionStatus,
    ExceptionType,
    Severity,
)
from pnl_statements.db.records import AuditEvent, ExceptionRecord, iso, utcnow
from pnl_statements.db.store import Store
from pnl_statements.utils.logging import get_logger, kv

logger = get_logger(__name__)


def jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [jsonable(item) for item in value]
    return value


class AuditLog:
    def __init__(self, store: Store):
        self.store = store

    def log_event(
        self, event_type: AuditEventType, *, account_id: str | None = None, **payload: Any
    ) -> AuditEvent:
        event = AuditEvent(
            event_id="",
            event_type=AuditEventType(event_type),
            timestamp=utcnow(),
            account_id=account_id,
            payload=jsonable({key: value for key, value in payload.items() if value is not None}),
        )
        return self.store.insert_audit_event(event)

    def create_exception(
        self,
        exception_type: ExceptionType,
        *,
        account_id: str,
        detail: str,
        context: Mapping[str, Any] | None = None,
        severity: Severity | None = None,
    ) -> ExceptionRecord:
        exception_type = ExceptionType(exception_type)
        record = ExceptionRecord(
            exception_id="",
            exception_type=exception_type,
            severity=severity or exception_type.default_severity,
            account_id=account_id,
            detail=detail,
            created_at=utcnow(),
            context=jsonable(dict(context or {})),
        )
        stored = self.store.insert_exception(record)
        self.log_event(
            AuditEventType.EXCEPTION_CREATED,
            account_id=account_id,
            exception_id=stored.exception_id,
            exception_type=exception_type,
            severity=stored.severity,
            detail=detail,
        )
        logger.info(
            "exception raised %s",
            kv(id=stored.exception_id, type=exception_type.value, account_id=account_id),
        )
        return stored

    def resolve_exception(
        self,
        exception_id: str,
        resolution: ExceptionResolution | str,
        notes: str | None = None,
    ) -> ExceptionRecord | None:
        """Close an exception; ``None`` (and no audit event) for an unknown id."""
        with self.store.transaction():
            current = self.store.get_exception(exception_id)
            if current is None:
                return None
            resolved = replace(
                current,
                status=ExceptionStatus.RESOLVED,
                resolution=ExceptionResolution(str(getattr(resolution, "value", resolution)).upper()),
                resolution_notes=notes or "",
                resolved_at=utcnow(),
            )
            stored = self.store.update_exception(resolved)
            self.log_event(
                AuditEventType.EXCEPTION_RESOLVED,
                account_id=stored.account_id,
                exception_id=stored.exception_id,
                exception_type=stored.exception_type,
                resolution=stored.resolution,
                notes=notes,
                resolved_at=iso(stored.resolved_at),
            )
        return stored

    def get_exception(self, exception_id: str) -> ExceptionRecord | None:
        return self.store.get_exception(exception_id)

    def exceptions(
        self,
        *,
        status: ExceptionStatus | None = None,
        account_id: str | None = None,
        exception_type: ExceptionType | None = None,
        severity: Severity | None = None,
    ) -> list[ExceptionRecord]:
        return self.store.list_exceptions(
            status=status, account_id=account_id, exception_type=exception_type, severity=severity
        )

    def events(
        self, *, account_id: str | None = None, event_type: AuditEventType | None = None
    ) -> list[AuditEvent]:
        return self.store.list_audit_events(account_id=account_id, event_type=event_type)
