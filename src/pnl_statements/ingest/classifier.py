"""Classify a submission against stored history and append its version.

States:
- NEW: nothing stored under the natural key.
- DUPLICATE: the active version has the same fingerprint. Never stored.
- REVISION: same key, different content, same tax year. Prior versions are
  archived and the new one becomes active.
- CONFLICT: same key, different content, but the header year disagrees with
  the active version. Kept for the audit trail as an archived version; the
  active pointer does not move.

Callers hold ``store.key_lock(key)`` from ``classify`` to ``store_version``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from pnl_statements.db.models import ClassificationState
from pnl_statements.db.records import ReportVersion, utcnow
from pnl_statements.db.store import Store
from pnl_statements.ingest.identity import NaturalKey, fingerprint, natural_key, short_fingerprint
from pnl_statements.ingest.submission import Submission
from pnl_statements.utils.logging import get_logger, kv

logger = get_logger(__name__)

YEAR_MISMATCH = "YEAR_MISMATCH"


@dataclass(frozen=True)
class Classification:
    state: ClassificationState
    natural_key: NaturalKey
    fingerprint: str
    prior_versions: tuple[str, ...] = ()
    active_version_id: str | None = None
    conflict_reason: str | None = None

    @property
    def key(self) -> str:
        return self.natural_key.as_string()

    @property
    def is_storable(self) -> bool:
        return self.state is not ClassificationState.DUPLICATE

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "state": self.state.value,
            "natural_key": self.natural_key.to_dict(),
            "natural_key_hash": self.key,
            "payload_hash": self.fingerprint,
            "payload_hash_short": short_fingerprint(self.fingerprint),
            "prior_versions": list(self.prior_versions),
        }
        if self.state is ClassificationState.DUPLICATE:
            data["duplicate_of_version"] = self.active_version_id
        elif self.active_version_id:
            data["active_version_id"] = self.active_version_id
        if self.conflict_reason:
            data["conflict_reason"] = self.conflict_reason
        return data


@dataclass(frozen=True)
class StorageResult:
    stored: bool
    version: ReportVersion | None = None
    archived_ids: tuple[str, ...] = ()
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.stored or self.version is None:
            return {"stored": False, "reason": self.reason}
        return {
            "stored": True,
            "report_id": self.version.version_id,
            "version": self.version.version,
            "is_active": self.version.is_active,
            "archived_versions": list(self.archived_ids),
        }


def _header_conflict(active_header: Mapping[str, Any], incoming_header: Mapping[str, Any]) -> str | None:
    # The key compares years as text; the stored header keeps the original value.
    if active_header.get("year") != incoming_header.get("year"):
        return YEAR_MISMATCH
    return None


def classify(
    store: Store, submission: Submission, source_report_type: str | None = None
) -> Classification:
    header = submission.header
    key = natural_key(header, source_report_type)
    digest = fingerprint(submission)

    existing = store.versions_for_key(key.as_string())
    prior_ids = tuple(item.version_id for item in existing)
    if not existing:
        return Classification(ClassificationState.NEW, key, digest)

    active = store.active_version(key.as_string())
    if active is not None and active.fingerprint == digest:
        return Classification(
            ClassificationState.DUPLICATE,
            key,
            digest,
            prior_versions=prior_ids,
            active_version_id=active.version_id,
        )

    if active is not None:
        reason = _header_conflict(active.header, header)
        if reason:
            return Classification(
                ClassificationState.CONFLICT,
                key,
                digest,
                prior_versions=prior_ids,
                active_version_id=active.version_id,
                conflict_reason=reason,
            )

    return Classification(
        ClassificationState.REVISION,
        key,
        digest,
        prior_versions=prior_ids,
        active_version_id=active.version_id if active else None,
    )


def build_version_id(key: NaturalKey, version: int) -> str:
    return f"RPT-{key.account_id}-{key.year}-{key.digest[:8]}-v{version}"


def next_version_number(store: Store, key: str) -> int:
    versions = store.versions_for_key(key)
    return max((item.version for item in versions), default=0) + 1


def store_version(
    store: Store,
    submission: Submission,
    classification: Classification,
    *,
    validation: Mapping[str, Any],
    reconciliation: Mapping[str, Any],
    tax_derivation: Mapping[str, Any],
    scenario_id: str | None = None,
    now: datetime | None = None,
) -> StorageResult:
    if not classification.is_storable:
        return StorageResult(stored=False, reason="duplicate")

    stamp = now or utcnow()
    number = next_version_number(store, classification.key)
    version_id = build_version_id(classification.natural_key, number)
    record = ReportVersion(
        version_id=version_id,
        natural_key=classification.key,
        natural_key_fields=classification.natural_key.to_dict(),
        account_id=str(classification.natural_key.account_id),
        version=number,
        state=classification.state,
        fingerprint=classification.fingerprint,
        payload=submission.to_payload(),
        validation=dict(validation),
        reconciliation=dict(reconciliation),
        tax_derivation=dict(tax_derivation),
        stored_at=stamp,
        scenario_id=scenario_id,
    )

    if classification.state is ClassificationState.CONFLICT:
        archived = store.append_version(
            record,
            activate=False,
            archive_reason=f"Stored for audit: {classification.conflict_reason}",
            archived_at=stamp,
        )
    else:
        archived = store.append_version(
            record,
            activate=True,
            archive_reason=f"Superseded by {version_id}",
            archived_at=stamp,
        )

    stored = store.get_version(version_id) or record
    logger.info(
        "version stored %s",
        kv(
            version_id=version_id,
            state=classification.state.value,
            active=stored.is_active,
            archived=len(archived) or None,
        ),
    )
    return StorageResult(stored=True, version=stored, archived_ids=tuple(archived))
