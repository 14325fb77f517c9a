"""Runs one submission through identity, classification, validation,
reconciliation and tax derivation, then commits the result.

Everything up to the commit is computed without touching the store. The
commit (client, report version, client stats, tax report, exceptions, audit
events) is one store transaction; if anything fails before or during it the
outcome is ERROR and only a PROCESSING_ERROR event is recorded.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from pnl_statements.analytics.reconciliation import ReconciliationResult, reconcile
from pnl_statements.analytics.tax_derivation import TaxDerivation, derive
from pnl_statements.analytics.tax_reports import store_tax_report
from pnl_statements.config.settings import Settings, get_settings
from pnl_statements.db.models import (
    AuditEventType,
    ClassificationState,
    ExceptionType,
    OverallStatus,
    ReconciliationStatus,
    TaxDerivationStatus,
    ValidationStatus,
)
from pnl_statements.db.records import TaxReport
from pnl_statements.db.store import Store, build_store
from pnl_statements.errors import ProcessingTimeoutError
from pnl_statements.ingest.classifier import Classification, StorageResult, classify, store_version
from pnl_statements.ingest.client_identity import IdentityResolution, apply_client_stats, resolve_client
from pnl_statements.ingest.identity import natural_key, short_fingerprint
from pnl_statements.ingest.submission import Submission
from pnl_statements.ingest.validators import ValidationResult, validate
from pnl_statements.services.audit_log import AuditLog
from pnl_statements.utils.logging import get_logger, kv

logger = get_logger(__name__)

DUPLICATE_REASON = "Duplicate report"


@dataclass(frozen=True)
class StatusFacts:
    identity_conflict: bool
    classification: ClassificationState
    validation: ValidationStatus
    reconciliation: ReconciliationStatus


# Evaluated top-down; the first matching predicate decides the overall status.
OVERALL_STATUS_RULES: tuple[tuple[Callable[[StatusFacts], bool], OverallStatus], ...] = (
    (
        lambda facts: facts.identity_conflict or facts.classification is ClassificationState.CONFLICT,
        OverallStatus.CONFLICT,
    ),
    (lambda facts: facts.validation is ValidationStatus.FAILED, OverallStatus.VALIDATION_FAILED),
    (
        lambda facts: facts.reconciliation is ReconciliationStatus.MISMATCH,
        OverallStatus.RECONCILIATION_MISMATCH,
    ),
    (lambda facts: facts.validation is ValidationStatus.REVIEW_REQUIRED, OverallStatus.REVIEW_REQUIRED),
    (lambda facts: facts.classification is ClassificationState.DUPLICATE, OverallStatus.DUPLICATE_SKIPPED),
)


def overall_status(facts: StatusFacts) -> OverallStatus:
    for predicate, status in OVERALL_STATUS_RULES:
        if predicate(facts):
            return status
    return OverallStatus.SUCCESS


@dataclass
class ProcessingOutcome:
    scenario_id: str | None = None
    account_id: str | None = None
    year: Any = None
    overall_status: OverallStatus = OverallStatus.SUCCESS
    steps: dict[str, Any] = field(default_factory=dict)
    processing_time_ms: int = 0
    error: str | None = None
    identity: IdentityResolution | None = None
    classification: Classification | None = None
    validation: ValidationResult | None = None
    reconciliation: ReconciliationResult | None = None
    tax_derivation: TaxDerivation | None = None
    storage: StorageResult | None = None
    tax_report: TaxReport | None = None
    exception_ids: list[str] = field(default_factory=list)

    def step_status(self, step: str) -> str | None:
        data = self.steps.get(step) or {}
        return data.get("state") or data.get("status") or data.get("action")

    def to_dict(self) -> dict[str, Any]:
        data = {
            "scenario_id": self.scenario_id,
            "account_id": self.account_id,
            "year": self.year,
            "steps": self.steps,
            "overall_status": self.overall_status.value,
            "processing_time_ms": self.processing_time_ms,
            "exceptions_created": len(self.exception_ids),
        }
        if self.error is not None:
            data["error"] = self.error
        return data


class IngestionPipeline:
    def __init__(
        self,
        store: Store | None = None,
        settings: Settings | None = None,
        *,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.settings = settings or get_settings()
        self.store = store if store is not None else build_store(self.settings)
        self.audit = AuditLog(self.store)
        self._clock = clock

    def process(self, payload: Mapping[str, Any], scenario_id: str | None = None) -> ProcessingOutcome:
        started = self._clock()
        outcome = ProcessingOutcome(scenario_id=scenario_id)
        try:
            submission = Submission.from_payload(payload)
            outcome.account_id = submission.require_identity()
            outcome.year = submission.tax_year
            self._run(submission, outcome, started)
        except Exception as exc:
            outcome.overall_status = OverallStatus.ERROR
            outcome.error = str(exc)
            # The commit was rolled back; nothing it produced exists.
            outcome.exception_ids = []
            outcome.storage = None
            outcome.tax_report = None
            outcome.steps.pop("storage", None)
            logger.error(
                "processing failed %s",
                kv(account_id=outcome.account_id, scenario_id=scenario_id, error=exc),
                exc_info=not hasattr(exc, "code"),
            )
            self.audit.log_event(
                AuditEventType.PROCESSING_ERROR,
                account_id=outcome.account_id,
                scenario_id=scenario_id,
                error=str(exc),
                error_code=getattr(exc, "code", None),
            )
        outcome.processing_time_ms = int((self._clock() - started) * 1000)
        return outcome

    # -- steps -------------------------------------------------------------
    def _run(self, submission: Submission, outcome: ProcessingOutcome, started: float) -> None:
        source_type = self.settings.source_report_type
        header = submission.header
        key = natural_key(header, source_type).as_string()

        # Client records are read-modify-write across keys of the same account.
        with self.store.key_lock(f"client:{outcome.account_id}"), self.store.key_lock(key):
            identity = resolve_client(self.store, header)
            outcome.identity = identity
            outcome.steps["client_resolution"] = identity.to_dict()

            classification = classify(self.store, submission, source_type)
            outcome.classification = classification
            outcome.steps["report_classification"] = classification.to_dict()

            if classification.state is ClassificationState.DUPLICATE:
                validation = ValidationResult.skipped(DUPLICATE_REASON)
                reconciliation = ReconciliationResult.skipped(DUPLICATE_REASON)
                derivation = TaxDerivation(TaxDerivationStatus.SKIPPED, reason=DUPLICATE_REASON)
            else:
                validation = validate(submission)
                reconciliation = reconcile(submission, self.settings.reconciliation_tolerance)
                gate_state = (
                    ClassificationState.CONFLICT if identity.has_conflict else classification.state
                )
                derivation = derive(
                    submission,
                    validation,
                    reconciliation,
                    gate_state,
                    tax_rate=self.settings.tax_rate,
                    jurisdiction=self.settings.tax_jurisdiction,
                    source_report_type=source_type,
                )
            outcome.validation = validation
            outcome.reconciliation = reconciliation
            outcome.tax_derivation = derivation
            outcome.steps["validation"] = validation.to_dict()
            outcome.steps["reconciliation"] = reconciliation.to_dict()
            outcome.steps["tax_derivation"] = derivation.to_dict()

            elapsed = self._clock() - started
            budget = self.settings.processing_timeout_seconds
            if budget and elapsed > budget:
                raise ProcessingTimeoutError(elapsed, budget)

            with self.store.transaction():
                self._commit(submission, outcome)

        outcome.overall_status = overall_status(
            StatusFacts(
                identity_conflict=identity.has_conflict,
                classification=classification.state,
                validation=validation.status,
                reconciliation=reconciliation.status,
            )
        )
        logger.info(
            "submission processed %s",
            kv(
                account_id=outcome.account_id,
                state=classification.state.value,
                overall=outcome.overall_status.value,
                scenario_id=outcome.scenario_id,
            ),
        )

    def _raise(self, exception_type: ExceptionType, outcome: ProcessingOutcome, detail: str, context: Mapping[str, Any]) -> None:
        record = self.audit.create_exception(
            exception_type, account_id=outcome.account_id, detail=detail, context=context
        )
        outcome.exception_ids.append(record.exception_id)

    def _commit(self, submission: Submission, outcome: ProcessingOutcome) -> None:
        identity = outcome.identity
        classification = outcome.classification
        validation = outcome.validation
        reconciliation = outcome.reconciliation
        derivation = outcome.tax_derivation
        account_id = outcome.account_id
        scenario_id = outcome.scenario_id
        state = classification.state

        self.audit.log_event(
            AuditEventType.REPORT_INGESTED,
            account_id=account_id,
            scenario_id=scenario_id,
            report_state=state,
            payload_hash=short_fingerprint(classification.fingerprint),
            source_file=submission.source_file_name,
        )

        if identity.conflict is not None:
            conflict = identity.conflict
            self._raise(
                conflict.exception_type,
                outcome,
                f'Username conflict: existing="{conflict.existing_username}" '
                f'incoming="{conflict.incoming_username}"',
                conflict.to_dict(),
            )

        if state is ClassificationState.DUPLICATE:
            self.audit.log_event(
                AuditEventType.DUPLICATE_SKIPPED,
                account_id=account_id,
                scenario_id=scenario_id,
                duplicate_of=classification.active_version_id,
                detail="Duplicate of existing report; no reprocessing needed",
            )
            storage = store_version(
                self.store,
                submission,
                classification,
                validation={},
                reconciliation={},
                tax_derivation={},
            )
            outcome.storage = storage
            outcome.steps["storage"] = storage.to_dict()
            if not identity.has_conflict:
                self.store.put_client(identity.client)
            self._completed(outcome)
            return

        if state is ClassificationState.CONFLICT:
            self._raise(
                ExceptionType.REPORT_VERSION_CONFLICT,
                outcome,
                f"Report conflicts with active version {classification.active_version_id}: "
                f"{classification.conflict_reason}",
                {
                    "natural_key": classification.key,
                    "active_version_id": classification.active_version_id,
                    "conflict_reason": classification.conflict_reason,
                    "incoming_year": submission.tax_year,
                },
            )

        for issue in validation.issues:
            self._raise(issue.exception_type, outcome, issue.detail, issue.to_dict())
        self.audit.log_event(
            AuditEventType.VALIDATION_COMPLETED,
            account_id=account_id,
            scenario_id=scenario_id,
            validation_status=validation.status,
            checks=validation.checks,
        )

        if reconciliation.status is ReconciliationStatus.MISMATCH:
            for detail in reconciliation.details:
                if "difference" not in detail:
                    continue
                self._raise(
                    ExceptionType.totals_mismatch(detail["field"]), outcome, detail["message"], detail
                )
        self.audit.log_event(
            AuditEventType.RECONCILIATION_COMPLETED,
            account_id=account_id,
            scenario_id=scenario_id,
            reconciliation_status=reconciliation.status,
            checks=reconciliation.checks,
        )

        self.audit.log_event(
            AuditEventType.TAX_DERIVATION_COMPLETED,
            account_id=account_id,
            scenario_id=scenario_id,
            tax_derivation_status=derivation.status,
            reason=derivation.reason,
        )

        storage = store_version(
            self.store,
            submission,
            classification,
            validation=validation.to_dict(),
            reconciliation=reconciliation.to_dict(),
            tax_derivation={**derivation.to_dict(), "tax_data": derivation.tax_data},
            scenario_id=scenario_id,
        )
        outcome.storage = storage
        outcome.steps["storage"] = storage.to_dict()
        self.audit.log_event(
            AuditEventType.REPORT_STORED,
            account_id=account_id,
            scenario_id=scenario_id,
            report_id=storage.version.version_id,
            version=storage.version.version,
            report_state=state,
            is_active=storage.version.is_active,
        )
        if storage.archived_ids:
            self.audit.log_event(
                AuditEventType.PRIOR_VERSION_ARCHIVED,
                account_id=account_id,
                scenario_id=scenario_id,
                new_version_id=storage.version.version_id,
                prior_versions=storage.archived_ids,
            )

        if not identity.has_conflict:
            self.store.put_client(
                apply_client_stats(identity.client, submission.tax_year, now=identity.client.updated_at)
            )

        if derivation.generated:
            report = store_tax_report(
                self.store,
                account_id=account_id,
                year=submission.tax_year,
                tax_data=derivation.tax_data,
                client_name=submission.header.get("client_display_name"),
                source_files=[submission.source_file_name] if submission.source_file_name else [],
            )
            outcome.tax_report = report
            outcome.steps["tax_derivation"]["tax_report_id"] = report.report_id
            self.audit.log_event(
                AuditEventType.TAX_REPORT_GENERATED,
                account_id=account_id,
                scenario_id=scenario_id,
                tax_report_id=report.report_id,
                year=report.year,
                version=report.version,
            )

        self._completed(outcome)

    def _completed(self, outcome: ProcessingOutcome) -> None:
        self.audit.log_event(
            AuditEventType.PROCESSING_COMPLETED,
            account_id=outcome.account_id,
            scenario_id=outcome.scenario_id,
            report_state=outcome.classification.state,
            validation_status=outcome.validation.status,
            reconciliation_status=outcome.reconciliation.status,
            tax_derivation_status=outcome.tax_derivation.status,
            stored=bool(outcome.storage and outcome.storage.stored),
        )


def process_submission(
    payload: Mapping[str, Any],
    *,
    store: Store | None = None,
    settings: Settings | None = None,
    scenario_id: str | None = None,
) -> ProcessingOutcome:
    return IngestionPipeline(store, settings).process(payload, scenario_id=scenario_id)
