from __future__ import annotations

import itertools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from pnl_statements.db.models import (
    AuditEventType,
    ClassificationState,
    ExceptionType,
    OverallStatus,
    ReconciliationStatus,
    Severity,
    TaxDerivationStatus,
    TaxReportStatus,
    ValidationStatus,
)
from pnl_statements.errors import StateResetNotAllowedError
from pnl_statements.services import orchestrator
from pnl_statements.services.orchestrator import IngestionPipeline, StatusFacts, overall_status
from pnl_statements.services.queries import OpsQueries


def _event_types(pipeline) -> list[AuditEventType]:
    return [event.event_type for event in pipeline.audit.events()]


def test_clean_statement_is_stored_with_tax_report_and_client(pipeline, make_statement):
    outcome = pipeline.process(make_statement(), scenario_id="S01")

    assert outcome.overall_status == OverallStatus.SUCCESS
    assert outcome.step_status("report_classification") == "NEW"
    assert outcome.step_status("client_resolution") == "CREATE"
    assert outcome.step_status("validation") == "VALIDATED"
    assert outcome.step_status("reconciliation") == "RECONCILED"
    assert outcome.step_status("tax_derivation") == "GENERATED"
    assert outcome.steps["tax_derivation"]["tax_report_id"] == "TR-0001"
    assert outcome.exception_ids == []

    version = pipeline.store.get_version(outcome.storage.version.version_id)
    assert version.is_active
    assert version.scenario_id == "S01"
    assert version.tax_derivation["tax_data"]["annual_summary"]["computed_tax_liability"] == 875.0

    client = pipeline.store.get_client("U1001")
    assert client.report_count == 1
    assert client.years_on_file == (2024,)
    assert pipeline.store.get_tax_report("TR-0001").status == TaxReportStatus.DRAFT

    assert _event_types(pipeline) == [
        AuditEventType.REPORT_INGESTED,
        AuditEventType.VALIDATION_COMPLETED,
        AuditEventType.RECONCILIATION_COMPLETED,
        AuditEventType.TAX_DERIVATION_COMPLETED,
        AuditEventType.REPORT_STORED,
        AuditEventType.TAX_REPORT_GENERATED,
        AuditEventType.PROCESSING_COMPLETED,
    ]


def test_resubmitted_statement_is_skipped_without_side_effects(pipeline, make_statement):
    first = pipeline.process(make_statement())

    outcome = pipeline.process(make_statement(source_file_name="resent.pdf"))

    assert outcome.overall_status == OverallStatus.DUPLICATE_SKIPPED
    assert outcome.step_status("validation") == "SKIPPED"
    assert outcome.step_status("reconciliation") == "SKIPPED"
    assert outcome.step_status("tax_derivation") == "SKIPPED"
    assert outcome.steps["storage"] == {"stored": False, "reason": "duplicate"}
    assert outcome.steps["report_classification"]["duplicate_of_version"] == first.storage.version.version_id
    assert len(pipeline.store.list_versions()) == 1
    assert pipeline.store.get_client("U1001").report_count == 1
    assert pipeline.store.get_tax_report("TR-0001").version == 1
    assert AuditEventType.DUPLICATE_SKIPPED in _event_types(pipeline)


def test_revision_archives_prior_and_regenerates_tax_report(pipeline, make_statement):
    first = pipeline.process(make_statement())
    revised = make_statement()
    revised["summary_totals"]["closing_balance_equity"] = 13499.0

    outcome = pipeline.process(revised)

    assert outcome.overall_status == OverallStatus.SUCCESS
    assert outcome.step_status("report_classification") == "REVISION"
    assert outcome.step_status("client_resolution") == "UPDATE"
    assert outcome.storage.archived_ids == (first.storage.version.version_id,)
    assert outcome.storage.version.version == 2
    assert pipeline.store.get_tax_report("TR-0001").version == 2
    assert pipeline.store.get_client("U1001").report_count == 2
    assert AuditEventType.PRIOR_VERSION_ARCHIVED in _event_types(pipeline)


def test_year_conflict_is_stored_archived_and_blocks_tax(pipeline, make_statement):
    first = pipeline.process(make_statement(year=2024))

    outcome = pipeline.process(make_statement(year="2024"))

    assert outcome.overall_status == OverallStatus.CONFLICT
    assert outcome.step_status("tax_derivation") == "BLOCKED"
    assert outcome.storage.stored
    assert not outcome.storage.version.is_active
    active = pipeline.store.active_version(outcome.classification.key)
    assert active.version_id == first.storage.version.version_id
    types = [item.exception_type for item in pipeline.audit.exceptions()]
    assert types == [ExceptionType.REPORT_VERSION_CONFLICT]
    assert len(pipeline.store.list_tax_reports()) == 1


def test_username_conflict_raises_one_high_exception_and_leaves_client_alone(pipeline, make_statement):
    pipeline.process(make_statement())
    before = pipeline.store.get_client("U1001")

    outcome = pipeline.process(make_statement(username="impostor"))

    assert outcome.overall_status == OverallStatus.CONFLICT
    assert outcome.step_status("client_resolution") == "MANUAL_REVIEW_REQUIRED"
    assert outcome.steps["client_resolution"]["identity_resolution"] == "REVIEW_REQUIRED"
    assert outcome.step_status("tax_derivation") == "BLOCKED"
    (record,) = pipeline.audit.exceptions(account_id="U1001")
    assert record.exception_type == ExceptionType.IDENTITY_CONFLICT_USERNAME_MISMATCH
    assert record.severity == Severity.HIGH
    assert outcome.exception_ids == [record.exception_id]
    assert pipeline.store.get_client("U1001") == before


def test_totals_mismatch_is_reported_and_tax_still_generated(pipeline, make_statement):
    payload = make_statement()
    payload["grand_totals_row"]["net_cash"] = 3500.0

    outcome = pipeline.process(payload)

    assert outcome.overall_status == OverallStatus.RECONCILIATION_MISMATCH
    assert outcome.reconciliation.status == ReconciliationStatus.MISMATCH
    assert outcome.tax_derivation.status == TaxDerivationStatus.GENERATED
    (record,) = pipeline.audit.exceptions()
    assert record.exception_type == ExceptionType.TOTALS_MISMATCH_NET_CASH
    assert record.context["difference"] == 70.0


def test_failed_validation_is_stored_but_blocks_tax(pipeline, make_statement):
    payload = make_statement()
    payload["monthly_rows"][0]["total_comm"] = "eighty"

    outcome = pipeline.process(payload)

    assert outcome.overall_status == OverallStatus.VALIDATION_FAILED
    assert outcome.validation.status == ValidationStatus.FAILED
    assert outcome.tax_derivation.status == TaxDerivationStatus.BLOCKED
    assert outcome.storage.stored
    assert pipeline.store.list_tax_reports() == []
    assert [item.exception_type for item in pipeline.audit.exceptions()] == [
        ExceptionType.NUMERIC_PARSE_ERROR_TOTAL_COMM
    ]


def test_low_confidence_payload_requires_review(pipeline, make_statement):
    payload = make_statement()
    payload["metadata"] = {"low_confidence": True}

    outcome = pipeline.process(payload)

    assert outcome.overall_status == OverallStatus.REVIEW_REQUIRED
    assert outcome.tax_derivation.status == TaxDerivationStatus.GENERATED


def test_statement_without_account_is_an_error_and_stores_nothing(pipeline, make_statement):
    payload = make_statement()
    payload["report_header"]["account_id"] = ""

    outcome = pipeline.process(payload, scenario_id="S99")

    assert outcome.overall_status == OverallStatus.ERROR
    assert "account_id" in outcome.error
    assert pipeline.store.list_versions() == []
    (event,) = pipeline.audit.events()
    assert event.event_type == AuditEventType.PROCESSING_ERROR
    assert event.payload["error_code"] == "SUBMISSION_UNIDENTIFIABLE"
    assert event.payload["scenario_id"] == "S99"


def test_timeout_before_commit_stores_nothing(store, settings, make_statement):
    slow = IngestionPipeline(
        store,
        replace(settings, processing_timeout_seconds=1.0),
        clock=itertools.count(0, 10).__next__,
    )

    outcome = slow.process(make_statement())

    assert outcome.overall_status == OverallStatus.ERROR
    assert "nothing was stored" in outcome.error
    assert store.list_versions() == []
    assert store.list_clients() == []
    assert _event_types(slow) == [AuditEventType.PROCESSING_ERROR]


def test_failure_during_commit_rolls_back_everything(pipeline, make_statement, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("tax report store unavailable")

    monkeypatch.setattr(orchestrator, "store_tax_report", broken)

    outcome = pipeline.process(make_statement())

    assert outcome.overall_status == OverallStatus.ERROR
    assert outcome.exception_ids == []
    assert outcome.storage is None
    assert pipeline.store.list_versions() == []
    assert pipeline.store.get_client("U1001") is None
    assert _event_types(pipeline) == [AuditEventType.PROCESSING_ERROR]


def test_concurrent_revisions_leave_exactly_one_active_version(memory_store, settings, make_statement):
    pipeline = IngestionPipeline(memory_store, settings)
    payloads = []
    for offset in range(8):
        payload = make_statement()
        payload["summary_totals"]["closing_balance_equity"] = 13500.0 + offset
        payloads.append(payload)

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(pipeline.process, payloads))

    assert all(item.overall_status == OverallStatus.SUCCESS for item in outcomes)
    versions = memory_store.list_versions()
    assert sorted(item.version for item in versions) == list(range(1, 9))
    assert len([item for item in versions if item.is_active]) == 1
    assert memory_store.get_client("U1001").report_count == 8


def test_overall_status_precedence():
    facts = StatusFacts(
        identity_conflict=False,
        classification=ClassificationState.NEW,
        validation=ValidationStatus.REVIEW_REQUIRED,
        reconciliation=ReconciliationStatus.MISMATCH,
    )

    assert overall_status(facts) == OverallStatus.RECONCILIATION_MISMATCH
    assert overall_status(replace(facts, validation=ValidationStatus.FAILED)) == OverallStatus.VALIDATION_FAILED
    assert overall_status(replace(facts, identity_conflict=True)) == OverallStatus.CONFLICT
    assert (
        overall_status(
            StatusFacts(False, ClassificationState.DUPLICATE, ValidationStatus.SKIPPED, ReconciliationStatus.SKIPPED)
        )
        == OverallStatus.DUPLICATE_SKIPPED
    )


def test_reset_clears_state_unless_disabled(pipeline, settings, make_statement):
    pipeline.process(make_statement())

    OpsQueries(pipeline.store, settings).reset_all()

    assert pipeline.store.list_clients() == []
    assert pipeline.store.list_tax_reports() == []
    assert pipeline.process(make_statement()).step_status("report_classification") == "NEW"

    locked = OpsQueries(pipeline.store, replace(settings, allow_state_reset=False))
    with pytest.raises(StateResetNotAllowedError):
        locked.reset_all()


def test_missing_grand_totals_fails_validation_and_blocks_tax(pipeline, make_statement):
    payload = make_statement()
    del payload["grand_totals_row"]

    outcome = pipeline.process(payload)

    assert outcome.overall_status == OverallStatus.VALIDATION_FAILED
    assert outcome.step_status("reconciliation") == "PARTIAL"
    assert outcome.step_status("tax_derivation") == "BLOCKED"
    assert outcome.tax_report is None
