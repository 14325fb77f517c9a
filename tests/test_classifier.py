from __future__ import annotations

from pnl_statements.db.models import ClassificationState
from pnl_statements.ingest.classifier import (
    YEAR_MISMATCH,
    build_version_id,
    classify,
    store_version,
)
from pnl_statements.ingest.submission import Submission

RESULTS = {"validation": {}, "reconciliation": {}, "tax_derivation": {}}


def _submit(store, payload):
    submission = Submission.from_payload(payload)
    classification = classify(store, submission, "broker_pnl_report")
    result = store_version(store, submission, classification, **RESULTS)
    return classification, result


def test_first_submission_is_new_and_active(store, make_statement):
    classification, result = _submit(store, make_statement())

    assert classification.state == ClassificationState.NEW
    assert classification.prior_versions == ()
    assert result.stored
    assert result.version.version == 1
    assert result.version.is_active
    assert result.version.version_id == build_version_id(classification.natural_key, 1)
    assert result.version.version_id.startswith("RPT-U1001-2024-")


def test_identical_resubmission_is_duplicate_and_not_stored(store, make_statement):
    first, stored = _submit(store, make_statement())

    classification, result = _submit(store, make_statement(source_file_name="copy_of_statement.pdf"))

    assert classification.state == ClassificationState.DUPLICATE
    assert classification.to_dict()["duplicate_of_version"] == stored.version.version_id
    assert result.to_dict() == {"stored": False, "reason": "duplicate"}
    assert len(store.versions_for_key(first.key)) == 1


def test_changed_content_is_a_revision_that_archives_the_prior_version(store, make_statement):
    _, first = _submit(store, make_statement())
    revised = make_statement()
    revised["grand_totals_row"]["net_cash"] = 3431.0

    classification, result = _submit(store, revised)

    assert classification.state == ClassificationState.REVISION
    assert classification.prior_versions == (first.version.version_id,)
    assert result.version.version == 2
    assert result.archived_ids == (first.version.version_id,)
    old = store.get_version(first.version.version_id)
    assert not old.is_active
    assert old.archived_reason == f"Superseded by {result.version.version_id}"


def test_year_spelled_differently_is_a_conflict_kept_for_audit(store, make_statement):
    _, first = _submit(store, make_statement(year=2024))

    classification, result = _submit(store, make_statement(year="2024"))

    assert classification.key == first.version.natural_key
    assert classification.state == ClassificationState.CONFLICT
    assert classification.conflict_reason == YEAR_MISMATCH
    assert result.stored
    assert not result.version.is_active
    assert result.version.archived_reason == f"Stored for audit: {YEAR_MISMATCH}"
    assert store.active_version(classification.key).version_id == first.version.version_id


def test_at_most_one_active_version_per_key_across_revisions(store, make_statement):
    key = None
    for net_cash in (3430.0, 3431.0, 3432.0, 3433.0):
        payload = make_statement()
        payload["grand_totals_row"]["net_cash"] = net_cash
        classification, result = _submit(store, payload)
        key = classification.key

    versions = store.versions_for_key(key)
    assert [item.version for item in versions] == [1, 2, 3, 4]
    assert [item.is_active for item in versions] == [False, False, False, True]
    assert all(item.archived_at is not None for item in versions[:-1])
