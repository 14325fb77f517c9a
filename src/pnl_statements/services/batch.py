from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import pandas as pd

from pnl_statements.db.models import (
    ClassificationState,
    OverallStatus,
    ReconciliationStatus,
    TaxDerivationStatus,
    ValidationStatus,
)
from pnl_statements.services.orchestrator import IngestionPipeline, ProcessingOutcome
from pnl_statements.services.queries import OpsQueries
from pnl_statements.utils.logging import get_logger, kv

logger = get_logger(__name__)

RESULT_COLUMNS = [
    "scenario_id",
    "title",
    "group",
    "account_id",
    "report_state",
    "overall_status",
    "validation_status",
    "reconciliation_status",
    "tax_derivation_status",
    "client_action",
    "exceptions_created",
    "processing_time_ms",
    "matches_expected",
    "error",
]

_TALLIES = {
    "report_state": ClassificationState,
    "validation_status": ValidationStatus,
    "reconciliation_status": ReconciliationStatus,
    "tax_derivation_status": TaxDerivationStatus,
    "overall_status": OverallStatus,
}

# expected-outcome section -> (section key, result column)
_EXPECTATIONS = {
    "report_state_match": (("report_resolution", "report_state"), "report_state"),
    "validation_status_match": (("validation", "status"), "validation_status"),
    "reconciliation_status_match": (("reconciliation", "status"), "reconciliation_status"),
    "tax_derivation_status_match": (("tax_derivation", "status"), "tax_derivation_status"),
    "client_action_match": (("client_resolution", "client_action"), "client_action"),
}


@dataclass(frozen=True)
class Scenario:
    scenario_id: str
    payload: Mapping[str, Any]
    title: str | None = None
    group: str | None = None
    expected: Mapping[str, Any] | None = None


@dataclass
class BatchResult:
    results: pd.DataFrame
    outcomes: list[ProcessingOutcome] = field(default_factory=list)
    runtime_ms: int = 0

    @property
    def total(self) -> int:
        return len(self.results)

    def tally(self, column: str) -> dict[str, int]:
        counts = {member.value: 0 for member in _TALLIES[column]}
        for value, count in self.results[column].dropna().value_counts().items():
            counts[str(value)] = int(count)
        return counts

    def groups(self) -> dict[str, dict[str, int]]:
        if self.results.empty:
            return {}
        frame = self.results.assign(
            ok=self.results["overall_status"].isin(
                [OverallStatus.SUCCESS.value, OverallStatus.DUPLICATE_SKIPPED.value]
            ),
            group=self.results["group"].fillna("ungrouped"),
        )
        summary: dict[str, dict[str, int]] = {}
        for name, rows in frame.groupby("group", sort=True):
            succeeded = int(rows["ok"].sum())
            summary[str(name)] = {
                "total": int(len(rows)),
                "success": succeeded,
                "failed": int(len(rows)) - succeeded,
            }
        return summary

    def to_dict(self) -> dict[str, Any]:
        records = self.results.astype(object).where(self.results.notna(), None).to_dict("records")
        return {
            "total": self.total,
            "processed": self.total,
            "counts": self.tally("report_state"),
            "validation": self.tally("validation_status"),
            "reconciliation": self.tally("reconciliation_status"),
            "tax_derivation": self.tally("tax_derivation_status"),
            "overall_status": self.tally("overall_status"),
            "exceptions_created": int(self.results["exceptions_created"].sum()) if self.total else 0,
            "groups": self.groups(),
            "scenario_results": records,
            "runtime_ms": self.runtime_ms,
        }


def _normalize_action(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).upper().removesuffix("_CLIENT")


def compare_expected(row: Mapping[str, Any], expected: Mapping[str, Any] | None) -> dict[str, bool] | None:
    if not expected:
        return None
    outcomes = expected.get("expected_outcomes", expected)
    matches: dict[str, bool] = {}
    for name, ((section, key), column) in _EXPECTATIONS.items():
        block = outcomes.get(section)
        if block is None and section == "tax_derivation":
            block = outcomes.get("tax_cleaned")
        if not isinstance(block, Mapping) or key not in block:
            continue
        wanted, actual = block.get(key), row.get(column)
        if column == "client_action":
            wanted, actual = _normalize_action(wanted), _normalize_action(actual)
        matches[name] = wanted == actual
    return matches


def _result_row(scenario: Scenario, outcome: ProcessingOutcome) -> dict[str, Any]:
    row = {
        "scenario_id": scenario.scenario_id,
        "title": scenario.title,
        "group": scenario.group,
        "account_id": outcome.account_id,
        "report_state": outcome.step_status("report_classification"),
        "overall_status": outcome.overall_status.value,
        "validation_status": outcome.step_status("validation"),
        "reconciliation_status": outcome.step_status("reconciliation"),
        "tax_derivation_status": outcome.step_status("tax_derivation"),
        "client_action": outcome.step_status("client_resolution"),
        "exceptions_created": len(outcome.exception_ids),
        "processing_time_ms": outcome.processing_time_ms,
        "error": outcome.error,
    }
    row["matches_expected"] = compare_expected(row, scenario.expected)
    return row


def _as_scenario(item: Scenario | tuple[str, Mapping[str, Any]]) -> Scenario:
    if isinstance(item, Scenario):
        return item
    scenario_id, payload = item
    return Scenario(scenario_id=str(scenario_id), payload=payload)


def process_batch(
    pipeline: IngestionPipeline,
    scenarios: Iterable[Scenario | tuple[str, Mapping[str, Any]]],
    *,
    reset_first: bool = False,
) -> BatchResult:
    """Process scenarios strictly in order; each commit finishes before the next starts."""
    started = time.perf_counter()
    if reset_first:
        OpsQueries(pipeline.store, pipeline.settings).reset_all()

    rows: list[dict[str, Any]] = []
    outcomes: list[ProcessingOutcome] = []
    for item in scenarios:
        scenario = _as_scenario(item)
        outcome = pipeline.process(scenario.payload, scenario_id=scenario.scenario_id)
        outcomes.append(outcome)
        rows.append(_result_row(scenario, outcome))

    frame = pd.DataFrame(rows, columns=RESULT_COLUMNS)
    result = BatchResult(
        results=frame,
        outcomes=outcomes,
        runtime_ms=int((time.perf_counter() - started) * 1000),
    )
    logger.info(
        "batch processed %s",
        kv(total=result.total, errors=result.tally("overall_status")[OverallStatus.ERROR.value]),
    )
    return result


def load_payload(path: str | Path) -> dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as handle:
        return json.load(handle)
