"""Typed errors raised by the statement pipeline.

Data problems inside a submission are never raised: the validator and the
reconciler report them as results. These errors cover conditions that stop a
submission (or an operator action) outright.
"""

from __future__ import annotations


class PipelineError(Exception):
    code = "PIPELINE_ERROR"


class SubmissionError(PipelineError):
    """The submission cannot be identified (no usable header)."""

    code = "SUBMISSION_UNIDENTIFIABLE"


class ProcessingTimeoutError(PipelineError):
    code = "PROCESSING_TIMEOUT"

    def __init__(self, elapsed_seconds: float, budget_seconds: float):
        self.elapsed_seconds = elapsed_seconds
        self.budget_seconds = budget_seconds
        super().__init__(
            f"Processing exceeded {budget_seconds:.3f}s budget "
            f"(elapsed {elapsed_seconds:.3f}s); nothing was stored"
        )


class StateResetNotAllowedError(PipelineError):
    code = "STATE_RESET_NOT_ALLOWED"


class UnknownWorkflowActionError(PipelineError, ValueError):
    code = "UNKNOWN_WORKFLOW_ACTION"

    def __init__(self, action: str):
        self.action = action
        super().__init__(f'Invalid action "{action}". Use "approve", "reject", or "flag".')
