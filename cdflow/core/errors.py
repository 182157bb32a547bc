"""Error kinds raised and recorded by the pipeline engine.

Every failure the engine can observe is a ``PipelineError`` carrying an
``ErrorKind``. Kinds are ordered by severity so the run-level error can be
escalated (a failed rollback outranks the deployment failure that caused it).
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of pipeline failures."""

    CONFIGURATION = "configuration_error"
    STEP_FAILURE = "step_failure"
    TOLERATED_FAILURE = "tolerated_failure"
    GATE_REJECTION = "gate_rejection"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_TIMED_OUT = "approval_timed_out"
    DEPLOYMENT_FAILURE = "deployment_failure"
    FATAL_ROLLBACK = "fatal_rollback_error"
    ABORTED = "aborted"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    ErrorKind.TOLERATED_FAILURE: 0,
    ErrorKind.ABORTED: 1,
    ErrorKind.STEP_FAILURE: 2,
    ErrorKind.APPROVAL_REJECTED: 2,
    ErrorKind.APPROVAL_TIMED_OUT: 2,
    ErrorKind.CONFIGURATION: 3,
    ErrorKind.GATE_REJECTION: 3,
    ErrorKind.DEPLOYMENT_FAILURE: 3,
    ErrorKind.FATAL_ROLLBACK: 4,
}


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    kind: ErrorKind = ErrorKind.STEP_FAILURE

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        self.stage = stage


class ConfigurationError(PipelineError):
    """Malformed stage, matrix or engine configuration."""

    kind = ErrorKind.CONFIGURATION


class StepFailure(PipelineError):
    """A must-succeed step exited non-zero."""

    kind = ErrorKind.STEP_FAILURE

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        step: str | None = None,
        exit_code: int | None = None,
    ):
        super().__init__(message, stage)
        self.step = step
        self.exit_code = exit_code


class ToleratedFailure(StepFailure):
    """A best-effort step exited non-zero. Recorded, never raised."""

    kind = ErrorKind.TOLERATED_FAILURE


class GateRejection(PipelineError):
    """The quality service reported an unsuccessful verdict."""

    kind = ErrorKind.GATE_REJECTION


class ApprovalRejected(PipelineError):
    """An approver declined, or the run was cancelled while waiting."""

    kind = ErrorKind.APPROVAL_REJECTED


class ApprovalTimedOut(ApprovalRejected):
    """No decision arrived before the approval timeout."""

    kind = ErrorKind.APPROVAL_TIMED_OUT


class DeploymentFailure(PipelineError):
    """Rollout of a new image did not reach a healthy state."""

    kind = ErrorKind.DEPLOYMENT_FAILURE


class FatalRollbackError(PipelineError):
    """The compensating revert after a failed deployment itself failed."""

    kind = ErrorKind.FATAL_ROLLBACK

    def __init__(self, message: str, stage: str | None = None, cause: PipelineError | None = None):
        super().__init__(message, stage)
        self.cause = cause


class RunAborted(PipelineError):
    """The run was cancelled externally or exceeded its deadline."""

    kind = ErrorKind.ABORTED
