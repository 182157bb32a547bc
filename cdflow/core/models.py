"""Data models for the pipeline engine.

Declarative, immutable pieces (steps, context specs, hooks, bindings) are
Pydantic models. Runtime state that the engine mutates while walking the
graph (stage nodes, the run itself) are plain dataclasses.
"""

from __future__ import annotations

import os
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from string import Template
from typing import ClassVar, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from cdflow.core.errors import ErrorKind, PipelineError, ToleratedFailure


def substitute(text: str, values: Mapping[str, str]) -> str:
    """Expand ``${NAME}`` / ``$NAME`` placeholders, leaving unknown ones intact."""
    return Template(text).safe_substitute(values)


def utc_now() -> datetime:
    return datetime.now(UTC)


class RunStatus(str, Enum):
    """Overall status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)


class NodeStatus(str, Enum):
    """Execution status of a stage node."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"
    SKIPPED = "skipped"  # Never started because the run had already stopped

    @property
    def is_terminal(self) -> bool:
        return self not in (NodeStatus.PENDING, NodeStatus.RUNNING)


class StageKind(str, Enum):
    """Variants of the stage tree walked by the engine."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    MATRIX = "matrix"
    MATRIX_CELL = "matrix_cell"
    GATE = "gate"
    APPROVAL = "approval"
    DEPLOY = "deploy"
    LEAF = "leaf"


class StepOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TOLERATED = "tolerated"


class GateVerdict(str, Enum):
    """Verdict reported by an external quality service."""

    PASS = "pass"
    UNSUCCESSFUL = "unsuccessful"


# --- Declarative building blocks ---


class ContextSpec(BaseModel):
    """Requirement for an execution context (agent label + image)."""

    model_config = ConfigDict(frozen=True)

    label: str = "any"
    image: str | None = None
    parameters: dict[str, str] = Field(default_factory=dict)

    def render(self, values: Mapping[str, str]) -> ContextSpec:
        return ContextSpec(
            label=substitute(self.label, values),
            image=substitute(self.image, values) if self.image else None,
            parameters={k: substitute(v, values) for k, v in self.parameters.items()},
        )


class Step(BaseModel):
    """A single external command. ``best_effort`` steps may exit non-zero."""

    model_config = ConfigDict(frozen=True)

    run: str
    name: str | None = None
    best_effort: bool = False
    timeout: int | None = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        first_line = self.run.strip().splitlines()[0] if self.run.strip() else ""
        return first_line[:60]

    def render(self, values: Mapping[str, str]) -> Step:
        return self.model_copy(update={"run": substitute(self.run, values)})


class PostHooks(BaseModel):
    """Steps run after a stage body: ``always`` first, then success or unsuccessful."""

    model_config = ConfigDict(frozen=True)

    always: list[Step] = Field(default_factory=list)
    success: list[Step] = Field(default_factory=list)
    unsuccessful: list[Step] = Field(
        default_factory=list,
        validation_alias=AliasChoices("unsuccessful", "failure"),
    )

    def is_empty(self) -> bool:
        return not (self.always or self.success or self.unsuccessful)

    def render(self, values: Mapping[str, str]) -> PostHooks:
        return PostHooks(
            always=[s.render(values) for s in self.always],
            success=[s.render(values) for s in self.success],
            unsuccessful=[s.render(values) for s in self.unsuccessful],
        )


class GateSpec(BaseModel):
    """Quality gate attached to a stage."""

    model_config = ConfigDict(frozen=True)

    project_key: str
    timeout: float | None = None  # Falls back to EngineConfig.gate_timeout


class ApprovalSpec(BaseModel):
    """Manual promotion gate guarding the stage's children."""

    model_config = ConfigDict(frozen=True)

    message: str
    allowed_responders: list[str] = Field(default_factory=list)  # Empty means anyone
    timeout: float | None = None
    on_reject: Literal["failed", "aborted"] | None = None


class DeploySpec(BaseModel):
    """Image rollout to a deployment target."""

    model_config = ConfigDict(frozen=True)

    deployment: str
    image: str
    namespace: str | None = None  # Falls back to the NAMESPACE binding
    rollback: bool = True


class RunBindings(BaseModel):
    """Read-only run identity and environment, resolved once per run."""

    model_config = ConfigDict(frozen=True)

    build_number: int
    branch: str = "main"
    registry: str = ""
    image: str = ""
    namespace: str = "default"
    app: str = ""
    extra: dict[str, str] = Field(default_factory=dict)

    ENV_KEYS: ClassVar[tuple[str, ...]] = ("REGISTRY", "IMAGE", "NAMESPACE", "APP")

    def as_env(self) -> dict[str, str]:
        env = {
            "BUILD_NUMBER": str(self.build_number),
            "BRANCH_NAME": self.branch,
            "REGISTRY": self.registry,
            "IMAGE": self.image,
            "NAMESPACE": self.namespace,
            "APP": self.app,
        }
        env.update(self.extra)
        return env

    @classmethod
    def from_env(
        cls,
        build_number: int,
        environ: Mapping[str, str] | None = None,
        **overrides: str | None,
    ) -> RunBindings:
        """Resolve bindings from explicit overrides, falling back to the environment."""
        environ = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for key in cls.ENV_KEYS:
            override = overrides.get(key.lower())
            if override is not None:
                values[key.lower()] = override
            elif key in environ:
                values[key.lower()] = environ[key]
        branch = overrides.get("branch") or environ.get("BRANCH_NAME") or "main"
        return cls(build_number=build_number, branch=branch, **values)


# --- Runtime state ---


@dataclass
class StepResult:
    """Captured outcome of one step invocation."""

    step: str
    exit_code: int
    output: str
    outcome: StepOutcome
    duration_seconds: float = 0.0
    hook: str | None = None  # Set when the step ran as a post-hook

    @property
    def succeeded(self) -> bool:
        return self.outcome != StepOutcome.FAILED


@dataclass(eq=False)
class StageNode:
    """A node of the executable stage tree."""

    name: str
    kind: StageKind
    path: str = ""
    steps: list[Step] = field(default_factory=list)
    children: list[StageNode] = field(default_factory=list)
    context: ContextSpec | None = None
    hooks: PostHooks = field(default_factory=PostHooks)
    continue_on_error: bool = False
    retries: int = 0
    matrix_values: dict[str, str] = field(default_factory=dict)
    gate: GateSpec | None = None
    approval: ApprovalSpec | None = None
    deploy: DeploySpec | None = None
    parent: StageNode | None = field(default=None, repr=False, compare=False)

    status: NodeStatus = NodeStatus.PENDING
    error: PipelineError | None = None
    step_results: list[StepResult] = field(default_factory=list)
    tolerated: list[ToleratedFailure] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def walk(self) -> Iterator[StageNode]:
        """Depth-first iteration over this node and all descendants."""
        yield self
        for child in self.children:
            yield from child.walk()

    def ancestors(self) -> Iterator[StageNode]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def find(self, path: str) -> StageNode | None:
        return next((n for n in self.walk() if n.path == path), None)

    @property
    def has_work(self) -> bool:
        """True if the node needs an execution context of its own."""
        return bool(self.steps) or self.deploy is not None or self.gate is not None

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    def derive_status(self) -> NodeStatus:
        """Aggregate the children's statuses into this node's status.

        A failed child marked continue-on-error does not fail its parent,
        unless it failed on a quality gate.
        """
        statuses = [
            NodeStatus.SUCCEEDED
            if child.status == NodeStatus.FAILED
            and child.continue_on_error
            and child.error_kind != ErrorKind.GATE_REJECTION
            else child.status
            for child in self.children
        ]
        if NodeStatus.FAILED in statuses:
            return NodeStatus.FAILED
        if NodeStatus.ABORTED in statuses:
            return NodeStatus.ABORTED
        if NodeStatus.SKIPPED in statuses:
            return NodeStatus.SKIPPED
        return NodeStatus.SUCCEEDED


@dataclass
class DeploymentAttempt:
    """One rollout tracked by the rollback controller."""

    deployment: str
    namespace: str
    image: str
    previous_revision: str | None = None
    succeeded: bool | None = None
    reverted: bool = False


@dataclass(frozen=True)
class RunFailure:
    """A failure recorded against the run, with the stage that raised it."""

    stage: str | None
    kind: ErrorKind
    message: str | None = None

    @classmethod
    def from_error(cls, stage: str | None, error: PipelineError) -> RunFailure:
        text = str(error)
        return cls(stage=stage, kind=error.kind, message=text.splitlines()[0] if text else None)


@dataclass
class PipelineRun:
    """Top-level execution instance.

    ``failed_stage``, ``error_kind`` and ``error_message`` always describe the
    same failure: the first one recorded. A later, more severe failure (for
    example a failed rollback on a sibling branch) is kept in ``escalation``.
    """

    run_id: int
    bindings: RunBindings
    root: StageNode
    status: RunStatus = RunStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    failed_stage: str | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    escalation: RunFailure | None = None
    failures: list[RunFailure] = field(default_factory=list)
    finalized: bool = False

    @classmethod
    def create(cls, bindings: RunBindings, root: StageNode) -> PipelineRun:
        return cls(run_id=bindings.build_number, bindings=bindings, root=root)

    @property
    def branch(self) -> str:
        return self.bindings.branch

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def summary(self) -> str:
        """One-line outcome used by notifications and the CLI."""
        text = f"Build #{self.run_id} ({self.branch}) {self.status.value.upper()}"
        if self.status != RunStatus.SUCCEEDED and self.failed_stage:
            kind = self.error_kind.value if self.error_kind else "unknown"
            text += f" at stage '{self.failed_stage}' [{kind}]"
        if self.error_message and self.status != RunStatus.SUCCEEDED:
            text += f": {self.error_message}"
        if self.escalation is not None and self.status != RunStatus.SUCCEEDED:
            worst = self.escalation
            text += f"; escalated at stage '{worst.stage}' [{worst.kind.value}]"
            if worst.message:
                text += f": {worst.message}"
        return text
