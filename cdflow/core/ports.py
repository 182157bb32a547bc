"""Interfaces to the engine's external collaborators.

The engine never talks to a scheduler, shell, quality service, cluster or chat
system directly; it only sees these protocols. Reference adapters live in
``cdflow.sandbox`` and ``cdflow.adapters``; tests use in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from cdflow.core.models import ContextSpec, GateVerdict

if TYPE_CHECKING:
    from cdflow.core.interaction import ApprovalDecision, ApprovalRequest


@dataclass
class ExecutionContext:
    """An isolated environment handed out by an ExecutionProvider."""

    id: str
    spec: ContextSpec
    workdir: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    handle: str | None = None  # Provider specific, e.g. container name


class ExecutionProvider(Protocol):
    async def acquire(self, spec: ContextSpec) -> ExecutionContext: ...

    async def release(self, context: ExecutionContext) -> None: ...

    async def cleanup(self) -> None:
        """Remove any working storage left behind by released contexts."""
        ...


class StepInvoker(Protocol):
    async def execute(
        self, context: ExecutionContext, command: str, timeout: int | None = None
    ) -> tuple[int, str]:
        """Run ``command`` in ``context`` and return (exit_code, combined output)."""
        ...


class QualityGateService(Protocol):
    async def submit(self, project_key: str) -> GateVerdict:
        """Resolve once the service has computed a verdict for ``project_key``."""
        ...


class DeploymentTarget(Protocol):
    async def current_revision(self, deployment: str, namespace: str) -> str | None: ...

    async def set_image(self, deployment: str, namespace: str, image: str) -> None: ...

    async def wait_rollout_status(self, deployment: str, namespace: str) -> bool: ...

    async def rollback_to_previous(
        self, deployment: str, namespace: str, revision: str | None = None
    ) -> None: ...


class ApprovalChannel(Protocol):
    async def prompt(self, request: ApprovalRequest) -> ApprovalDecision | None:
        """Return the responder's decision, or None if no decision will come."""
        ...


class NotificationChannel(Protocol):
    async def send(self, channel: str, message: str) -> None: ...
