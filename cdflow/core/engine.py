"""Pipeline execution engine.

Walks the stage tree built by StageGraphBuilder:

- sequential children run in declared order
- parallel children and matrix cells run concurrently as asyncio tasks
- nodes with steps, a gate or a deployment hold one execution context each,
  bounded by a semaphore of ``max_parallel`` slots
- approval nodes suspend without holding a context
- deploy nodes run inside the rollback controller
- the finalizer runs once after the tree is terminal, on every exit path

Once the run is known Failed or Aborted no new node starts; branches already
running are never preempted and finish (aborted branches stop at their next
step boundary). Nodes that never start resolve Skipped.

All writes to the run outcome go through ``RunLedger`` on the event loop
thread.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from typing import Any

from cdflow.core.approval import ApprovalGate
from cdflow.core.config import EngineConfig
from cdflow.core.errors import (
    ConfigurationError,
    ErrorKind,
    GateRejection,
    PipelineError,
    RunAborted,
    StepFailure,
)
from cdflow.core.finalizer import RunFinalizer
from cdflow.core.gates import GateEvaluator
from cdflow.core.models import (
    ContextSpec,
    NodeStatus,
    PipelineRun,
    RunFailure,
    RunStatus,
    StageKind,
    StageNode,
    Step,
    StepOutcome,
    StepResult,
    substitute,
    utc_now,
)
from cdflow.core.ports import (
    ApprovalChannel,
    DeploymentTarget,
    ExecutionContext,
    ExecutionProvider,
    NotificationChannel,
    QualityGateService,
    StepInvoker,
)
from cdflow.core.rollback import RollbackController
from cdflow.core.runner import StepRunner
from cdflow.core.state import Database, Event, EventType

logger = logging.getLogger(__name__)

_STAGE_EVENTS = {
    NodeStatus.SUCCEEDED: EventType.STAGE_SUCCEEDED,
    NodeStatus.FAILED: EventType.STAGE_FAILED,
    NodeStatus.ABORTED: EventType.STAGE_ABORTED,
    NodeStatus.SKIPPED: EventType.STAGE_SKIPPED,
}

_STEP_EVENTS = {
    StepOutcome.SUCCEEDED: EventType.STEP_SUCCEEDED,
    StepOutcome.FAILED: EventType.STEP_FAILED,
    StepOutcome.TOLERATED: EventType.STEP_TOLERATED,
}

_RUN_EVENTS = {
    RunStatus.SUCCEEDED: EventType.RUN_SUCCEEDED,
    RunStatus.FAILED: EventType.RUN_FAILED,
    RunStatus.ABORTED: EventType.RUN_ABORTED,
}


class RunLedger:
    """Aggregate outcome of a run.

    The run reports its first failure as one record (stage, kind, message).
    An abort only fills that record while no stage has failed. A later
    failure of higher severity is reported as the run's escalation, with its
    own stage.
    """

    def __init__(self, run: PipelineRun):
        self.run = run
        self.failed = False
        self.aborted = False

    @property
    def halted(self) -> bool:
        return self.failed or self.aborted

    def record_failure(self, stage: str, error: PipelineError, aborted: bool = False) -> None:
        if aborted:
            self.aborted = True
        else:
            self.failed = True
        self._record(RunFailure.from_error(stage, error))

    def record_abort(self, reason: str) -> None:
        self.aborted = True
        self._record(RunFailure(stage=None, kind=ErrorKind.ABORTED, message=reason))

    def _record(self, failure: RunFailure) -> None:
        run = self.run
        run.failures.append(failure)
        first = next(
            (f for f in run.failures if f.kind != ErrorKind.ABORTED), run.failures[0]
        )
        run.failed_stage = first.stage
        run.error_kind = first.kind
        run.error_message = first.message
        worst = max(run.failures, key=lambda f: f.kind.severity)
        run.escalation = worst if worst.kind.severity > first.kind.severity else None

    def final_status(self) -> RunStatus:
        if self.failed:
            return RunStatus.FAILED
        if self.aborted:
            return RunStatus.ABORTED
        return RunStatus.SUCCEEDED


class PipelineEngine:
    """Execute one PipelineRun at a time.

    USAGE:
        engine = PipelineEngine(provider, invoker, db, config,
                                quality_gate=sonar, deployment_target=kubectl,
                                approval_channel=broker, notifier=slack)
        status = await engine.run(run)

    ``abort(reason)`` may be called from the event loop while ``run`` is in
    progress; ``request_abort(reason)`` from any other thread.
    """

    def __init__(
        self,
        provider: ExecutionProvider,
        invoker: StepInvoker,
        db: Database,
        config: EngineConfig | None = None,
        quality_gate: QualityGateService | None = None,
        deployment_target: DeploymentTarget | None = None,
        approval_channel: ApprovalChannel | None = None,
        notifier: NotificationChannel | None = None,
    ):
        self.config = config or EngineConfig()
        self.provider = provider
        self.db = db
        self.runner = StepRunner(invoker)
        self.gates = (
            GateEvaluator(quality_gate, self.config.gate_timeout) if quality_gate else None
        )
        self.approvals = (
            ApprovalGate(
                approval_channel,
                db,
                default_timeout=self.config.approval_timeout,
                default_rejection=self.config.approval_rejection,
            )
            if approval_channel
            else None
        )
        self.rollback = RollbackController(deployment_target, db) if deployment_target else None
        self.finalizer = RunFinalizer(provider, notifier, db, self.config.notify_channel)

        self._run: PipelineRun | None = None
        self._ledger: RunLedger | None = None
        self._abort_event: asyncio.Event | None = None
        self._semaphore: asyncio.Semaphore | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._held: dict[str, ExecutionContext] = {}

    # ========== Public API ==========

    async def run(self, run: PipelineRun) -> RunStatus:
        """Execute ``run`` to completion and return its final status.

        Cancelling the task awaiting this coroutine aborts the run: branches
        stop at their next step boundary, post-hooks and the finalizer still
        run, then the cancellation propagates.
        """
        if self._run is not None and not self._run.finalized:
            raise RuntimeError("PipelineEngine is already executing a run")

        self._loop = asyncio.get_running_loop()
        self._run = run
        self._ledger = RunLedger(run)
        self._abort_event = asyncio.Event()
        self._semaphore = asyncio.Semaphore(self.config.max_parallel)
        self._held = {}

        run.status = RunStatus.RUNNING
        run.started_at = utc_now()
        await self._emit(
            EventType.RUN_STARTED,
            status=run.status.value,
            pipeline=run.root.name,
            branch=run.branch,
            bindings=run.bindings.as_env(),
        )
        logger.info(f"Build #{run.run_id} ({run.branch}) started")

        deadline = None
        try:
            self._check_ports(run.root)
            if self.config.run_timeout:
                deadline = self._loop.call_later(
                    self.config.run_timeout,
                    self.abort,
                    f"Run exceeded its deadline of {self.config.run_timeout}s",
                )
            tree = asyncio.ensure_future(self._execute(run.root))
            try:
                await asyncio.shield(tree)
            except asyncio.CancelledError:
                self.abort("Run cancelled")
                await tree
                raise
        except ConfigurationError as e:
            logger.error(f"Build #{run.run_id} rejected before execution: {e}")
            run.root.status = NodeStatus.FAILED
            run.root.error = e
            self._ledger.record_failure(e.stage or run.root.name, e)
            await self._skip(run.root)
        except Exception as e:
            self._ledger.record_failure(run.root.name, PipelineError(f"Engine error: {e}"))
            raise
        finally:
            if deadline is not None:
                deadline.cancel()
            await self._complete(run)
            await self.finalizer.finalize(run, list(self._held.values()))

        return run.status

    def abort(self, reason: str = "Run aborted") -> None:
        """Stop the run: no new node starts and running branches stop at a step boundary."""
        if self._abort_event is None or self._abort_event.is_set():
            return
        if self._run is not None and self._run.status.is_terminal:
            return
        logger.warning(f"Aborting run: {reason}")
        self._ledger.record_abort(reason)
        self._abort_event.set()

    def request_abort(self, reason: str = "Run aborted") -> None:
        """Thread-safe variant of ``abort``."""
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self.abort, reason)

    @property
    def held_contexts(self) -> list[ExecutionContext]:
        return list(self._held.values())

    # ========== Node Execution ==========

    async def _execute(self, node: StageNode) -> None:
        if node.has_work:
            async with self._semaphore:
                if not await self._start(node):
                    return
                acquired = False
                try:
                    async with self._context(node) as context:
                        acquired = True
                        await self._resolve(node, self._run_work(node, context))
                        await self._run_hooks(node, context)
                except PipelineError as e:
                    if not acquired and not node.hooks.is_empty():
                        logger.error(
                            f"[{node.path or node.name}] post-hooks skipped: "
                            "no execution context was acquired"
                        )
                    self._fail(node, e)
        else:
            if not await self._start(node):
                return
            await self._resolve(node, self._run_composite(node))
            if not node.hooks.is_empty():
                async with self._semaphore:
                    try:
                        async with self._context(node) as context:
                            await self._run_hooks(node, context)
                    except PipelineError as e:
                        logger.error(f"[{node.path or node.name}] post-hooks could not run: {e}")
        await self._finish(node)

    async def _start(self, node: StageNode) -> bool:
        """Mark ``node`` running, or skip it if the run has stopped."""
        if self._ledger.halted:
            await self._skip(node)
            return False
        node.status = NodeStatus.RUNNING
        node.started_at = utc_now()
        if node.path:
            await self._emit(EventType.STAGE_STARTED, stage=node.path, kind=node.kind.value)
            logger.info(f"[{node.path}] started")
        return True

    async def _finish(self, node: StageNode) -> None:
        node.finished_at = utc_now()
        if node.path:
            await self._emit(
                _STAGE_EVENTS[node.status],
                stage=node.path,
                status=node.status.value,
                error=str(node.error) if node.error else None,
                error_kind=node.error_kind.value if node.error_kind else None,
            )
            logger.info(f"[{node.path}] {node.status.value}")

    async def _resolve(self, node: StageNode, body: Awaitable[None]) -> None:
        """Await the node body and settle the node's status."""
        try:
            await body
        except PipelineError as e:
            self._fail(node, e)
            return
        except Exception as e:
            logger.exception(f"[{node.path or node.name}] Unexpected engine error")
            self._fail(node, PipelineError(f"Unexpected error: {e}", node.path))
            return

        if node.status.is_terminal:
            # Set directly by an approval override
            return
        if not node.children:
            node.status = NodeStatus.SUCCEEDED
            return
        derived = node.derive_status()
        # Started but not every child ran
        node.status = NodeStatus.ABORTED if derived == NodeStatus.SKIPPED else derived

    async def _run_composite(self, node: StageNode) -> None:
        if node.kind == StageKind.APPROVAL:
            await self._run_approval(node)
        elif node.kind in (StageKind.PARALLEL, StageKind.MATRIX):
            await asyncio.gather(*(self._execute(child) for child in node.children))
        else:
            for child in node.children:
                await self._execute(child)

    async def _run_work(self, node: StageNode, context: ExecutionContext) -> None:
        if node.kind == StageKind.DEPLOY:
            await self._run_deploy(node, context)
            return
        await self._run_body(node, context)
        if node.kind == StageKind.GATE:
            await self._run_gate(node)

    async def _run_body(self, node: StageNode, context: ExecutionContext) -> None:
        """Run the node's steps, re-running them on StepFailure up to ``retries`` times."""
        attempts = node.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self._run_steps(node, context, node.steps)
                return
            except StepFailure as e:
                if attempt >= attempts or self._abort_event.is_set():
                    raise
                logger.warning(
                    f"[{node.path}] Attempt {attempt}/{attempts} failed ({e.step}); retrying"
                )

    async def _run_steps(
        self,
        node: StageNode,
        context: ExecutionContext,
        steps: list[Step],
        hook: str | None = None,
    ) -> None:
        values = self._values(node)
        for step in steps:
            if hook is None and self._abort_event.is_set():
                raise RunAborted(f"Run aborted before step '{step.display_name}'", node.path)
            result = await self.runner.run(context, step, values, node.path or node.name, hook)
            await self._record_step(node, result)

            if result.outcome == StepOutcome.TOLERATED:
                node.tolerated.append(self.runner.failure(result, node.path))
            elif result.outcome == StepOutcome.FAILED:
                if hook is not None:
                    logger.error(
                        f"[{node.path or node.name}] {hook} hook step '{result.step}' failed; "
                        f"status stays {node.status.value}"
                    )
                    continue
                raise self.runner.failure(result, node.path)

    async def _run_hooks(self, node: StageNode, context: ExecutionContext) -> None:
        hooks = node.hooks
        await self._run_steps(node, context, hooks.always, hook="always")
        if node.status == NodeStatus.SUCCEEDED:
            await self._run_steps(node, context, hooks.success, hook="success")
        else:
            await self._run_steps(node, context, hooks.unsuccessful, hook="unsuccessful")

    async def _run_gate(self, node: StageNode) -> None:
        spec = node.gate.model_copy(
            update={"project_key": substitute(node.gate.project_key, self._values(node))}
        )
        result = await self.gates.await_verdict(spec)
        await self._emit(
            EventType.GATE_PASSED if result.passed else EventType.GATE_FAILED,
            stage=node.path,
            status=result.verdict.value,
            project_key=result.project_key,
            raw=result.raw,
            timed_out=result.timed_out,
        )
        self.gates.enforce(result, node.path)
        logger.info(f"[{node.path}] Quality gate passed for '{result.project_key}'")

    async def _run_approval(self, node: StageNode) -> None:
        try:
            await self.approvals.request(self._run.run_id, node, self._abort_event)
        except RunAborted:
            for child in node.children:
                await self._skip(child)
            raise
        except PipelineError as e:
            for child in node.children:
                await self._skip(child)
            self._fail(node, e, status=self.approvals.rejection_status(node.approval))
            return

        for child in node.children:
            await self._execute(child)

    async def _run_deploy(self, node: StageNode, context: ExecutionContext) -> None:
        values = self._values(node)
        spec = node.deploy.model_copy(
            update={
                "deployment": substitute(node.deploy.deployment, values),
                "image": substitute(node.deploy.image, values),
            }
        )
        namespace = substitute(node.deploy.namespace or self._run.bindings.namespace, values)

        async def body() -> None:
            await self._run_body(node, context)

        await self.rollback.execute(self._run.run_id, node.path, spec, namespace, body)

    # ========== Status Bookkeeping ==========

    def _fail(
        self, node: StageNode, error: PipelineError, status: NodeStatus | None = None
    ) -> None:
        if status is None:
            status = NodeStatus.ABORTED if isinstance(error, RunAborted) else NodeStatus.FAILED
        node.status = status
        node.error = error
        label = node.path or node.name
        logger.error(f"[{label}] {status.value}: {str(error).splitlines()[0] if str(error) else ''}")

        if not isinstance(error, (GateRejection, RunAborted)) and self._contained(node):
            logger.warning(f"[{label}] failure contained by continue_on_error")
            return
        self._ledger.record_failure(label, error, aborted=status == NodeStatus.ABORTED)

    @staticmethod
    def _contained(node: StageNode) -> bool:
        return node.continue_on_error or any(a.continue_on_error for a in node.ancestors())

    async def _skip(self, node: StageNode) -> None:
        for pending in node.walk():
            if pending.status != NodeStatus.PENDING:
                continue
            pending.status = NodeStatus.SKIPPED
            if pending.path:
                await self._emit(EventType.STAGE_SKIPPED, stage=pending.path, status="skipped")

    async def _record_step(self, node: StageNode, result: StepResult) -> None:
        node.step_results.append(result)
        await self._emit(
            _STEP_EVENTS[result.outcome],
            stage=node.path or node.name,
            status=result.outcome.value,
            step=result.step,
            exit_code=result.exit_code,
            hook=result.hook,
            duration_seconds=round(result.duration_seconds, 3),
        )

    async def _complete(self, run: PipelineRun) -> None:
        # Nodes cut off by an unexpected error still need a terminal status
        for node in run.root.walk():
            if node.status == NodeStatus.RUNNING:
                node.status = NodeStatus.ABORTED
            elif node.status == NodeStatus.PENDING:
                node.status = NodeStatus.SKIPPED

        run.status = self._ledger.final_status()
        run.finished_at = utc_now()
        await self._emit(
            _RUN_EVENTS[run.status],
            status=run.status.value,
            failed_stage=run.failed_stage,
            error_kind=run.error_kind.value if run.error_kind else None,
            error_message=run.error_message,
            escalated_stage=run.escalation.stage if run.escalation else None,
            escalated_kind=run.escalation.kind.value if run.escalation else None,
        )
        log = logger.info if run.status == RunStatus.SUCCEEDED else logger.error
        log(run.summary())

    # ========== Helpers ==========

    def _check_ports(self, root: StageNode) -> None:
        """Fail before any context is acquired if a node needs a missing adapter."""
        required = {
            StageKind.GATE: (self.gates, "a quality gate service"),
            StageKind.APPROVAL: (self.approvals, "an approval channel"),
            StageKind.DEPLOY: (self.rollback, "a deployment target"),
        }
        for node in root.walk():
            if node.kind in required and required[node.kind][0] is None:
                raise ConfigurationError(
                    f"Stage '{node.path}' needs {required[node.kind][1]}, none is configured",
                    node.path,
                )

    def _values(self, node: StageNode) -> dict[str, str]:
        """Bindings plus the matrix combination of the enclosing cell."""
        values = self._run.bindings.as_env()
        for ancestor in reversed([node, *node.ancestors()]):
            values.update(ancestor.matrix_values)
        return values

    @asynccontextmanager
    async def _context(self, node: StageNode) -> AsyncIterator[ExecutionContext]:
        spec = node.context or ContextSpec()
        label = node.path or node.name
        try:
            context = await self.provider.acquire(spec)
        except Exception as e:
            raise PipelineError(
                f"Could not acquire execution context '{spec.label}' for '{label}': {e}",
                node.path,
            ) from e
        context.env = {**context.env, **self._values(node)}
        self._held[context.id] = context
        await self._emit(
            EventType.CONTEXT_ACQUIRED, stage=label, context=context.id, label=spec.label
        )
        try:
            yield context
        finally:
            try:
                await self.provider.release(context)
                self._held.pop(context.id, None)
                await self._emit(EventType.CONTEXT_RELEASED, stage=label, context=context.id)
            except Exception as e:
                logger.error(f"Failed to release execution context '{context.id}': {e}")

    async def _emit(
        self,
        event_type: EventType,
        stage: str | None = None,
        status: str | None = None,
        **payload: Any,
    ) -> None:
        """Append an event from a worker thread so the loop keeps running."""
        event = Event(
            run_id=self._run.run_id,
            event_type=event_type,
            stage=stage,
            status=status,
            payload=payload,
        )
        await asyncio.to_thread(self.db.append_event, event)
