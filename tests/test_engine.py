"""Tests for the pipeline engine.

Covers:
- Sequential, parallel and matrix execution
- Must-succeed vs best-effort steps
- Post-hooks
- Failure propagation and continue_on_error containment
- Retries
- Concurrency limit on execution contexts
- Abort, run deadline and task cancellation
- Adapter checks before execution
- RunLedger outcome aggregation
"""

import asyncio
import threading

import pytest

from cdflow.core.config import EngineConfig
from cdflow.core.engine import RunLedger
from cdflow.core.errors import DeploymentFailure, ErrorKind, RunAborted, StepFailure
from cdflow.core.models import (
    GateVerdict,
    NodeStatus,
    PipelineRun,
    RunBindings,
    RunFailure,
    RunStatus,
    StageKind,
    StageNode,
    StepOutcome,
)
from cdflow.core.state import EventType
from tests.fakes import FakeDeploymentTarget, FakeInvoker, FakeProvider, FakeQualityGate

TWO_STAGES = """
stages:
  - name: Build
    steps: [make build]
  - name: Publish
    steps: [make publish]
"""

# =============================================================================
# Basic Execution
# =============================================================================


class TestSequentialExecution:
    """Tests for stages run in declared order."""

    def test_stages_run_in_order(self, execute, fake_invoker):
        run = execute(TWO_STAGES)

        assert run.status == RunStatus.SUCCEEDED
        assert fake_invoker.commands == ["make build", "make publish"]
        assert run.root.find("Build").status == NodeStatus.SUCCEEDED
        assert run.failed_stage is None
        assert run.error_kind is None

    def test_every_context_released(self, execute, fake_provider):
        execute(TWO_STAGES)

        assert len(fake_provider.acquired) == 2
        assert sorted(fake_provider.released) == sorted(c.id for c in fake_provider.acquired)
        assert fake_provider.active == 0

    def test_context_env_carries_bindings(self, execute, fake_provider):
        execute(TWO_STAGES)

        env = fake_provider.acquired[0].env
        assert env["BUILD_NUMBER"] == "42"
        assert env["BRANCH_NAME"] == "main"
        assert env["NAMESPACE"] == "staging"

    def test_steps_rendered_with_bindings(self, execute, fake_invoker):
        execute("""
stages:
  - name: Publish
    steps:
      - docker push ${REGISTRY}/${IMAGE}:${BUILD_NUMBER}
""")
        assert fake_invoker.commands == ["docker push registry.example.com/web:42"]

    def test_run_events_recorded(self, execute, test_db):
        run = execute(TWO_STAGES)

        events = test_db.get_events(run.run_id)
        types = [e.event_type for e in events]
        assert types[0] == EventType.RUN_STARTED
        assert EventType.RUN_SUCCEEDED in types
        assert types[-1] == EventType.RUN_ARCHIVED
        assert types.count(EventType.STAGE_SUCCEEDED) == 2

        record = test_db.get_run(run.run_id)
        assert record.status == "succeeded"
        assert record.archived


class TestStepOutcomes:
    """Tests for must-succeed and best-effort steps."""

    def test_best_effort_failure_is_tolerated(self, execute, make_engine):
        invoker = FakeInvoker(results={"trivy": 1})
        run = execute(
            """
stages:
  - name: Security Scan
    steps:
      - run: trivy fs --exit-code 1 .
        best_effort: true
      - echo scanned
""",
            engine=make_engine(invoker=invoker),
        )
        scan = run.root.find("Security Scan")

        assert run.status == RunStatus.SUCCEEDED
        assert scan.status == NodeStatus.SUCCEEDED
        assert [r.outcome for r in scan.step_results] == [
            StepOutcome.TOLERATED,
            StepOutcome.SUCCEEDED,
        ]
        assert len(scan.tolerated) == 1
        assert scan.tolerated[0].kind == ErrorKind.TOLERATED_FAILURE
        assert scan.tolerated[0].exit_code == 1
        assert "echo scanned" in invoker.commands

    def test_must_succeed_failure_stops_the_run(self, execute, make_engine):
        invoker = FakeInvoker(results={"make build": 2})
        run = execute(
            """
stages:
  - name: Build
    steps: [make build, echo never]
  - name: Publish
    steps: [make publish]
""",
            engine=make_engine(invoker=invoker),
        )
        build = run.root.find("Build")

        assert run.status == RunStatus.FAILED
        assert run.failed_stage == "Build"
        assert run.error_kind == ErrorKind.STEP_FAILURE
        assert build.status == NodeStatus.FAILED
        assert isinstance(build.error, StepFailure)
        assert build.error.exit_code == 2
        assert run.root.find("Publish").status == NodeStatus.SKIPPED
        assert invoker.commands == ["make build"]

    def test_invoker_error_counts_as_failed_step(self, execute, make_engine):
        class BrokenInvoker(FakeInvoker):
            async def execute(self, context, command, timeout=None):
                raise OSError("agent disconnected")

        run = execute(TWO_STAGES, engine=make_engine(invoker=BrokenInvoker()))

        assert run.status == RunStatus.FAILED
        assert run.root.find("Build").step_results[0].exit_code == -1


# =============================================================================
# Post-hooks
# =============================================================================


HOOKED = """
stages:
  - name: Build
    steps: [make build]
    post:
      always: [echo always]
      success: [echo success]
      unsuccessful: [echo unsuccessful]
post:
  always: [echo pipeline-done]
"""


class TestPostHooks:
    """Tests for always/success/unsuccessful hooks."""

    def test_success_hooks(self, execute, fake_invoker):
        run = execute(HOOKED)

        assert run.status == RunStatus.SUCCEEDED
        assert fake_invoker.commands == [
            "make build",
            "echo always",
            "echo success",
            "echo pipeline-done",
        ]

    def test_unsuccessful_hooks_after_failure(self, execute, make_engine):
        invoker = FakeInvoker(results={"make build": 1})
        run = execute(HOOKED, engine=make_engine(invoker=invoker))

        assert run.status == RunStatus.FAILED
        assert invoker.commands == [
            "make build",
            "echo always",
            "echo unsuccessful",
            "echo pipeline-done",
        ]

    def test_always_hook_runs_exactly_once(self, execute, make_engine):
        invoker = FakeInvoker(results={"make build": 1})
        execute(HOOKED, engine=make_engine(invoker=invoker))

        assert invoker.commands.count("echo always") == 1
        assert invoker.commands.count("echo pipeline-done") == 1

    def test_failing_hook_does_not_change_status(self, execute, make_engine):
        invoker = FakeInvoker(results={"notify-slack": 1})
        run = execute(
            """
stages:
  - name: Build
    steps: [make build]
    post:
      always: [notify-slack]
""",
            engine=make_engine(invoker=invoker),
        )
        build = run.root.find("Build")

        assert run.status == RunStatus.SUCCEEDED
        assert build.status == NodeStatus.SUCCEEDED
        assert build.step_results[-1].hook == "always"
        assert build.step_results[-1].outcome == StepOutcome.FAILED

    def test_hooks_share_the_stage_context(self, execute, fake_invoker):
        execute(HOOKED)

        contexts = [context_id for context_id, _ in fake_invoker.calls[:3]]
        assert len(set(contexts)) == 1


# =============================================================================
# Parallel and Matrix Execution
# =============================================================================


PARALLEL = """
stages:
  - name: Verify
    parallel:
      - name: Lint
        steps: [make lint]
      - name: Test
        steps: [make unit-tests]
  - name: Publish
    steps: [make publish]
"""


class TestParallelExecution:
    """Tests for parallel groups and matrices."""

    def test_parallel_branches_overlap(self, execute, make_engine):
        invoker = FakeInvoker(delays={"make lint": 0.05, "make unit-tests": 0.05})
        run = execute(PARALLEL, engine=make_engine(invoker=invoker))

        assert run.status == RunStatus.SUCCEEDED
        assert invoker.max_running == 2
        assert invoker.commands[-1] == "make publish"

    def test_failed_branch_does_not_preempt_running_sibling(self, execute, make_engine):
        invoker = FakeInvoker(
            results={"make lint": 1},
            delays={"make lint": 0.01, "make unit-tests": 0.05},
        )
        run = execute(PARALLEL, engine=make_engine(invoker=invoker))

        assert run.status == RunStatus.FAILED
        assert run.failed_stage == "Verify/Lint"
        assert run.root.find("Verify/Lint").status == NodeStatus.FAILED
        assert run.root.find("Verify/Test").status == NodeStatus.SUCCEEDED
        assert run.root.find("Verify").status == NodeStatus.FAILED
        assert run.root.find("Publish").status == NodeStatus.SKIPPED
        assert "make publish" not in invoker.commands

    def test_waiting_sibling_never_starts_after_failure(self, execute, make_engine):
        invoker = FakeInvoker(results={"make lint": 1}, delays={"make lint": 0.01})
        engine = make_engine(
            invoker=invoker, config=EngineConfig(max_parallel=1, run_timeout=None)
        )
        run = execute(PARALLEL, engine=engine)

        assert run.root.find("Verify/Test").status == NodeStatus.SKIPPED
        assert "make unit-tests" not in invoker.commands

    def test_matrix_cells_run_with_their_values(self, execute, fake_provider):
        run = execute("""
stages:
  - name: Build
    matrix:
      axes:
        NODE_VERSION: ["18", "20"]
        OS: [linux, alpine]
    context:
      label: "${OS}"
    steps: [npm test]
""")
        cells = run.root.find("Build").children

        assert run.status == RunStatus.SUCCEEDED
        assert all(cell.status == NodeStatus.SUCCEEDED for cell in cells)
        labels = sorted(c.spec.label for c in fake_provider.acquired)
        assert labels == ["alpine", "alpine", "linux", "linux"]
        envs = {(c.env["NODE_VERSION"], c.env["OS"]) for c in fake_provider.acquired}
        assert envs == {("18", "linux"), ("18", "alpine"), ("20", "linux"), ("20", "alpine")}

    def test_failed_cell_fails_the_matrix(self, execute, make_engine):
        invoker = FakeInvoker(results={"--node 20": 1})
        run = execute(
            """
stages:
  - name: Build
    matrix:
      axes:
        NODE: ["18", "20"]
    steps: ["npm test --node ${NODE}"]
""",
            engine=make_engine(invoker=invoker),
        )

        assert run.status == RunStatus.FAILED
        assert run.failed_stage == "Build/NODE=20"
        assert run.root.find("Build").status == NodeStatus.FAILED

    def test_concurrency_limited_by_max_parallel(self, execute, make_engine, fake_provider):
        invoker = FakeInvoker(delays={"npm test": 0.02})
        engine = make_engine(
            invoker=invoker, config=EngineConfig(max_parallel=2, run_timeout=None)
        )
        run = execute(
            """
stages:
  - name: Build
    matrix:
      axes:
        N: ["1", "2", "3", "4", "5"]
    steps: [npm test]
""",
            engine=engine,
        )

        assert run.status == RunStatus.SUCCEEDED
        assert len(fake_provider.acquired) == 5
        assert fake_provider.max_active == 2
        assert invoker.max_running == 2


# =============================================================================
# Containment and Retries
# =============================================================================


class TestContinueOnError:
    """Tests for continue_on_error."""

    def test_contained_failure_lets_run_continue(self, execute, make_engine):
        invoker = FakeInvoker(results={"make lint": 1})
        run = execute(
            """
stages:
  - name: Lint
    continue_on_error: true
    steps: [make lint]
  - name: Build
    steps: [make build]
""",
            engine=make_engine(invoker=invoker),
        )

        assert run.status == RunStatus.SUCCEEDED
        assert run.root.find("Lint").status == NodeStatus.FAILED
        assert run.root.find("Build").status == NodeStatus.SUCCEEDED
        assert run.failed_stage is None

    def test_ancestor_contains_nested_failure(self, execute, make_engine):
        invoker = FakeInvoker(results={"make e2e": 1})
        run = execute(
            """
stages:
  - name: Optional
    continue_on_error: true
    stages:
      - name: E2E
        steps: [make e2e]
  - name: Build
    steps: [make build]
""",
            engine=make_engine(invoker=invoker),
        )

        assert run.status == RunStatus.SUCCEEDED
        assert run.root.find("Optional/E2E").status == NodeStatus.FAILED
        assert run.root.find("Optional").status == NodeStatus.FAILED
        assert "make build" in invoker.commands

    def test_gate_rejection_is_never_contained(self, execute, make_engine):
        engine = make_engine(quality_gate=FakeQualityGate(GateVerdict.UNSUCCESSFUL))
        run = execute(
            """
stages:
  - name: Quality
    continue_on_error: true
    steps: [sonar-scanner]
    gate: {project_key: web}
  - name: Publish
    steps: [make publish]
""",
            engine=engine,
        )

        assert run.status == RunStatus.FAILED
        assert run.error_kind == ErrorKind.GATE_REJECTION
        assert run.root.find("Publish").status == NodeStatus.SKIPPED


class TestRetries:
    """Tests for stage retries."""

    def test_retry_until_success(self, execute, make_engine):
        invoker = FakeInvoker(results={"./flaky.sh": [1, 1, 0]})
        run = execute(
            """
stages:
  - name: Integration
    retries: 2
    steps: [./flaky.sh]
""",
            engine=make_engine(invoker=invoker),
        )

        assert run.status == RunStatus.SUCCEEDED
        assert invoker.commands.count("./flaky.sh") == 3

    def test_retries_exhausted(self, execute, make_engine):
        invoker = FakeInvoker(results={"./flaky.sh": 1})
        run = execute(
            """
stages:
  - name: Integration
    retries: 1
    steps: [./flaky.sh]
""",
            engine=make_engine(invoker=invoker),
        )

        assert run.status == RunStatus.FAILED
        assert invoker.commands.count("./flaky.sh") == 2

    def test_retry_reruns_all_steps(self, execute, make_engine):
        invoker = FakeInvoker(results={"./flaky.sh": [1, 0]})
        execute(
            """
stages:
  - name: Integration
    retries: 1
    steps: [./prepare.sh, ./flaky.sh]
""",
            engine=make_engine(invoker=invoker),
        )

        assert invoker.commands == ["./prepare.sh", "./flaky.sh", "./prepare.sh", "./flaky.sh"]


# =============================================================================
# Abort, Deadline and Cancellation
# =============================================================================


SLOW = """
stages:
  - name: Build
    steps: [slow-build, make package]
    post:
      always: [echo cleanup]
  - name: Publish
    steps: [make publish]
"""


class TestAbort:
    """Tests for external abort, the run deadline and task cancellation."""

    def test_abort_stops_at_next_step(self, execute, make_engine):
        engine = None
        invoker = FakeInvoker(on_call={"slow-build": lambda: engine.abort("Stopped by user")})
        engine = make_engine(invoker=invoker)

        run = execute(SLOW, engine=engine)

        assert run.status == RunStatus.ABORTED
        assert run.error_kind == ErrorKind.ABORTED
        assert run.error_message == "Stopped by user"
        assert run.root.find("Build").status == NodeStatus.ABORTED
        assert run.root.find("Publish").status == NodeStatus.SKIPPED
        assert "make package" not in invoker.commands
        assert "echo cleanup" in invoker.commands

    def test_deadline_aborts_run(self, execute, make_engine):
        invoker = FakeInvoker(delays={"slow-build": 0.2})
        engine = make_engine(invoker=invoker, config=EngineConfig(run_timeout=0.05))

        run = execute(SLOW, engine=engine)

        assert run.status == RunStatus.ABORTED
        assert "deadline" in run.error_message
        assert "make package" not in invoker.commands

    def test_cancellation_aborts_and_finalizes(
        self, make_engine, build_tree, fake_provider, fake_notifier
    ):
        invoker = FakeInvoker(delays={"slow-build": 0.1})
        engine = make_engine(invoker=invoker)
        run = PipelineRun.create(RunBindings(build_number=7), build_tree(SLOW))

        async def scenario():
            task = asyncio.create_task(engine.run(run))
            await asyncio.sleep(0.02)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert run.status == RunStatus.ABORTED
        assert run.finalized
        assert "make package" not in invoker.commands
        assert "echo cleanup" in invoker.commands
        assert fake_provider.active == 0
        assert fake_provider.cleanups == 1
        assert len(fake_notifier.sent) == 1

    def test_abort_before_run_is_ignored(self, make_engine):
        engine = make_engine()

        engine.abort("too early")
        engine.request_abort("too early")


# =============================================================================
# Adapters and Contexts
# =============================================================================


class TestPreflight:
    """Tests for checks made before any context is acquired."""

    @pytest.mark.parametrize(
        "port,stage",
        [
            ("quality_gate", "  - name: Q\n    steps: [scan]\n    gate: {project_key: web}\n"),
            (
                "approval_channel",
                "  - name: P\n    approval: {message: \"ok?\"}\n"
                "    stages:\n      - name: D\n        steps: [echo]\n",
            ),
            ("deployment_target", "  - name: D\n    deploy: {deployment: web, image: web:1}\n"),
        ],
    )
    def test_missing_adapter_fails_before_execution(
        self, execute, make_engine, fake_provider, fake_invoker, fake_notifier, port, stage
    ):
        engine = make_engine(**{port: None})

        run = execute("stages:\n  - name: Build\n    steps: [make]\n" + stage, engine=engine)

        assert run.status == RunStatus.FAILED
        assert run.error_kind == ErrorKind.CONFIGURATION
        assert fake_provider.acquired == []
        assert fake_invoker.calls == []
        assert run.root.find("Build").status == NodeStatus.SKIPPED
        assert len(fake_notifier.sent) == 1

    def test_context_acquisition_failure_fails_stage(self, execute, make_engine):
        provider = FakeProvider(fail_labels={"gpu"})
        run = execute(
            """
stages:
  - name: Train
    context: {label: gpu}
    steps: [python train.py]
""",
            engine=make_engine(provider=provider),
        )

        assert run.status == RunStatus.FAILED
        assert run.failed_stage == "Train"
        assert "Could not acquire execution context 'gpu'" in str(run.root.find("Train").error)

    def test_hooks_skipped_without_context_are_logged(self, execute, make_engine, caplog):
        provider = FakeProvider(fail_labels={"gpu"})
        invoker = FakeInvoker()
        run = execute(
            """
stages:
  - name: Train
    context: {label: gpu}
    steps: [python train.py]
    post:
      always: [echo cleanup]
""",
            engine=make_engine(provider=provider, invoker=invoker),
        )

        assert run.root.find("Train").status == NodeStatus.FAILED
        assert invoker.commands == []
        assert "[Train] post-hooks skipped: no execution context was acquired" in caplog.text


# =============================================================================
# Run Ledger
# =============================================================================


def _ledger():
    root = StageNode(name="pipeline", kind=StageKind.SEQUENTIAL)
    return RunLedger(PipelineRun.create(RunBindings(build_number=1), root))


class TestRunLedger:
    """Tests for RunLedger."""

    def test_first_failure_reported_as_one_record(self):
        """Stage, kind and message always come from the same failure."""
        ledger = _ledger()

        ledger.record_failure("Build", StepFailure("make failed"))
        ledger.record_failure("Lint", StepFailure("lint failed"))

        assert ledger.run.failed_stage == "Build"
        assert ledger.run.error_kind == ErrorKind.STEP_FAILURE
        assert ledger.run.error_message == "make failed"
        assert ledger.run.escalation is None

    def test_more_severe_failure_reported_as_escalation(self):
        ledger = _ledger()

        ledger.record_failure("Build", StepFailure("make failed"))
        ledger.record_failure("Deploy", DeploymentFailure("rollout stuck"))

        assert (ledger.run.failed_stage, ledger.run.error_kind, ledger.run.error_message) == (
            "Build",
            ErrorKind.STEP_FAILURE,
            "make failed",
        )
        assert ledger.run.escalation == RunFailure(
            stage="Deploy", kind=ErrorKind.DEPLOYMENT_FAILURE, message="rollout stuck"
        )

    def test_less_severe_failure_does_not_escalate(self):
        ledger = _ledger()

        ledger.record_failure("Deploy", DeploymentFailure("rollout stuck"))
        ledger.record_failure("Lint", StepFailure("lint failed"))

        assert ledger.run.failed_stage == "Deploy"
        assert ledger.run.error_kind == ErrorKind.DEPLOYMENT_FAILURE
        assert ledger.run.escalation is None
        assert len(ledger.run.failures) == 2

    def test_failure_outranks_abort(self):
        ledger = _ledger()

        ledger.record_abort("Stopped by user")
        ledger.record_failure("Build", StepFailure("make failed"))

        assert ledger.halted
        assert ledger.final_status() == RunStatus.FAILED
        assert ledger.run.failed_stage == "Build"
        assert ledger.run.error_kind == ErrorKind.STEP_FAILURE
        assert ledger.run.error_message == "make failed"

    def test_abort_only(self):
        ledger = _ledger()

        ledger.record_abort("Stopped by user")
        ledger.record_failure("Build", RunAborted("Run aborted before step 'make'"), aborted=True)

        assert ledger.final_status() == RunStatus.ABORTED
        assert ledger.run.failed_stage is None
        assert ledger.run.error_kind == ErrorKind.ABORTED
        assert ledger.run.error_message == "Stopped by user"

    def test_clean_run(self):
        ledger = _ledger()

        assert not ledger.halted
        assert ledger.final_status() == RunStatus.SUCCEEDED


PARALLEL_DEPLOY = """
stages:
  - name: Group
    parallel:
      - name: Lint
        steps: [make lint]
      - name: Deploy
        steps: [./prepare.sh]
        deploy:
          deployment: web
          image: web:1
"""


class TestFailureReport:
    """The run summary never pairs one stage with another stage's error."""

    def test_sibling_failures_keep_their_own_stage(self, execute, make_engine, fake_notifier):
        invoker = FakeInvoker(results={"make lint": 1}, delays={"./prepare.sh": 0.05})
        target = FakeDeploymentTarget(rollout_ok=False)
        engine = make_engine(invoker=invoker, deployment_target=target)

        run = execute(PARALLEL_DEPLOY, engine=engine)

        lint = run.root.find("Group/Lint")
        deploy = run.root.find("Group/Deploy")
        assert run.status == RunStatus.FAILED
        assert run.failed_stage == "Group/Lint"
        assert run.error_kind == lint.error_kind == ErrorKind.STEP_FAILURE
        assert run.escalation.stage == "Group/Deploy"
        assert run.escalation.kind == deploy.error_kind == ErrorKind.DEPLOYMENT_FAILURE
        message = fake_notifier.sent[0][1]
        assert "at stage 'Group/Lint' [step_failure]" in message
        assert "escalated at stage 'Group/Deploy' [deployment_failure]" in message


# =============================================================================
# Event Store Writes
# =============================================================================


APPROVED_DEPLOY = """
stages:
  - name: Promote
    approval: {message: "Ship it?"}
    stages:
      - name: Deploy
        deploy:
          deployment: web
          image: web:1
"""


class TestEventWrites:
    """Event store writes run in worker threads, not on the event loop."""

    def test_writes_leave_the_loop_thread(self, execute, make_engine, test_db, mocker):
        loop_thread = threading.get_ident()
        writers = set()
        append_event = test_db.append_event
        archive_run = test_db.archive_run

        def record_append(event):
            writers.add(("append", threading.get_ident()))
            return append_event(event)

        def record_archive(run):
            writers.add(("archive", threading.get_ident()))
            return archive_run(run)

        mocker.patch.object(test_db, "append_event", side_effect=record_append)
        mocker.patch.object(test_db, "archive_run", side_effect=record_archive)
        target = FakeDeploymentTarget(rollout_ok=False)

        run = execute(APPROVED_DEPLOY, engine=make_engine(deployment_target=target))

        assert run.status == RunStatus.FAILED
        assert {kind for kind, _ in writers} == {"append", "archive"}
        assert all(thread != loop_thread for _, thread in writers)
        event_types = [e.event_type for e in test_db.get_events(run.run_id)]
        assert EventType.APPROVAL_GRANTED in event_types
        assert EventType.ROLLBACK_COMPLETED in event_types
        assert EventType.NOTIFICATION_SENT in event_types
