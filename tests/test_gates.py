"""Tests for quality gates.

Covers:
- Verdict normalization in GateEvaluator
- Waiting for the quality service, including timeouts
- Gate stages in a run: the verdict is independent of step exit codes
"""

from __future__ import annotations

import asyncio

import pytest

from cdflow.core.errors import ErrorKind, GateRejection
from cdflow.core.gates import GateEvaluator, GateResult
from cdflow.core.models import GateSpec, GateVerdict, NodeStatus, RunStatus
from cdflow.core.state import EventType
from tests.fakes import FakeInvoker, FakeQualityGate

# =============================================================================
# GateEvaluator
# =============================================================================


class TestGateEvaluator:
    """Tests for GateEvaluator."""

    @pytest.mark.parametrize(
        "raw,passed",
        [
            (GateVerdict.PASS, True),
            ("pass", True),
            ("PASS", True),
            (GateVerdict.UNSUCCESSFUL, False),
            ("unsuccessful", False),
            ("WARN", False),
            ("", False),
        ],
    )
    def test_evaluate(self, raw, passed):
        """Anything that is not an explicit pass is unsuccessful."""
        result = GateEvaluator(FakeQualityGate()).evaluate(raw, "web")

        assert result.passed is passed
        assert result.project_key == "web"

    def test_await_verdict(self):
        service = FakeQualityGate(GateVerdict.PASS)
        evaluator = GateEvaluator(service)

        result = asyncio.run(evaluator.await_verdict(GateSpec(project_key="web-api")))

        assert result.passed
        assert service.submitted == ["web-api"]

    def test_await_verdict_timeout(self):
        """A service that never answers counts as unsuccessful."""
        evaluator = GateEvaluator(FakeQualityGate(hang=True), default_timeout=10)

        result = asyncio.run(evaluator.await_verdict(GateSpec(project_key="web", timeout=0.05)))

        assert not result.passed
        assert result.timed_out

    def test_enforce_passes_silently(self):
        GateEvaluator.enforce(GateResult("web", GateVerdict.PASS, raw="pass"), "Quality")

    def test_enforce_rejects(self):
        result = GateResult("web", GateVerdict.UNSUCCESSFUL, raw="unsuccessful")

        with pytest.raises(GateRejection, match="verdict 'unsuccessful'") as exc_info:
            GateEvaluator.enforce(result, "Quality")

        assert exc_info.value.stage == "Quality"
        assert exc_info.value.kind == ErrorKind.GATE_REJECTION

    def test_enforce_reports_timeout(self):
        result = GateResult("web", GateVerdict.UNSUCCESSFUL, timed_out=True)

        with pytest.raises(GateRejection, match="timed out"):
            GateEvaluator.enforce(result, "Quality")


# =============================================================================
# Gate Stages in a Run
# =============================================================================


QUALITY = """
stages:
  - name: Quality Gate
    steps:
      - sonar-scanner -Dsonar.projectKey=${APP}
    gate:
      project_key: "${APP}"
  - name: Publish
    steps: [make publish]
"""


class TestGateStages:
    """Tests for gate stages executed by the engine."""

    def test_passing_gate(self, execute, fake_quality_gate, test_db):
        run = execute(QUALITY)

        assert run.status == RunStatus.SUCCEEDED
        assert fake_quality_gate.submitted == ["web"]
        passed = test_db.get_events(run.run_id, [EventType.GATE_PASSED])
        assert passed[0].payload["project_key"] == "web"

    def test_unsuccessful_verdict_fails_despite_zero_exit(
        self, execute, make_engine, fake_invoker, test_db
    ):
        """The scanner exits 0, the service still rejects."""
        engine = make_engine(quality_gate=FakeQualityGate(GateVerdict.UNSUCCESSFUL))

        run = execute(QUALITY, engine=engine)
        gate = run.root.find("Quality Gate")

        assert fake_invoker.commands == ["sonar-scanner -Dsonar.projectKey=web"]
        assert gate.step_results[0].exit_code == 0
        assert gate.status == NodeStatus.FAILED
        assert run.status == RunStatus.FAILED
        assert run.error_kind == ErrorKind.GATE_REJECTION
        assert run.failed_stage == "Quality Gate"
        assert run.root.find("Publish").status == NodeStatus.SKIPPED
        assert test_db.get_events(run.run_id, [EventType.GATE_FAILED])

    def test_failing_scanner_skips_the_verdict(self, execute, make_engine, fake_quality_gate):
        invoker = FakeInvoker(results={"sonar-scanner": 1})

        run = execute(QUALITY, engine=make_engine(invoker=invoker))

        assert run.error_kind == ErrorKind.STEP_FAILURE
        assert fake_quality_gate.submitted == []

    def test_verdict_timeout_fails_run(self, execute, make_engine):
        engine = make_engine(quality_gate=FakeQualityGate(hang=True))

        run = execute(QUALITY.replace('"${APP}"', '"${APP}"\n      timeout: 0.05'), engine=engine)

        assert run.status == RunStatus.FAILED
        assert run.error_kind == ErrorKind.GATE_REJECTION
        assert "timed out" in str(run.root.find("Quality Gate").error)
