"""Tests for compensating rollback around deployments.

Covers:
- RollbackController: capture, rollout, revert exactly once, fatal revert
- Deploy stages in a run
"""

from __future__ import annotations

import asyncio

import pytest

from cdflow.core.errors import (
    DeploymentFailure,
    ErrorKind,
    FatalRollbackError,
    StepFailure,
)
from cdflow.core.models import DeploySpec, NodeStatus, RunStatus
from cdflow.core.rollback import RollbackController
from cdflow.core.state import EventType
from tests.fakes import FakeDeploymentTarget, FakeInvoker

SPEC = DeploySpec(deployment="web", image="registry.example.com/web:42")


def _deploy(controller, spec=SPEC, body=None):
    return asyncio.run(controller.execute(42, "Deploy Production", spec, "production", body))


# =============================================================================
# RollbackController
# =============================================================================


class TestRollbackController:
    """Tests for RollbackController.execute."""

    def test_successful_rollout(self, test_db):
        target = FakeDeploymentTarget(revision="7")
        controller = RollbackController(target, test_db)

        attempt = _deploy(controller)

        assert attempt.succeeded
        assert attempt.previous_revision == "7"
        assert not attempt.reverted
        assert target.calls == [
            ("current_revision", "web", "production"),
            ("set_image", "web", "production", "registry.example.com/web:42"),
            ("wait_rollout_status", "web", "production"),
        ]
        assert target.rollback_calls == []
        types = [e.event_type for e in test_db.get_events(42)]
        assert types == [EventType.DEPLOYMENT_STARTED, EventType.DEPLOYMENT_SUCCEEDED]

    def test_unhealthy_rollout_reverts_once(self, test_db):
        """The same deployment and namespace are reverted to the captured revision."""
        target = FakeDeploymentTarget(revision="7", rollout_ok=False)
        controller = RollbackController(target, test_db)

        with pytest.raises(DeploymentFailure, match="did not complete"):
            _deploy(controller)

        assert target.rollback_calls == [("rollback_to_previous", "web", "production", "7")]
        attempt = controller.attempts[0]
        assert attempt.succeeded is False
        assert attempt.reverted
        types = [e.event_type for e in test_db.get_events(42)]
        assert EventType.ROLLBACK_STARTED in types
        assert EventType.ROLLBACK_COMPLETED in types

    def test_failing_body_reverts(self, test_db):
        """A failure before the image is set still triggers compensation."""
        target = FakeDeploymentTarget()
        controller = RollbackController(target, test_db)

        async def body():
            raise StepFailure("migration failed", "Deploy Production")

        with pytest.raises(StepFailure, match="migration failed"):
            _deploy(controller, body=body)

        assert len(target.rollback_calls) == 1
        assert not any(call[0] == "set_image" for call in target.calls)

    def test_unexpected_error_wrapped(self, test_db):
        class ExplodingTarget(FakeDeploymentTarget):
            async def set_image(self, deployment, namespace, image):
                raise OSError("connection reset")

        controller = RollbackController(ExplodingTarget(), test_db)

        with pytest.raises(DeploymentFailure, match="connection reset") as exc_info:
            _deploy(controller)

        assert isinstance(exc_info.value.__cause__, OSError)

    def test_revert_failure_is_fatal(self, test_db):
        target = FakeDeploymentTarget(rollout_ok=False, revert_raises=True)
        controller = RollbackController(target, test_db)

        with pytest.raises(FatalRollbackError, match="cluster unreachable") as exc_info:
            _deploy(controller)

        assert isinstance(exc_info.value.cause, DeploymentFailure)
        assert exc_info.value.kind == ErrorKind.FATAL_ROLLBACK
        assert len(target.rollback_calls) == 1
        assert test_db.get_events(42, [EventType.ROLLBACK_FAILED])

    def test_unhealthy_revert_is_fatal(self, test_db):
        target = FakeDeploymentTarget(rollout_ok=False, revert_ok=False)
        controller = RollbackController(target, test_db)

        with pytest.raises(FatalRollbackError):
            _deploy(controller)

        assert not controller.attempts[0].reverted

    def test_rollback_disabled(self, test_db):
        target = FakeDeploymentTarget(rollout_ok=False)
        controller = RollbackController(target, test_db)

        with pytest.raises(DeploymentFailure):
            _deploy(controller, spec=SPEC.model_copy(update={"rollback": False}))

        assert target.rollback_calls == []

    def test_unreadable_revision(self, test_db):
        class BlindTarget(FakeDeploymentTarget):
            async def current_revision(self, deployment, namespace):
                raise OSError("forbidden")

        target = BlindTarget()
        controller = RollbackController(target, test_db)

        with pytest.raises(DeploymentFailure, match="Could not read current revision"):
            _deploy(controller)

        assert target.calls == []


# =============================================================================
# Deploy Stages in a Run
# =============================================================================


DEPLOY = """
stages:
  - name: Deploy Production
    steps: [./migrate.sh]
    deploy:
      deployment: "${APP}"
      image: "${REGISTRY}/${IMAGE}:${BUILD_NUMBER}"
  - name: Smoke Test
    steps: [./smoke.sh]
"""


class TestDeployStages:
    """Tests for deploy stages executed by the engine."""

    def test_deploy_uses_bindings(self, execute, fake_target, fake_invoker):
        run = execute(DEPLOY)

        assert run.status == RunStatus.SUCCEEDED
        assert ("set_image", "web", "staging", "registry.example.com/web:42") in fake_target.calls
        assert fake_invoker.commands == ["./migrate.sh", "./smoke.sh"]

    def test_explicit_namespace(self, execute, fake_target):
        execute(DEPLOY.replace('deployment: "${APP}"', 'deployment: "${APP}"\n      namespace: prod'))

        assert fake_target.calls[0] == ("current_revision", "web", "prod")

    def test_failed_rollout_fails_run_after_revert(self, execute, make_engine):
        target = FakeDeploymentTarget(rollout_ok=False)

        run = execute(DEPLOY, engine=make_engine(deployment_target=target))

        assert run.status == RunStatus.FAILED
        assert run.failed_stage == "Deploy Production"
        assert run.error_kind == ErrorKind.DEPLOYMENT_FAILURE
        assert target.rollback_calls == [("rollback_to_previous", "web", "staging", "7")]
        assert run.root.find("Smoke Test").status == NodeStatus.SKIPPED

    def test_failed_revert_escalates(self, execute, make_engine):
        target = FakeDeploymentTarget(rollout_ok=False, revert_raises=True)

        run = execute(DEPLOY, engine=make_engine(deployment_target=target))

        assert run.status == RunStatus.FAILED
        assert run.error_kind == ErrorKind.FATAL_ROLLBACK

    def test_failed_pre_deploy_step_reverts(self, execute, make_engine):
        target = FakeDeploymentTarget()
        invoker = FakeInvoker(results={"./migrate.sh": 1})

        run = execute(DEPLOY, engine=make_engine(deployment_target=target, invoker=invoker))

        assert run.error_kind == ErrorKind.STEP_FAILURE
        assert len(target.rollback_calls) == 1
