"""Compensating rollback around deployment stages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from cdflow.core.errors import DeploymentFailure, FatalRollbackError, PipelineError
from cdflow.core.models import DeploymentAttempt, DeploySpec
from cdflow.core.ports import DeploymentTarget
from cdflow.core.state import Database, Event, EventType

logger = logging.getLogger(__name__)


class RollbackController:
    """Run a deployment body and revert the target if anything in it fails.

    USAGE:
        controller = RollbackController(target, db)
        attempt = await controller.execute(run_id, "Deploy Production", spec, "prod", body)

    The previous revision is captured before the body runs. On failure the
    target is reverted exactly once and the original error is re-raised; if
    the revert itself fails, FatalRollbackError is raised instead.
    """

    def __init__(self, target: DeploymentTarget, db: Database):
        self.target = target
        self.db = db
        self.attempts: list[DeploymentAttempt] = []

    async def execute(
        self,
        run_id: int,
        stage: str,
        spec: DeploySpec,
        namespace: str,
        body: Callable[[], Awaitable[None]] | None = None,
    ) -> DeploymentAttempt:
        attempt = DeploymentAttempt(
            deployment=spec.deployment, namespace=namespace, image=spec.image
        )
        self.attempts.append(attempt)

        try:
            attempt.previous_revision = await self.target.current_revision(
                spec.deployment, namespace
            )
        except Exception as e:
            raise DeploymentFailure(
                f"Could not read current revision of {namespace}/{spec.deployment}: {e}", stage
            ) from e

        await self._emit(
            run_id,
            EventType.DEPLOYMENT_STARTED,
            stage,
            attempt,
        )
        logger.info(
            f"[{stage}] Deploying {spec.image} to {namespace}/{spec.deployment} "
            f"(previous revision: {attempt.previous_revision or 'none'})"
        )

        try:
            if body is not None:
                await body()
            await self.target.set_image(spec.deployment, namespace, spec.image)
            healthy = await self.target.wait_rollout_status(spec.deployment, namespace)
            if not healthy:
                raise DeploymentFailure(
                    f"Rollout of {spec.image} to {namespace}/{spec.deployment} did not complete",
                    stage,
                )
        except Exception as e:
            attempt.succeeded = False
            if isinstance(e, PipelineError):
                error = e
            else:
                error = DeploymentFailure(f"Deployment of {spec.image} failed: {e}", stage)
                error.__cause__ = e
            if spec.rollback:
                await self._revert(run_id, stage, attempt, error)
            else:
                logger.warning(f"[{stage}] Deployment failed; rollback disabled for this stage")
            raise error

        attempt.succeeded = True
        await self._emit(run_id, EventType.DEPLOYMENT_SUCCEEDED, stage, attempt)
        return attempt

    async def _revert(
        self, run_id: int, stage: str, attempt: DeploymentAttempt, error: PipelineError
    ) -> None:
        logger.warning(
            f"[{stage}] Rolling back {attempt.namespace}/{attempt.deployment} "
            f"to revision {attempt.previous_revision or 'previous'} after: {error}"
        )
        await self._emit(run_id, EventType.ROLLBACK_STARTED, stage, attempt, error=str(error))

        revert_error: Exception | None = None
        try:
            await self.target.rollback_to_previous(
                attempt.deployment, attempt.namespace, attempt.previous_revision
            )
            settled = await self.target.wait_rollout_status(attempt.deployment, attempt.namespace)
        except Exception as e:
            revert_error = e
            settled = False

        if not settled:
            detail = f": {revert_error}" if revert_error else ""
            await self._emit(run_id, EventType.ROLLBACK_FAILED, stage, attempt, error=detail)
            logger.critical(
                f"[{stage}] Rollback of {attempt.namespace}/{attempt.deployment} failed{detail}"
            )
            raise FatalRollbackError(
                f"Rollback of {attempt.namespace}/{attempt.deployment} failed{detail} "
                f"(original failure: {error})",
                stage,
                cause=error,
            ) from (revert_error or error)

        attempt.reverted = True
        await self._emit(run_id, EventType.ROLLBACK_COMPLETED, stage, attempt)
        logger.info(f"[{stage}] Rolled back {attempt.namespace}/{attempt.deployment}")

    async def _emit(
        self,
        run_id: int,
        event_type: EventType,
        stage: str,
        attempt: DeploymentAttempt,
        **extra: str,
    ) -> None:
        event = Event(
            run_id=run_id,
            event_type=event_type,
            stage=stage,
            payload={
                "deployment": attempt.deployment,
                "namespace": attempt.namespace,
                "image": attempt.image,
                "previous_revision": attempt.previous_revision,
                **extra,
            },
        )
        await asyncio.to_thread(self.db.append_event, event)
