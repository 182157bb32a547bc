"""Execution of single steps inside an execution context."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping

from cdflow.core.errors import StepFailure, ToleratedFailure
from cdflow.core.models import Step, StepOutcome, StepResult
from cdflow.core.ports import ExecutionContext, StepInvoker

logger = logging.getLogger(__name__)

# Exit code recorded when the invoker itself raises (context lost, binary missing, ...)
INVOKER_ERROR_EXIT_CODE = -1

OUTPUT_TAIL_CHARS = 2000


class StepRunner:
    """Run a step through a StepInvoker and classify the result.

    A non-zero exit of a must-succeed step is FAILED; of a best-effort step,
    TOLERATED. The runner never raises for a non-zero exit; callers turn a
    FAILED result into a StepFailure with ``failure()``.
    """

    def __init__(self, invoker: StepInvoker):
        self.invoker = invoker

    async def run(
        self,
        context: ExecutionContext,
        step: Step,
        values: Mapping[str, str],
        stage: str,
        hook: str | None = None,
    ) -> StepResult:
        command = step.render(values).run
        logger.debug(f"[{stage}] $ {command}")
        start = time.monotonic()
        try:
            exit_code, output = await self.invoker.execute(context, command, timeout=step.timeout)
        except Exception as e:
            logger.error(f"[{stage}] Step '{step.display_name}' could not be executed: {e}")
            exit_code, output = INVOKER_ERROR_EXIT_CODE, str(e)
        duration = time.monotonic() - start

        if exit_code == 0:
            outcome = StepOutcome.SUCCEEDED
        elif step.best_effort:
            outcome = StepOutcome.TOLERATED
            logger.warning(
                f"[{stage}] Best-effort step '{step.display_name}' exited {exit_code}; continuing"
            )
        else:
            outcome = StepOutcome.FAILED
            logger.error(f"[{stage}] Step '{step.display_name}' exited {exit_code}")

        return StepResult(
            step=step.display_name,
            exit_code=exit_code,
            output=output,
            outcome=outcome,
            duration_seconds=duration,
            hook=hook,
        )

    @staticmethod
    def failure(result: StepResult, stage: str) -> StepFailure:
        """Exception describing a non-zero step result."""
        cls = ToleratedFailure if result.outcome == StepOutcome.TOLERATED else StepFailure
        message = f"Step '{result.step}' exited with code {result.exit_code}"
        tail = result.output.strip()[-OUTPUT_TAIL_CHARS:]
        if tail and result.outcome == StepOutcome.FAILED:
            message += f"\n{tail}"
        return cls(message, stage=stage, step=result.step, exit_code=result.exit_code)
