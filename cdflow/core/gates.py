"""Quality gate evaluation.

A gate verdict comes from an external quality service and is independent of
the exit codes of the stage's own steps: a scanner may exit 0 while the
service still reports the project as unsuccessful.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from cdflow.core.errors import GateRejection
from cdflow.core.models import GateSpec, GateVerdict
from cdflow.core.ports import QualityGateService

logger = logging.getLogger(__name__)


@dataclass
class GateResult:
    """Verdict of one quality gate."""

    project_key: str
    verdict: GateVerdict
    raw: str | None = None
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.verdict == GateVerdict.PASS


class GateEvaluator:
    """Wait for and interpret quality service verdicts."""

    def __init__(self, service: QualityGateService, default_timeout: float = 300.0):
        self.service = service
        self.default_timeout = default_timeout

    def evaluate(self, verdict: GateVerdict | str, project_key: str = "") -> GateResult:
        """Map a raw verdict onto pass/unsuccessful. Unknown values never pass."""
        raw = verdict.value if isinstance(verdict, GateVerdict) else str(verdict)
        try:
            normalized = GateVerdict(raw.lower())
        except ValueError:
            normalized = GateVerdict.UNSUCCESSFUL
        return GateResult(project_key=project_key, verdict=normalized, raw=raw)

    async def await_verdict(self, spec: GateSpec) -> GateResult:
        """Block on the service verdict; a timeout counts as unsuccessful."""
        timeout = spec.timeout or self.default_timeout
        try:
            verdict = await asyncio.wait_for(self.service.submit(spec.project_key), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"No quality verdict for '{spec.project_key}' within {timeout}s; "
                f"treating as unsuccessful"
            )
            return GateResult(
                project_key=spec.project_key,
                verdict=GateVerdict.UNSUCCESSFUL,
                timed_out=True,
            )
        return self.evaluate(verdict, spec.project_key)

    @staticmethod
    def enforce(result: GateResult, stage: str) -> None:
        """Raise GateRejection unless the verdict passed."""
        if result.passed:
            return
        reason = "timed out" if result.timed_out else f"verdict '{result.raw}'"
        raise GateRejection(
            f"Quality gate for '{result.project_key}' unsuccessful ({reason})", stage
        )
