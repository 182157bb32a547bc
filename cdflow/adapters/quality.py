"""QualityGateService that shells out to a status command.

The configured command must print a JSON document. Both the SonarQube
``api/qualitygates/project_status`` shape (``{"projectStatus": {"status": ...}}``)
and a flat ``{"status": ...}`` are understood.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os

from cdflow.core.config import QualityGateSettings
from cdflow.core.models import GateVerdict, substitute
from cdflow.sandbox.executor import run_command

logger = logging.getLogger(__name__)

PASSING_STATUSES = {"OK", "PASS", "PASSED", "SUCCESS"}

# Analysis still being computed; poll again
PENDING_STATUSES = {"NONE", "PENDING", "IN_PROGRESS"}


def parse_status(text: str) -> str | None:
    """Extract the quality status from the command output."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    project_status = data.get("projectStatus")
    if isinstance(project_status, dict) and project_status.get("status"):
        return str(project_status["status"]).upper()
    if data.get("status"):
        return str(data["status"]).upper()
    return None


class CommandQualityGate:
    """Poll a command until it reports a final quality verdict.

    The gate evaluator bounds the wait with its own timeout, so this adapter
    polls for as long as the analysis is pending.
    """

    def __init__(
        self,
        settings: QualityGateSettings | None = None,
        poll_interval: float = 5.0,
    ):
        self.settings = settings or QualityGateSettings()
        self.poll_interval = poll_interval

    async def submit(self, project_key: str) -> GateVerdict:
        values = {**os.environ, "PROJECT_KEY": project_key}
        command = substitute(self.settings.command, values)

        while True:
            result = await asyncio.to_thread(
                run_command, ["bash", "-lc", command], self.settings.timeout
            )
            if result.returncode != 0:
                logger.warning(
                    f"Quality status command for '{project_key}' exited {result.returncode}: "
                    f"{result.output.strip()[:500]}"
                )
                return GateVerdict.UNSUCCESSFUL

            status = parse_status(result.stdout)
            if status in PENDING_STATUSES:
                logger.debug(f"Quality analysis for '{project_key}' pending ({status})")
                await asyncio.sleep(self.poll_interval)
                continue

            logger.info(f"Quality status for '{project_key}': {status}")
            return GateVerdict.PASS if status in PASSING_STATUSES else GateVerdict.UNSUCCESSFUL
