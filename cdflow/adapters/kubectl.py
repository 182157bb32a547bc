"""DeploymentTarget backed by the kubectl CLI."""

from __future__ import annotations

import asyncio
import logging

from cdflow.core.config import KubectlSettings
from cdflow.sandbox.executor import ExecutionResult, run_command

logger = logging.getLogger(__name__)

REVISION_ANNOTATION = r"{.metadata.annotations.deployment\.kubernetes\.io/revision}"


class KubectlError(Exception):
    """A kubectl invocation exited non-zero."""


class KubectlDeploymentTarget:
    """Roll images out with ``kubectl set image`` and revert with ``rollout undo``.

    USAGE:
        target = KubectlDeploymentTarget(KubectlSettings(context="prod-cluster"))
        revision = await target.current_revision("web", "prod")
        await target.set_image("web", "prod", "registry/web:42")
        healthy = await target.wait_rollout_status("web", "prod")
    """

    def __init__(
        self,
        settings: KubectlSettings | None = None,
        kubectl: str = "kubectl",
        container: str = "*",
    ):
        self.settings = settings or KubectlSettings()
        self.kubectl = kubectl
        self.container = container

    def _base(self, namespace: str) -> list[str]:
        cmd = [self.kubectl]
        if self.settings.context:
            cmd.append(f"--context={self.settings.context}")
        cmd.extend(["--namespace", namespace])
        return cmd

    async def _kubectl(
        self, namespace: str, args: list[str], timeout: int | None = 60
    ) -> ExecutionResult:
        cmd = self._base(namespace) + args
        logger.debug(f"$ {' '.join(cmd)}")
        return await asyncio.to_thread(run_command, cmd, timeout)

    async def current_revision(self, deployment: str, namespace: str) -> str | None:
        """Revision of the live deployment, or None if it does not exist yet."""
        result = await self._kubectl(
            namespace,
            ["get", f"deployment/{deployment}", "-o", f"jsonpath={REVISION_ANNOTATION}"],
        )
        if result.returncode != 0:
            if "NotFound" in result.stderr:
                return None
            raise KubectlError(f"kubectl get deployment/{deployment} failed: {result.output}")
        return result.stdout.strip() or None

    async def set_image(self, deployment: str, namespace: str, image: str) -> None:
        result = await self._kubectl(
            namespace,
            ["set", "image", f"deployment/{deployment}", f"{self.container}={image}"],
        )
        if result.returncode != 0:
            raise KubectlError(f"kubectl set image failed: {result.output}")

    async def wait_rollout_status(self, deployment: str, namespace: str) -> bool:
        timeout = self.settings.rollout_timeout
        result = await self._kubectl(
            namespace,
            ["rollout", "status", f"deployment/{deployment}", f"--timeout={timeout}s"],
            timeout=timeout + 30,
        )
        if result.returncode != 0:
            logger.warning(f"Rollout of {namespace}/{deployment} not healthy: {result.output}")
        return result.returncode == 0

    async def rollback_to_previous(
        self, deployment: str, namespace: str, revision: str | None = None
    ) -> None:
        args = ["rollout", "undo", f"deployment/{deployment}"]
        if revision:
            args.append(f"--to-revision={revision}")
        result = await self._kubectl(namespace, args)
        if result.returncode != 0:
            raise KubectlError(f"kubectl rollout undo failed: {result.output}")
