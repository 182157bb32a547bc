"""Execution context providers and step invokers.

Two backends:
1. LocalProvider / LocalStepInvoker - a temporary directory per context,
   steps run with ``bash -lc`` on the host
2. DockerProvider / DockerStepInvoker - one long-lived container per context,
   steps run with ``docker exec``, the container is removed on release

Blocking subprocess calls are moved off the event loop with asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import re
import shutil
import subprocess
import tempfile
import threading
import uuid
from pathlib import Path

from pydantic import BaseModel

from cdflow.core.config import DockerSettings
from cdflow.core.models import ContextSpec
from cdflow.core.ports import ExecutionContext

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "cdflow-ctx-"
CONTAINER_WORKDIR = "/workspace"
DEFAULT_STEP_TIMEOUT = 3600

# Prevent downstream memory issues from unbounded command output
MAX_OUTPUT_BYTES = 10 * 1024 * 1024


class SandboxError(Exception):
    """Error in an execution backend."""


class DockerNotAvailableError(SandboxError):
    """Docker is required but not available."""


class ExecutionResult(BaseModel):
    """Result of one subprocess invocation."""

    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


def _truncate_output(output: str, max_bytes: int = MAX_OUTPUT_BYTES) -> str:
    """Truncate output to max_bytes, adding a truncation notice if needed."""
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    # Cut by bytes without splitting a UTF-8 sequence
    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


def run_command(
    cmd: list[str],
    timeout: int | None,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> ExecutionResult:
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            cwd=cwd,
            env=env,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return ExecutionResult(
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout}s",
            timed_out=True,
        )
    return ExecutionResult(
        returncode=result.returncode,
        stdout=_truncate_output(result.stdout),
        stderr=_truncate_output(result.stderr),
    )


def _validate_docker() -> None:
    """Validate Docker is available. Raises if not."""
    if not shutil.which("docker"):
        raise DockerNotAvailableError("Docker binary not found in PATH")

    result = subprocess.run(["docker", "version"], capture_output=True, timeout=5)
    if result.returncode != 0:
        raise DockerNotAvailableError(
            f"Docker is not running or not accessible: {result.stderr.decode()}"
        )


def _sanitize_container_name_component(name: str) -> str:
    """Docker container names must match [a-zA-Z0-9][a-zA-Z0-9_.-]*."""
    sanitized = re.sub(r"[^a-zA-Z0-9_.-]", "-", name)
    sanitized = sanitized.lstrip("_.-")
    sanitized = re.sub(r"-+", "-", sanitized)[:40]
    return sanitized.lower() or "any"


# ========== Local backend ==========


class LocalProvider:
    """Hand out temporary directories on the host as execution contexts.

    Not isolated: steps see the host filesystem and tools. Meant for local
    pipeline development and for tests.
    """

    def __init__(self, base_dir: str | Path | None = None):
        self._base_dir = Path(base_dir) if base_dir else None
        self._active: set[str] = set()
        self._lock = threading.Lock()

    @property
    def base_dir(self) -> Path:
        if self._base_dir is None:
            self._base_dir = Path(tempfile.mkdtemp(prefix="cdflow-"))
        return self._base_dir

    async def acquire(self, spec: ContextSpec) -> ExecutionContext:
        context_id = f"local-{uuid.uuid4().hex[:8]}"
        workdir = self.base_dir / context_id
        workdir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._active.add(context_id)
        logger.debug(f"Acquired local context '{context_id}' (label '{spec.label}')")
        return ExecutionContext(id=context_id, spec=spec, workdir=workdir)

    async def release(self, context: ExecutionContext) -> None:
        with self._lock:
            self._active.discard(context.id)
        logger.debug(f"Released local context '{context.id}'")

    async def cleanup(self) -> None:
        with self._lock:
            if self._active:
                logger.warning(f"Cleaning up while contexts are still held: {sorted(self._active)}")
            self._active.clear()
        if self._base_dir is not None and self._base_dir.exists():
            await asyncio.to_thread(shutil.rmtree, self._base_dir, True)
        self._base_dir = None

    @property
    def active_contexts(self) -> list[str]:
        with self._lock:
            return sorted(self._active)


class LocalStepInvoker:
    """Run steps with ``bash -lc`` in the context's working directory."""

    def __init__(self, default_timeout: int = DEFAULT_STEP_TIMEOUT):
        self.default_timeout = default_timeout

    async def execute(
        self, context: ExecutionContext, command: str, timeout: int | None = None
    ) -> tuple[int, str]:
        env = {**os.environ, **context.env}
        result = await asyncio.to_thread(
            run_command,
            ["bash", "-lc", command],
            timeout or self.default_timeout,
            context.workdir,
            env,
        )
        return result.returncode, result.output


# ========== Docker backend ==========


class ContainerRegistry:
    """Track running containers so they are removed on interpreter exit."""

    def __init__(self) -> None:
        self._containers: set[str] = set()
        self._lock = threading.RLock()
        atexit.register(self.cleanup_all)

    def add(self, name: str) -> None:
        with self._lock:
            self._containers.add(name)

    def remove(self, name: str) -> None:
        with self._lock:
            self._containers.discard(name)

    def snapshot(self) -> list[str]:
        with self._lock:
            return sorted(self._containers)

    def cleanup_all(self) -> None:
        for name in self.snapshot():
            try:
                subprocess.run(["docker", "rm", "-f", name], capture_output=True, timeout=10)
            except (subprocess.TimeoutExpired, FileNotFoundError):
                continue
            self.remove(name)


_registry = ContainerRegistry()


class DockerProvider:
    """One detached container per execution context.

    The context's host working directory is mounted at /workspace. The
    container is kept alive with ``sleep infinity`` and removed on release.
    """

    def __init__(
        self,
        settings: DockerSettings | None = None,
        workspace_root: str | Path | None = None,
        require_docker: bool = True,
    ):
        self.settings = settings or DockerSettings()
        self.local = LocalProvider(workspace_root)
        if require_docker:
            _validate_docker()

    async def acquire(self, spec: ContextSpec) -> ExecutionContext:
        context = await self.local.acquire(spec)
        image = spec.image or self.settings.default_image
        name = (
            f"{CONTAINER_PREFIX}{_sanitize_container_name_component(spec.label)}-"
            f"{uuid.uuid4().hex[:8]}"
        )
        cmd = [
            "docker", "run", "-d",
            f"--name={name}",
            f"--volume={context.workdir.resolve()}:{CONTAINER_WORKDIR}:rw",
            f"--workdir={CONTAINER_WORKDIR}",
            f"--memory={self.settings.memory_limit}",
            f"--cpus={self.settings.cpu_limit}",
            "--security-opt=no-new-privileges:true",
            f"--label=cdflow.label={spec.label}",
            "--entrypoint=sleep",
            image,
            "infinity",
        ]
        _registry.add(name)
        result = await asyncio.to_thread(run_command, cmd, 300)
        if result.returncode != 0:
            _registry.remove(name)
            await self.local.release(context)
            raise SandboxError(f"Could not start container from '{image}': {result.output.strip()}")

        context.handle = name
        logger.debug(f"Started container '{name}' from '{image}' for context '{context.id}'")
        return context

    async def release(self, context: ExecutionContext) -> None:
        if context.handle:
            result = await asyncio.to_thread(
                run_command, ["docker", "rm", "-f", context.handle], 60
            )
            if result.returncode != 0:
                raise SandboxError(
                    f"Could not remove container '{context.handle}': {result.output.strip()}"
                )
            _registry.remove(context.handle)
        await self.local.release(context)

    async def cleanup(self) -> None:
        await asyncio.to_thread(_registry.cleanup_all)
        await self.local.cleanup()


class DockerStepInvoker:
    """Run steps with ``docker exec`` in the context's container."""

    def __init__(self, default_timeout: int = DEFAULT_STEP_TIMEOUT):
        self.default_timeout = default_timeout

    async def execute(
        self, context: ExecutionContext, command: str, timeout: int | None = None
    ) -> tuple[int, str]:
        if not context.handle:
            raise SandboxError(f"Context '{context.id}' has no container")

        cmd = ["docker", "exec", f"--workdir={CONTAINER_WORKDIR}"]
        for key, value in context.env.items():
            cmd.extend(["--env", f"{key}={value}"])
        cmd.extend([context.handle, "bash", "-lc", command])

        result = await asyncio.to_thread(run_command, cmd, timeout or self.default_timeout)
        return result.returncode, result.output
