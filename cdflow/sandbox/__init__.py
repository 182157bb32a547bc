"""Execution backends: local temp directories and Docker containers."""

from cdflow.sandbox.executor import (
    DockerProvider,
    DockerStepInvoker,
    LocalProvider,
    LocalStepInvoker,
    SandboxError,
)

__all__ = [
    "DockerProvider",
    "DockerStepInvoker",
    "LocalProvider",
    "LocalStepInvoker",
    "SandboxError",
]
