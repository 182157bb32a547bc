"""Reference adapters for quality services, clusters and chat channels."""

from cdflow.adapters.channels import (
    AutoApprovalChannel,
    ConsoleApprovalChannel,
    ConsoleNotificationChannel,
)
from cdflow.adapters.kubectl import KubectlDeploymentTarget
from cdflow.adapters.quality import CommandQualityGate

__all__ = [
    "AutoApprovalChannel",
    "CommandQualityGate",
    "ConsoleApprovalChannel",
    "ConsoleNotificationChannel",
    "KubectlDeploymentTarget",
]
