"""Engine configuration loaded from ``.cdflow/config.yaml``."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from cdflow.core.errors import ConfigurationError

CONFIG_DIR = ".cdflow"
CONFIG_FILE = "config.yaml"

DEFAULT_CONFIG_YAML = """# cdflow engine configuration

# Maximum number of execution contexts held at the same time
max_parallel: 4

# Wall-clock deadline for a whole run (seconds); exceeding it aborts the run
run_timeout: 3600

# Default wait for a manual approval (seconds) and the status of a rejected gate
approval_timeout: 3600
approval_rejection: failed  # failed | aborted

# Default wait for a quality gate verdict (seconds)
gate_timeout: 300

# Where the end-of-run notification goes
notify_channel: "#deployments"

# Execution environment provider: local | docker
provider: local
docker:
  default_image: "alpine:3.20"
  memory_limit: "4g"
  cpu_limit: "2"

# Command printing a JSON quality verdict; ${PROJECT_KEY} is substituted
quality_gate:
  command: >-
    curl -sf -u "${SONAR_TOKEN}:"
    "${SONAR_HOST_URL}/api/qualitygates/project_status?projectKey=${PROJECT_KEY}"
  timeout: 60

# kubectl settings for deploy stages
kubectl:
  context: null
  rollout_timeout: 300
"""


# Strict numbers: YAML booleans and fractional counts are rejected
Count = Annotated[int, Field(strict=True, ge=1)]
Seconds = Annotated[float, Field(strict=True, gt=0)]
WholeSeconds = Annotated[int, Field(strict=True, ge=1)]


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class DockerSettings(_Section):
    default_image: StrictStr = "alpine:3.20"
    memory_limit: StrictStr = "4g"
    cpu_limit: StrictStr = "2"


class QualityGateSettings(_Section):
    command: StrictStr = (
        'curl -sf -u "${SONAR_TOKEN}:" '
        '"${SONAR_HOST_URL}/api/qualitygates/project_status?projectKey=${PROJECT_KEY}"'
    )
    timeout: WholeSeconds = 60


class KubectlSettings(_Section):
    context: StrictStr | None = None
    rollout_timeout: WholeSeconds = 300


class EngineConfig(_Section):
    """Engine limits, policies and adapter settings."""

    max_parallel: Count = 4
    run_timeout: Seconds | None = 3600.0
    approval_timeout: Seconds = 3600.0
    approval_rejection: Literal["failed", "aborted"] = "failed"
    gate_timeout: Seconds = 300.0
    notify_channel: StrictStr = "#deployments"
    provider: Literal["local", "docker"] = "local"
    docker: DockerSettings = Field(default_factory=DockerSettings)
    quality_gate: QualityGateSettings = Field(default_factory=QualityGateSettings)
    kubectl: KubectlSettings = Field(default_factory=KubectlSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: str = "config") -> EngineConfig:
        """Validate a parsed config mapping.

        Raises:
            ConfigurationError: Unknown keys, wrong types or out-of-range values
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(f"Invalid config '{source}': {problems}") from e


def load_config(repo_path: Path) -> EngineConfig:
    """Load ``.cdflow/config.yaml`` under ``repo_path``; defaults if absent."""
    config_path = repo_path / CONFIG_DIR / CONFIG_FILE
    if not config_path.exists():
        return EngineConfig()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in '{config_path}': {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Invalid config '{config_path}': expected a mapping, got {type(data).__name__}"
        )
    return EngineConfig.from_dict(data, str(config_path))
