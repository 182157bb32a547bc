"""Declarative pipeline schema using Pydantic models.

A pipeline is a nested list of stages. Each stage has exactly one body form:

- ``steps``: commands run in one execution context (leaf stage)
- ``stages``: nested stages run in declared order
- ``parallel``: nested stages run concurrently
- ``matrix``: the stage body (``steps`` or ``stages``) expanded once per
  combination of axis values

and may additionally carry one policy: ``gate`` (quality verdict after the
steps), ``approval`` (manual decision guarding the nested ``stages``) or
``deploy`` (image rollout wrapped by the rollback controller).

Structural rules (one body form, unique names, non-empty axes) are enforced by
the builder so that they surface as ConfigurationError.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from cdflow.core.errors import ConfigurationError
from cdflow.core.models import ApprovalSpec, ContextSpec, DeploySpec, GateSpec, PostHooks, Step


def _coerce_steps(value: Any) -> Any:
    """Allow bare strings as shorthand for ``{run: <string>}``."""
    if isinstance(value, list):
        return [{"run": item} if isinstance(item, str) else item for item in value]
    return value


class MatrixDecl(BaseModel):
    """Matrix axes in declaration order. Values are compared as strings."""

    axes: dict[str, list[str]]

    @field_validator("axes", mode="before")
    @classmethod
    def stringify_values(cls, v):
        if isinstance(v, dict):
            return {
                str(name): [str(item) for item in values] if isinstance(values, list) else values
                for name, values in v.items()
            }
        return v


class StageDecl(BaseModel):
    """One declared stage."""

    name: str
    context: ContextSpec | None = None
    steps: list[Step] | None = None
    stages: list[StageDecl] | None = None
    parallel: list[StageDecl] | None = None
    matrix: MatrixDecl | None = None
    gate: GateSpec | None = None
    approval: ApprovalSpec | None = None
    deploy: DeploySpec | None = None
    post: PostHooks = Field(default_factory=PostHooks)
    continue_on_error: bool = False
    retries: int = Field(default=0, ge=0)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Names are path segments, so they must be non-empty and slash-free."""
        if not v.strip():
            raise ValueError("Stage name must not be empty")
        if "/" in v:
            raise ValueError(f"Stage name '{v}' must not contain '/'")
        return v

    @field_validator("steps", mode="before")
    @classmethod
    def coerce_steps(cls, v):
        return _coerce_steps(v)

    @field_validator("post", mode="before")
    @classmethod
    def coerce_post(cls, v):
        if isinstance(v, dict):
            return {key: _coerce_steps(value) for key, value in v.items()}
        return v


class PipelineDecl(BaseModel):
    """Complete pipeline definition."""

    name: str = "pipeline"
    description: str | None = None
    context: ContextSpec | None = None  # Default context for stages that name none
    environment: dict[str, str] = Field(default_factory=dict)
    stages: list[StageDecl]
    post: PostHooks = Field(default_factory=PostHooks)

    @field_validator("environment", mode="before")
    @classmethod
    def stringify_environment(cls, v):
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v

    @field_validator("post", mode="before")
    @classmethod
    def coerce_post(cls, v):
        if isinstance(v, dict):
            return {key: _coerce_steps(value) for key, value in v.items()}
        return v

    @classmethod
    def from_yaml(cls, path: str | Path) -> PipelineDecl:
        """Load and validate a pipeline file.

        Raises:
            ConfigurationError: If the file is not valid YAML or violates the schema
        """
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in '{path}': {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Invalid pipeline file '{path}': expected a mapping, "
                f"got {type(data).__name__}"
            )
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(f"Invalid pipeline '{path}': {problems}") from e
