"""Core modules for the cdflow pipeline engine."""

from cdflow.core.builder import StageGraphBuilder, analyze_parallelism, expand_matrix
from cdflow.core.declaration import PipelineDecl, StageDecl
from cdflow.core.engine import PipelineEngine
from cdflow.core.errors import ErrorKind, PipelineError
from cdflow.core.models import (
    NodeStatus,
    PipelineRun,
    RunBindings,
    RunStatus,
    StageKind,
    StageNode,
    Step,
)
from cdflow.core.state import Database, Event, EventType

__all__ = [
    "Database",
    "ErrorKind",
    "Event",
    "EventType",
    "NodeStatus",
    "PipelineDecl",
    "PipelineEngine",
    "PipelineError",
    "PipelineRun",
    "RunBindings",
    "RunStatus",
    "StageDecl",
    "StageGraphBuilder",
    "StageKind",
    "StageNode",
    "Step",
    "analyze_parallelism",
    "expand_matrix",
]
