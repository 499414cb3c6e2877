"""Control-plane public API."""

from pipewright.control_plane.controller import PipelineService, RunOutcome
from pipewright.control_plane.invokers import (
    CommandInvoker,
    FunctionInvoker,
    InvokerRegistry,
    StageContext,
    StageInvoker,
)
from pipewright.control_plane.scheduler import ExecutionScheduler, RunRecorder

__all__ = [
    "CommandInvoker",
    "ExecutionScheduler",
    "FunctionInvoker",
    "InvokerRegistry",
    "PipelineService",
    "RunOutcome",
    "RunRecorder",
    "StageContext",
    "StageInvoker",
]
