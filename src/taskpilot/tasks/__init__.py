"""Task plans and multi-step execution."""

from .base import NO_ACTIVE_PLAN, Task, TaskPlan
from .runner import CancelToken, ExecutionSummary, MultiStepExecutor, Step, StepExecutionContext, parse_steps

__all__ = [
    "NO_ACTIVE_PLAN",
    "CancelToken",
    "ExecutionSummary",
    "MultiStepExecutor",
    "Step",
    "StepExecutionContext",
    "Task",
    "TaskPlan",
    "parse_steps",
]
