"""Workflow storage and cron scheduling."""

from .service import ExecutionRecord, ScheduleEntry, ScheduleState, WorkflowScheduler, normalize_cron
from .workflows import JsonWorkflowStore, StepWorkflowExecutor, Workflow, WorkflowResult

__all__ = [
    "ExecutionRecord",
    "JsonWorkflowStore",
    "ScheduleEntry",
    "ScheduleState",
    "StepWorkflowExecutor",
    "Workflow",
    "WorkflowResult",
    "WorkflowScheduler",
    "normalize_cron",
]
