"""Exception hierarchy for the orchestration core."""

from __future__ import annotations

from typing import Sequence


class TaskpilotError(RuntimeError):
    """Base class for orchestration errors."""


class PlanValidationError(TaskpilotError, ValueError):
    """Raised when a task plan or step list is malformed."""


class UnknownTask(TaskpilotError, KeyError):
    """Raised when a task id is not part of the active plan."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' is not part of the active plan")
        self.task_id = task_id

    def __str__(self) -> str:
        return self.args[0]


class ToolResolutionError(TaskpilotError, LookupError):
    """Raised when a tool name cannot be mapped onto a registered tool."""


class UnknownTool(ToolResolutionError):
    def __init__(self, name: str, available: Sequence[str] = ()) -> None:
        listing = ", ".join(sorted(available)) or "none"
        super().__init__(f"Tool '{name}' not found. Available tools: {listing}")
        self.name = name
        self.available = list(available)


class AmbiguousTool(ToolResolutionError):
    def __init__(self, name: str, candidates: Sequence[str]) -> None:
        super().__init__(
            f"Tool '{name}' is ambiguous; it could refer to: {', '.join(candidates)}"
        )
        self.name = name
        self.candidates = list(candidates)


class ToolParameterError(TaskpilotError, ValueError):
    """Raised when a tool is called without its required parameters."""


class StepExecutionError(TaskpilotError):
    """A tool raised while running a specific step."""

    def __init__(self, step_number: int, message: str) -> None:
        super().__init__(f"Step {step_number} failed: {message}")
        self.step_number = step_number
        self.message = message


class WorkflowNotFound(TaskpilotError, LookupError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class InvalidCronExpression(TaskpilotError, ValueError):
    def __init__(self, expression: str, reason: str | None = None) -> None:
        message = f"Invalid cron expression: {expression}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.expression = expression


class InvalidTimezone(InvalidCronExpression):
    def __init__(self, timezone: str) -> None:
        TaskpilotError.__init__(self, f"Unknown timezone: {timezone}")
        self.expression = timezone
        self.timezone = timezone


class ScheduleNotFound(TaskpilotError, LookupError):
    def __init__(self, schedule_id: str) -> None:
        super().__init__(f"Schedule not found: {schedule_id}")
        self.schedule_id = schedule_id


class InvalidScheduleOptions(TaskpilotError, ValueError):
    """Raised when schedule options other than cron and timezone are out of range."""
