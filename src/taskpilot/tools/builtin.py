"""Built-in tools: plan tracking, multi-step execution and simulated actions."""

from __future__ import annotations

import datetime as dt
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..errors import PlanValidationError, UnknownTask
from ..observability.logging import get_logger
from .base import Tool, ToolContext, object_schema
from .registry import ToolRegistry

if TYPE_CHECKING:  # pragma: no cover
    from ..agents.session import SessionContext, SessionStore
    from ..scheduler.workflows import JsonWorkflowStore
    from ..tasks.runner import MultiStepExecutor

logger = get_logger(__name__)

TASK_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "description": "Task ID (e.g., task_1)"},
        "description": {"type": "string", "description": "What to do"},
        "tool_needed": {"type": "string", "description": "Tool name to use"},
        "depends_on": {"type": "string", "description": "ID of task this depends on"},
    },
    "required": ["id", "description", "tool_needed"],
}

STEP_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "step_number": {"type": "number", "description": "Step order (1, 2, 3...)"},
        "description": {"type": "string", "description": "What this step does"},
        "tool_to_use": {"type": "string", "description": "Which tool/function to call"},
        "parameters": {"type": "object", "description": "Parameters for the tool call"},
    },
    "required": ["step_number", "description", "tool_to_use", "parameters"],
}


class SessionTool(Tool):
    """Tool bound to the session store; resolves the caller's session per call."""

    def __init__(self, name: str, sessions: "SessionStore", **kwargs: Any) -> None:
        super().__init__(name, **kwargs)
        self.sessions = sessions

    def session(self, context: ToolContext) -> "SessionContext":
        return self.sessions.get_or_create(context.session_id)


class CreateTaskPlanTool(SessionTool):
    """Use this FIRST whenever the user asks for more than one action.

    Required for requests with several action words ("check AND send"),
    sequencing ("then", "after", "also"), or several recipients. Declaring the
    plan lets every task be tracked until it is done.
    """

    def default_parameters(self) -> Dict[str, Any]:
        return object_schema(
            {"tasks": {"type": "array", "description": "List of tasks to complete", "items": TASK_ITEM_SCHEMA}},
            required=("tasks",),
        )

    async def run(self, params: Dict[str, Any], context: ToolContext) -> str:
        session = self.session(context)
        try:
            summary = session.plan.create_plan(params["tasks"] or [])
        except PlanValidationError as exc:
            return f"Could not create task plan: {exc}"
        session.tracker.log_thought(f"Created task plan with {len(session.plan.tasks)} tasks")
        logger.info("task_plan_created", session_id=session.session_id, tasks=len(session.plan.tasks))
        return summary


class MarkTaskCompleteTool(SessionTool):
    """Mark a task as completed."""

    def default_parameters(self) -> Dict[str, Any]:
        return object_schema(
            {
                "task_id": {"type": "string", "description": "ID of completed task"},
                "result_summary": {"type": "string", "description": "Brief result summary"},
            },
            required=("task_id",),
        )

    async def run(self, params: Dict[str, Any], context: ToolContext) -> str:
        plan = self.session(context).plan
        try:
            return plan.mark_complete(str(params["task_id"]), params.get("result_summary"))
        except UnknownTask as exc:
            return f"{exc}. Known tasks: {', '.join(task.id for task in plan.tasks)}"


class MarkTaskFailedTool(SessionTool):
    """Mark a task as failed so the plan can move on."""

    def default_parameters(self) -> Dict[str, Any]:
        return object_schema(
            {
                "task_id": {"type": "string", "description": "ID of the failed task"},
                "error": {"type": "string", "description": "Why it failed"},
            },
            required=("task_id",),
        )

    async def run(self, params: Dict[str, Any], context: ToolContext) -> str:
        plan = self.session(context).plan
        try:
            return plan.mark_failed(str(params["task_id"]), params.get("error"))
        except UnknownTask as exc:
            return f"{exc}. Known tasks: {', '.join(task.id for task in plan.tasks)}"


class CheckRemainingTasksTool(SessionTool):
    """Check what tasks are still pending."""

    async def run(self, params: Dict[str, Any], context: ToolContext) -> str:
        return self.session(context).plan.render_remaining()


class ExecuteMultiStepTool(SessionTool):
    """MANDATORY for requests with multiple recipients or actions.

    Use when recipients/actions are joined by "and", several email addresses
    are mentioned, or words like both/each/all/everyone appear. Do NOT call the
    individual tools directly in that case: this runs every step, not just the
    first.
    """

    def __init__(self, name: str, sessions: "SessionStore", executor: "MultiStepExecutor", **kwargs: Any) -> None:
        super().__init__(name, sessions, **kwargs)
        self.executor = executor

    def default_parameters(self) -> Dict[str, Any]:
        return object_schema(
            {
                "user_request": {"type": "string", "description": "The complete original user request"},
                "steps": {
                    "type": "array",
                    "description": "All individual steps that need to be executed",
                    "items": STEP_ITEM_SCHEMA,
                },
            },
            required=("user_request", "steps"),
        )

    async def run(self, params: Dict[str, Any], context: ToolContext) -> str:
        session = self.session(context)
        try:
            summary = await self.executor.execute(params["user_request"], params["steps"] or [], session=session)
        except PlanValidationError as exc:
            return f"Could not execute steps: {exc}"
        session.last_execution = summary
        return summary.render()


class AnalyzeRequestComplexityTool(Tool):
    """Analyze if a request needs multi-step execution."""

    def default_parameters(self) -> Dict[str, Any]:
        return object_schema({"request": {"type": "string", "description": "The user's request"}}, ("request",))

    def run(self, params: Dict[str, Any], context: ToolContext) -> str:
        from ..agents.detector import needs_multiple_steps

        if needs_multiple_steps(str(params["request"])):
            return "This request requires multiple steps. Use execute_multi_step_task to ensure all actions are completed."
        return "This appears to be a single-step request. Proceed with direct tool execution."


class SaveExecutionAsWorkflowTool(SessionTool):
    """Save the last multi-step execution as a reusable, schedulable workflow."""

    def __init__(self, name: str, sessions: "SessionStore", store: "JsonWorkflowStore", **kwargs: Any) -> None:
        super().__init__(name, sessions, **kwargs)
        self.store = store

    def default_parameters(self) -> Dict[str, Any]:
        return object_schema(
            {
                "workflow_name": {"type": "string", "description": "Name for the saved workflow"},
                "description": {"type": "string", "description": "Description of what this workflow does"},
            },
            required=("workflow_name",),
        )

    def run(self, params: Dict[str, Any], context: ToolContext) -> str:
        from ..scheduler.workflows import Workflow

        execution = getattr(self.session(context), "last_execution", None)
        if execution is None:
            return "No execution plan to save."
        workflow = Workflow.from_steps(
            str(params["workflow_name"]),
            execution.steps,
            description=params.get("description") or execution.request,
        )
        path = self.store.save(workflow)
        logger.info("workflow_saved", workflow_id=workflow.id, path=str(path))
        return (
            f"✅ Workflow \"{workflow.name}\" saved as {workflow.id}.\n\n"
            f"You can now:\n- Run it: \"Execute {workflow.name} workflow\"\n"
            f"- Schedule it: \"Schedule {workflow.name} daily\""
        )


class OutboxTool(Tool):
    """Simulated side-effecting tool that records every delivery in memory."""

    def __init__(self, name: str, description: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(name, description, **kwargs)
        self.outbox: List[Dict[str, Any]] = []

    def deliver(self, record: Dict[str, Any]) -> None:
        record["at"] = dt.datetime.now(dt.timezone.utc).isoformat()
        self.outbox.append(record)


class SendEmailTool(OutboxTool):
    """Send an email to one recipient."""

    def default_parameters(self) -> Dict[str, Any]:
        return object_schema(
            {
                "to": {"type": "string", "description": "Recipient email address"},
                "subject": {"type": "string"},
                "body": {"type": "string"},
            },
            required=("to",),
        )

    def run(self, params: Dict[str, Any], context: ToolContext) -> str:
        recipient = str(params["to"]).strip()
        if "@" not in recipient:
            raise ValueError(f"Invalid recipient address: {recipient!r}")
        self.deliver({"to": recipient, "subject": params.get("subject", ""), "body": params.get("body", "")})
        return f"Email sent successfully to {recipient}"


class BookMeetingTool(OutboxTool):
    """Book a meeting with one attendee."""

    def default_parameters(self) -> Dict[str, Any]:
        return object_schema(
            {
                "attendee": {"type": "string", "description": "Attendee email address"},
                "time": {"type": "string", "description": "ISO-8601 start time"},
                "topic": {"type": "string"},
            },
            required=("attendee", "time"),
        )

    def run(self, params: Dict[str, Any], context: ToolContext) -> str:
        self.deliver(dict(params))
        topic = params.get("topic")
        suffix = f" ({topic})" if topic else ""
        return f"Meeting booked with {params['attendee']} at {params['time']}{suffix}"


class CreateCalendarEventTool(OutboxTool):
    """Create a calendar event."""

    def default_parameters(self) -> Dict[str, Any]:
        return object_schema(
            {
                "title": {"type": "string"},
                "start": {"type": "string", "description": "ISO-8601 start time"},
                "attendees": {"type": "array", "items": {"type": "string"}},
            },
            required=("title", "start"),
        )

    def run(self, params: Dict[str, Any], context: ToolContext) -> str:
        self.deliver(dict(params))
        attendees = ", ".join(params.get("attendees") or []) or "no attendees"
        return f"Calendar event '{params['title']}' created for {params['start']} with {attendees}"


def register_builtin_tools(registry: ToolRegistry, *, middleware: tuple = ()) -> None:
    """Register the simulated action tools."""

    registry.register_factory("send_email", lambda: SendEmailTool(name="send_email"), overwrite=True, middleware=middleware)
    registry.register_factory(
        "book_meeting", lambda: BookMeetingTool(name="book_meeting"), overwrite=True, middleware=middleware
    )
    registry.register_factory(
        "create_calendar_event",
        lambda: CreateCalendarEventTool(name="create_calendar_event"),
        overwrite=True,
        middleware=middleware,
    )


def register_orchestration_tools(
    registry: ToolRegistry,
    sessions: "SessionStore",
    executor: "MultiStepExecutor",
    store: Optional["JsonWorkflowStore"] = None,
    *,
    middleware: tuple = (),
) -> None:
    """Register the plan-tracking and multi-step tools the model calls."""

    extra: tuple = tuple(middleware)
    registry.register_instance(CreateTaskPlanTool("create_task_plan", sessions), overwrite=True, middleware=extra)
    registry.register_instance(MarkTaskCompleteTool("mark_task_complete", sessions), overwrite=True, middleware=extra)
    registry.register_instance(MarkTaskFailedTool("mark_task_failed", sessions), overwrite=True, middleware=extra)
    registry.register_instance(
        CheckRemainingTasksTool("check_remaining_tasks", sessions), overwrite=True, middleware=extra
    )
    registry.register_instance(
        ExecuteMultiStepTool("execute_multi_step_task", sessions, executor), overwrite=True, middleware=extra
    )
    registry.register_instance(
        AnalyzeRequestComplexityTool("analyze_request_complexity"), overwrite=True, middleware=extra
    )
    if store is not None:
        registry.register_instance(
            SaveExecutionAsWorkflowTool("save_execution_as_workflow", sessions, store),
            overwrite=True,
            middleware=extra,
        )
