"""Sequential multi-step execution against the tool registry."""

from __future__ import annotations

import asyncio
import string
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Union

from ..errors import PlanValidationError, StepExecutionError, ToolResolutionError
from ..observability.logging import get_logger
from ..tools.base import Tool, ToolContext, invoke_tool
from ..tools.registry import ToolRegistry
from .base import TaskPlan

if TYPE_CHECKING:  # pragma: no cover
    from ..agents.session import SessionContext

logger = get_logger(__name__)

RESULT_PREVIEW_LIMIT = 200


@dataclass(frozen=True)
class Step:
    """One explicit action in a multi-step request."""

    step_number: int
    description: str
    tool_to_use: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Step":
        if not isinstance(data, Mapping):
            raise PlanValidationError(f"Steps must be mappings, got {type(data).__name__}")
        tool = data.get("tool_to_use", data.get("toolToUse", data.get("tool")))
        number = data.get("step_number", data.get("stepNumber"))
        missing = [
            key
            for key, value in (("step_number", number), ("description", data.get("description")), ("tool_to_use", tool))
            if value is None or str(value).strip() == ""
        ]
        if missing:
            raise PlanValidationError(f"Step is missing required keys: {', '.join(missing)}")
        try:
            step_number = int(number)
        except (TypeError, ValueError) as exc:
            raise PlanValidationError(f"Step number must be an integer, got {number!r}") from exc
        if isinstance(number, float) and not number.is_integer():
            raise PlanValidationError(f"Step number must be an integer, got {number!r}")
        parameters = data.get("parameters", data.get("params")) or {}
        if not isinstance(parameters, Mapping):
            raise PlanValidationError(f"Parameters for step {step_number} must be an object")
        return cls(step_number, str(data["description"]), str(tool), dict(parameters))


def parse_steps(steps: Iterable[Union[Step, Mapping[str, Any]]]) -> List[Step]:
    """Validate a step list and return it ordered by step number."""
    parsed = [step if isinstance(step, Step) else Step.from_mapping(step) for step in steps]
    numbers = [step.step_number for step in parsed]
    duplicates = sorted({number for number in numbers if numbers.count(number) > 1})
    if duplicates:
        raise PlanValidationError(f"Duplicate step numbers: {', '.join(map(str, duplicates))}")
    out_of_range = [number for number in numbers if not 1 <= number <= len(parsed)]
    if out_of_range:
        raise PlanValidationError(
            f"Step numbers must run from 1 to {len(parsed)}; got {', '.join(map(str, out_of_range))}"
        )
    return sorted(parsed, key=lambda step: step.step_number)


class CancelToken:
    """Cooperative cancellation flag shared between a caller and an execution."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class StepExecutionContext:
    """State of one run of the executor."""

    request: str
    total_steps: int
    completed_steps: List[int] = field(default_factory=list)
    results: Dict[int, Any] = field(default_factory=dict)
    errors: Dict[int, str] = field(default_factory=dict)

    def _check(self, step_number: int) -> None:
        if not 1 <= step_number <= self.total_steps:
            raise ValueError(f"Step {step_number} outside 1..{self.total_steps}")
        if step_number in self.results or step_number in self.errors:
            raise ValueError(f"Step {step_number} already recorded")

    def record_success(self, step_number: int, result: Any) -> None:
        self._check(step_number)
        self.completed_steps.append(step_number)
        self.results[step_number] = result

    def record_error(self, step_number: int, message: str) -> None:
        self._check(step_number)
        self.errors[step_number] = message


@dataclass
class ExecutionSummary:
    """Outcome of a multi-step execution, renderable for the model."""

    request: str
    steps: List[Step]
    context: StepExecutionContext
    cancelled: bool = False

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def success_count(self) -> int:
        return len(self.context.completed_steps)

    @property
    def failure_count(self) -> int:
        return len(self.context.errors)

    @property
    def errors(self) -> Dict[int, str]:
        return dict(self.context.errors)

    @property
    def results(self) -> Dict[int, Any]:
        return dict(self.context.results)

    @property
    def remaining(self) -> List[Step]:
        done = set(self.context.completed_steps) | set(self.context.errors)
        return [step for step in self.steps if step.step_number not in done]

    @property
    def all_succeeded(self) -> bool:
        return self.success_count == self.total_steps

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request": self.request,
            "total_steps": self.total_steps,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "results": {str(k): v for k, v in self.context.results.items()},
            "errors": {str(k): v for k, v in self.context.errors.items()},
            "remaining": [step.step_number for step in self.remaining],
            "cancelled": self.cancelled,
        }

    def render(self) -> str:
        lines = [
            "## Task Execution Summary",
            "",
            f"**Request:** {self.request}",
            "",
            f"**Results:** {self.success_count}/{self.total_steps} steps completed successfully, "
            f"{self.failure_count} failed",
            "",
        ]
        by_number = {step.step_number: step for step in self.steps}
        if self.context.completed_steps:
            lines.append("### ✅ Completed Steps:")
            for number in self.context.completed_steps:
                lines.append(f"- Step {number}: {by_number[number].description}")
                result = self.context.results[number]
                if isinstance(result, str) and len(result) < RESULT_PREVIEW_LIMIT:
                    lines.append(f"  Result: {result}")
            lines.append("")
        if self.context.errors:
            lines.append("### ❌ Failed Steps:")
            for number, message in sorted(self.context.errors.items()):
                lines.append(f"- Step {number}: {message}")
            lines.append("")
        remaining = self.remaining
        if remaining:
            lines.append("### ⏳ Remaining Steps:")
            for step in remaining:
                lines.append(f"- Step {step.step_number}: {step.description}")
            lines.append("")
            lines.append("These steps still need to be executed. Continue with the next tool calls.")
        elif self.all_succeeded:
            lines.append("### ✨ All requested actions have been completed successfully!")
        return "\n".join(lines).rstrip() + "\n"


def substitute_variables(value: Any, variables: Mapping[str, Any]) -> Any:
    """Replace ``${name}`` placeholders in strings nested inside ``value``."""
    if isinstance(value, str):
        return string.Template(value).safe_substitute({k: str(v) for k, v in variables.items()})
    if isinstance(value, Mapping):
        return {key: substitute_variables(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_variables(item, variables) for item in value]
    return value


def _tool_matches(task_tool: str, *names: str) -> bool:
    wanted = task_tool.lower()
    for name in names:
        lowered = name.lower()
        if wanted == lowered or wanted in lowered or lowered in wanted:
            return True
    return False


class MultiStepExecutor:
    """Runs an explicit list of steps one at a time, isolating each failure.

    Steps run in ascending step number. Unknown or ambiguous tools and tool
    errors are recorded against their step and the batch continues; the
    returned summary lists anything that did not run so the caller keeps going.
    Tools are invoked directly, bypassing registry middleware.
    """

    def __init__(self, registry: ToolRegistry, *, step_timeout: Optional[float] = None) -> None:
        self.registry = registry
        self.step_timeout = step_timeout

    async def execute(
        self,
        request: str,
        steps: Iterable[Union[Step, Mapping[str, Any]]],
        *,
        session: Optional["SessionContext"] = None,
        cancel: Optional[CancelToken] = None,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionSummary:
        ordered = parse_steps(steps)
        context = StepExecutionContext(request=request, total_steps=len(ordered))
        tracker = session.tracker if session is not None else None
        log = logger.bind(session_id=session.session_id if session else None)
        log.info("multi_step_started", request=request, steps=len(ordered))
        thought_id = tracker.start_thinking(f"Executing {len(ordered)} steps for: {request}") if tracker else None

        cancelled = False
        for step in ordered:
            if cancel is not None and cancel.cancelled:
                cancelled = True
                log.warning("multi_step_cancelled", before_step=step.step_number, reason=cancel.reason)
                break
            log.info("step_started", step=step.step_number, total=len(ordered), description=step.description)
            try:
                tool = self.registry.resolve(step.tool_to_use)
            except ToolResolutionError as exc:
                context.record_error(step.step_number, str(exc))
                log.warning("step_tool_unresolved", step=step.step_number, tool=step.tool_to_use, error=str(exc))
                if tracker:
                    tracker.track_error(exc, context={"step": step.step_number})
                self._sync_plan(session, step, None, success=False, detail=str(exc))
                continue
            await self._run_step(step, tool, context, session, variables, log)

        summary = ExecutionSummary(request=request, steps=ordered, context=context, cancelled=cancelled)
        log.info(
            "multi_step_finished",
            succeeded=summary.success_count,
            failed=summary.failure_count,
            remaining=len(summary.remaining),
        )
        if tracker and thought_id:
            tracker.end_thinking(thought_id, f"{summary.success_count}/{summary.total_steps} steps succeeded")
        return summary

    async def _run_step(
        self,
        step: Step,
        tool: Tool,
        context: StepExecutionContext,
        session: Optional["SessionContext"],
        variables: Optional[Mapping[str, Any]],
        log: Any,
    ) -> None:
        params = substitute_variables(step.parameters, variables) if variables else dict(step.parameters)
        tool_context = ToolContext(
            session_id=session.session_id if session else "default",
            invocation_id=session.tracker.invocation_id if session else None,
            step_number=step.step_number,
            metadata={"request": context.request, "description": step.description},
        )
        started = time.perf_counter()
        try:
            call = invoke_tool(tool, params, tool_context)
            if self.step_timeout is not None:
                result = await asyncio.wait_for(call, timeout=self.step_timeout)
            else:
                result = await call
        except asyncio.TimeoutError:
            failure = StepExecutionError(step.step_number, f"'{tool.name}' timed out after {self.step_timeout}s")
        except Exception as exc:
            failure = StepExecutionError(step.step_number, str(exc) or exc.__class__.__name__)
        else:
            duration = int((time.perf_counter() - started) * 1000)
            context.record_success(step.step_number, result)
            log.info("step_completed", step=step.step_number, tool=tool.name, duration_ms=duration)
            if session is not None:
                session.tracker.track_tool_use(tool.name, params, output=result, duration=duration)
                session.record_result(tool.name, params, result, step.step_number)
            self._sync_plan(session, step, tool.name, success=True)
            return

        context.record_error(step.step_number, failure.message)
        log.warning("step_failed", step=step.step_number, tool=tool.name, error=failure.message)
        if session is not None:
            session.tracker.track_error(failure, context={"step": step.step_number, "tool": tool.name})
        self._sync_plan(session, step, tool.name, success=False, detail=failure.message)

    @staticmethod
    def _sync_plan(
        session: Optional["SessionContext"],
        step: Step,
        tool_name: Optional[str],
        *,
        success: bool,
        detail: Optional[str] = None,
    ) -> None:
        if session is None or not session.plan.is_active:
            return
        plan: TaskPlan = session.plan
        names = [step.tool_to_use] + ([tool_name] if tool_name else [])
        for task in plan.pending():
            if _tool_matches(task.tool_needed, *names):
                if success:
                    plan.mark_complete(task.id, step.description)
                else:
                    plan.mark_failed(task.id, detail)
                return
