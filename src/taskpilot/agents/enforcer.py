"""Tool middleware that stops an agent from under-executing multi-action requests."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence

from ..observability.logging import get_logger
from ..tools.base import Tool, ToolContext, ToolHandler
from .detector import Detection, MultiActionDetector
from .session import SessionContext, SessionStore

logger = get_logger(__name__)

EXECUTOR_TOOL = "execute_multi_step_task"
CONFIRMATION_PATTERN = re.compile(
    r"\b(?:sent|delivered|booked|scheduled|invited|created|shared|emailed|notified|posted)\b", re.IGNORECASE
)
NEGATION_PATTERN = re.compile(
    r"\b(?:not|failed|failure|unable|error|couldn't|could not|cannot)\b", re.IGNORECASE
)


def satisfied_targets(outputs: Iterable[str], targets: Sequence[str]) -> List[str]:
    """Targets that a prior tool output confirms were already handled.

    A line confirms a target when it contains a confirmation phrase ("sent",
    "booked", ...), no failure wording, and the target itself as a whole token,
    compared case-insensitively. Targets need not be email addresses, so
    ``smile 1`` is confirmed by "Meeting booked with smile 1 at 10:00" while
    ``smile 10`` is not.
    """
    confirmed_lines = [
        line
        for output in outputs
        for line in str(output).splitlines()
        if CONFIRMATION_PATTERN.search(line) and not NEGATION_PATTERN.search(line)
    ]
    return [
        target
        for target in targets
        if any(_target_pattern(target).search(line) for line in confirmed_lines)
    ]


def _target_pattern(target: str) -> Pattern[str]:
    return re.compile(r"(?<![\w.@+-])" + re.escape(target.strip()) + r"(?![\w@-])", re.IGNORECASE)


class CompletionEnforcer:
    """Intercepts action tools when the latest request implies several actions.

    Use an instance as registry middleware: ``registry.register_instance(tool,
    middleware=[enforcer])``. Tools whose names do not match ``action_tools``
    pass through untouched.
    """

    def __init__(
        self,
        sessions: SessionStore,
        detector: MultiActionDetector,
        action_tools: Sequence[str],
        *,
        executor_tool: str = EXECUTOR_TOOL,
    ) -> None:
        self.sessions = sessions
        self.detector = detector
        self.action_tools = [name.lower() for name in action_tools]
        self.executor_tool = executor_tool

    def guards(self, tool_name: str) -> bool:
        lowered = tool_name.lower()
        return lowered != self.executor_tool and any(fragment in lowered for fragment in self.action_tools)

    def __call__(self, tool: Tool, handler: ToolHandler) -> ToolHandler:
        if not self.guards(tool.name):
            return handler

        async def enforced(params: Dict[str, Any], context: ToolContext) -> Any:
            session = self.sessions.get_or_create(context.session_id)
            verdict = self.review(tool.name, session)
            if verdict is not None:
                return verdict
            result = await handler(params, context)
            session.record_result(tool.name, params, result)
            return result

        enforced.__wrapped__ = handler  # type: ignore[attr-defined]
        return enforced

    def review(self, tool_name: str, session: SessionContext) -> Optional[str]:
        """Return a directive replacing the call, or None to let it run."""
        request = session.last_request
        detection = self.detector.detect(request)
        if not detection:
            return None
        done = satisfied_targets(session.result_texts(), detection.targets)
        outstanding = [target for target in detection.targets if target not in done]
        log = logger.bind(session_id=session.session_id, tool=tool_name)
        if detection.targets and not outstanding:
            log.info("multi_action_already_satisfied", targets=detection.targets)
            return (
                f"All recipients/actions in this request were already handled: {', '.join(done)}. "
                f"Do NOT call {tool_name} again for them."
            )
        log.warning(
            "multi_action_redirect",
            reason=detection.reason,
            targets=detection.targets,
            outstanding=outstanding,
        )
        session.tracker.log_thought(
            "Multiple actions detected. Redirecting to multi-step handler.",
            {"tool": tool_name, "outstanding": outstanding, "satisfied": done},
        )
        return self.directive(tool_name, request, detection, outstanding, done)

    def directive(
        self,
        tool_name: str,
        request: str,
        detection: Detection,
        outstanding: Sequence[str],
        done: Sequence[str],
    ) -> str:
        example_step = {"step_number": 1, "description": "...", "tool_to_use": tool_name, "parameters": {}}
        skeleton = json.dumps({"user_request": request, "steps": [example_step]}, indent=2)
        lines = [
            "STOP! This request has multiple recipients/actions.",
            "",
            f"You MUST use {self.executor_tool} with one step for EACH outstanding recipient/action:",
            skeleton,
        ]
        if outstanding:
            lines.append("")
            lines.append("Outstanding targets:")
            lines.extend(f"- {target}" for target in outstanding)
        if done:
            lines.append("")
            lines.append("Already completed (do not repeat):")
            lines.extend(f"- {target}" for target in done)
        lines.append("")
        lines.append(f"DO NOT call {tool_name} directly. Use {self.executor_tool} instead.")
        return "\n".join(lines)

    def check_completion(self, session: SessionContext) -> Optional[str]:
        """Directive listing pending plan tasks, or None when the agent may finish."""
        plan = session.plan
        if not plan.is_active or plan.is_complete:
            return None
        pending = plan.pending()
        logger.warning("completion_blocked", session_id=session.session_id, pending=[task.id for task in pending])
        session.tracker.log_thought(f"{len(pending)} tasks still pending", {"pending": [task.id for task in pending]})
        return f"⚠️ {len(pending)} tasks still pending!\n\n{plan.render_remaining()}"
