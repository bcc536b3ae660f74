"""High-level wiring of tools, sessions, the completion enforcer and the scheduler."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from ..config import ProjectConfig
from ..observability.logging import get_logger
from ..observability.sinks import EventSink
from ..scheduler.service import Sleep, WorkflowScheduler
from ..scheduler.workflows import JsonWorkflowStore, StepWorkflowExecutor, WorkflowResult
from ..tasks.runner import MultiStepExecutor
from ..tools.base import ToolContext
from ..tools.builtin import register_builtin_tools, register_orchestration_tools
from ..tools.registry import ToolRegistry
from .detector import MultiActionDetector, PatternMultiActionDetector
from .enforcer import CompletionEnforcer
from .session import SessionContext, SessionStore

logger = get_logger(__name__)


class Orchestrator:
    """Builds the runtime from config and routes tool calls through it."""

    def __init__(
        self,
        project_config: Optional[ProjectConfig] = None,
        *,
        detector: Optional[MultiActionDetector] = None,
        sleep: Optional[Sleep] = None,
        discover_entrypoints: bool = True,
    ) -> None:
        self.config = project_config or ProjectConfig()
        self.sessions = SessionStore()

        enforcer_spec = self.config.enforcer
        self.enforcer: Optional[CompletionEnforcer] = None
        if enforcer_spec.enabled:
            self.enforcer = CompletionEnforcer(
                self.sessions,
                detector
                or PatternMultiActionDetector(
                    enforcer_spec.repeated_patterns, enforcer_spec.coordinating_words or None
                ),
                enforcer_spec.action_tools,
            )

        executor_spec = self.config.executor
        self.tool_registry = ToolRegistry(
            [self.enforcer] if self.enforcer else [],
            fuzzy_cutoff=executor_spec.fuzzy_cutoff,
            fuzzy_margin=executor_spec.fuzzy_margin,
        )
        self.executor = MultiStepExecutor(self.tool_registry, step_timeout=executor_spec.step_timeout)
        self.workflow_store = JsonWorkflowStore(self.config.scheduler.workflow_dirs)

        register_builtin_tools(self.tool_registry)
        register_orchestration_tools(self.tool_registry, self.sessions, self.executor, self.workflow_store)
        if discover_entrypoints:
            self.tool_registry.discover_entrypoints()
        self.tool_registry.configure_from_specs(self.config.tool_specs)

        self.workflow_executor = StepWorkflowExecutor(self.executor)
        self.scheduler = WorkflowScheduler(
            self.workflow_store,
            self.workflow_executor,
            firing_timeout=self.config.scheduler.firing_timeout,
            history_limit=self.config.scheduler.history_limit,
            sleep=sleep,
        )

    def session(self, session_id: str, sink: Optional[EventSink] = None) -> SessionContext:
        return self.sessions.get_or_create(session_id, sink)

    def begin_request(self, session_id: str, text: str, sink: Optional[EventSink] = None) -> SessionContext:
        """Record a new user request; the enforcer judges later tool calls against it."""
        session = self.session(session_id, sink)
        session.begin_request(text)
        session.tracker.log_thought("Received request", {"request": text})
        logger.info("request_received", session_id=session_id, request=text)
        return session

    async def call_tool(self, session_id: str, name: str, params: Dict[str, Any]) -> Any:
        """Dispatch one model tool call through the registry's middleware."""
        session = self.session(session_id)
        context = ToolContext(session_id=session_id, invocation_id=session.tracker.invocation_id)
        started = time.perf_counter()
        try:
            result = await self.tool_registry.dispatch(name, params, context)
        except Exception as exc:
            session.tracker.track_error(exc, context={"tool": name})
            logger.warning("tool_call_failed", session_id=session_id, tool=name, error=str(exc))
            raise
        duration = int((time.perf_counter() - started) * 1000)
        session.tracker.track_tool_use(name, params, output=result, duration=duration)
        return result

    def finish(self, session_id: str) -> Optional[str]:
        """Return a directive when the session's plan still has pending tasks."""
        if self.enforcer is None:
            return None
        return self.enforcer.check_completion(self.session(session_id))

    def end_session(self, session_id: str) -> bool:
        """Drop a finished session together with its plan and results."""
        ended = self.sessions.discard(session_id)
        if ended:
            logger.info("session_ended", session_id=session_id)
        return ended

    def tool_definitions(self) -> List[Dict[str, Any]]:
        return self.tool_registry.describe()

    async def run_workflow(self, workflow_id: str, context: Optional[Dict[str, Any]] = None) -> WorkflowResult:
        """Run a stored workflow once, outside any schedule."""
        workflow = self.workflow_store.load(workflow_id)
        logger.info("workflow_run_started", workflow_id=workflow.id)
        result = await self.workflow_executor.execute(workflow, context or {})
        logger.info("workflow_run_finished", workflow_id=workflow.id, success=result.success, error=result.error)
        return result

    async def schedule_configured(self) -> List[str]:
        """Register every schedule declared in the configuration file."""
        schedule_ids = []
        for spec in self.config.schedules:
            schedule_ids.append(
                await self.scheduler.schedule_workflow(
                    spec.workflow_id,
                    cron_expression=spec.cron,
                    timezone=spec.timezone,
                    max_executions=spec.max_executions,
                    context=spec.context,
                    name=spec.name,
                )
            )
        return schedule_ids
