"""Per-session orchestration state."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..observability.sinks import EventSink
from ..observability.thinking import ThinkingTracker
from ..tasks.base import TaskPlan

if TYPE_CHECKING:  # pragma: no cover
    from ..tasks.runner import ExecutionSummary


@dataclass
class ToolOutcome:
    """A tool call that ran to completion within a session."""

    tool: str
    parameters: Dict[str, Any]
    output: Any
    step_number: Optional[int] = None

    @property
    def text(self) -> str:
        return self.output if isinstance(self.output, str) else str(self.output)


@dataclass
class SessionContext:
    """Everything one conversation needs: its plan, its requests and its telemetry."""

    session_id: str
    tracker: ThinkingTracker
    plan: TaskPlan = field(default_factory=TaskPlan)
    requests: List[str] = field(default_factory=list)
    results: List[ToolOutcome] = field(default_factory=list)
    last_execution: Optional["ExecutionSummary"] = None

    @property
    def last_request(self) -> str:
        return self.requests[-1] if self.requests else ""

    def begin_request(self, text: str) -> None:
        self.requests.append(text)

    def record_result(
        self, tool: str, parameters: Dict[str, Any], output: Any, step_number: Optional[int] = None
    ) -> None:
        self.results.append(ToolOutcome(tool, dict(parameters), output, step_number))

    def result_texts(self) -> List[str]:
        return [outcome.text for outcome in self.results]


TrackerFactory = Callable[[str, Optional[EventSink]], ThinkingTracker]


def _default_tracker(session_id: str, sink: Optional[EventSink]) -> ThinkingTracker:
    return ThinkingTracker(invocation_id=session_id, sink=sink)


class SessionStore:
    """Thread-safe map of session id to SessionContext.

    Tools may run in worker threads, so lookups and creation happen under a lock.
    """

    def __init__(self, tracker_factory: TrackerFactory = _default_tracker) -> None:
        self._sessions: Dict[str, SessionContext] = {}
        self._lock = threading.Lock()
        self._tracker_factory = tracker_factory

    def get_or_create(self, session_id: str, sink: Optional[EventSink] = None) -> SessionContext:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = SessionContext(session_id=session_id, tracker=self._tracker_factory(session_id, sink))
                self._sessions[session_id] = session
            elif sink is not None:
                session.tracker.attach_sink(sink)
            return session

    def get(self, session_id: str) -> Optional[SessionContext]:
        with self._lock:
            return self._sessions.get(session_id)

    def discard(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: Any) -> bool:
        with self._lock:
            return session_id in self._sessions
