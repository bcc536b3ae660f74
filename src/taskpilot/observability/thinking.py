"""Per-invocation recorder for the agent's reasoning, tool and model activity."""

from __future__ import annotations

import json
import time
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .logging import get_logger
from .sinks import EventSink

logger = get_logger(__name__)

TOOL_ICONS: Dict[str, str] = {
    "web-search": "🌐",
    "web-scraping": "🔍",
    "document-summarizer": "📄",
    "rag-memory": "🧠",
    "sql-query": "🗄️",
    "create-chart": "📊",
    "stock-market": "📈",
    "create-workflow": "⚡",
    "filesystem": "📁",
    "puppeteer": "🎭",
    "gmail": "📧",
    "email": "📧",
    "calendar": "📅",
    "meeting": "📅",
    "linkedin": "💼",
    "task-plan": "📋",
    "multi-step": "🪜",
}

PROVIDER_ICONS: Dict[str, str] = {
    "openai": "🤖",
    "anthropic": "🎭",
    "google": "🔮",
    "togetherai": "🤝",
    "groq": "⚡",
    "ollama": "🦙",
    "azure": "☁️",
}

EVENT_ICONS: Dict[str, str] = {
    "thinking": "🤔",
    "thought_step": "💭",
    "workflow": "⚡",
    "model_use": "🧠",
    "error": "⚠️",
    "retry": "🔄",
}


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ThinkingEvent:
    """One recorded occurrence; ``type`` is the variant tag."""

    id: str
    type: str
    timestamp: int
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "type": self.type, "timestamp": self.timestamp}
        data.update(self.payload)
        return data


def format_duration(ms: float) -> str:
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    return f"{int(ms // 60000)}m {int((ms % 60000) // 1000)}s"


def format_tokens(count: int) -> str:
    if count < 1000:
        return str(count)
    return f"{count / 1000:.1f}k"


def tool_icon(tool_name: str) -> str:
    key = tool_name.lower().replace("_", "-")
    if key in TOOL_ICONS:
        return TOOL_ICONS[key]
    for fragment, icon in TOOL_ICONS.items():
        if fragment in key:
            return icon
    return "🔧"


def provider_icon(provider: str) -> str:
    return PROVIDER_ICONS.get(provider.lower(), "🤖")


class ThinkingTracker:
    """Captures a timestamped event stream and summary metrics for one invocation.

    Events are pushed to ``sink`` as they happen when one is attached and open;
    without a sink the tracker still records everything for ``get_summary``.
    """

    def __init__(
        self,
        invocation_id: str,
        workspace_id: Optional[str] = None,
        sink: Optional[EventSink] = None,
        *,
        clock: Callable[[], int] = _wall_clock_ms,
    ) -> None:
        self.invocation_id = invocation_id
        self.workspace_id = workspace_id
        self.sink = sink
        self._clock = clock
        self._last_timestamp = 0
        self.start_time = self._now()
        self.events: List[ThinkingEvent] = []
        self._open_thoughts: Dict[str, ThinkingEvent] = {}
        self.thinking_duration = 0
        self.tools_used: List[Dict[str, Any]] = []
        self.models_used: List[str] = []
        self.tokens_used = 0
        self.confidence: Optional[Dict[str, Any]] = None
        self.workflows_triggered: List[Dict[str, Any]] = []
        self.errors: List[Dict[str, Any]] = []
        self.retries = 0

    def _now(self) -> int:
        # Timestamps never go backwards even if the wall clock does.
        now = max(int(self._clock()), self._last_timestamp)
        self._last_timestamp = now
        return now

    def _record(self, event_type: str, prefix: str, **payload: Any) -> ThinkingEvent:
        event = ThinkingEvent(
            id=f"{prefix}_{uuid.uuid4().hex[:12]}",
            type=event_type,
            timestamp=self._now(),
            payload=payload,
        )
        self.events.append(event)
        return event

    def attach_sink(self, sink: Optional[EventSink]) -> None:
        self.sink = sink

    def start_thinking(self, context: str) -> str:
        event = self._record("thinking", "thought", content=context, status="in_progress")
        self._open_thoughts[event.id] = event
        self.emit("thinking_start", {"id": event.id, "content": context})
        return event.id

    def log_thought(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        event = self._record("thought_step", "step", content=content, metadata=dict(metadata or {}))
        self.emit("thought_step", event.to_dict())

    def end_thinking(self, thought_id: str, result: Any = None) -> Optional[int]:
        event = self._open_thoughts.pop(thought_id, None)
        if event is None:
            logger.debug("thinking_end_ignored", invocation_id=self.invocation_id, thought_id=thought_id)
            return None
        duration = self._now() - event.timestamp
        event.payload.update(status="completed", result=result, duration=duration)
        self.thinking_duration += duration
        self.emit("thinking_end", {"id": thought_id, "duration": duration, "result": result})
        return duration

    def track_tool_use(
        self,
        tool_name: str,
        tool_input: Any,
        output: Any = None,
        duration: Optional[float] = None,
    ) -> str:
        event = self._record(
            "tool_use", "tool", tool=tool_name, input=tool_input, output=output, duration=duration
        )
        self.tools_used.append({"name": tool_name, "timestamp": event.timestamp, "duration": duration})
        self.emit(
            "tool_use",
            {"tool": tool_name, "status": "completed" if output is not None else "started", "duration": duration},
        )
        return event.id

    def track_workflow(self, workflow_id: str, workflow_name: str, status: str = "started") -> None:
        event = self._record(
            "workflow", "workflow", workflow_id=workflow_id, workflow_name=workflow_name, status=status
        )
        if status == "started":
            self.workflows_triggered.append(
                {"id": workflow_id, "name": workflow_name, "start_time": event.timestamp}
            )
        self.emit("workflow_update", {"workflowId": workflow_id, "workflowName": workflow_name, "status": status})

    def track_model_use(self, model: str, provider: str, tokens: int = 0) -> None:
        key = f"{provider}:{model}"
        if key not in self.models_used:
            self.models_used.append(key)
        self.tokens_used += tokens
        self._record("model_use", "model", model=model, provider=provider, tokens=tokens)
        self.emit(
            "model_use",
            {"model": model, "provider": provider, "tokens": tokens, "totalTokens": self.tokens_used},
        )

    def track_error(self, error: BaseException | str, context: Any = None) -> None:
        if isinstance(error, BaseException):
            message = str(error) or error.__class__.__name__
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        else:
            message, stack = str(error), None
        event = self._record("error", "error", error=message, stack=stack, context=context)
        self.errors.append(event.to_dict())
        self.emit("error", {"error": message, "context": context})

    def track_retry(self, action: str, attempt: int) -> None:
        self.retries += 1
        self._record("retry", "retry", action=action, attempt=attempt)
        self.emit("retry", {"action": action, "attempt": attempt, "totalRetries": self.retries})

    def set_confidence(self, score: float, reasoning: Optional[str] = None) -> None:
        self.confidence = {"score": score, "reasoning": reasoning, "timestamp": self._now()}
        self.emit("confidence", {"score": score, "reasoning": reasoning})

    def emit(self, event_type: str, data: Dict[str, Any]) -> None:
        logger.debug("thinking_event", invocation_id=self.invocation_id, event_type=event_type)
        sink = self.sink
        if sink is None or not sink.is_open:
            return
        message = json.dumps(
            {
                "type": "thinking_process",
                "eventType": event_type,
                "data": data,
                "invocationId": self.invocation_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        try:
            sink.send(message)
        except Exception as exc:  # a broken sink must not break the invocation
            logger.warning("event_sink_failed", invocation_id=self.invocation_id, error=str(exc))

    def get_summary(self) -> Dict[str, Any]:
        end_time = self._now()
        return {
            "invocation_id": self.invocation_id,
            "workspace_id": self.workspace_id,
            "start_time": self.start_time,
            "end_time": end_time,
            "total_duration": end_time - self.start_time,
            "metrics": {
                "thinking_duration": self.thinking_duration,
                "tools_used": [dict(item) for item in self.tools_used],
                "models_used": list(self.models_used),
                "tokens_used": self.tokens_used,
                "confidence": self.confidence,
                "workflows_triggered": [dict(item) for item in self.workflows_triggered],
                "errors": list(self.errors),
                "retries": self.retries,
                "event_count": len(self.events),
            },
            "events": [event.to_dict() for event in self.events],
        }

    def get_display_data(self) -> Dict[str, Any]:
        summary = self.get_summary()
        metrics = summary["metrics"]
        models = []
        for entry in metrics["models_used"]:
            provider, _, model = entry.partition(":")
            models.append({"provider": provider, "model": model, "icon": provider_icon(provider)})
        return {
            "duration": format_duration(summary["total_duration"]),
            "thinking_time": format_duration(metrics["thinking_duration"]),
            "tools_used": [
                {
                    "name": tool["name"],
                    "icon": tool_icon(tool["name"]),
                    "duration": format_duration(tool["duration"]) if tool["duration"] else None,
                }
                for tool in metrics["tools_used"]
            ],
            "workflow_count": len(metrics["workflows_triggered"]),
            "workflows": metrics["workflows_triggered"],
            "models_used": models,
            "tokens_used": format_tokens(metrics["tokens_used"]),
            "confidence": metrics["confidence"],
            "error_count": len(metrics["errors"]),
            "retry_count": metrics["retries"],
            "thought_process": [self._display_event(event) for event in summary["events"]],
        }

    @staticmethod
    def _display_event(event: Dict[str, Any]) -> Dict[str, Any]:
        kind = event["type"]
        if kind == "tool_use":
            return {
                "type": "tool",
                "tool": event["tool"],
                "input": event["input"],
                "output": event["output"],
                "duration": event["duration"],
                "timestamp": event["timestamp"],
                "icon": tool_icon(event["tool"]),
            }
        if kind == "workflow":
            return {
                "type": "workflow",
                "name": event["workflow_name"],
                "status": event["status"],
                "timestamp": event["timestamp"],
                "icon": EVENT_ICONS["workflow"],
            }
        if kind == "model_use":
            return {
                "type": "model",
                "model": event["model"],
                "provider": event["provider"],
                "tokens": event["tokens"],
                "timestamp": event["timestamp"],
                "icon": EVENT_ICONS["model_use"],
            }
        display = {key: value for key, value in event.items() if key not in {"id", "stack"}}
        display["type"] = "step" if kind == "thought_step" else kind
        display["icon"] = EVENT_ICONS.get(kind, "•")
        return display
