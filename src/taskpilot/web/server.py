"""FastAPI surface for scheduling workflows and driving sessions, with live telemetry."""

from __future__ import annotations

import asyncio
import json
import os
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from ..agents.orchestrator import Orchestrator
from ..config import ProjectConfig
from ..errors import (
    InvalidCronExpression,
    InvalidScheduleOptions,
    ScheduleNotFound,
    ToolParameterError,
    UnknownTool,
    WorkflowNotFound,
)
from ..observability.logging import get_logger
from ..observability.sinks import BroadcastSink

logger = get_logger(__name__)

CONFIG_ENV = "TASKPILOT_CONFIG"
RETAINED_FINISHED = 100


class ScheduleRequest(BaseModel):
    workflow_id: str
    cron_expression: str = "* * * * *"
    timezone: str = "UTC"
    max_executions: Optional[int] = Field(default=None, ge=1)
    context: Dict[str, Any] = Field(default_factory=dict)
    name: str = "Scheduled Workflow"


class UserRequest(BaseModel):
    text: str


class ToolCall(BaseModel):
    params: Dict[str, Any] = Field(default_factory=dict)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """Build the app around one orchestrator; its scheduler lives as long as the app."""

    runtime = orchestrator or Orchestrator()
    sinks: Dict[str, BroadcastSink] = {}
    finished: "OrderedDict[str, BroadcastSink]" = OrderedDict()

    def sink_for(session_id: str) -> BroadcastSink:
        sink = sinks.get(session_id)
        if sink is None or not sink.is_open:
            sink = BroadcastSink()
            sinks[session_id] = sink
        return sink

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        runtime.scheduler.start()
        await runtime.schedule_configured()
        try:
            yield
        finally:
            await runtime.scheduler.shutdown(timeout=runtime.config.scheduler.firing_timeout)

    app = FastAPI(title="Taskpilot", lifespan=lifespan)
    app.state.orchestrator = runtime
    app.state.sinks = sinks
    app.state.finished_sinks = finished

    @app.post("/api/schedules", status_code=201)
    async def create_schedule(request: ScheduleRequest) -> Dict[str, Any]:
        try:
            schedule_id = await runtime.scheduler.schedule_workflow(
                request.workflow_id,
                cron_expression=request.cron_expression,
                timezone=request.timezone,
                max_executions=request.max_executions,
                context=request.context,
                name=request.name,
            )
        except WorkflowNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except (InvalidCronExpression, InvalidScheduleOptions) as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return runtime.scheduler.get_entry(schedule_id).to_dict()

    @app.get("/api/schedules")
    async def list_schedules() -> Dict[str, Any]:
        return runtime.scheduler.get_status()

    @app.delete("/api/schedules/{schedule_id}")
    async def delete_schedule(schedule_id: str) -> Dict[str, Any]:
        try:
            runtime.scheduler.stop_schedule(schedule_id, strict=True)
        except ScheduleNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        entry = runtime.scheduler.get_entry(schedule_id)
        return {"id": schedule_id, "stopped": True, "execution_count": entry.execution_count}

    @app.get("/api/schedules/{schedule_id}/history")
    async def schedule_history(schedule_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        try:
            records = runtime.scheduler.get_history(schedule_id, limit=limit)
        except ScheduleNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return [record.to_dict() for record in records]

    @app.post("/api/sessions/{session_id}/requests")
    async def begin_request(session_id: str, request: UserRequest) -> Dict[str, Any]:
        session = runtime.begin_request(session_id, request.text, sink_for(session_id))
        detection = runtime.enforcer.detector.detect(request.text) if runtime.enforcer else None
        return {
            "session_id": session_id,
            "invocation_id": session.tracker.invocation_id,
            "multi_action": bool(detection),
            "targets": detection.targets if detection else [],
            "tools": [tool["name"] for tool in runtime.tool_definitions()],
        }

    @app.post("/api/sessions/{session_id}/tools/{tool_name}")
    async def call_tool(session_id: str, tool_name: str, call: ToolCall) -> Dict[str, Any]:
        runtime.session(session_id, sink_for(session_id))
        try:
            result = await runtime.call_tool(session_id, tool_name, call.params)
        except UnknownTool as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ToolParameterError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"tool": tool_name, "result": _jsonable(result)}

    @app.post("/api/sessions/{session_id}/complete")
    async def complete_session(session_id: str) -> Dict[str, Any]:
        if session_id not in runtime.sessions:
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
        directive = runtime.finish(session_id)
        summary = runtime.session(session_id).tracker.get_summary()
        if directive is None:
            runtime.end_session(session_id)
            sink = sinks.pop(session_id, None)
            if sink is not None:
                sink.close()
                finished[session_id] = sink
                while len(finished) > RETAINED_FINISHED:
                    finished.popitem(last=False)
        return {"complete": directive is None, "directive": directive, "metrics": summary["metrics"]}

    @app.websocket("/ws/{invocation_id}")
    async def websocket_endpoint(websocket: WebSocket, invocation_id: str) -> None:
        sink = sinks.get(invocation_id) or finished.get(invocation_id)
        if sink is None:
            await websocket.close(code=1008)
            return
        queue: asyncio.Queue = sink.subscribe()
        await websocket.accept()
        try:
            while True:
                event = await queue.get()
                await websocket.send_text(json.dumps(event))
                if event.get("type") == "complete":
                    break
        except WebSocketDisconnect:
            logger.info("websocket_disconnected", invocation_id=invocation_id)
            return
        finally:
            sink.unsubscribe(queue)
        # A finished session's events are replayed to one reader, then dropped.
        finished.pop(invocation_id, None)
        await websocket.close()

    return app


def _app_from_env() -> FastAPI:
    path = os.environ.get(CONFIG_ENV)
    config = ProjectConfig.from_file(path) if path else None
    return create_app(Orchestrator(config))


app = _app_from_env()
