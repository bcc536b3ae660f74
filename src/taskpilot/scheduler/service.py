"""Cron-driven scheduler that replays stored workflows with bounded repetition."""

from __future__ import annotations

import asyncio
import enum
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone, tzinfo
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from ..errors import InvalidCronExpression, InvalidScheduleOptions, InvalidTimezone, ScheduleNotFound
from ..observability.logging import bind_context, get_logger
from ..tasks.runner import CancelToken
from .workflows import Workflow, WorkflowExecutor, WorkflowResult, WorkflowStore

logger = get_logger(__name__)

DEFAULT_CRON = "* * * * *"
RETAINED_STOPPED = 100

Sleep = Callable[[float], Awaitable[Any]]
Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(dt_timezone.utc)


def normalize_cron(expression: str) -> str:
    """Validate a 5 or 6 field expression and return it in croniter's field order.

    Six-field expressions carry seconds first; croniter expects them last.
    """
    fields = (expression or "").split()
    if len(fields) not in (5, 6):
        raise InvalidCronExpression(expression, f"expected 5 or 6 fields, got {len(fields)}")
    if len(fields) == 6:
        fields = fields[1:] + fields[:1]
    normalized = " ".join(fields)
    if not croniter.is_valid(normalized):
        raise InvalidCronExpression(expression)
    return normalized


def resolve_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise InvalidTimezone(name) from exc


def next_fire_time(expression: str, tz: tzinfo, now: datetime) -> datetime:
    """Next firing strictly after ``now`` for a normalized expression."""
    return croniter(expression, now.astimezone(tz)).get_next(datetime)


class ScheduleState(str, enum.Enum):
    SCHEDULED = "scheduled"
    FIRING = "firing"
    STOPPED = "stopped"


@dataclass
class ExecutionRecord:
    """One firing of a schedule."""

    execution_number: int
    scheduled_at: datetime
    started_at: datetime
    finished_at: datetime
    success: bool
    error: Optional[str] = None
    output: Optional[str] = None

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def status(self) -> str:
        return "success" if self.success else "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_number": self.execution_number,
            "status": self.status,
            "scheduled_at": self.scheduled_at.isoformat(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration": round(self.duration, 3),
            "error": self.error,
            "output": self.output,
        }


@dataclass
class ScheduleEntry:
    schedule_id: str
    workflow: Workflow
    cron_expression: str
    timezone: str
    name: str
    max_executions: Optional[int]
    context: Dict[str, Any]
    started_at: datetime
    history_limit: int
    normalized_cron: str = ""
    tz: tzinfo = dt_timezone.utc
    execution_count: int = 0
    state: ScheduleState = ScheduleState.SCHEDULED
    next_run_at: Optional[datetime] = None
    history: Deque[ExecutionRecord] = field(init=False)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional["asyncio.Task[None]"] = None

    def __post_init__(self) -> None:
        self.history = deque(maxlen=self.history_limit)

    @property
    def workflow_id(self) -> str:
        return self.workflow.id

    @property
    def workflow_name(self) -> str:
        return self.workflow.name

    @property
    def stopped(self) -> bool:
        return self.state is ScheduleState.STOPPED

    def to_dict(self) -> Dict[str, Any]:
        last = self.history[-1].to_dict() if self.history else None
        return {
            "id": self.schedule_id,
            "name": self.name,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "started_at": self.started_at.isoformat(),
            "execution_count": self.execution_count,
            "max_executions": self.max_executions,
            "state": self.state.value,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_execution": last,
        }


class WorkflowScheduler:
    """Runs each schedule as its own asyncio task.

    A firing never raises out of its timer loop: failures and timeouts are
    logged and kept in the entry's history. Stopping a schedule signals its
    loop instead of cancelling it, so a firing already in progress completes.
    """

    def __init__(
        self,
        store: WorkflowStore,
        executor: WorkflowExecutor,
        *,
        firing_timeout: Optional[float] = 300.0,
        history_limit: int = 20,
        sleep: Optional[Sleep] = None,
        clock: Clock = _utc_now,
    ) -> None:
        self.store = store
        self.executor = executor
        self.firing_timeout = firing_timeout
        self.history_limit = history_limit
        self.running = False
        self._sleep: Sleep = sleep or asyncio.sleep
        self._clock = clock
        self._entries: Dict[str, ScheduleEntry] = {}
        self._stopped: "OrderedDict[str, ScheduleEntry]" = OrderedDict()
        self._tasks: Set["asyncio.Task[None]"] = set()

    def start(self) -> None:
        if self.running:
            logger.info("scheduler_already_running")
            return
        self.running = True
        logger.info("scheduler_started")

    async def schedule_workflow(
        self,
        workflow_id: str,
        cron_expression: str = DEFAULT_CRON,
        timezone: str = "UTC",
        max_executions: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        name: str = "Scheduled Workflow",
    ) -> str:
        """Register a recurring run of ``workflow_id`` and return its schedule id.

        Raises WorkflowNotFound, InvalidCronExpression, InvalidTimezone or
        InvalidScheduleOptions before anything is registered.
        """
        workflow = await asyncio.to_thread(self.store.load, workflow_id)
        normalized = normalize_cron(cron_expression)
        tz = resolve_timezone(timezone)
        if max_executions is not None and max_executions < 1:
            raise InvalidScheduleOptions(f"max_executions must be at least 1 when set, got {max_executions}")

        schedule_id = self._new_schedule_id(workflow_id)
        entry = ScheduleEntry(
            schedule_id=schedule_id,
            workflow=workflow,
            cron_expression=cron_expression,
            timezone=timezone,
            name=name,
            max_executions=max_executions,
            context=dict(context or {}),
            started_at=self._clock(),
            history_limit=self.history_limit,
            normalized_cron=normalized,
            tz=tz,
        )
        self._entries[schedule_id] = entry
        self.start()
        entry.task = asyncio.create_task(self._run(entry), name=f"schedule:{schedule_id}")
        self._tasks.add(entry.task)
        entry.task.add_done_callback(self._tasks.discard)
        logger.info(
            "workflow_scheduled",
            schedule_id=schedule_id,
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            cron=cron_expression,
            timezone=timezone,
            max_executions=max_executions,
        )
        return schedule_id

    def _new_schedule_id(self, workflow_id: str) -> str:
        base = f"{workflow_id}-{int(self._clock().timestamp() * 1000)}"
        candidate, suffix = base, 1
        while candidate in self._entries or candidate in self._stopped:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    async def _run(self, entry: ScheduleEntry) -> None:
        # Each timer task runs in its own context copy.
        bind_context(schedule_id=entry.schedule_id, workflow_id=entry.workflow_id)
        last_fire: Optional[datetime] = None
        while not entry.stopped:
            now = self._clock()
            # The wall clock may still read just before a tick the monotonic sleep already reached.
            base = now if last_fire is None else max(now, last_fire)
            fire_at = next_fire_time(entry.normalized_cron, entry.tz, base)
            entry.next_run_at = fire_at
            delay = max((fire_at - now).total_seconds(), 0.0)
            if not await self._wait(entry, delay):
                break
            last_fire = fire_at
            await self._fire(entry, fire_at)
        entry.next_run_at = None

    async def _wait(self, entry: ScheduleEntry, delay: float) -> bool:
        """Sleep until the next firing; False when the schedule was stopped meanwhile."""
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(entry.stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()
        return not entry.stopped

    async def _fire(self, entry: ScheduleEntry, scheduled_at: datetime) -> None:
        entry.execution_count += 1
        number = entry.execution_count
        entry.state = ScheduleState.FIRING
        log = logger.bind(execution=number)
        log.info("schedule_firing", schedule_name=entry.name)

        context = dict(entry.context)
        context.update(
            scheduled_execution=True,
            execution_number=number,
            scheduled_at=scheduled_at.isoformat(),
        )
        cancel = CancelToken()
        started = self._clock()
        began = time.perf_counter()
        try:
            call = self.executor.execute(entry.workflow, context, cancel=cancel)
            if self.firing_timeout is not None:
                result = await asyncio.wait_for(call, timeout=self.firing_timeout)
            else:
                result = await call
        except asyncio.TimeoutError:
            cancel.cancel("firing timeout")
            result = WorkflowResult(success=False, error=f"Timed out after {self.firing_timeout}s")
        except Exception as exc:
            log.exception("schedule_firing_crashed")
            result = WorkflowResult(success=False, error=str(exc) or exc.__class__.__name__)

        duration = round(time.perf_counter() - began, 2)
        record = ExecutionRecord(
            execution_number=number,
            scheduled_at=scheduled_at,
            started_at=started,
            finished_at=self._clock(),
            success=result.success,
            error=result.error,
            output=result.preview(),
        )
        entry.history.append(record)
        if result.success:
            log.info("schedule_firing_succeeded", duration=duration, output=record.output)
        else:
            log.error("schedule_firing_failed", duration=duration, error=result.error or "Unknown error")

        if entry.stopped:
            return
        if entry.max_executions is not None and entry.execution_count >= entry.max_executions:
            log.info("schedule_max_executions_reached", max_executions=entry.max_executions)
            self.stop_schedule(entry.schedule_id)
            return
        entry.state = ScheduleState.SCHEDULED

    def stop_schedule(self, schedule_id: str, *, strict: bool = False) -> bool:
        entry = self._entries.pop(schedule_id, None)
        if entry is None:
            if strict:
                raise ScheduleNotFound(schedule_id)
            logger.info("schedule_not_found", schedule_id=schedule_id)
            return False
        entry.state = ScheduleState.STOPPED
        entry.stop_event.set()
        self._stopped[schedule_id] = entry
        while len(self._stopped) > RETAINED_STOPPED:
            self._stopped.popitem(last=False)
        logger.info("schedule_stopped", schedule_id=schedule_id, executions=entry.execution_count)
        return True

    def stop_all(self) -> int:
        schedule_ids = list(self._entries)
        for schedule_id in schedule_ids:
            self.stop_schedule(schedule_id)
        self.running = False
        logger.info("scheduler_stopped", stopped=len(schedule_ids))
        return len(schedule_ids)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop every schedule and wait for in-flight firings to finish."""
        self.stop_all()
        pending = list(self._tasks)
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

    def get_entry(self, schedule_id: str) -> ScheduleEntry:
        entry = self._entries.get(schedule_id) or self._stopped.get(schedule_id)
        if entry is None:
            raise ScheduleNotFound(schedule_id)
        return entry

    def get_history(self, schedule_id: str, limit: int = 20) -> List[ExecutionRecord]:
        """Most recent firings first."""
        entry = self.get_entry(schedule_id)
        return list(reversed(entry.history))[:limit]

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "active_schedules": len(self._entries),
            "schedules": [entry.to_dict() for entry in self._entries.values()],
        }
