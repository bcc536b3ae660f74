import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from taskpilot.errors import (
    InvalidCronExpression,
    InvalidScheduleOptions,
    InvalidTimezone,
    ScheduleNotFound,
    TaskpilotError,
    WorkflowNotFound,
)
from taskpilot.scheduler.service import (
    ScheduleState,
    WorkflowScheduler,
    next_fire_time,
    normalize_cron,
    resolve_timezone,
)
from taskpilot.scheduler.workflows import JsonWorkflowStore, WorkflowResult


class RecordingExecutor:
    def __init__(self, outcomes=None, delay=0.0):
        self.calls = []
        self.outcomes = list(outcomes or [])
        self.delay = delay

    async def execute(self, workflow, context, *, cancel=None):
        self.calls.append(dict(context))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, Exception):
            raise outcome
        return WorkflowResult(success=True, output=outcome)


class GatedExecutor:
    def __init__(self):
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def execute(self, workflow, context, *, cancel=None):
        self.started.set()
        await self.gate.wait()
        return WorkflowResult(success=True, output="released")


@pytest.fixture
def store(workflow_dir):
    return JsonWorkflowStore([workflow_dir])


async def finish(scheduler, schedule_id):
    entry = scheduler.get_entry(schedule_id)
    await asyncio.wait_for(entry.task, timeout=5)
    return entry


def test_normalize_cron():
    assert normalize_cron("*/5 * * * *") == "*/5 * * * *"
    assert normalize_cron("30 */5 * * * *") == "*/5 * * * * 30"


@pytest.mark.parametrize("expression", ["not-a-cron", "", "61 * * * *", "* * * *", "1 2 3 4 5 6 7"])
def test_normalize_cron_rejects_invalid_expressions(expression):
    with pytest.raises(InvalidCronExpression):
        normalize_cron(expression)


def test_resolve_timezone():
    assert str(resolve_timezone("Europe/Berlin")) == "Europe/Berlin"
    with pytest.raises(InvalidTimezone) as excinfo:
        resolve_timezone("Mars/Olympus_Mons")
    assert isinstance(excinfo.value, InvalidCronExpression)


def test_next_fire_time_respects_timezone():
    now = datetime(2025, 1, 6, 7, 30, tzinfo=timezone.utc)

    fire_at = next_fire_time("0 9 * * *", resolve_timezone("Europe/Berlin"), now)

    assert fire_at.astimezone(timezone.utc) == datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_schedule_stops_after_max_executions(store, fast_sleep):
    executor = RecordingExecutor()
    scheduler = WorkflowScheduler(store, executor, sleep=fast_sleep)

    schedule_id = await scheduler.schedule_workflow("team-update", max_executions=3, context={"topic": "Launch"})
    entry = await finish(scheduler, schedule_id)

    assert entry.execution_count == 3
    assert entry.state is ScheduleState.STOPPED
    assert scheduler.get_status()["active_schedules"] == 0
    assert [call["execution_number"] for call in executor.calls] == [1, 2, 3]
    assert all(call["scheduled_execution"] is True and call["topic"] == "Launch" for call in executor.calls)
    assert len(scheduler.get_history(schedule_id)) == 3


@pytest.mark.asyncio
async def test_invalid_cron_registers_nothing(store):
    scheduler = WorkflowScheduler(store, RecordingExecutor())

    with pytest.raises(InvalidCronExpression):
        await scheduler.schedule_workflow("team-update", cron_expression="not-a-cron")
    with pytest.raises(InvalidTimezone):
        await scheduler.schedule_workflow("team-update", timezone="Nowhere/Special")
    with pytest.raises(InvalidScheduleOptions) as excinfo:
        await scheduler.schedule_workflow("team-update", max_executions=0)
    assert isinstance(excinfo.value, TaskpilotError)

    assert scheduler.get_status() == {"running": False, "active_schedules": 0, "schedules": []}


@pytest.mark.asyncio
async def test_unknown_workflow_is_rejected(store):
    scheduler = WorkflowScheduler(store, RecordingExecutor())

    with pytest.raises(WorkflowNotFound):
        await scheduler.schedule_workflow("ghost")


@pytest.mark.asyncio
async def test_failed_firing_does_not_stop_future_firings(store, fast_sleep):
    executor = RecordingExecutor(outcomes=[RuntimeError("smtp down"), "ok", "ok"])
    scheduler = WorkflowScheduler(store, executor, sleep=fast_sleep)

    schedule_id = await scheduler.schedule_workflow("team-update", max_executions=3)
    entry = await finish(scheduler, schedule_id)

    history = scheduler.get_history(schedule_id)
    assert entry.execution_count == 3
    assert [record.execution_number for record in history] == [3, 2, 1]
    assert [record.success for record in history] == [True, True, False]
    assert history[-1].error == "smtp down"
    assert history[0].output == "ok"


@pytest.mark.asyncio
async def test_firing_timeout_is_recorded(store, fast_sleep):
    executor = RecordingExecutor(delay=1.0)
    scheduler = WorkflowScheduler(store, executor, sleep=fast_sleep, firing_timeout=0.01)

    schedule_id = await scheduler.schedule_workflow("team-update", max_executions=2)
    entry = await finish(scheduler, schedule_id)

    assert entry.execution_count == 2
    assert all(record.status == "failed" for record in entry.history)
    assert entry.history[0].error == "Timed out after 0.01s"


@pytest.mark.asyncio
async def test_stop_lets_in_flight_firing_complete(store, fast_sleep):
    executor = GatedExecutor()
    scheduler = WorkflowScheduler(store, executor, sleep=fast_sleep)
    schedule_id = await scheduler.schedule_workflow("team-update")
    await asyncio.wait_for(executor.started.wait(), timeout=5)
    entry = scheduler.get_entry(schedule_id)
    assert entry.state is ScheduleState.FIRING

    assert scheduler.stop_schedule(schedule_id) is True
    executor.gate.set()
    await asyncio.wait_for(entry.task, timeout=5)

    assert entry.state is ScheduleState.STOPPED
    assert entry.execution_count == 1
    assert entry.history[0].success
    assert entry.history[0].output == "released"


@pytest.mark.asyncio
async def test_stop_unknown_schedule(store):
    scheduler = WorkflowScheduler(store, RecordingExecutor())

    assert scheduler.stop_schedule("nope") is False
    with pytest.raises(ScheduleNotFound):
        scheduler.stop_schedule("nope", strict=True)
    with pytest.raises(ScheduleNotFound):
        scheduler.get_history("nope")


@pytest.mark.asyncio
async def test_schedule_ids_are_unique_within_a_millisecond(store):
    frozen = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
    scheduler = WorkflowScheduler(store, RecordingExecutor(), clock=lambda: frozen)

    first = await scheduler.schedule_workflow("team-update")
    second = await scheduler.schedule_workflow("team-update")

    stamp = int(frozen.timestamp() * 1000)
    assert first == f"team-update-{stamp}"
    assert second == f"team-update-{stamp}-1"
    status = scheduler.get_status()
    assert status["running"] is True
    assert status["active_schedules"] == 2
    assert status["schedules"][0]["workflow_name"] == "Team update"
    await scheduler.shutdown()
    assert scheduler.get_status()["active_schedules"] == 0


@pytest.mark.asyncio
async def test_shutdown_waits_for_timer_tasks(store):
    scheduler = WorkflowScheduler(store, RecordingExecutor())
    schedule_id = await scheduler.schedule_workflow("team-update", cron_expression="0 0 1 1 *")
    entry = scheduler.get_entry(schedule_id)
    await asyncio.sleep(0)

    assert entry.next_run_at is not None
    await scheduler.shutdown(timeout=5)

    assert entry.task.done()
    assert entry.execution_count == 0
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_each_cron_tick_fires_once_when_the_wall_clock_lags(store):
    now = [datetime(2025, 1, 6, 9, 0, 30, tzinfo=timezone.utc)]

    async def lagging_sleep(delay):
        # Wake with the wall clock still 10ms short of the tick.
        now[0] += timedelta(seconds=delay) - timedelta(milliseconds=10)
        await asyncio.sleep(0)

    executor = RecordingExecutor()
    scheduler = WorkflowScheduler(store, executor, sleep=lagging_sleep, clock=lambda: now[0])

    schedule_id = await scheduler.schedule_workflow("team-update", cron_expression="* * * * *", max_executions=2)
    await finish(scheduler, schedule_id)

    assert [call["scheduled_at"] for call in executor.calls] == [
        "2025-01-06T09:01:00+00:00",
        "2025-01-06T09:02:00+00:00",
    ]
