import pytest

from taskpilot.errors import PlanValidationError, UnknownTask
from taskpilot.tasks.base import NO_ACTIVE_PLAN, Task, TaskPlan

TASKS = [
    {"id": "task_1", "description": "Email alice", "tool_needed": "send_email"},
    {"id": "task_2", "description": "Email bob", "tool_needed": "send_email"},
    {"id": "task_3", "description": "Book review", "toolNeeded": "book_meeting", "dependsOn": "task_2"},
]


def test_create_plan_lists_tasks_in_order():
    plan = TaskPlan()
    summary = plan.create_plan(TASKS)

    assert "Task Plan Created" in summary
    assert "1. Email alice [send_email]" in summary
    assert "3. Book review [book_meeting]" in summary
    assert plan.tasks[2] == Task("task_3", "Book review", "book_meeting", depends_on="task_2")
    assert plan.is_active and not plan.is_complete


def test_create_plan_replaces_previous_plan_and_resets_state():
    plan = TaskPlan()
    plan.create_plan(TASKS)
    plan.mark_complete("task_1")
    plan.mark_failed("task_2")

    plan.create_plan([{"id": "only", "description": "Single", "tool_needed": "echo"}])

    assert [task.id for task in plan.tasks] == ["only"]
    assert plan.completed == set()
    assert plan.failed == set()


@pytest.mark.parametrize(
    "tasks",
    [
        [],
        [{"id": "a", "description": "missing tool"}],
        [{"id": "a", "description": "x", "tool_needed": "t"}, {"id": "a", "description": "y", "tool_needed": "t"}],
        [{"id": "a", "description": "x", "tool_needed": "t", "depends_on": "ghost"}],
        ["not a mapping"],
    ],
)
def test_create_plan_rejects_malformed_entries(tasks):
    plan = TaskPlan()
    with pytest.raises(PlanValidationError):
        plan.create_plan(tasks)
    assert not plan.is_active


def test_mark_complete_without_plan_signals_no_active_plan():
    plan = TaskPlan()
    assert plan.mark_complete("task_1") == NO_ACTIVE_PLAN
    assert plan.mark_failed("task_1") == NO_ACTIVE_PLAN
    assert plan.render_remaining() == NO_ACTIVE_PLAN


def test_mark_complete_reports_next_task():
    plan = TaskPlan()
    plan.create_plan(TASKS)

    message = plan.mark_complete("task_1", "sent")

    assert message.startswith('✅ Task "task_1" completed. sent')
    assert "**Next Task:** Email bob" in message
    assert "**Tool Required:** send_email" in message
    assert "1 more tasks remaining." in message


def test_mark_complete_is_idempotent_and_finishes_with_summary():
    plan = TaskPlan()
    plan.create_plan(TASKS)
    plan.mark_complete("task_1")
    plan.mark_complete("task_1")
    plan.mark_failed("task_2", "bounced")

    final = plan.mark_complete("task_3")

    assert final.startswith("🎉 **All Tasks Completed!**")
    assert "✅ Email alice" in final
    assert "❌ Email bob" in final
    assert plan.remaining_tasks() == "complete"
    assert plan.is_complete


def test_retrying_a_failed_task_moves_it_to_completed():
    plan = TaskPlan()
    plan.create_plan(TASKS)
    plan.mark_failed("task_1")
    plan.mark_complete("task_1")

    assert plan.completed == {"task_1"}
    assert plan.failed == set()


def test_unknown_task_id_is_rejected():
    plan = TaskPlan()
    plan.create_plan(TASKS)

    with pytest.raises(UnknownTask) as excinfo:
        plan.mark_complete("task_9")

    assert isinstance(excinfo.value, KeyError)
    assert str(excinfo.value) == "Task 'task_9' is not part of the active plan"
    assert plan.completed == set()


def test_remaining_tasks_is_a_pure_query():
    plan = TaskPlan()
    plan.create_plan(TASKS)
    plan.mark_complete("task_2")

    first = plan.remaining_tasks()
    second = plan.remaining_tasks()

    assert [task.id for task in first] == ["task_1", "task_3"]
    assert first == second
    assert plan.next_task().id == "task_1"
    assert "- Book review [book_meeting]" in plan.render_remaining()
