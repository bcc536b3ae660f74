import pytest
from structlog.testing import capture_logs

from taskpilot.agents.detector import PatternMultiActionDetector, StaticMultiActionDetector
from taskpilot.agents.enforcer import CompletionEnforcer, satisfied_targets
from taskpilot.tasks.runner import MultiStepExecutor
from taskpilot.tools.base import FunctionTool, ToolContext
from taskpilot.tools.builtin import BookMeetingTool, SendEmailTool
from taskpilot.tools.registry import ToolRegistry

TEAM_REQUEST = "Send updates to alice@test.com, bob@test.com, and charlie@test.com"


@pytest.fixture
def enforcer(sessions):
    return CompletionEnforcer(sessions, PatternMultiActionDetector(), ["send_email", "book_meeting"])


@pytest.fixture
def guarded_registry(enforcer):
    registry = ToolRegistry([enforcer])
    registry.register_instance(SendEmailTool(name="send_email"))
    registry.register_instance(FunctionTool("echo", lambda text="": text, "Echo"))
    return registry


def outbox(registry):
    return [item["to"] for item in registry.get("send_email").outbox]


@pytest.mark.asyncio
async def test_single_action_request_runs_unmodified(sessions, guarded_registry):
    sessions.get_or_create("s1").begin_request("email alice@test.com the report")

    result = await guarded_registry.dispatch("send_email", {"to": "alice@test.com"}, ToolContext("s1"))

    assert result == "Email sent successfully to alice@test.com"
    assert outbox(guarded_registry) == ["alice@test.com"]
    assert sessions.get("s1").result_texts() == [result]


@pytest.mark.asyncio
async def test_multi_action_request_is_redirected(sessions, guarded_registry):
    sessions.get_or_create("s1").begin_request(TEAM_REQUEST)

    with capture_logs() as logs:
        directive = await guarded_registry.dispatch("send_email", {"to": "alice@test.com"}, ToolContext("s1"))

    assert directive.startswith("STOP! This request has multiple recipients/actions.")
    assert "execute_multi_step_task" in directive
    for recipient in ("alice@test.com", "bob@test.com", "charlie@test.com"):
        assert f"- {recipient}" in directive
    assert "DO NOT call send_email directly." in directive
    assert outbox(guarded_registry) == []
    redirect = [entry for entry in logs if entry["event"] == "multi_action_redirect"]
    assert redirect and redirect[0]["log_level"] == "warning"


@pytest.mark.asyncio
async def test_directive_lists_only_outstanding_targets(sessions, guarded_registry):
    session = sessions.get_or_create("s1")
    session.begin_request(TEAM_REQUEST)
    await MultiStepExecutor(guarded_registry).execute(
        TEAM_REQUEST,
        [{"step_number": 1, "description": "Email alice", "tool_to_use": "send_email", "parameters": {"to": "alice@test.com"}}],
        session=session,
    )

    directive = await guarded_registry.dispatch("send_email", {"to": "bob@test.com"}, ToolContext("s1"))

    outstanding, _, completed = directive.partition("Already completed (do not repeat):")
    assert "- bob@test.com" in outstanding
    assert "- charlie@test.com" in outstanding
    assert "alice@test.com" not in outstanding.split("Outstanding targets:")[1]
    assert "- alice@test.com" in completed
    assert outbox(guarded_registry) == ["alice@test.com"]


@pytest.mark.asyncio
async def test_fully_satisfied_request_is_not_rerun(sessions, guarded_registry):
    session = sessions.get_or_create("s1")
    session.begin_request("email a@x.com and b@y.com the report")
    steps = [
        {"step_number": 1, "description": "a", "tool_to_use": "send_email", "parameters": {"to": "a@x.com"}},
        {"step_number": 2, "description": "b", "tool_to_use": "send_email", "parameters": {"to": "b@y.com"}},
    ]
    await MultiStepExecutor(guarded_registry).execute(session.last_request, steps, session=session)

    notice = await guarded_registry.dispatch("send_email", {"to": "a@x.com"}, ToolContext("s1"))

    assert notice.startswith("All recipients/actions in this request were already handled")
    assert outbox(guarded_registry) == ["a@x.com", "b@y.com"]


@pytest.mark.asyncio
async def test_unguarded_tools_pass_through(sessions, guarded_registry):
    sessions.get_or_create("s1").begin_request(TEAM_REQUEST)

    assert await guarded_registry.dispatch("echo", {"text": "hi"}, ToolContext("s1")) == "hi"


def test_enforcer_only_wraps_action_tools(enforcer):
    async def handler(params, context):
        return "ran"

    assert enforcer(FunctionTool("echo", lambda: None, "Echo"), handler) is handler
    wrapped = enforcer(SendEmailTool(name="send_email_team"), handler)
    assert wrapped is not handler
    assert wrapped.__wrapped__ is handler
    assert not enforcer.guards("execute_multi_step_task")


@pytest.mark.asyncio
async def test_static_detector_drives_decisions(sessions):
    detector = StaticMultiActionDetector(True, ["x@test.com", "y@test.com"])
    enforcer = CompletionEnforcer(sessions, detector, ["book_meeting"])
    registry = ToolRegistry([enforcer])
    registry.register_instance(FunctionTool("book_meeting", lambda **_: "Meeting booked", "Book"))
    sessions.get_or_create("s1").begin_request("Book meeting with x and y")

    directive = await registry.dispatch("book_meeting", {}, ToolContext("s1"))

    assert "- x@test.com" in directive and "- y@test.com" in directive
    assert detector.calls == ["Book meeting with x and y"]


def test_satisfied_targets_ignores_failures():
    outputs = [
        "Email sent successfully to a@x.com",
        "Failed to send email to b@y.com",
        "Meeting booked with C@z.com at 10:00",
    ]

    assert satisfied_targets(outputs, ["a@x.com", "b@y.com", "c@z.com"]) == ["a@x.com", "c@z.com"]


def test_check_completion_lists_pending_tasks(enforcer, sessions):
    session = sessions.get_or_create("s1")
    assert enforcer.check_completion(session) is None

    session.plan.create_plan(
        [
            {"id": "t1", "description": "Email alice", "tool_needed": "send_email"},
            {"id": "t2", "description": "Email bob", "tool_needed": "send_email"},
        ]
    )
    directive = enforcer.check_completion(session)
    assert directive.startswith("⚠️ 2 tasks still pending!")
    assert "- Email bob [send_email]" in directive

    session.plan.mark_complete("t1")
    session.plan.mark_failed("t2")
    assert enforcer.check_completion(session) is None


def booking_step(number, attendee):
    return {
        "step_number": number,
        "description": f"Book {attendee}",
        "tool_to_use": "book_meeting",
        "parameters": {"attendee": attendee, "time": "tomorrow 10:00"},
    }


@pytest.mark.asyncio
async def test_repeated_pattern_targets_count_as_satisfied_once_booked(sessions, guarded_registry):
    guarded_registry.register_instance(BookMeetingTool(name="book_meeting"))
    session = sessions.get_or_create("s1")
    session.begin_request("book smile 1 and smile 2 for tomorrow")
    executor = MultiStepExecutor(guarded_registry)

    await executor.execute(session.last_request, [booking_step(1, "Smile 1")], session=session)
    partial = await guarded_registry.dispatch("book_meeting", {"attendee": "smile 2", "time": "10:00"}, ToolContext("s1"))

    outstanding, _, completed = partial.partition("Already completed (do not repeat):")
    assert "- smile 2" in outstanding
    assert "- smile 1" not in outstanding
    assert "- smile 1" in completed

    summary = await executor.execute(session.last_request, [booking_step(2, "Smile 2")], session=session)
    assert summary.all_succeeded

    with capture_logs() as logs:
        notice = await guarded_registry.dispatch("book_meeting", {"attendee": "smile 1", "time": "10:00"}, ToolContext("s1"))

    assert notice.startswith("All recipients/actions in this request were already handled: smile 1, smile 2.")
    events = [entry["event"] for entry in logs]
    assert "multi_action_already_satisfied" in events
    assert "multi_action_redirect" not in events
    assert len(guarded_registry.get("book_meeting").outbox) == 2


def test_satisfied_targets_match_whole_tokens():
    outputs = ["Meeting booked with smile 10 at 09:00", "Email sent successfully to malice@test.com"]

    assert satisfied_targets(outputs, ["smile 1", "alice@test.com"]) == []
    assert satisfied_targets(outputs, ["Smile 10"]) == ["Smile 10"]
