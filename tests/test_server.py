import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from taskpilot.agents.orchestrator import Orchestrator
from taskpilot.config import ProjectConfig, SchedulerSpec
from taskpilot.web.server import create_app

TEAM_REQUEST = "Send updates to alice@test.com, bob@test.com, and charlie@test.com"


def build(workflow_dir, sleep=None):
    config = ProjectConfig(scheduler=SchedulerSpec(workflow_dirs=[workflow_dir]))
    return Orchestrator(config, sleep=sleep, discover_entrypoints=False)


@pytest.fixture
def orchestrator(workflow_dir):
    return build(workflow_dir)


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as test_client:
        yield test_client


def wait_for_history(client, schedule_id, count):
    for _ in range(200):
        records = client.get(f"/api/schedules/{schedule_id}/history").json()
        if len(records) >= count:
            return records
        time.sleep(0.01)
    raise AssertionError(f"schedule {schedule_id} did not fire {count} times")


def test_schedule_lifecycle(client):
    created = client.post(
        "/api/schedules",
        json={"workflow_id": "team-update", "cron_expression": "0 0 1 1 *", "timezone": "Europe/Berlin"},
    )
    assert created.status_code == 201
    body = created.json()
    assert body["workflow_name"] == "Team update"
    assert body["state"] == "scheduled"
    schedule_id = body["id"]

    status = client.get("/api/schedules").json()
    assert status["running"] is True
    assert [entry["id"] for entry in status["schedules"]] == [schedule_id]

    deleted = client.delete(f"/api/schedules/{schedule_id}")
    assert deleted.json() == {"id": schedule_id, "stopped": True, "execution_count": 0}
    assert client.get("/api/schedules").json()["active_schedules"] == 0
    assert client.get(f"/api/schedules/{schedule_id}/history").json() == []
    assert client.delete(f"/api/schedules/{schedule_id}").status_code == 404


def test_schedule_history_records_firings(workflow_dir, fast_sleep):
    with TestClient(create_app(build(workflow_dir, fast_sleep))) as client:
        created = client.post(
            "/api/schedules",
            json={
                "workflow_id": "team-update",
                "cron_expression": "* * * * * *",
                "max_executions": 2,
                "context": {"topic": "Release"},
            },
        )
        schedule_id = created.json()["id"]

        records = wait_for_history(client, schedule_id, 2)
        limited = client.get(f"/api/schedules/{schedule_id}/history", params={"limit": 1}).json()

    assert [record["execution_number"] for record in records] == [2, 1]
    assert all(record["status"] == "success" for record in records)
    assert records[0]["output"] == "Email sent successfully to bob@test.com"
    assert len(limited) == 1


@pytest.mark.parametrize(
    "payload, status",
    [
        ({"workflow_id": "ghost"}, 404),
        ({"workflow_id": "team-update", "cron_expression": "not-a-cron"}, 422),
        ({"workflow_id": "team-update", "timezone": "Nowhere/Special"}, 422),
        ({"workflow_id": "team-update", "max_executions": 0}, 422),
    ],
)
def test_schedule_rejections(client, payload, status):
    response = client.post("/api/schedules", json=payload)

    assert response.status_code == status
    assert client.get("/api/schedules").json()["active_schedules"] == 0


def test_unknown_schedule_history_is_404(client):
    assert client.get("/api/schedules/nope/history").status_code == 404


def test_multi_action_request_is_redirected(client, orchestrator):
    started = client.post("/api/sessions/s1/requests", json={"text": TEAM_REQUEST})
    assert started.json()["multi_action"] is True
    assert "execute_multi_step_task" in started.json()["tools"]

    response = client.post("/api/sessions/s1/tools/send_email", json={"params": {"to": "alice@test.com"}})

    assert response.status_code == 200
    assert response.json()["result"].startswith("STOP!")
    assert orchestrator.tool_registry.get("send_email").outbox == []


def test_tool_errors_map_to_http_status(client):
    client.post("/api/sessions/s2/requests", json={"text": "email alice@test.com the report"})

    unknown = client.post("/api/sessions/s2/tools/fax_document", json={"params": {}})
    missing = client.post("/api/sessions/s2/tools/send_email", json={"params": {}})

    assert unknown.status_code == 404
    assert "fax_document" in unknown.json()["detail"]
    assert missing.status_code == 422
    assert "to" in missing.json()["detail"]


def test_complete_reports_pending_tasks(client, orchestrator):
    assert client.post("/api/sessions/ghost/complete").status_code == 404
    client.post("/api/sessions/s3/requests", json={"text": "email alice@test.com then call bob"})
    client.post(
        "/api/sessions/s3/tools/create_task_plan",
        json={"params": {"tasks": [{"id": "t1", "description": "Email alice", "tool_needed": "send_email"}]}},
    )

    blocked = client.post("/api/sessions/s3/complete").json()
    assert blocked["complete"] is False
    assert blocked["directive"].startswith("⚠️ 1 tasks still pending!")

    client.post("/api/sessions/s3/tools/mark_task_complete", json={"params": {"task_id": "t1"}})
    done = client.post("/api/sessions/s3/complete").json()
    assert done["complete"] is True
    assert done["directive"] is None
    assert "s3" not in orchestrator.sessions
    assert "s3" not in client.app.state.sinks
    assert client.post("/api/sessions/s3/complete").status_code == 404


def test_websocket_replays_session_events(client, orchestrator):
    client.post("/api/sessions/s4/requests", json={"text": "email alice@test.com the report"})
    client.post("/api/sessions/s4/tools/send_email", json={"params": {"to": "alice@test.com"}})
    client.post("/api/sessions/s4/complete")

    received = []
    with client.websocket_connect("/ws/s4") as websocket:
        while True:
            message = websocket.receive_json()
            received.append(message)
            if message.get("type") == "complete":
                break

    event_types = [message.get("eventType") for message in received[:-1]]
    assert event_types[0] == "thought_step"
    assert "tool_use" in event_types
    assert all(message["invocationId"] == "s4" for message in received[:-1])
    assert "s4" not in orchestrator.sessions
    assert "s4" not in client.app.state.finished_sinks
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/s4"):
            pass


def test_websocket_for_unknown_invocation_is_rejected(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/nobody"):
            pass
