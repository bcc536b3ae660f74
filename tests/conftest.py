import asyncio
import json

import pytest
import structlog

from taskpilot.agents.session import SessionStore
from taskpilot.tools.base import FunctionTool
from taskpilot.tools.builtin import SendEmailTool
from taskpilot.tools.registry import ToolRegistry


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def sessions():
    return SessionStore()


@pytest.fixture
def registry():
    registry = ToolRegistry()
    registry.register_instance(SendEmailTool(name="send_email"))

    def explode(**_):
        raise RuntimeError("mail server unreachable")

    registry.register_instance(FunctionTool("explode", explode, "Always fails"))
    registry.register_instance(FunctionTool("echo", lambda text="": f"echo: {text}", "Echo text back"))
    return registry


@pytest.fixture
def fast_sleep():
    async def sleep(_delay):
        await asyncio.sleep(0)

    return sleep


@pytest.fixture
def workflow_dir(tmp_path):
    directory = tmp_path / "workflows"
    directory.mkdir()
    workflow = {
        "id": "team-update",
        "name": "Team update",
        "steps": [
            {"description": "Email alice", "tool": "send_email", "parameters": {"to": "alice@test.com", "subject": "${topic}"}},
            {"description": "Email bob", "tool": "send_email", "parameters": {"to": "bob@test.com", "subject": "${topic}"}},
        ],
    }
    (directory / "team-update.json").write_text(json.dumps(workflow))
    return directory
