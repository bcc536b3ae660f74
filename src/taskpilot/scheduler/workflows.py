"""Stored workflows and the executor that replays them."""

from __future__ import annotations

import json
import pathlib
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from ..errors import PlanValidationError, WorkflowNotFound
from ..observability.logging import get_logger
from ..tasks.runner import CancelToken, ExecutionSummary, MultiStepExecutor, Step

logger = get_logger(__name__)

OUTPUT_PREVIEW_LIMIT = 100


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "workflow"


@dataclass
class Workflow:
    """A named, replayable list of tool steps."""

    id: str
    name: str
    steps: List[Dict[str, Any]] = field(default_factory=list)
    description: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], default_id: Optional[str] = None) -> "Workflow":
        if not isinstance(data, Mapping):
            raise PlanValidationError("Workflow definitions must be JSON objects")
        raw_steps = data.get("steps")
        if not isinstance(raw_steps, list):
            raise PlanValidationError("Workflow definitions need a 'steps' list")
        workflow_id = str(data.get("id") or default_id or slugify(str(data.get("name", ""))))
        return cls(
            id=workflow_id,
            name=str(data.get("name") or workflow_id),
            steps=[dict(step) for step in raw_steps],
            description=data.get("description"),
        )

    @classmethod
    def from_steps(cls, name: str, steps: Iterable[Step], description: Optional[str] = None) -> "Workflow":
        """Capture an executed step list, e.g. the session's last multi-step run."""
        return cls(
            id=f"{slugify(name)}-{uuid.uuid4().hex[:8]}",
            name=name,
            description=description,
            steps=[
                {"description": step.description, "tool": step.tool_to_use, "parameters": dict(step.parameters)}
                for step in steps
            ],
        )

    def to_steps(self) -> List[Step]:
        """Number the stored steps in file order."""
        numbered = []
        for index, raw in enumerate(self.steps, start=1):
            data = dict(raw)
            data.setdefault("step_number", index)
            data.setdefault("description", f"Step {index}")
            numbered.append(Step.from_mapping(data))
        return numbered

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "name": self.name, "steps": self.steps}
        if self.description:
            data["description"] = self.description
        return data


class WorkflowStore(Protocol):
    def load(self, workflow_id: str) -> Workflow:  # pragma: no cover - interface
        """Return the workflow or raise WorkflowNotFound."""


class JsonWorkflowStore:
    """Flat-file store: one ``<id>.json`` per workflow, searched across directories.

    The first directory that holds the file wins; ``save`` writes to the first
    directory.
    """

    def __init__(self, directories: Sequence[str | pathlib.Path]) -> None:
        if not directories:
            raise ValueError("JsonWorkflowStore needs at least one directory")
        self.directories = [pathlib.Path(directory) for directory in directories]

    def path_for(self, workflow_id: str) -> Optional[pathlib.Path]:
        if not workflow_id or "/" in workflow_id or "\\" in workflow_id or workflow_id.startswith("."):
            return None
        for directory in self.directories:
            candidate = directory / f"{workflow_id}.json"
            if candidate.is_file():
                return candidate
        return None

    def load(self, workflow_id: str) -> Workflow:
        path = self.path_for(workflow_id)
        if path is None:
            raise WorkflowNotFound(workflow_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("workflow_load_failed", workflow_id=workflow_id, path=str(path), error=str(exc))
            raise WorkflowNotFound(workflow_id) from exc
        return Workflow.from_mapping(data, default_id=workflow_id)

    def save(self, workflow: Workflow) -> pathlib.Path:
        target_dir = self.directories[0]
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"{workflow.id}.json"
        path.write_text(json.dumps(workflow.to_dict(), indent=2), encoding="utf-8")
        return path

    def list(self) -> List[str]:
        ids: List[str] = []
        for directory in self.directories:
            if directory.is_dir():
                ids.extend(path.stem for path in sorted(directory.glob("*.json")) if path.stem not in ids)
        return ids


@dataclass
class WorkflowResult:
    """Outcome of one workflow run."""

    success: bool
    error: Optional[str] = None
    output: Any = None
    summary: Optional[ExecutionSummary] = None

    def preview(self, limit: int = OUTPUT_PREVIEW_LIMIT) -> Optional[str]:
        if self.output is None:
            return None
        text = self.output if isinstance(self.output, str) else json.dumps(self.output, default=str)
        return text if len(text) <= limit else text[:limit] + "..."


class WorkflowExecutor(Protocol):
    async def execute(
        self, workflow: Workflow, context: Mapping[str, Any], *, cancel: Optional[CancelToken] = None
    ) -> WorkflowResult:  # pragma: no cover - interface
        """Run ``workflow`` to completion."""


class StepWorkflowExecutor:
    """Replays a workflow's steps through the multi-step executor.

    Context values are available to step parameters as ``${name}``
    placeholders. The run succeeds only when every step succeeds; the output is
    the last step's result.
    """

    def __init__(self, executor: MultiStepExecutor) -> None:
        self.executor = executor

    async def execute(
        self, workflow: Workflow, context: Mapping[str, Any], *, cancel: Optional[CancelToken] = None
    ) -> WorkflowResult:
        try:
            steps = workflow.to_steps()
        except PlanValidationError as exc:
            return WorkflowResult(success=False, error=f"Invalid workflow '{workflow.id}': {exc}")
        summary = await self.executor.execute(
            workflow.description or workflow.name, steps, cancel=cancel, variables=context
        )
        output = summary.results.get(steps[-1].step_number) if steps else None
        if summary.all_succeeded:
            return WorkflowResult(success=True, output=output, summary=summary)
        if summary.cancelled:
            error = f"Cancelled: {len(summary.remaining)} steps did not run"
        else:
            error = "; ".join(f"Step {number}: {message}" for number, message in sorted(summary.errors.items()))
        return WorkflowResult(success=False, error=error, output=output, summary=summary)
