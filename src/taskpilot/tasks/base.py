"""Task plan primitives used to track a multi-action request."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Set, Union

from ..errors import PlanValidationError, UnknownTask

NO_ACTIVE_PLAN = "No active task plan."


@dataclass(frozen=True)
class Task:
    """A single unit of work inside a plan."""

    id: str
    description: str
    tool_needed: str
    depends_on: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Task":
        if not isinstance(data, Mapping):
            raise PlanValidationError(f"Task entries must be mappings, got {type(data).__name__}")
        tool = data.get("tool_needed", data.get("toolNeeded"))
        depends_on = data.get("depends_on", data.get("dependsOn"))
        missing = [
            key
            for key, value in (("id", data.get("id")), ("description", data.get("description")), ("tool_needed", tool))
            if value is None or str(value).strip() == ""
        ]
        if missing:
            raise PlanValidationError(f"Task is missing required keys: {', '.join(missing)}")
        return cls(
            id=str(data["id"]),
            description=str(data["description"]),
            tool_needed=str(tool),
            depends_on=str(depends_on) if depends_on not in (None, "") else None,
        )


@dataclass
class TaskPlan:
    """Ordered tasks for one request plus their completion state."""

    tasks: List[Task] = field(default_factory=list)
    completed: Set[str] = field(default_factory=set)
    failed: Set[str] = field(default_factory=set)

    @property
    def is_active(self) -> bool:
        return bool(self.tasks)

    @property
    def is_complete(self) -> bool:
        return self.is_active and not self.pending()

    def create_plan(self, tasks: Iterable[Union[Task, Mapping[str, Any]]]) -> str:
        parsed = [task if isinstance(task, Task) else Task.from_mapping(task) for task in tasks]
        if not parsed:
            raise PlanValidationError("A task plan needs at least one task")
        ids = [task.id for task in parsed]
        duplicates = sorted({task_id for task_id in ids if ids.count(task_id) > 1})
        if duplicates:
            raise PlanValidationError(f"Duplicate task ids: {', '.join(duplicates)}")
        for task in parsed:
            if task.depends_on is not None and task.depends_on not in ids:
                raise PlanValidationError(
                    f"Task '{task.id}' depends on unknown task '{task.depends_on}'"
                )
        self.tasks = parsed
        self.completed = set()
        self.failed = set()
        listing = "\n".join(
            f"{index}. {task.description} [{task.tool_needed}]" for index, task in enumerate(parsed, start=1)
        )
        return (
            "📋 **Task Plan Created**\n\n"
            f"**Tasks to Complete:**\n{listing}\n\n"
            "Now executing each task in order. I will track completion and ensure all tasks are done."
        )

    def get(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise UnknownTask(task_id)

    def pending(self) -> List[Task]:
        return [task for task in self.tasks if task.id not in self.completed and task.id not in self.failed]

    def remaining_tasks(self) -> Union[List[Task], str]:
        remaining = self.pending()
        return remaining if remaining else "complete"

    def next_task(self) -> Optional[Task]:
        remaining = self.pending()
        return remaining[0] if remaining else None

    def mark_complete(self, task_id: str, result_summary: Optional[str] = None) -> str:
        if not self.is_active:
            return NO_ACTIVE_PLAN
        self.get(task_id)
        self.failed.discard(task_id)
        self.completed.add(task_id)
        headline = f"✅ Task \"{task_id}\" completed."
        if result_summary:
            headline = f"{headline} {result_summary}"
        return self._progress(headline)

    def mark_failed(self, task_id: str, error: Optional[str] = None) -> str:
        if not self.is_active:
            return NO_ACTIVE_PLAN
        self.get(task_id)
        self.completed.discard(task_id)
        self.failed.add(task_id)
        headline = f"❌ Task \"{task_id}\" failed."
        if error:
            headline = f"{headline} {error}"
        return self._progress(headline)

    def status_icon(self, task: Task) -> str:
        if task.id in self.completed:
            return "✅"
        if task.id in self.failed:
            return "❌"
        return "⏭"

    def final_summary(self) -> str:
        lines = "\n".join(f"{self.status_icon(task)} {task.description}" for task in self.tasks)
        return f"🎉 **All Tasks Completed!**\n\n{lines}"

    def render_remaining(self) -> str:
        if not self.is_active:
            return NO_ACTIVE_PLAN
        remaining = self.pending()
        if not remaining:
            return "✅ All tasks completed!"
        listing = "\n".join(f"- {task.description} [{task.tool_needed}]" for task in remaining)
        return f"📋 **Remaining Tasks:**\n\n{listing}\n\nPlease continue with the next task."

    def clear(self) -> None:
        self.tasks = []
        self.completed = set()
        self.failed = set()

    def _progress(self, headline: str) -> str:
        remaining = self.pending()
        if not remaining:
            return self.final_summary()
        upcoming = remaining[0]
        return (
            f"{headline}\n\n"
            f"**Next Task:** {upcoming.description}\n"
            f"**Tool Required:** {upcoming.tool_needed}\n\n"
            f"{len(remaining) - 1} more tasks remaining."
        )
