"""Configuration helpers for the orchestration core."""

from __future__ import annotations

import importlib
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import yaml

DEFAULT_ACTION_TOOLS = ["send_email", "book_meeting", "calendar"]
DEFAULT_REPEATED_PATTERNS = [r"smile\s+\d+"]


class ConfigError(RuntimeError):
    """Raised when configuration files are invalid."""


def _optional_float(value: Any, key: str) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be a number, got {value!r}") from exc
    if number <= 0:
        raise ConfigError(f"'{key}' must be positive")
    return number


def _string_list(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"'{key}' must be a list of strings")
    return [str(item) for item in value]


@dataclass
class LoggingSpec:
    """Log level and renderer."""

    level: str = "INFO"
    format: str = "console"

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "LoggingSpec":
        if not data:
            return cls()
        fmt = str(data.get("format", "console")).lower()
        if fmt not in {"console", "json"}:
            raise ConfigError(f"Unknown logging format '{fmt}' (expected console or json)")
        return cls(level=str(data.get("level", "INFO")).upper(), format=fmt)


@dataclass
class EnforcerSpec:
    """Which tools the completion enforcer guards and what it looks for."""

    enabled: bool = True
    action_tools: List[str] = field(default_factory=lambda: list(DEFAULT_ACTION_TOOLS))
    repeated_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_REPEATED_PATTERNS))
    coordinating_words: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "EnforcerSpec":
        if not data:
            return cls()
        return cls(
            enabled=bool(data.get("enabled", True)),
            action_tools=_string_list(data.get("action_tools", DEFAULT_ACTION_TOOLS), "enforcer.action_tools"),
            repeated_patterns=_string_list(
                data.get("repeated_patterns", DEFAULT_REPEATED_PATTERNS), "enforcer.repeated_patterns"
            ),
            coordinating_words=_string_list(data.get("coordinating_words"), "enforcer.coordinating_words"),
        )


@dataclass
class ExecutorSpec:
    """Multi-step executor bounds and tool-name matching tolerance."""

    step_timeout: Optional[float] = None
    fuzzy_cutoff: float = 0.75
    fuzzy_margin: float = 0.05

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "ExecutorSpec":
        if not data:
            return cls()
        return cls(
            step_timeout=_optional_float(data.get("step_timeout"), "executor.step_timeout"),
            fuzzy_cutoff=float(data.get("fuzzy_cutoff", 0.75)),
            fuzzy_margin=float(data.get("fuzzy_margin", 0.05)),
        )


@dataclass
class SchedulerSpec:
    """Workflow store locations and per-firing limits."""

    workflow_dirs: List[pathlib.Path] = field(default_factory=lambda: [pathlib.Path("workflows")])
    firing_timeout: Optional[float] = 300.0
    history_limit: int = 20

    @classmethod
    def from_mapping(
        cls, data: Optional[Mapping[str, Any]], base_dir: Optional[pathlib.Path] = None
    ) -> "SchedulerSpec":
        if not data:
            data = {}
        raw_dirs = _string_list(data.get("workflow_dirs", ["workflows"]), "scheduler.workflow_dirs")
        dirs = []
        for raw in raw_dirs:
            path = pathlib.Path(raw).expanduser()
            if not path.is_absolute() and base_dir is not None:
                path = base_dir / path
            dirs.append(path)
        history_limit = int(data.get("history_limit", 20))
        if history_limit < 1:
            raise ConfigError("'scheduler.history_limit' must be at least 1")
        return cls(
            workflow_dirs=dirs,
            firing_timeout=_optional_float(data.get("firing_timeout", 300.0), "scheduler.firing_timeout"),
            history_limit=history_limit,
        )


@dataclass
class ScheduleSpec:
    """A schedule declared up front in the configuration file."""

    workflow_id: str
    cron: str = "* * * * *"
    timezone: str = "UTC"
    max_executions: Optional[int] = None
    name: str = "Scheduled Workflow"
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ScheduleSpec":
        if "workflow_id" not in data:
            raise ConfigError("Schedule entries require a workflow_id")
        max_executions = data.get("max_executions")
        if max_executions is not None and int(max_executions) < 1:
            raise ConfigError("'max_executions' must be at least 1 when set")
        return cls(
            workflow_id=str(data["workflow_id"]),
            cron=str(data.get("cron", "* * * * *")),
            timezone=str(data.get("timezone", "UTC")),
            max_executions=int(max_executions) if max_executions is not None else None,
            name=str(data.get("name", "Scheduled Workflow")),
            context=dict(data.get("context", {})),
        )


@dataclass
class ToolSpec:
    """Configuration for a tool instance."""

    name: str
    type: str
    args: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "ToolSpec":
        if "type" not in data:
            raise ConfigError(f"Tool '{name}' requires a type path")
        return cls(name=name, type=str(data["type"]), args=dict(data.get("args", {})))


@dataclass
class ProjectConfig:
    """Representation of the YAML configuration."""

    name: str = "taskpilot"
    description: Optional[str] = None
    logging: LoggingSpec = field(default_factory=LoggingSpec)
    enforcer: EnforcerSpec = field(default_factory=EnforcerSpec)
    executor: ExecutorSpec = field(default_factory=ExecutorSpec)
    scheduler: SchedulerSpec = field(default_factory=SchedulerSpec)
    tool_specs: Dict[str, ToolSpec] = field(default_factory=dict)
    schedules: List[ScheduleSpec] = field(default_factory=list)
    file_path: Optional[pathlib.Path] = None

    @classmethod
    def from_file(cls, path: str | pathlib.Path) -> "ProjectConfig":
        p = pathlib.Path(path)
        try:
            data = yaml.safe_load(p.read_text())
        except OSError as exc:
            raise ConfigError(f"Cannot read configuration {p}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Configuration {p} is not valid YAML: {exc}") from exc
        if not isinstance(data, MutableMapping):
            raise ConfigError("Configuration root must be a mapping")
        return cls.from_mapping(data, p)

    @classmethod
    def from_yaml(cls, content: str) -> "ProjectConfig":
        data = yaml.safe_load(content)
        if not isinstance(data, MutableMapping):
            raise ConfigError("Configuration root must be a mapping")
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], path: Optional[pathlib.Path] = None) -> "ProjectConfig":
        base_dir = path.resolve().parent if path else None
        tool_specs = {
            name: ToolSpec.from_mapping(name, info or {})
            for name, info in (data.get("tools") or {}).items()
        }
        schedules = [ScheduleSpec.from_mapping(item) for item in data.get("schedules") or []]
        return cls(
            name=data.get("name", path.stem if path else "taskpilot"),
            description=data.get("description"),
            logging=LoggingSpec.from_mapping(data.get("logging")),
            enforcer=EnforcerSpec.from_mapping(data.get("enforcer")),
            executor=ExecutorSpec.from_mapping(data.get("executor")),
            scheduler=SchedulerSpec.from_mapping(data.get("scheduler"), base_dir),
            tool_specs=tool_specs,
            schedules=schedules,
            file_path=path,
        )


def import_string(path: str) -> Any:
    """Return attribute from module specified by path "module:qualname"."""

    if ":" not in path:
        raise ConfigError(f"Import path '{path}' must use module:qualname format")
    module_path, attr = path.split(":", 1)
    try:
        module = importlib.import_module(module_path)
    except ImportError as exc:
        raise ConfigError(f"Cannot import module '{module_path}': {exc}") from exc
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise ConfigError(f"Module '{module_path}' has no attribute '{attr}'") from exc


def instantiate_from_path(path: str, *args: Any, **kwargs: Any) -> Any:
    """Import and instantiate a class given its dotted path."""

    cls = import_string(path)
    return cls(*args, **kwargs)
