"""Base classes for tools exposed to the agent runtime."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from ..errors import ToolParameterError

ToolHandler = Callable[[Dict[str, Any], "ToolContext"], Awaitable[Any]]


@dataclass
class ToolContext:
    """Metadata passed to tool invocations."""

    session_id: str = "default"
    invocation_id: Optional[str] = None
    step_number: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def object_schema(properties: Mapping[str, Any] | None = None, required: tuple = ()) -> Dict[str, Any]:
    return {"type": "object", "properties": dict(properties or {}), "required": list(required)}


class Tool:
    """Base tool class.

    ``parameters`` is a JSON-schema object describing the call arguments.
    ``run`` may be a plain or a coroutine method; it returns a value or raises.
    """

    name: str
    description: str

    def __init__(
        self,
        name: str,
        description: str | None = None,
        parameters: Mapping[str, Any] | None = None,
        **kwargs: object,
    ) -> None:
        self.name = name
        self.description = description or self.__class__.__doc__ or ""
        self.parameters = dict(parameters) if parameters is not None else self.default_parameters()
        self.config = kwargs

    def default_parameters(self) -> Dict[str, Any]:
        return object_schema()

    def run(self, params: Dict[str, Any], context: ToolContext) -> Any:  # pragma: no cover - abstract
        raise NotImplementedError

    def validate(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        if not isinstance(params, Mapping):
            raise ToolParameterError(f"Tool '{self.name}' expects an object of parameters")
        missing = [key for key in self.parameters.get("required", []) if key not in params]
        if missing:
            raise ToolParameterError(
                f"Tool '{self.name}' is missing required parameters: {', '.join(missing)}"
            )
        return dict(params)

    def describe(self) -> Dict[str, Any]:
        """Function-calling definition handed to the model."""
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


class FunctionTool(Tool):
    """Adapts a plain or async callable taking keyword parameters."""

    def __init__(
        self,
        name: str,
        func: Callable[..., Any],
        description: str | None = None,
        parameters: Mapping[str, Any] | None = None,
        *,
        pass_context: bool = False,
    ) -> None:
        super().__init__(name, description or inspect.getdoc(func), parameters)
        self.func = func
        self.pass_context = pass_context

    def run(self, params: Dict[str, Any], context: ToolContext) -> Any:
        if self.pass_context:
            return self.func(context=context, **params)
        return self.func(**params)


async def invoke_tool(tool: Tool, params: Mapping[str, Any], context: ToolContext) -> Any:
    """Validate and run a tool, suspending until its result is available.

    Blocking tools run in a worker thread so the event loop keeps serving
    other sessions and timers.
    """
    arguments = tool.validate(params)
    target = tool.func if isinstance(tool, FunctionTool) else tool.run
    if inspect.iscoroutinefunction(target):
        return await tool.run(arguments, context)
    result = await asyncio.to_thread(tool.run, arguments, context)
    if inspect.isawaitable(result):
        result = await result
    return result
