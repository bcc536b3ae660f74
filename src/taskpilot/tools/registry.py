"""Registry that keeps track of available tools and their middleware."""

from __future__ import annotations

import difflib
from importlib.metadata import entry_points
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from ..config import ToolSpec, instantiate_from_path
from ..errors import AmbiguousTool, UnknownTool
from ..observability.logging import get_logger
from .base import Tool, ToolContext, ToolHandler, invoke_tool

logger = get_logger(__name__)

ToolFactory = Callable[[], Tool]
ToolMiddleware = Callable[[Tool, ToolHandler], ToolHandler]

MIN_FRAGMENT_LENGTH = 3


def _direct_handler(tool: Tool) -> ToolHandler:
    async def handler(params: Dict[str, Any], context: ToolContext) -> Any:
        return await invoke_tool(tool, params, context)

    return handler


class ToolRegistry:
    """Stores tool factories, lazily instantiates them and resolves names.

    Middleware is bound per tool when the tool is registered. ``dispatch`` goes
    through the middleware chain (the runtime's path); ``resolve`` returns the
    bare tool for callers, such as the multi-step executor, that must bypass it.
    """

    def __init__(
        self,
        middleware: Sequence[ToolMiddleware] = (),
        *,
        fuzzy_cutoff: float = 0.75,
        fuzzy_margin: float = 0.05,
    ) -> None:
        self._factories: Dict[str, ToolFactory] = {}
        self._instances: Dict[str, Tool] = {}
        self._middleware: Dict[str, List[ToolMiddleware]] = {}
        self._handlers: Dict[str, ToolHandler] = {}
        self.default_middleware = list(middleware)
        self.fuzzy_cutoff = fuzzy_cutoff
        self.fuzzy_margin = fuzzy_margin

    def register_instance(
        self, tool: Tool, *, overwrite: bool = False, middleware: Sequence[ToolMiddleware] = ()
    ) -> None:
        if tool.name in self and not overwrite:
            raise ValueError(f"Tool {tool.name} already registered")
        self._factories.pop(tool.name, None)
        self._instances[tool.name] = tool
        self._bind(tool.name, middleware)

    def register_factory(
        self,
        name: str,
        factory: ToolFactory,
        *,
        overwrite: bool = False,
        middleware: Sequence[ToolMiddleware] = (),
    ) -> None:
        if name in self and not overwrite:
            raise ValueError(f"Tool factory {name} already registered")
        self._instances.pop(name, None)
        self._factories[name] = factory
        self._bind(name, middleware)

    def register_from_spec(self, spec: ToolSpec, *, middleware: Sequence[ToolMiddleware] = ()) -> None:
        def factory() -> Tool:
            instance = instantiate_from_path(spec.type, name=spec.name, **spec.args)
            if not isinstance(instance, Tool):  # pragma: no cover - guard
                raise TypeError(f"Tool '{spec.name}' must inherit Tool")
            return instance

        self.register_factory(spec.name, factory, overwrite=True, middleware=middleware)

    def configure_from_specs(self, specs: Mapping[str, ToolSpec]) -> None:
        for spec in specs.values():
            self.register_from_spec(spec)

    def discover_entrypoints(self, group: str = "taskpilot.tools") -> int:
        """Register tools advertised by installed packages under ``group``.

        Entry points may name a Tool subclass (instantiated with ``name=``) or a
        zero-argument callable returning a Tool. Returns how many were added.
        """
        added = 0
        for ep in entry_points(group=group):
            try:
                target = ep.load()
            except Exception as exc:
                logger.warning("tool_entrypoint_failed", entry_point=ep.name, error=str(exc))
                continue
            if ep.name in self:
                continue

            def factory(target_obj: Any = target, entry_name: str = ep.name) -> Tool:
                instance = target_obj(name=entry_name) if isinstance(target_obj, type) else target_obj()
                if not isinstance(instance, Tool):
                    raise TypeError(f"Entry point {entry_name} did not produce a Tool instance")
                return instance

            self.register_factory(ep.name, factory)
            added += 1
        return added

    def _bind(self, name: str, middleware: Sequence[ToolMiddleware]) -> None:
        self._middleware[name] = [*self.default_middleware, *middleware]
        self._handlers.pop(name, None)

    def get(self, name: str) -> Tool:
        if name in self._instances:
            return self._instances[name]
        if name not in self._factories:
            raise UnknownTool(name, self.names())
        instance = self._factories[name]()
        self._instances[name] = instance
        return instance

    def names(self) -> List[str]:
        return sorted(set(self._instances) | set(self._factories))

    def __contains__(self, name: object) -> bool:
        return name in self._instances or name in self._factories

    def __len__(self) -> int:
        return len(self.names())

    def available(self) -> Dict[str, Tool]:
        return {name: self.get(name) for name in self.names()}

    def middleware_for(self, name: str) -> List[ToolMiddleware]:
        return list(self._middleware.get(name, []))

    def describe(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        selected = self.names() if names is None else list(names)
        return [self.get(name).describe() for name in selected]

    def handler(self, name: str) -> ToolHandler:
        """Return the middleware-wrapped handler for ``name``."""
        if name not in self._handlers:
            tool = self.get(name)
            handler = _direct_handler(tool)
            for middleware in reversed(self._middleware.get(name, [])):
                handler = middleware(tool, handler)
            self._handlers[name] = handler
        return self._handlers[name]

    async def dispatch(self, name: str, params: Dict[str, Any], context: ToolContext) -> Any:
        return await self.handler(name)(params, context)

    def resolve(self, name: str) -> Tool:
        """Map a possibly drifted tool name onto a registered tool.

        Exact match first, then a scored fuzzy fallback over substring containment
        and close matches. Raises ``UnknownTool`` or ``AmbiguousTool``.
        """
        if name in self:
            return self.get(name)
        query = name.strip().lower()
        registered = {candidate.lower(): candidate for candidate in self.names()}
        if query in registered:
            return self.get(registered[query])
        if not query:
            raise UnknownTool(name, self.names())

        scores: Dict[str, float] = {}
        for lowered, candidate in registered.items():
            contained = query in lowered or (len(lowered) >= MIN_FRAGMENT_LENGTH and lowered in query)
            if contained:
                scores[candidate] = difflib.SequenceMatcher(None, query, lowered).ratio()
        for lowered in difflib.get_close_matches(query, list(registered), n=3, cutoff=self.fuzzy_cutoff):
            candidate = registered[lowered]
            scores.setdefault(candidate, difflib.SequenceMatcher(None, query, lowered).ratio())

        if not scores:
            raise UnknownTool(name, self.names())
        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
        best_name, best_score = ranked[0]
        contenders = [candidate for candidate, score in ranked if best_score - score < self.fuzzy_margin]
        if len(contenders) > 1:
            raise AmbiguousTool(name, contenders)
        logger.debug("tool_resolved_fuzzy", requested=name, resolved=best_name, score=round(best_score, 3))
        return self.get(best_name)
