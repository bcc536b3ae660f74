"""Tool abstractions and registries."""

from .base import FunctionTool, Tool, ToolContext, invoke_tool
from .registry import ToolMiddleware, ToolRegistry

__all__ = ["FunctionTool", "Tool", "ToolContext", "ToolMiddleware", "ToolRegistry", "invoke_tool"]
