"""Tool interface and registry for agent function calling."""

from .base import Tool, ToolResult
from .registry import ToolRegistry

__all__ = [
    "Tool",
    "ToolResult",
    "ToolRegistry",
]
