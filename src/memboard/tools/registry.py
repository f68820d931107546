"""Registry that exposes memory tools to an agent and dispatches its calls."""

import logging
import time
from typing import Any, Iterable

from ..logging import JSONLLogger, get_logger
from .base import Tool, ToolResult

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Named tools offered to the LLM, with argument checks and call logging.

    Every dispatched call is recorded as a ``tool_result`` event, tagged
    with the conversation the registry was built for.
    """

    def __init__(
        self,
        conversation_id: str | None = None,
        json_logger: JSONLLogger | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.json_logger = json_logger
        self._tools: dict[str, Tool] = {}

    @property
    def events(self) -> JSONLLogger:
        return self.json_logger or get_logger()

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, tool: Tool) -> None:
        """Register a tool. Names must be unique."""
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' already registered")
        self._tools[tool.name] = tool

    def register_all(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def get_tools_schema(self) -> list[dict[str, Any]]:
        """Function-calling schemas of every registered tool."""
        return [tool.get_schema() for tool in self._tools.values()]

    async def dispatch(self, tool_name: str, args: dict[str, Any]) -> ToolResult:
        """Validate and run one tool call from the LLM.

        Args:
            tool_name: Name the model asked for.
            args: Decoded JSON arguments.

        Returns:
            The tool's result. Unknown tools, invalid arguments and
            exceptions come back as unsuccessful results.
        """
        started = time.monotonic()
        result = await self._run(tool_name, args)
        self.events.log_tool_result(
            tool_name,
            result.success,
            conversation_id=self.conversation_id,
            duration_ms=(time.monotonic() - started) * 1000,
            error=result.error,
        )
        return result

    async def _run(self, tool_name: str, args: dict[str, Any]) -> ToolResult:
        tool = self._tools.get(tool_name)
        if tool is None:
            return ToolResult.failure(f"Unknown tool: {tool_name}")

        valid, error = tool.validate_args(args)
        if not valid:
            return ToolResult.failure(error)

        try:
            return await tool.execute(**args)
        except Exception as e:
            logger.exception("Tool %s failed", tool_name)
            return ToolResult.failure(f"Tool execution failed: {e}")
