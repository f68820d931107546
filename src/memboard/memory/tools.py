"""Memory tools the agent can call to look back at its conversations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..tools.base import Tool, ToolResult
from .manager import WorkingMemoryManager
from .models import WorkingContext

NO_BOARD_MESSAGE = (
    "No summary board found for this conversation yet. "
    "It will be created after {frequency} messages."
)

EMPTY_BOARD_MESSAGE = "The summary board for this conversation has no content yet."

CONTEXT_TYPES = ("action_items", "questions", "facts", "entities")


def _parse_time(value: Any, name: str) -> datetime | None:
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValueError(f"time_range.{name} must be an ISO 8601 string")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"time_range.{name} is not a valid ISO 8601 date: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SearchConversationHistoryTool(Tool):
    """Tool for semantic search over past conversations of this agent and owner."""

    def __init__(
        self,
        manager: WorkingMemoryManager,
        agent_id: str,
        owner_id: str,
    ) -> None:
        """Initialize with a memory manager.

        Args:
            manager: The WorkingMemoryManager to search with.
            agent_id: Agent whose memories are searched.
            owner_id: Owner whose conversations are searched.
        """
        self.manager = manager
        self.agent_id = agent_id
        self.owner_id = owner_id

    @property
    def name(self) -> str:
        return "search_conversation_history"

    @property
    def description(self) -> str:
        return (
            "Search past conversation summaries and recent conversation context "
            "using semantic similarity. Use when the user refers to something "
            "discussed earlier that is not in the current context."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "What to look for in past conversations",
                },
                "time_range": {
                    "type": "object",
                    "description": (
                        "Optional bounds on when the memory was recorded, as "
                        "ISO 8601 dates: {\"start\": ..., \"end\": ...}"
                    ),
                    "properties": {
                        "start": {"type": "string"},
                        "end": {"type": "string"},
                    },
                },
                "limit": {
                    "type": "integer",
                    "description": "Maximum number of results. Default: 5",
                    "minimum": 1,
                    "maximum": 20,
                },
            },
            "required": ["query"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        """Search conversation history.

        Args:
            query: Free-text query.
            time_range: Optional {"start", "end"} ISO 8601 bounds.
            limit: Maximum number of results.

        Returns:
            ToolResult with the recalled context block.
        """
        query = kwargs.get("query", "")
        if not query or not query.strip():
            return ToolResult.failure("'query' is required")

        time_range = None
        raw_range = kwargs.get("time_range")
        if raw_range:
            try:
                time_range = (
                    _parse_time(raw_range.get("start"), "start"),
                    _parse_time(raw_range.get("end"), "end"),
                )
            except ValueError as e:
                return ToolResult.failure(str(e))

        hits = await self.manager.search_conversation_history(
            self.agent_id,
            query,
            owner_id=self.owner_id,
            time_range=time_range,
            limit=kwargs.get("limit", 5),
        )

        if not hits:
            return ToolResult(
                success=True,
                output="No relevant conversation history found.",
                metadata={"count": 0},
            )

        return ToolResult(
            success=True,
            output=self.manager.format_hits_block(hits),
            metadata={
                "count": len(hits),
                "results": [
                    {
                        "kind": hit.kind,
                        "id": hit.record_id,
                        "conversation_id": hit.conversation_id,
                        "similarity": round(hit.similarity, 4),
                    }
                    for hit in hits
                ],
            },
        )


class GetConversationSummaryTool(Tool):
    """Tool for reading the summary board or an archived summary.

    Only boards and summaries of the same agent and owner are visible.
    """

    def __init__(
        self,
        manager: WorkingMemoryManager,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
    ) -> None:
        """Initialize with a memory manager.

        Args:
            manager: The WorkingMemoryManager to read from.
            conversation_id: Conversation used when none is given.
            agent_id: Agent the tool acts for.
            owner_id: Owner the tool acts for.
        """
        self.manager = manager
        self.conversation_id = conversation_id
        self.agent_id = agent_id
        self.owner_id = owner_id

    @property
    def name(self) -> str:
        return "get_conversation_summary"

    @property
    def description(self) -> str:
        return (
            "Get the current summary of a conversation, including key facts, "
            "action items and pending questions, or an archived summary by id."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "conversation_id": {
                    "type": "string",
                    "description": "Conversation to summarize. Defaults to the current one.",
                },
                "summary_id": {
                    "type": "string",
                    "description": "Id of an archived summary to fetch instead",
                },
            },
            "required": [],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        """Return a summary as text.

        Args:
            conversation_id: Optional conversation, the current one by default.
            summary_id: Optional archived summary id.

        Returns:
            ToolResult with the formatted summary.
        """
        summary_id = kwargs.get("summary_id")
        if summary_id:
            summary = self.manager.get_summary(summary_id, self.agent_id, self.owner_id)
            if summary is None:
                return ToolResult.failure(f"Summary '{summary_id}' not found")
            lines = [f"Summary ({summary.created_at.date().isoformat()}): {summary.summary_text}"]
            if summary.key_facts:
                lines.append("Key Facts:")
                lines.extend(f"• {fact}" for fact in summary.key_facts)
            return ToolResult(
                success=True,
                output="\n".join(lines),
                metadata={"summary_id": summary.id, "conversation_id": summary.conversation_id},
            )

        conversation_id = kwargs.get("conversation_id") or self.conversation_id
        board = self.manager.get_board(conversation_id, self.agent_id, self.owner_id)
        if board is None:
            return ToolResult(
                success=True,
                output=NO_BOARD_MESSAGE.format(
                    frequency=self.manager.config.default_update_frequency
                ),
                metadata={"conversation_id": conversation_id, "exists": False},
            )

        block = self.manager.format_context_block(WorkingContext.from_board(board))
        return ToolResult(
            success=True,
            output=block or EMPTY_BOARD_MESSAGE,
            metadata={
                "conversation_id": conversation_id,
                "exists": True,
                "message_count": board.message_count,
            },
        )


class RecallContextTool(Tool):
    """Tool for pulling one kind of tracked context from the board."""

    def __init__(
        self,
        manager: WorkingMemoryManager,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
    ) -> None:
        """Initialize with a memory manager.

        Args:
            manager: The WorkingMemoryManager to read from.
            conversation_id: Conversation used when none is given.
            agent_id: Agent the tool acts for.
            owner_id: Owner the tool acts for.
        """
        self.manager = manager
        self.conversation_id = conversation_id
        self.agent_id = agent_id
        self.owner_id = owner_id

    @property
    def name(self) -> str:
        return "recall_context"

    @property
    def description(self) -> str:
        return (
            "Recall tracked context of a conversation: open action items, "
            "pending questions, key facts or mentioned entities."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "context_type": {
                    "type": "string",
                    "enum": list(CONTEXT_TYPES),
                    "description": "Which kind of context to recall",
                },
                "conversation_id": {
                    "type": "string",
                    "description": "Conversation to read. Defaults to the current one.",
                },
            },
            "required": ["context_type"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        """Recall one kind of context.

        Args:
            context_type: One of action_items, questions, facts, entities.
            conversation_id: Optional conversation, the current one by default.

        Returns:
            ToolResult with a bullet list.
        """
        context_type = kwargs.get("context_type", "")
        if context_type not in CONTEXT_TYPES:
            return ToolResult.failure(
                f"context_type must be one of: {', '.join(CONTEXT_TYPES)}"
            )

        conversation_id = kwargs.get("conversation_id") or self.conversation_id
        board = self.manager.get_board(conversation_id, self.agent_id, self.owner_id)

        if board is None:
            lines: list[str] = []
            items_count = 0
        elif context_type == "entities":
            lines = [
                f"• {category}: {', '.join(values)}"
                for category, values in board.entities.items()
                if values
            ]
            items_count = sum(len(values) for values in board.entities.values())
        else:
            items = {
                "action_items": board.action_items,
                "questions": board.pending_questions,
                "facts": board.key_facts,
            }[context_type]
            lines = [f"• {item}" for item in items]
            items_count = len(items)

        label = context_type.replace("_", " ")
        if not lines:
            return ToolResult(
                success=True,
                output=f"No {label} recorded for this conversation.",
                metadata={"context_type": context_type, "count": 0},
            )

        return ToolResult(
            success=True,
            output=f"{label.capitalize()}:\n" + "\n".join(lines),
            metadata={"context_type": context_type, "count": items_count},
        )
