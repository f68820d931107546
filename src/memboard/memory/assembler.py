"""Token-budgeted assembly of the LLM context window."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field

from ..config import MemoryConfig
from ..logging import JSONLLogger, get_logger
from .manager import WorkingMemoryManager
from .models import SearchHit, Turn
from .store import MemoryStore
from .tokens import estimate_message_tokens

logger = logging.getLogger(__name__)

TIER_WORKING_MEMORY = "working_memory"
TIER_HISTORY = "history"
TIER_RECALL = "recall"


@dataclass
class AssembledContext:
    """Messages for one LLM call plus how the budget was spent."""

    messages: list[dict[str, str]]
    tokens_used: int
    fixed_tokens: int
    tiers: list[str] = field(default_factory=list)
    history_turns: int = 0
    minimal: bool = False


def _to_message(turn: Turn) -> dict[str, str]:
    # The chat API rejects tool messages without a tool_call_id.
    role = "assistant" if turn.role == "tool" else turn.role
    return {"role": role, "content": turn.content}


class ContextAssembler:
    """Builds the message list for a user turn within the token budget.

    Tiers are filled in priority order (working memory, then recent
    history, then recall hits) from whatever the budget leaves after the
    fixed parts. It never waits on background work: a conversation that
    was never summarized simply gets no working memory block.
    """

    def __init__(
        self,
        store: MemoryStore,
        manager: WorkingMemoryManager,
        config: MemoryConfig | None = None,
        json_logger: JSONLLogger | None = None,
    ) -> None:
        self.store = store
        self.manager = manager
        self.config = config or MemoryConfig()
        self.json_logger = json_logger

    @property
    def events(self) -> JSONLLogger:
        return self.json_logger or get_logger()

    def assemble(
        self,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
        user_turn: str,
        system_instructions: str = "",
        extra_context: str | None = None,
        recall_hits: list[SearchHit] | None = None,
        token_budget: int | None = None,
    ) -> AssembledContext:
        """Assemble the context for one user turn.

        Args:
            conversation_id: The conversation identifier.
            agent_id: The agent identifier.
            owner_id: The owner identifier.
            user_turn: The current user message.
            system_instructions: Agent system prompt.
            extra_context: Long-term memory or tool context supplied by the caller.
            recall_hits: Archival search results the agent asked for.
            token_budget: Overrides the configured budget.

        Returns:
            Ordered messages: system, extra context, working memory, history,
            recall, then the user turn.
        """
        budget = token_budget or self.config.context_token_budget

        head: list[dict[str, str]] = []
        if system_instructions:
            head.append({"role": "system", "content": system_instructions})
        if extra_context:
            head.append({"role": "system", "content": extra_context})
        user_message = {"role": "user", "content": user_turn}

        fixed = sum(estimate_message_tokens(m["content"]) for m in head)
        fixed += estimate_message_tokens(user_turn)

        try:
            result = self._assemble_tiers(
                conversation_id,
                agent_id,
                user_turn,
                head,
                user_message,
                fixed,
                budget,
                recall_hits,
            )
        except sqlite3.Error as e:
            logger.warning("Memory store unavailable for %s: %s", conversation_id, e)
            result = AssembledContext(
                messages=[*head, user_message],
                tokens_used=fixed,
                fixed_tokens=fixed,
                minimal=True,
            )

        self.events.log_context_assembled(
            conversation_id,
            result.tokens_used,
            agent_id=agent_id,
            tiers=result.tiers,
            minimal=result.minimal,
        )
        return result

    def _assemble_tiers(
        self,
        conversation_id: str,
        agent_id: str,
        user_turn: str,
        head: list[dict[str, str]],
        user_message: dict[str, str],
        fixed: int,
        budget: int,
        recall_hits: list[SearchHit] | None,
    ) -> AssembledContext:
        remaining = max(0, budget - fixed)
        tiers: list[str] = []

        working_block: dict[str, str] | None = None
        context = self.manager.get_working_context(conversation_id, agent_id)
        if not context.is_empty:
            text = self.manager.format_context_block(context)
            cost = estimate_message_tokens(text)
            if cost <= remaining:
                working_block = {"role": "system", "content": text}
                remaining -= cost
                tiers.append(TIER_WORKING_MEMORY)

        history_size = self.config.history_size_for(agent_id)
        if working_block is None:
            history_size *= self.config.fallback_history_multiplier

        recent = self.store.get_recent_turns(conversation_id, history_size + 1)
        if recent and recent[-1].role == "user" and recent[-1].content == user_turn:
            recent = recent[:-1]
        recent = recent[-history_size:] if history_size else []

        history: list[dict[str, str]] = []
        for turn in reversed(recent):
            cost = estimate_message_tokens(turn.content)
            if cost > remaining:
                break
            history.append(_to_message(turn))
            remaining -= cost
        history.reverse()
        if history:
            tiers.append(TIER_HISTORY)

        recall_block: dict[str, str] | None = None
        if recall_hits:
            text = self.manager.format_hits_block(recall_hits)
            cost = estimate_message_tokens(text)
            if cost <= remaining:
                recall_block = {"role": "system", "content": text}
                remaining -= cost
                tiers.append(TIER_RECALL)

        messages = list(head)
        if working_block is not None:
            messages.append(working_block)
        messages.extend(history)
        if recall_block is not None:
            messages.append(recall_block)
        messages.append(user_message)

        return AssembledContext(
            messages=messages,
            tokens_used=fixed + (max(0, budget - fixed) - remaining),
            fixed_tokens=fixed,
            tiers=tiers,
            history_turns=len(history),
        )
