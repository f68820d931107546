"""Data models for the memory system."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import numpy as np


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class ChunkType(Enum):
    """Kinds of working memory chunks."""

    DIALOGUE = "dialogue"
    ACTION = "action"
    FACT = "fact"
    QUESTION = "question"
    ANSWER = "answer"


@dataclass(frozen=True)
class Turn:
    """A single stored conversation message.

    Attributes:
        conversation_id: Conversation the turn belongs to.
        agent_id: Agent taking part in the conversation.
        owner_id: User who owns the conversation.
        role: 'user', 'assistant', 'system' or 'tool'.
        content: Message text.
        seq: 1-based position within the conversation, None before storage.
        message_id: External message id, used to ignore duplicate ingestion.
        created_at: When the message was produced.
    """

    conversation_id: str
    agent_id: str
    owner_id: str
    role: str
    content: str
    seq: int | None = None
    message_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def format_line(self) -> str:
        return f"[{self.role}]: {self.content}"


@dataclass
class SummaryBoard:
    """The live, mutable summarization scratchpad of one conversation.

    Only the summarizer holding the lease may write it. ``message_count``
    is the highest turn seq folded into the summary so far.
    """

    conversation_id: str
    agent_id: str
    owner_id: str
    current_summary: str = ""
    key_facts: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    pending_questions: list[str] = field(default_factory=list)
    entities: dict[str, list[str]] = field(default_factory=dict)
    topics: list[str] = field(default_factory=list)
    context_notes: str = ""
    message_count: int = 0
    update_frequency: int = 5
    last_updated: datetime | None = None
    version: int = 0
    lease_token: str | None = None
    in_progress_since: datetime | None = None
    cycles_since_archive: int = 0
    next_chunk_index: int = 0


@dataclass(frozen=True)
class ConversationSummary:
    """An archived, immutable summary of (part of) a conversation."""

    id: str
    conversation_id: str
    agent_id: str
    owner_id: str
    summary_text: str
    key_facts: list[str] = field(default_factory=list)
    entities: dict[str, list[str]] = field(default_factory=dict)
    topics: list[str] = field(default_factory=list)
    message_count: int = 0
    message_range_start: int = 0
    message_range_end: int = 0
    is_full: bool = False
    conversation_start: datetime | None = None
    conversation_end: datetime | None = None
    embedding: np.ndarray | None = field(default=None, compare=False, repr=False)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class WorkingMemoryChunk:
    """A short-lived, embedded fragment of recent dialogue."""

    id: str
    conversation_id: str
    agent_id: str
    owner_id: str
    chunk_text: str
    chunk_index: int
    source_message_ids: list[str] = field(default_factory=list)
    importance_score: float = 0.5
    chunk_type: ChunkType = ChunkType.DIALOGUE
    embedding: np.ndarray | None = field(default=None, compare=False, repr=False)
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass
class SummaryResult:
    """Structured output of one summarization call."""

    summary: str
    key_facts: list[str] = field(default_factory=list)
    entities: dict[str, list[str]] = field(default_factory=dict)
    topics: list[str] = field(default_factory=list)
    action_items: list[str] | None = None
    pending_questions: list[str] | None = None
    structured: bool = True


@dataclass
class WorkingContext:
    """Read-only view of a conversation's board for the request path."""

    conversation_id: str
    summary: str = ""
    facts: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    pending_questions: list[str] = field(default_factory=list)
    context_notes: str = ""
    message_count: int = 0
    update_frequency: int = 5
    last_updated: datetime | None = None
    chunks: list[WorkingMemoryChunk] = field(default_factory=list)

    @classmethod
    def empty(cls, conversation_id: str) -> WorkingContext:
        """The value returned for conversations without a board."""
        return cls(conversation_id=conversation_id)

    @classmethod
    def from_board(cls, board: SummaryBoard) -> WorkingContext:
        return cls(
            conversation_id=board.conversation_id,
            summary=board.current_summary,
            facts=list(board.key_facts),
            action_items=list(board.action_items),
            pending_questions=list(board.pending_questions),
            context_notes=board.context_notes,
            message_count=board.message_count,
            update_frequency=board.update_frequency,
            last_updated=board.last_updated,
        )

    @property
    def is_empty(self) -> bool:
        return not (
            self.summary
            or self.facts
            or self.action_items
            or self.pending_questions
            or self.context_notes
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "summary": self.summary,
            "facts": list(self.facts),
            "action_items": list(self.action_items),
            "pending_questions": list(self.pending_questions),
            "context_notes": self.context_notes,
            "message_count": self.message_count,
            "update_frequency": self.update_frequency,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass(frozen=True)
class SearchHit:
    """A ranked recall result from chunks or archived summaries."""

    kind: str
    record_id: str
    conversation_id: str
    text: str
    similarity: float
    created_at: datetime | None = None


@dataclass(frozen=True)
class TriggerState:
    """Per-conversation dispatch counter."""

    conversation_id: str
    agent_id: str
    owner_id: str
    turns_since_dispatch: int = 0
    update_frequency: int = 5


@dataclass(frozen=True)
class DispatchEvent:
    """A queued request to run a summarization cycle."""

    id: int
    conversation_id: str
    agent_id: str
    owner_id: str
    full: bool = False
    status: str = "pending"
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    claimed_at: datetime | None = None
