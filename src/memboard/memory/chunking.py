"""Semantic chunking of conversation turns and chunk scoring."""

from __future__ import annotations

import re
from typing import Sequence

import numpy as np

from .embeddings import cosine_similarity
from .models import ChunkType, Turn
from .tokens import estimate_tokens

IMPERATIVE_VERBS = (
    "add", "book", "call", "cancel", "check", "create", "delete", "email",
    "find", "fix", "make", "order", "plan", "remember", "remind", "schedule",
    "send", "set", "update", "write",
)

_IMPERATIVE_RE = re.compile(
    r"(?:^|[.!?\n]\s*)(?:please\s+)?(?:" + "|".join(IMPERATIVE_VERBS) + r")\b",
    re.IGNORECASE,
)
_ACTION_RE = re.compile(
    r"\b(todo|to-do|need to|needs to|have to|must|will|should|remind|deadline|follow up)\b",
    re.IGNORECASE,
)
_FACT_RE = re.compile(
    r"\b(my|our|his|her|their) \w+(?: \w+)? (is|are|was)\b"
    r"|\bI(?:'m| am| live| work| have| prefer| use)\b",
    re.IGNORECASE,
)
_SENTENCE_RE = re.compile(r"[.!?\n]+\s*")
_CAPITALIZED_RE = re.compile(r"^[A-Z][a-z]+$")

ROLE_WEIGHTS = {
    "user": 0.15,
    "assistant": 0.1,
    "tool": 0.05,
    "system": 0.0,
}


def chunk_text(turns: Sequence[Turn]) -> str:
    return "\n".join(turn.format_line() for turn in turns)


def has_named_entity(text: str) -> bool:
    """Look for a capitalized word that does not open a sentence."""
    for sentence in _SENTENCE_RE.split(text):
        words = [w.strip(",;:\"'()") for w in sentence.split()[1:]]
        if any(_CAPITALIZED_RE.match(w) for w in words):
            return True
    return False


def score_importance(turns: Sequence[Turn], position: int, total: int) -> float:
    """Score how worth recalling a chunk is, in [0, 1].

    Args:
        turns: Turns of the chunk.
        position: 0-based position of the chunk among the chunks built together.
        total: Number of chunks built together.

    Returns:
        Recency, role weight and keyword heuristics combined and capped at 1.
    """
    text = " ".join(turn.content for turn in turns)
    score = 0.3
    score += max((ROLE_WEIGHTS.get(turn.role, 0.0) for turn in turns), default=0.0)

    if "?" in text:
        score += 0.1
    if _IMPERATIVE_RE.search(text):
        score += 0.1
    if has_named_entity(text):
        score += 0.1
    if len(text) > 200:
        score += 0.05

    if total > 0:
        score += 0.2 * (position + 1) / total

    return round(min(1.0, score), 3)


def classify_chunk(turns: Sequence[Turn]) -> ChunkType:
    """Pick the chunk type from the roles and wording of its turns."""
    asked = False
    answered = False
    for turn in turns:
        if turn.role == "user" and "?" in turn.content:
            asked = True
            answered = False
        elif asked and turn.role == "assistant":
            answered = True

    if answered:
        return ChunkType.ANSWER
    if asked:
        return ChunkType.QUESTION

    text = " ".join(turn.content for turn in turns)
    if _IMPERATIVE_RE.search(text) or _ACTION_RE.search(text):
        return ChunkType.ACTION
    if _FACT_RE.search(text):
        return ChunkType.FACT
    return ChunkType.DIALOGUE


class SemanticChunker:
    """Groups consecutive turns into chunks.

    A chunk ends when adding the next turn would pass the token ceiling,
    when the next turn drifts away from the previous one by more than the
    topic-shift distance, or right after a turn that completes a task
    (a tool result or a completion marker match). A single turn larger
    than the ceiling becomes a chunk of its own.
    """

    def __init__(
        self,
        max_tokens: int = 256,
        topic_shift_threshold: float = 0.65,
        completion_markers: Sequence[str] = (),
    ) -> None:
        if max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        self.max_tokens = max_tokens
        self.topic_shift_threshold = topic_shift_threshold
        self._markers = [re.compile(m, re.IGNORECASE) for m in completion_markers]

    def is_completion(self, turn: Turn) -> bool:
        if turn.role == "tool":
            return True
        return any(marker.search(turn.content) for marker in self._markers)

    def is_topic_shift(self, previous: np.ndarray, current: np.ndarray) -> bool:
        distance = 1.0 - cosine_similarity(previous, current)
        return distance > self.topic_shift_threshold

    def split(
        self,
        turns: Sequence[Turn],
        embeddings: Sequence[np.ndarray] | None = None,
    ) -> list[list[Turn]]:
        """Split turns into chunks, keeping their order.

        Args:
            turns: Turns in chronological order.
            embeddings: Optional per-turn embeddings for topic-shift detection.

        Returns:
            Non-empty lists of turns. Concatenated, they equal ``turns``.
        """
        if embeddings is not None and len(embeddings) != len(turns):
            raise ValueError("embeddings must have one entry per turn")

        chunks: list[list[Turn]] = []
        current: list[Turn] = []
        current_tokens = 0

        for i, turn in enumerate(turns):
            turn_tokens = estimate_tokens(turn.format_line())

            if current:
                too_big = current_tokens + turn_tokens > self.max_tokens
                shifted = embeddings is not None and self.is_topic_shift(
                    embeddings[i - 1], embeddings[i]
                )
                if too_big or shifted:
                    chunks.append(current)
                    current, current_tokens = [], 0

            current.append(turn)
            current_tokens += turn_tokens

            if self.is_completion(turn):
                chunks.append(current)
                current, current_tokens = [], 0

        if current:
            chunks.append(current)
        return chunks
