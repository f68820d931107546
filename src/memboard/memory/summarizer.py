"""Background summarization of conversations into the summary board."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from groq import AsyncGroq

from ..config import MemoryConfig
from ..logging import JSONLLogger, get_logger
from .chunking import SemanticChunker, chunk_text
from .manager import WorkingMemoryManager
from .models import (
    ConversationSummary,
    SummaryBoard,
    SummaryResult,
    Turn,
    WorkingMemoryChunk,
    utcnow,
)
from .store import MemoryStore
from .tokens import truncate_to_tokens

logger = logging.getLogger(__name__)

T = TypeVar("T")

RESPONSE_FIELDS = """{
  "summary": "<consolidated summary of the whole conversation so far>",
  "key_facts": ["<stable fact>", ...],
  "entities": {"people": [], "places": [], "organizations": [], "dates": []},
  "topics": ["<topic>", ...],
  "action_items": ["<open task>", ...],
  "pending_questions": ["<unanswered question>", ...]
}"""

INCREMENTAL_PROMPT = """You maintain the running summary of a conversation between a user and an AI agent.
You receive the previous summary, the facts already recorded, and the new messages since the last update.

Rules:
- UPDATE the summary so it covers the previous summary and the new messages in one consolidated text.
- PRESERVE important details from the previous summary.
- CONSOLIDATE repeated information instead of listing it twice.
- MAINTAIN chronological order of events.
- key_facts: only NEW stable facts from the new messages, one short sentence each.
- action_items and pending_questions: the complete current lists, dropping items that are done or answered.
- Keep the summary under {max_words} words.

Return ONLY valid JSON:
"""

SECTION_PROMPT = """Summarize this part of a conversation between a user and an AI agent.
Capture decisions, stable facts, open tasks and unanswered questions.
Keep the summary under {max_words} words.

Return ONLY valid JSON:
"""

COMBINE_PROMPT = """You receive summaries of consecutive parts of one conversation, in order.
Combine them into a single summary of the whole conversation.

Rules:
- MAINTAIN chronological order.
- CONSOLIDATE repeated facts, topics and entities.
- action_items and pending_questions: keep only items still open at the end.
- Keep the summary under {max_words} words.

Return ONLY valid JSON:
"""

_TRAILING_PUNCTUATION = ".!?;:,"


class CycleStatus(Enum):
    """How a summarization cycle ended."""

    COMPLETED = "completed"
    SKIPPED_LOCKED = "skipped_locked"
    SKIPPED_EMPTY = "skipped_empty"
    FAILED = "failed"
    CONFLICT = "conflict"


@dataclass
class CycleResult:
    """Outcome of one summarization cycle."""

    status: CycleStatus
    messages_processed: int = 0
    chunks_created: int = 0
    archived_summary_id: str | None = None
    structured: bool = True
    error: str | None = None


class ExternalCallError(Exception):
    """An LLM or embedding call kept failing after every retry."""


async def call_with_retries(
    func: Callable[[], Awaitable[T]],
    retry_delays: Sequence[float],
    description: str,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await func, retrying after each delay in retry_delays.

    Raises:
        ExternalCallError: When the last attempt fails too.
    """
    attempts = len(retry_delays) + 1
    for attempt, delay in enumerate([*retry_delays, None], start=1):
        try:
            return await func()
        except Exception as e:
            if delay is None:
                raise ExternalCallError(
                    f"{description} failed after {attempts} attempts: {e}"
                ) from e
            logger.warning(
                "%s failed (attempt %d/%d): %s", description, attempt, attempts, e
            )
            await sleep(delay)


def normalize_fact(text: str) -> str:
    """Comparison key for facts: case-folded, single-spaced, no trailing punctuation."""
    collapsed = " ".join(text.split()).casefold()
    return collapsed.rstrip(_TRAILING_PUNCTUATION + " ")


def merge_facts(existing: list[str], new: list[str]) -> list[str]:
    """Append new facts that are not already present after normalization."""
    merged = list(existing)
    seen = {normalize_fact(fact) for fact in existing}
    for fact in new:
        key = normalize_fact(fact)
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append(fact.strip())
    return merged


def merge_entities(
    existing: dict[str, list[str]], new: dict[str, list[str]]
) -> dict[str, list[str]]:
    merged = {category: list(values) for category, values in existing.items()}
    for category, values in new.items():
        merged[category] = merge_facts(merged.get(category, []), values)
    return merged


def strip_code_fences(content: str) -> str:
    """Remove a surrounding markdown code block, if any."""
    text = content.strip()
    if not text.startswith("```"):
        return text
    lines = [line for line in text.split("\n") if not line.startswith("```")]
    return "\n".join(lines)


def _string_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    items = [str(item).strip() for item in value if isinstance(item, (str, int, float))]
    return [item for item in items if item]


def parse_summary_response(content: str) -> SummaryResult | None:
    """Parse the model's JSON answer.

    Args:
        content: The raw LLM response.

    Returns:
        The structured result, or None if the answer is malformed.
    """
    try:
        data = json.loads(strip_code_fences(content))
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse summary response: %s", e)
        return None

    if not isinstance(data, dict):
        logger.warning("Invalid summary response: expected a JSON object")
        return None

    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        logger.warning("Invalid summary response: missing 'summary'")
        return None

    entities: dict[str, list[str]] = {}
    raw_entities = data.get("entities")
    if isinstance(raw_entities, dict):
        for category, values in raw_entities.items():
            cleaned = _string_list(values)
            if cleaned:
                entities[str(category)] = cleaned

    return SummaryResult(
        summary=summary.strip(),
        key_facts=_string_list(data.get("key_facts")) or [],
        entities=entities,
        topics=_string_list(data.get("topics")) or [],
        action_items=_string_list(data.get("action_items")) if "action_items" in data else None,
        pending_questions=(
            _string_list(data.get("pending_questions")) if "pending_questions" in data else None
        ),
    )


def fallback_summary(previous: str, turns: Sequence[Turn], max_tokens: int) -> SummaryResult:
    """Plain-text summary used when the model's answer can't be parsed.

    The previous summary and the transcript are kept, cut from the front
    so the newest messages survive.
    """
    parts = [previous.strip(), chunk_text(turns)]
    text = "\n".join(part for part in parts if part)
    return SummaryResult(
        summary=truncate_to_tokens(text, max_tokens, keep="tail"),
        structured=False,
    )


@dataclass
class _Lease:
    token: str = field(default_factory=lambda: uuid.uuid4().hex)


class Summarizer:
    """Folds new conversation turns into the summary board.

    One cycle holds the conversation's lease from start to finish, calls
    the LLM and the embedder outside any transaction, then commits the
    board, the optional archived summary and the new chunks at once.
    """

    def __init__(
        self,
        llm_client: AsyncGroq,
        store: MemoryStore,
        manager: WorkingMemoryManager,
        config: MemoryConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        json_logger: JSONLLogger | None = None,
    ) -> None:
        """Initialize the summarizer.

        Args:
            llm_client: The Groq client for LLM calls.
            store: The MemoryStore for persistence.
            manager: Builds and indexes working memory chunks.
            config: Memory configuration.
            clock: Source of the current time.
            sleep: Awaitable used between retries.
            json_logger: Structured event log, the global one if None.
        """
        self.client = llm_client
        self.store = store
        self.manager = manager
        self.config = config or MemoryConfig()
        self.clock = clock
        self.sleep = sleep
        self.json_logger = json_logger
        self.section_chunker = SemanticChunker(
            max_tokens=self.config.full_chunk_max_tokens,
            topic_shift_threshold=self.config.topic_shift_threshold,
            completion_markers=(),
        )

    @property
    def events(self) -> JSONLLogger:
        return self.json_logger or get_logger()

    @property
    def max_words(self) -> int:
        return max(1, self.config.max_summary_tokens * 3 // 4)

    async def run_cycle(
        self,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
        full: bool = False,
    ) -> CycleResult:
        """Run one summarization cycle for a conversation.

        Args:
            conversation_id: The conversation identifier.
            agent_id: The agent identifier.
            owner_id: The owner identifier.
            full: Recompute from the whole history instead of the backlog.

        Returns:
            The cycle outcome. External failures are reported as FAILED,
            never raised.
        """
        started = time.monotonic()
        self.events.log_cycle_start(conversation_id, agent_id=agent_id, full=full)

        lease = _Lease()
        acquired = self.store.acquire_lease(
            conversation_id,
            agent_id,
            owner_id,
            lease.token,
            self.clock(),
            timedelta(seconds=self.config.lock_timeout_seconds),
            update_frequency=self.config.default_update_frequency,
        )
        if not acquired:
            logger.info("Summarization already running for %s, skipping", conversation_id)
            result = CycleResult(status=CycleStatus.SKIPPED_LOCKED)
            self._log_result(conversation_id, agent_id, result, started)
            return result

        try:
            result = await self._run_locked(conversation_id, agent_id, owner_id, lease, full)
        except ExternalCallError as e:
            logger.warning("Summarization of %s failed: %s", conversation_id, e)
            result = CycleResult(status=CycleStatus.FAILED, error=str(e))
        finally:
            self.store.release_lease(conversation_id, lease.token)

        self._log_result(conversation_id, agent_id, result, started)
        return result

    def _log_result(
        self, conversation_id: str, agent_id: str, result: CycleResult, started: float
    ) -> None:
        self.events.log_cycle_result(
            conversation_id,
            result.status.value,
            agent_id=agent_id,
            duration_ms=(time.monotonic() - started) * 1000,
            messages_processed=result.messages_processed,
            chunks_created=result.chunks_created,
            error=result.error,
            archived_summary_id=result.archived_summary_id,
        )

    async def _run_locked(
        self,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
        lease: _Lease,
        full: bool,
    ) -> CycleResult:
        board = self.store.get_board(conversation_id)
        if board is None:
            raise RuntimeError(f"Board for {conversation_id} vanished while leased")

        if full:
            turns = self.store.get_all_turns(conversation_id)
        else:
            turns = self.store.get_turns_after(
                conversation_id, board.message_count, limit=self.config.max_batch_turns
            )
        if not turns:
            return CycleResult(status=CycleStatus.SKIPPED_EMPTY)

        if full:
            summary_result = await self._summarize_full(turns)
        else:
            summary_result = await self._summarize_incremental(board, turns)

        updated = self._merge(board, summary_result, turns, full)
        now = self.clock()

        archived = None
        if full or updated.cycles_since_archive + 1 >= self.config.archive_every_n_cycles:
            archived = await self._build_archive(updated, full, now)
            updated.cycles_since_archive = 0
        else:
            updated.cycles_since_archive += 1

        folded = [turn for turn in turns if turn.seq is not None and turn.seq > board.message_count]
        chunks = await call_with_retries(
            lambda: self.manager.update_working_memory(
                conversation_id,
                agent_id,
                owner_id,
                folded,
                start_index=board.next_chunk_index,
                now=now,
            ),
            self.config.retry_delays,
            "Chunk embedding",
            sleep=self.sleep,
        )
        updated.next_chunk_index = board.next_chunk_index + len(chunks)

        if not self._commit(updated, lease.token, archived, chunks, now):
            current = self.store.get_board(conversation_id)
            if current is None or current.message_count != board.message_count:
                logger.warning(
                    "Board of %s advanced during the cycle, abandoning", conversation_id
                )
                return CycleResult(status=CycleStatus.CONFLICT, error="write conflict")

            lease.token = uuid.uuid4().hex
            reacquired = self.store.acquire_lease(
                conversation_id,
                agent_id,
                owner_id,
                lease.token,
                self.clock(),
                timedelta(seconds=self.config.lock_timeout_seconds),
            )
            if not reacquired or not self._commit(updated, lease.token, archived, chunks, now):
                return CycleResult(status=CycleStatus.CONFLICT, error="write conflict")

        if archived is not None:
            self.manager.index_summary(archived)
        self.manager.index_chunks(chunks)

        return CycleResult(
            status=CycleStatus.COMPLETED,
            messages_processed=len(turns),
            chunks_created=len(chunks),
            archived_summary_id=archived.id if archived else None,
            structured=summary_result.structured,
        )

    def _commit(
        self,
        board: SummaryBoard,
        token: str,
        archived: ConversationSummary | None,
        chunks: list[WorkingMemoryChunk],
        now: datetime,
    ) -> bool:
        with self.store.transaction():
            if not self.store.save_board(board, token, now):
                return False
            if archived is not None:
                self.store.insert_summary(archived)
            self.store.insert_chunks(chunks)
        return True

    def _merge(
        self,
        board: SummaryBoard,
        result: SummaryResult,
        turns: list[Turn],
        full: bool,
    ) -> SummaryBoard:
        """Apply a summarization result to a copy of the board."""
        summary = truncate_to_tokens(result.summary, self.config.max_summary_tokens)
        last_seq = max(turn.seq or 0 for turn in turns)

        if full:
            return replace(
                board,
                current_summary=summary,
                key_facts=merge_facts([], result.key_facts),
                action_items=list(result.action_items or []),
                pending_questions=list(result.pending_questions or []),
                entities=merge_entities({}, result.entities),
                topics=merge_facts([], result.topics),
                message_count=max(board.message_count, last_seq),
            )

        return replace(
            board,
            current_summary=summary,
            key_facts=merge_facts(board.key_facts, result.key_facts),
            action_items=(
                list(result.action_items)
                if result.action_items is not None
                else list(board.action_items)
            ),
            pending_questions=(
                list(result.pending_questions)
                if result.pending_questions is not None
                else list(board.pending_questions)
            ),
            entities=merge_entities(board.entities, result.entities),
            topics=merge_facts(board.topics, result.topics),
            message_count=max(board.message_count, last_seq),
        )

    async def _build_archive(
        self, board: SummaryBoard, full: bool, now: datetime
    ) -> ConversationSummary:
        [embedding] = await call_with_retries(
            lambda: self.manager.embedder.embed([board.current_summary]),
            self.config.retry_delays,
            "Summary embedding",
            sleep=self.sleep,
        )
        first = self.store.get_turns_after(board.conversation_id, 0, limit=1)
        last = self.store.get_turns_after(board.conversation_id, board.message_count - 1, limit=1)
        return ConversationSummary(
            id=uuid.uuid4().hex,
            conversation_id=board.conversation_id,
            agent_id=board.agent_id,
            owner_id=board.owner_id,
            summary_text=board.current_summary,
            key_facts=list(board.key_facts),
            entities={k: list(v) for k, v in board.entities.items()},
            topics=list(board.topics),
            message_count=board.message_count,
            message_range_start=1,
            message_range_end=board.message_count,
            is_full=full,
            conversation_start=first[0].created_at if first else None,
            conversation_end=last[0].created_at if last else None,
            embedding=embedding,
            created_at=now,
        )

    def _prompt(self, template: str) -> str:
        return template.format(max_words=self.max_words) + RESPONSE_FIELDS

    async def _complete(self, template: str, user_content: str) -> str:
        system_prompt = self._prompt(template)

        async def call() -> str:
            response = await self.client.chat.completions.create(
                model=self.config.llm_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ],
                temperature=self.config.llm_temperature,
                response_format={"type": "json_object"},
            )
            return response.choices[0].message.content or ""

        return await call_with_retries(
            call, self.config.retry_delays, "Summary completion", sleep=self.sleep
        )

    async def _summarize_incremental(
        self, board: SummaryBoard, turns: list[Turn]
    ) -> SummaryResult:
        facts = "\n".join(f"- {fact}" for fact in board.key_facts) or "(none)"
        user_content = (
            f"Previous summary:\n{board.current_summary or '(none)'}\n\n"
            f"Recorded facts:\n{facts}\n\n"
            f"New messages:\n{chunk_text(turns)}"
        )
        content = await self._complete(INCREMENTAL_PROMPT, user_content)
        result = parse_summary_response(content)
        if result is None:
            return fallback_summary(
                board.current_summary, turns, self.config.max_summary_tokens
            )
        return result

    async def _summarize_full(self, turns: list[Turn]) -> SummaryResult:
        turn_vectors = await call_with_retries(
            lambda: self.manager.embedder.embed([turn.content for turn in turns]),
            self.config.retry_delays,
            "Turn embedding",
            sleep=self.sleep,
        )
        sections = self.section_chunker.split(turns, turn_vectors)

        section_results = []
        for section in sections:
            content = await self._complete(
                SECTION_PROMPT,
                f"Messages:\n{chunk_text(section)}",
            )
            parsed = parse_summary_response(content)
            section_results.append(
                parsed or fallback_summary("", section, self.config.max_summary_tokens)
            )

        if len(section_results) == 1:
            return section_results[0]

        parts = []
        for number, result in enumerate(section_results, start=1):
            parts.append(
                f"Part {number}:\n"
                + json.dumps(
                    {
                        "summary": result.summary,
                        "key_facts": result.key_facts,
                        "entities": result.entities,
                        "topics": result.topics,
                        "action_items": result.action_items or [],
                        "pending_questions": result.pending_questions or [],
                    }
                )
            )
        content = await self._complete(COMBINE_PROMPT, "\n\n".join(parts))
        combined = parse_summary_response(content)
        if combined is not None:
            return combined

        joined = "\n".join(result.summary for result in section_results)
        facts: list[str] = []
        entities: dict[str, list[str]] = {}
        for result in section_results:
            facts = merge_facts(facts, result.key_facts)
            entities = merge_entities(entities, result.entities)
        return SummaryResult(
            summary=truncate_to_tokens(joined, self.config.max_summary_tokens, keep="tail"),
            key_facts=facts,
            entities=entities,
            structured=False,
        )
