"""Working memory manager: board reads, chunk building and recall."""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable

from ..config import MemoryConfig
from ..logging import JSONLLogger, get_logger
from .chunking import SemanticChunker, chunk_text, classify_chunk, score_importance
from .embeddings import Embedder, IndexScope, VectorIndex
from .models import (
    ConversationSummary,
    SearchHit,
    SummaryBoard,
    Turn,
    WorkingContext,
    WorkingMemoryChunk,
    utcnow,
)
from .store import MemoryStore

logger = logging.getLogger(__name__)

RECENT_CHUNKS_IN_CONTEXT = 5


def _owned_by(
    record: SummaryBoard | ConversationSummary,
    agent_id: str | None,
    owner_id: str | None,
) -> bool:
    if agent_id is not None and record.agent_id != agent_id:
        return False
    if owner_id is not None and record.owner_id != owner_id:
        return False
    return True


class WorkingMemoryManager:
    """Coordinates the board, working memory chunks and the vector index.

    This is the read side of the memory system. The request path uses
    ``get_working_context`` and the search methods; the summarizer uses
    ``update_working_memory`` to build chunks and ``index_*`` after commit.
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        index: VectorIndex,
        config: MemoryConfig | None = None,
        chunker: SemanticChunker | None = None,
        clock: Callable[[], datetime] = utcnow,
        json_logger: JSONLLogger | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            store: The MemoryStore for persistence.
            embedder: Produces embeddings for chunks and queries.
            index: Vector index shared with the summarizer.
            config: Memory configuration.
            chunker: Chunker for newly folded turns, built from config if None.
            clock: Source of the current time.
            json_logger: Structured event log, the global one if None.
        """
        self.store = store
        self.embedder = embedder
        self.index = index
        self.config = config or MemoryConfig()
        self.chunker = chunker or SemanticChunker(
            max_tokens=self.config.chunk_max_tokens,
            topic_shift_threshold=self.config.topic_shift_threshold,
            completion_markers=self.config.completion_markers,
        )
        self.clock = clock
        self.json_logger = json_logger
        self._synced_seq = 0

    @property
    def events(self) -> JSONLLogger:
        return self.json_logger or get_logger()

    def get_working_context(
        self,
        conversation_id: str,
        agent_id: str | None = None,
        include_chunks: bool = False,
    ) -> WorkingContext:
        """Read the committed board of a conversation.

        Args:
            conversation_id: The conversation identifier.
            agent_id: Agent whose chunks to include.
            include_chunks: Attach the most recent unexpired chunks.

        Returns:
            A snapshot of the board, or an empty context if none exists yet.
        """
        board = self.store.get_board(conversation_id)
        if board is None:
            return WorkingContext.empty(conversation_id)

        context = WorkingContext.from_board(board)
        if include_chunks:
            context.chunks = self.store.get_recent_chunks(
                conversation_id,
                agent_id or board.agent_id,
                self.clock(),
                limit=RECENT_CHUNKS_IN_CONTEXT,
            )
        return context

    async def update_working_memory(
        self,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
        turns: list[Turn],
        start_index: int,
        now: datetime | None = None,
    ) -> list[WorkingMemoryChunk]:
        """Build embedded chunk records for newly folded turns.

        Nothing is written: the summarizer commits the records together
        with the board.

        Args:
            conversation_id: The conversation identifier.
            agent_id: The agent identifier.
            owner_id: The owner identifier.
            turns: Newly folded turns in chronological order.
            start_index: chunk_index of the first chunk.
            now: Creation time, the clock if None.

        Returns:
            Chunks with consecutive chunk_index values from start_index.
        """
        if not turns:
            return []

        now = now or self.clock()
        turn_vectors = await self.embedder.embed([turn.content for turn in turns])
        groups = self.chunker.split(turns, turn_vectors)
        texts = [chunk_text(group) for group in groups]
        vectors = await self.embedder.embed(texts)
        expires_at = now + timedelta(days=self.config.chunk_ttl_days)

        chunks = []
        for position, (group, text, vector) in enumerate(zip(groups, texts, vectors)):
            chunks.append(
                WorkingMemoryChunk(
                    id=uuid.uuid4().hex,
                    conversation_id=conversation_id,
                    agent_id=agent_id,
                    owner_id=owner_id,
                    chunk_text=text,
                    chunk_index=start_index + position,
                    source_message_ids=[
                        turn.message_id or str(turn.seq) for turn in group
                    ],
                    importance_score=score_importance(group, position, len(groups)),
                    chunk_type=classify_chunk(group),
                    embedding=vector,
                    created_at=now,
                    expires_at=expires_at,
                )
            )
        return chunks

    def index_chunks(self, chunks: list[WorkingMemoryChunk]) -> None:
        for chunk in chunks:
            if chunk.embedding is None:
                continue
            self.index.index(
                chunk.id,
                chunk.embedding,
                IndexScope(
                    kind="chunk",
                    agent_id=chunk.agent_id,
                    conversation_id=chunk.conversation_id,
                    owner_id=chunk.owner_id,
                ),
            )

    def index_summary(self, summary: ConversationSummary) -> None:
        if summary.embedding is None:
            return
        self.index.index(
            summary.id,
            summary.embedding,
            IndexScope(
                kind="summary",
                agent_id=summary.agent_id,
                conversation_id=summary.conversation_id,
                owner_id=summary.owner_id,
            ),
        )

    def sync_index(self, now: datetime | None = None) -> int:
        """Load embeddings committed since the last sync into the index.

        Other processes (a separate worker, for one) commit summaries and
        chunks to the same store; this picks them up through the index feed.

        Returns:
            Number of entries loaded.
        """
        upto = self.store.last_index_seq()
        if upto <= self._synced_seq:
            return 0

        now = now or self.clock()
        after = self._synced_seq
        count = self.index.load(self.store.iter_summary_vectors(after, upto))
        count += self.index.load(self.store.iter_chunk_vectors(now, after, upto))
        self._synced_seq = upto
        return count

    def warm_index(self, now: datetime | None = None) -> int:
        """Load every persisted summary and chunk embedding into the index."""
        self._synced_seq = 0
        count = self.sync_index(now)
        logger.info("Loaded %d embeddings into the index", count)
        return count

    async def search_working_memory(
        self,
        agent_id: str,
        query: str,
        limit: int = 5,
        min_similarity: float | None = None,
        conversation_id: str | None = None,
        owner_id: str | None = None,
        now: datetime | None = None,
    ) -> list[tuple[WorkingMemoryChunk, float]]:
        """Find unexpired chunks similar to a query.

        Args:
            agent_id: Only chunks of this agent are searched.
            query: Free-text query.
            limit: Maximum results.
            min_similarity: Similarity floor, the configured one if None.
            conversation_id: Optionally restrict to one conversation.
            owner_id: Optionally restrict to one owner.
            now: Expiry reference time, the clock if None.

        Returns:
            (chunk, similarity) pairs in descending similarity. Empty if the
            index or the embedder is unavailable.
        """
        if limit <= 0 or not query.strip():
            return []

        floor = self.config.similarity_floor if min_similarity is None else min_similarity
        scope = IndexScope(
            kind="chunk",
            agent_id=agent_id,
            conversation_id=conversation_id,
            owner_id=owner_id,
        )
        matches = await self._search_index(query, scope, limit * 3, floor)
        if not matches:
            return []

        now = now or self.clock()
        found = self.store.get_chunks([item_id for item_id, _ in matches])

        results: list[tuple[WorkingMemoryChunk, float]] = []
        stale: list[str] = []
        for item_id, similarity in matches:
            chunk = found.get(item_id)
            if chunk is None or chunk.is_expired(now):
                stale.append(item_id)
                continue
            if len(results) < limit:
                results.append((chunk, similarity))

        if stale:
            self.store.delete_chunks(stale)
            self.index.remove(stale)
        return results

    async def search_conversation_history(
        self,
        agent_id: str,
        query: str,
        owner_id: str | None = None,
        time_range: tuple[datetime | None, datetime | None] | None = None,
        limit: int = 5,
        conversation_id: str | None = None,
        now: datetime | None = None,
    ) -> list[SearchHit]:
        """Search archived summaries and unexpired chunks together.

        Args:
            agent_id: Only records of this agent are searched.
            query: Free-text query.
            owner_id: Optionally restrict to one owner.
            time_range: (start, end) bounds on record creation, either may be None.
            limit: Maximum results.
            conversation_id: Optionally restrict to one conversation.
            now: Expiry reference time, the clock if None.

        Returns:
            Hits from both sources merged in descending similarity.
        """
        if limit <= 0 or not query.strip():
            return []

        start, end = time_range or (None, None)
        floor = self.config.similarity_floor

        def in_range(created_at: datetime | None) -> bool:
            if created_at is None:
                return start is None and end is None
            if start is not None and created_at < start:
                return False
            if end is not None and created_at > end:
                return False
            return True

        hits: list[SearchHit] = []

        summary_scope = IndexScope(
            kind="summary",
            agent_id=agent_id,
            conversation_id=conversation_id,
            owner_id=owner_id,
        )
        matches = await self._search_index(query, summary_scope, limit * 3, floor)
        summaries = self.store.get_summaries([item_id for item_id, _ in matches])
        for item_id, similarity in matches:
            summary = summaries.get(item_id)
            if summary is None or not in_range(summary.created_at):
                continue
            hits.append(
                SearchHit(
                    kind="summary",
                    record_id=summary.id,
                    conversation_id=summary.conversation_id,
                    text=summary.summary_text,
                    similarity=similarity,
                    created_at=summary.created_at,
                )
            )

        chunk_pairs = await self.search_working_memory(
            agent_id,
            query,
            limit=limit * 3,
            min_similarity=floor,
            conversation_id=conversation_id,
            owner_id=owner_id,
            now=now,
        )
        for chunk, similarity in chunk_pairs:
            if not in_range(chunk.created_at):
                continue
            hits.append(
                SearchHit(
                    kind="chunk",
                    record_id=chunk.id,
                    conversation_id=chunk.conversation_id,
                    text=chunk.chunk_text,
                    similarity=similarity,
                    created_at=chunk.created_at,
                )
            )

        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return hits[:limit]

    async def _search_index(
        self, query: str, scope: IndexScope, k: int, floor: float
    ) -> list[tuple[str, float]]:
        try:
            self.sync_index()
            [query_vector] = await self.embedder.embed([query])
            return self.index.search(query_vector, scope, k=k, min_similarity=floor)
        except Exception as e:
            logger.warning("Similarity search unavailable: %s", e)
            return []

    def get_board(
        self,
        conversation_id: str,
        agent_id: str | None = None,
        owner_id: str | None = None,
    ) -> SummaryBoard | None:
        """Read a board, None if it is missing or belongs to another agent or owner."""
        board = self.store.get_board(conversation_id)
        if board is None or not _owned_by(board, agent_id, owner_id):
            return None
        return board

    def get_summary(
        self,
        summary_id: str,
        agent_id: str | None = None,
        owner_id: str | None = None,
    ) -> ConversationSummary | None:
        """Read an archived summary, scoped like ``get_board``."""
        summary = self.store.get_summary(summary_id)
        if summary is None or not _owned_by(summary, agent_id, owner_id):
            return None
        return summary

    def latest_summary(self, conversation_id: str) -> ConversationSummary | None:
        return self.store.latest_summary(conversation_id)

    def cleanup_expired(self, now: datetime | None = None) -> int:
        """Delete expired chunks from the store and the index.

        Returns:
            Number of chunks deleted.
        """
        started = time.monotonic()
        deleted = self.store.delete_expired_chunks(now or self.clock())
        self.index.remove(deleted)
        duration_ms = (time.monotonic() - started) * 1000
        if deleted:
            logger.info("Deleted %d expired working memory chunks", len(deleted))
        self.events.log_cleanup(len(deleted), duration_ms=duration_ms)
        return len(deleted)

    def format_context_block(self, context: WorkingContext) -> str:
        """Format a working context as a labeled block for the LLM.

        Args:
            context: The working context to format.

        Returns:
            The block, or an empty string if the context has nothing to show.
        """
        if context.is_empty and not context.chunks:
            return ""

        sections = ["=== CONVERSATION CONTEXT ==="]
        if context.summary:
            sections.append(f"Summary: {context.summary}")
        if context.facts:
            sections.append("Key Facts:\n" + "\n".join(f"• {fact}" for fact in context.facts))
        if context.action_items:
            sections.append(
                "Action Items:\n" + "\n".join(f"• {item}" for item in context.action_items)
            )
        if context.pending_questions:
            sections.append(
                "Pending Questions:\n"
                + "\n".join(f"• {question}" for question in context.pending_questions)
            )
        if context.context_notes:
            sections.append(f"Notes: {context.context_notes}")
        if context.chunks:
            ordered = sorted(context.chunks, key=lambda chunk: chunk.chunk_index)
            sections.append(
                "Recent Memory:\n" + "\n".join(f"• {chunk.chunk_text}" for chunk in ordered)
            )
        sections.append("=== END CONTEXT ===")
        return "\n\n".join(sections)

    def format_hits_block(self, hits: list[SearchHit]) -> str:
        """Format recall hits as a labeled block, or '' if there are none."""
        if not hits:
            return ""

        lines = ["=== RECALLED CONTEXT ==="]
        for hit in hits:
            when = hit.created_at.date().isoformat() if hit.created_at else "unknown date"
            lines.append(f"[{hit.kind}, {when}, similarity {hit.similarity:.2f}] {hit.text}")
        lines.append("=== END RECALLED CONTEXT ===")
        return "\n".join(lines)
