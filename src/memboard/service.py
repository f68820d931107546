"""Wiring of the memory components behind one interface."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from groq import AsyncGroq

from .config import MemoryConfig, load_config
from .logging import JSONLLogger
from .memory.assembler import ContextAssembler
from .memory.dispatcher import Dispatcher, DispatchWorker
from .memory.embeddings import Embedder, SentenceTransformerEmbedder, VectorIndex
from .memory.manager import WorkingMemoryManager
from .memory.models import DispatchEvent, utcnow
from .memory.store import MemoryStore
from .memory.summarizer import CycleResult, Summarizer
from .memory.tools import (
    GetConversationSummaryTool,
    RecallContextTool,
    SearchConversationHistoryTool,
)
from .tools import ToolRegistry

logger = logging.getLogger(__name__)


class MemoryService:
    """Entry point for the request layer and the background runner.

    The request layer reports turns with ``on_new_turn`` and asks for a
    context window with ``assemble_context``. ``start`` runs the
    summarization worker and the expired-chunk sweep on the current loop.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        llm_client: AsyncGroq | None = None,
        embedder: Embedder | None = None,
        store: MemoryStore | None = None,
        index: VectorIndex | None = None,
        clock: Callable[[], datetime] = utcnow,
        json_logger: JSONLLogger | None = None,
    ) -> None:
        """Build and connect every component.

        Args:
            config: Memory configuration, loaded from disk if None.
            llm_client: Groq client, one reading GROQ_API_KEY if None.
            embedder: Embedding producer, a sentence-transformers model if None.
            store: Persistence, a MemoryStore on config.db_path if None.
            index: Vector index, an empty one if None.
            clock: Source of the current time.
            json_logger: Structured event log, the global one if None.
        """
        self.config = config or load_config()
        self.clock = clock
        self.json_logger = json_logger

        self.store = store or MemoryStore(self.config.db_path)
        self.store.init_db()

        self.embedder = embedder or SentenceTransformerEmbedder(
            self.config.embedding_model, self.config.embedding_dimension
        )
        self.index = index if index is not None else VectorIndex(self.embedder.dimension)
        self.llm_client = llm_client or AsyncGroq()

        self.manager = WorkingMemoryManager(
            self.store,
            self.embedder,
            self.index,
            config=self.config,
            clock=clock,
            json_logger=json_logger,
        )
        self.summarizer = Summarizer(
            self.llm_client,
            self.store,
            self.manager,
            config=self.config,
            clock=clock,
            json_logger=json_logger,
        )
        self.dispatcher = Dispatcher(
            self.store, config=self.config, clock=clock, json_logger=json_logger
        )
        self.assembler = ContextAssembler(
            self.store, self.manager, config=self.config, json_logger=json_logger
        )
        self.worker = DispatchWorker(
            self.dispatcher,
            self._handle_dispatch,
            concurrency=self.config.worker_concurrency,
        )

        self._worker_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None

    async def _handle_dispatch(self, event: DispatchEvent) -> CycleResult:
        return await self.summarizer.run_cycle(
            event.conversation_id, event.agent_id, event.owner_id, full=event.full
        )

    def on_new_turn(
        self,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
        role: str,
        content: str,
        timestamp: datetime | None = None,
        message_id: str | None = None,
    ) -> DispatchEvent | None:
        """Record a turn. Returns the queued event if a cycle was triggered."""
        return self.dispatcher.on_new_turn(
            conversation_id,
            agent_id,
            owner_id,
            role,
            content,
            timestamp=timestamp,
            message_id=message_id,
        )

    def set_update_frequency(self, conversation_id: str, frequency: int) -> None:
        self.dispatcher.set_update_frequency(conversation_id, frequency)

    def trigger_now(self, conversation_id: str, full: bool = False) -> DispatchEvent:
        return self.dispatcher.trigger_now(conversation_id, full=full)

    async def assemble_context(
        self,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
        user_turn: str,
        system_instructions: str = "",
        extra_context: str | None = None,
        recall_query: str | None = None,
    ) -> list[dict[str, str]]:
        """Build the message list for the LLM call answering user_turn.

        Args:
            conversation_id: The conversation identifier.
            agent_id: The agent identifier.
            owner_id: The owner identifier.
            user_turn: The current user message.
            system_instructions: Agent system prompt.
            extra_context: Long-term memory or tool context.
            recall_query: When set, archival recall hits for it are included.

        Returns:
            Messages in Groq chat format.
        """
        hits = None
        if recall_query:
            hits = await self.manager.search_conversation_history(
                agent_id, recall_query, owner_id=owner_id
            )
        assembled = self.assembler.assemble(
            conversation_id,
            agent_id,
            owner_id,
            user_turn,
            system_instructions=system_instructions,
            extra_context=extra_context,
            recall_hits=hits,
        )
        return assembled.messages

    def build_tools(
        self,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
        registry: ToolRegistry | None = None,
    ) -> ToolRegistry:
        """Register the memory tools for one conversation.

        The tools only see boards, summaries and chunks of this agent and owner.

        Args:
            conversation_id: Conversation the tools default to.
            agent_id: Agent the tools act for.
            owner_id: Owner the tools act for.
            registry: Registry to add to, a new one if None.

        Returns:
            The registry holding the memory tools.
        """
        if registry is None:
            registry = ToolRegistry(conversation_id, json_logger=self.json_logger)
        registry.register_all(
            [
                SearchConversationHistoryTool(self.manager, agent_id, owner_id),
                GetConversationSummaryTool(self.manager, conversation_id, agent_id, owner_id),
                RecallContextTool(self.manager, conversation_id, agent_id, owner_id),
            ]
        )
        return registry

    async def run_pending(self) -> None:
        """Process every queued summarization request, then return."""
        await self.worker.drain()

    async def _cleanup_loop(self) -> None:
        """Background task for periodic expired-chunk cleanup."""
        while True:
            try:
                await asyncio.sleep(self.config.cleanup_interval)
                self.manager.cleanup_expired()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Working memory cleanup failed")

    def start(self) -> None:
        """Warm the index and start the worker and cleanup tasks."""
        self.manager.warm_index()
        self.dispatcher.requeue_stale()
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self.worker.run_forever())
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        """Stop background tasks, letting in-flight cycles finish."""
        self.worker.stop()
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
        if self._worker_task is not None:
            await asyncio.gather(self._worker_task, return_exceptions=True)
        self._worker_task = None
        self._cleanup_task = None

    def close(self) -> None:
        """Close the database connection."""
        self.store.close()
