"""Shared fixtures for memboard tests."""

import json
import re
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import numpy as np
import pytest

from memboard.config import MemoryConfig
from memboard.logging import JSONLLogger, configure_logger
from memboard.memory import (
    ContextAssembler,
    ConversationSummary,
    Dispatcher,
    MemoryStore,
    SummaryBoard,
    Summarizer,
    VectorIndex,
    WorkingMemoryChunk,
    WorkingMemoryManager,
)

DIMENSION = 8
START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def unit(*components: float) -> np.ndarray:
    """A DIMENSION-sized vector with the given leading components."""
    vector = np.zeros(DIMENSION, dtype=np.float32)
    vector[: len(components)] = components
    return vector


def vector_with_similarity(similarity: float) -> np.ndarray:
    """A unit vector whose cosine similarity with unit(1) is ``similarity``."""
    return unit(similarity, float(np.sqrt(1.0 - similarity**2)))


class FakeEmbedder:
    """Deterministic embedder: fixed vectors for known texts, word buckets otherwise."""

    def __init__(self, dimension: int = DIMENSION) -> None:
        self._dimension = dimension
        self.vectors: dict[str, np.ndarray] = {}
        self.calls: list[list[str]] = []
        self.failures_left = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def _bucket_vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self._dimension, dtype=np.float32)
        for word in re.findall(r"[a-z]+", text.lower()):
            vector[sum(ord(c) for c in word) % self._dimension] += 1.0
        if not vector.any():
            vector[0] = 1.0
        return vector

    async def embed(self, texts: list[str]) -> list[np.ndarray]:
        self.calls.append(list(texts))
        if self.failures_left > 0:
            self.failures_left -= 1
            raise ConnectionError("embedding service unavailable")
        return [self.vectors.get(text, self._bucket_vector(text)) for text in texts]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_response(content: str) -> Mock:
    """Create a mock LLM response."""
    response = Mock()
    response.choices = [Mock()]
    response.choices[0].message.content = content
    return response


def summary_json(
    summary: str,
    key_facts: list[str] | None = None,
    **extra: object,
) -> str:
    """JSON body the summarization model would return."""
    data: dict[str, object] = {"summary": summary, "key_facts": key_facts or []}
    data.update(extra)
    return json.dumps(data)


async def no_sleep(_: float) -> None:
    return None


def write_board(
    store: MemoryStore,
    conversation_id: str = "c1",
    agent_id: str = "a1",
    owner_id: str = "u1",
    **fields: object,
) -> SummaryBoard:
    """Create or overwrite a conversation's board through the lease protocol."""
    token = "test-writer"
    store.acquire_lease(conversation_id, agent_id, owner_id, token, START, timedelta(seconds=120))
    board = replace(store.get_board(conversation_id), **fields)
    store.save_board(board, token, START)
    store.release_lease(conversation_id, token)
    return store.get_board(conversation_id)


def make_chunk(
    chunk_id: str,
    embedding: np.ndarray,
    text: str | None = None,
    chunk_index: int = 0,
    conversation_id: str = "c1",
    agent_id: str = "a1",
    owner_id: str = "u1",
    created_at: datetime = START,
    ttl: timedelta = timedelta(days=7),
) -> WorkingMemoryChunk:
    return WorkingMemoryChunk(
        id=chunk_id,
        conversation_id=conversation_id,
        agent_id=agent_id,
        owner_id=owner_id,
        chunk_text=text or f"chunk {chunk_id}",
        chunk_index=chunk_index,
        embedding=embedding,
        created_at=created_at,
        expires_at=created_at + ttl,
    )


def make_summary(
    summary_id: str,
    embedding: np.ndarray,
    text: str | None = None,
    conversation_id: str = "c1",
    agent_id: str = "a1",
    owner_id: str = "u1",
    created_at: datetime = START,
) -> ConversationSummary:
    return ConversationSummary(
        id=summary_id,
        conversation_id=conversation_id,
        agent_id=agent_id,
        owner_id=owner_id,
        summary_text=text or f"summary {summary_id}",
        message_count=5,
        message_range_start=1,
        message_range_end=5,
        embedding=embedding,
        created_at=created_at,
    )


@pytest.fixture(autouse=True)
def json_log(tmp_path: Path) -> JSONLLogger:
    """Route the global JSONL event log into the test's temp dir."""
    return configure_logger(tmp_path / "logs")


@pytest.fixture
def config(tmp_path: Path) -> MemoryConfig:
    return MemoryConfig(
        db_path=tmp_path / "memory.db",
        log_dir=tmp_path / "logs",
        retry_delays=[0.0, 0.0],
        embedding_dimension=DIMENSION,
        topic_shift_threshold=2.0,
        completion_markers=[],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(config: MemoryConfig) -> MemoryStore:
    """Create a MemoryStore with a temporary database."""
    store = MemoryStore(config.db_path)
    store.init_db()
    yield store
    store.close()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def index() -> VectorIndex:
    return VectorIndex(DIMENSION)


@pytest.fixture
def manager(
    store: MemoryStore,
    embedder: FakeEmbedder,
    index: VectorIndex,
    config: MemoryConfig,
    clock: FakeClock,
) -> WorkingMemoryManager:
    return WorkingMemoryManager(store, embedder, index, config=config, clock=clock)


@pytest.fixture
def mock_client() -> AsyncMock:
    """Create a mock Groq client."""
    client = AsyncMock()
    client.chat.completions.create = AsyncMock(
        return_value=make_response(summary_json("A conversation."))
    )
    return client


@pytest.fixture
def summarizer(
    mock_client: AsyncMock,
    store: MemoryStore,
    manager: WorkingMemoryManager,
    config: MemoryConfig,
    clock: FakeClock,
) -> Summarizer:
    return Summarizer(mock_client, store, manager, config=config, clock=clock, sleep=no_sleep)


@pytest.fixture
def dispatcher(store: MemoryStore, config: MemoryConfig, clock: FakeClock) -> Dispatcher:
    return Dispatcher(store, config=config, clock=clock)


@pytest.fixture
def assembler(
    store: MemoryStore, manager: WorkingMemoryManager, config: MemoryConfig
) -> ContextAssembler:
    return ContextAssembler(store, manager, config=config)
