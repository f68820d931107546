"""Tiered conversational memory: summary boards, working memory and recall."""

from .assembler import AssembledContext, ContextAssembler
from .chunking import SemanticChunker
from .dispatcher import Dispatcher, DispatchWorker
from .embeddings import Embedder, IndexScope, SentenceTransformerEmbedder, VectorIndex
from .manager import WorkingMemoryManager
from .models import (
    ChunkType,
    ConversationSummary,
    DispatchEvent,
    SearchHit,
    SummaryBoard,
    SummaryResult,
    Turn,
    WorkingContext,
    WorkingMemoryChunk,
)
from .store import MemoryStore
from .summarizer import CycleResult, CycleStatus, Summarizer
from .tools import GetConversationSummaryTool, RecallContextTool, SearchConversationHistoryTool

__all__ = [
    "AssembledContext",
    "ChunkType",
    "ContextAssembler",
    "ConversationSummary",
    "CycleResult",
    "CycleStatus",
    "DispatchEvent",
    "DispatchWorker",
    "Dispatcher",
    "Embedder",
    "GetConversationSummaryTool",
    "IndexScope",
    "MemoryStore",
    "RecallContextTool",
    "SearchConversationHistoryTool",
    "SearchHit",
    "SemanticChunker",
    "SentenceTransformerEmbedder",
    "SummaryBoard",
    "SummaryResult",
    "Summarizer",
    "Turn",
    "VectorIndex",
    "WorkingContext",
    "WorkingMemoryChunk",
    "WorkingMemoryManager",
]
