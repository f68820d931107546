"""Embedding producers and the cosine-similarity vector index."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Protocol

import numpy as np

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"
DEFAULT_EMBEDDING_DIMENSION = 384  # all-MiniLM-L6-v2 dimension


class Embedder(Protocol):
    """Anything that turns texts into fixed-dimension vectors."""

    @property
    def dimension(self) -> int: ...

    async def embed(self, texts: list[str]) -> list[np.ndarray]: ...


class SentenceTransformerEmbedder:
    """Embedder backed by a local sentence-transformers model.

    The model is loaded on first use and encoding runs in a worker thread
    so the event loop is never blocked.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
        dimension: int = DEFAULT_EMBEDDING_DIMENSION,
    ) -> None:
        self.model_name = model_name
        self._dimension = dimension
        self._model: SentenceTransformer | None = None

    @property
    def dimension(self) -> int:
        return self._dimension

    def _load_model(self) -> SentenceTransformer:
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model %s", self.model_name)
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def _encode(self, texts: list[str]) -> list[np.ndarray]:
        model = self._load_model()
        vectors = model.encode(texts, normalize_embeddings=True)
        result = [np.asarray(v, dtype=np.float32) for v in vectors]
        for vector in result:
            if vector.shape != (self._dimension,):
                raise ValueError(
                    f"Model {self.model_name} produced {vector.shape[0]} dims, "
                    f"expected {self._dimension}"
                )
        return result

    async def embed(self, texts: list[str]) -> list[np.ndarray]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, texts)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors, 0.0 if either is all zeros."""
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


@dataclass(frozen=True)
class IndexScope:
    """Restricts index entries and searches.

    On a search scope, fields left as None match anything.
    """

    kind: str | None = None
    agent_id: str | None = None
    conversation_id: str | None = None
    owner_id: str | None = None

    def matches(self, other: IndexScope) -> bool:
        """Check whether an entry scope falls inside this search scope."""
        for name in ("kind", "agent_id", "conversation_id", "owner_id"):
            wanted = getattr(self, name)
            if wanted is not None and getattr(other, name) != wanted:
                return False
        return True


class VectorIndex:
    """In-memory exact cosine index over fixed-dimension vectors.

    Vectors are normalized on insert, so a search is one matrix-vector
    product over the rows in scope. Exact search stays well under 100 ms
    for the tens of thousands of rows a working set holds.
    """

    def __init__(self, dimension: int = DEFAULT_EMBEDDING_DIMENSION) -> None:
        if dimension < 1:
            raise ValueError("dimension must be at least 1")
        self.dimension = dimension
        self._ids: list[str] = []
        self._scopes: list[IndexScope] = []
        self._rows: list[np.ndarray] = []
        self._positions: dict[str, int] = {}
        self._matrix: np.ndarray | None = None

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._positions

    def _normalize(self, embedding: np.ndarray | Iterable[float]) -> np.ndarray:
        vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimension:
            raise ValueError(
                f"Embedding has dimension {vector.shape[0]}, index expects {self.dimension}"
            )
        norm = float(np.linalg.norm(vector))
        if norm == 0.0:
            return vector
        return vector / norm

    def index(self, item_id: str, embedding: np.ndarray, scope: IndexScope) -> None:
        """Add or replace the vector stored under item_id."""
        vector = self._normalize(embedding)
        position = self._positions.get(item_id)
        if position is None:
            self._positions[item_id] = len(self._ids)
            self._ids.append(item_id)
            self._scopes.append(scope)
            self._rows.append(vector)
        else:
            self._scopes[position] = scope
            self._rows[position] = vector
        self._matrix = None

    def load(self, entries: Iterable[tuple[str, np.ndarray, IndexScope]]) -> int:
        """Bulk insert entries. Returns the number loaded."""
        count = 0
        for item_id, embedding, scope in entries:
            self.index(item_id, embedding, scope)
            count += 1
        return count

    def remove(self, item_ids: Iterable[str]) -> int:
        """Remove entries by id. Unknown ids are ignored."""
        doomed = {i for i in item_ids if i in self._positions}
        if not doomed:
            return 0

        keep = [i for i, item_id in enumerate(self._ids) if item_id not in doomed]
        self._ids = [self._ids[i] for i in keep]
        self._scopes = [self._scopes[i] for i in keep]
        self._rows = [self._rows[i] for i in keep]
        self._positions = {item_id: i for i, item_id in enumerate(self._ids)}
        self._matrix = None
        return len(doomed)

    def search(
        self,
        query_embedding: np.ndarray,
        scope: IndexScope,
        k: int = 5,
        min_similarity: float = 0.0,
    ) -> list[tuple[str, float]]:
        """Find the k most similar entries inside scope.

        Returns:
            (id, similarity) pairs with similarity >= min_similarity,
            ordered by descending similarity.
        """
        if k <= 0 or not self._ids:
            return []

        query = self._normalize(query_embedding)
        candidates = [i for i, s in enumerate(self._scopes) if scope.matches(s)]
        if not candidates:
            return []

        if self._matrix is None:
            self._matrix = np.vstack(self._rows)

        similarities = self._matrix[candidates] @ query
        order = np.argsort(-similarities, kind="stable")

        results: list[tuple[str, float]] = []
        for position in order:
            similarity = float(similarities[position])
            if similarity < min_similarity:
                break
            results.append((self._ids[candidates[position]], similarity))
            if len(results) >= k:
                break
        return results
