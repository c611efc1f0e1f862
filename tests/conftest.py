import os
import sys
import time

import pytest

# Add src directory to Python path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

from memory_graph.embeddings.base import EmbeddingProvider  # noqa: E402
from memory_graph.models.memory import Memory  # noqa: E402
from memory_graph.services.memory_service import MemoryGraphService  # noqa: E402
from memory_graph.storage.base import SimilarMatch, VectorIndex  # noqa: E402
from memory_graph.storage.sqlite_store import SQLiteMemoryStore  # noqa: E402
from memory_graph.utils.hashing import generate_content_hash  # noqa: E402
from memory_graph.utils.similarity import cosine_similarity  # noqa: E402

STUB_DIMENSION = 32
# Dimensions 0..7 are for vectors set explicitly by tests; unknown texts get
# their own basis vector from the remaining dimensions, so they never match.
EXPLICIT_DIMENSIONS = 8


def vec(*values: float) -> list[float]:
    """Pad explicit test coordinates to the stub dimension."""
    return list(values) + [0.0] * (STUB_DIMENSION - len(values))


class StubEmbeddingProvider(EmbeddingProvider):
    """Deterministic in-process provider: explicit vectors or orthogonal basis vectors."""

    provider_name = "stub"

    def __init__(self, **kwargs):
        kwargs.setdefault("backoff_multiplier", 0.0)
        super().__init__("stub-model", **kwargs)
        self.vectors: dict[str, list[float]] = {}
        self.calls: list[str] = []
        self._next_basis = EXPLICIT_DIMENSIONS

    def set_vector(self, text: str, *values: float) -> None:
        self.vectors[text] = vec(*values)

    async def _request_embedding(self, text: str):
        self.calls.append(text)
        if text not in self.vectors:
            basis = [0.0] * STUB_DIMENSION
            basis[self._next_basis] = 1.0
            self._next_basis = EXPLICIT_DIMENSIONS + (self._next_basis - EXPLICIT_DIMENSIONS + 1) % (
                STUB_DIMENSION - EXPLICIT_DIMENSIONS
            )
            self.vectors[text] = basis
        return self.vectors[text]

    async def health_check(self) -> bool:
        return True

    async def pull_model(self) -> None:
        return None


class StubVectorIndex(VectorIndex):
    """Brute-force cosine index over the stub provider's vectors."""

    def __init__(self, provider: EmbeddingProvider):
        self.provider = provider
        self.points: dict[str, tuple[str, list[float]]] = {}
        self.fail_index = False

    async def initialize(self) -> None:
        return None

    async def index(self, memory_id, text, context=None):
        if self.fail_index:
            raise RuntimeError("vector index unavailable")
        reference = f"vec-{memory_id}"
        self.points[reference] = (memory_id, await self.provider.generate_embedding(text))
        return reference

    async def update_vector(self, reference, text, context=None):
        memory_id, _ = self.points[reference]
        self.points[reference] = (memory_id, await self.provider.generate_embedding(text))

    async def find_similar(self, query, threshold, limit):
        vector = await self.provider.generate_embedding(query) if isinstance(query, str) else query
        scored = [
            SimilarMatch(memory_id=memory_id, similarity=cosine_similarity(vector, point))
            for memory_id, point in self.points.values()
        ]
        scored = [m for m in scored if m.similarity >= threshold]
        scored.sort(key=lambda m: m.similarity, reverse=True)
        return scored[:limit]


@pytest.fixture
def provider():
    return StubEmbeddingProvider()


@pytest.fixture
def index(provider):
    return StubVectorIndex(provider)


@pytest.fixture
async def store():
    """In-memory SQLite store."""
    db = SQLiteMemoryStore(":memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def service(store, index, provider):
    return MemoryGraphService(store, index, provider=provider)


@pytest.fixture
def make_memory(store, index):
    """Insert an indexed active memory directly, bypassing the service."""

    async def _make(content: str, created_at: float | None = None, importance: int = 1, **context) -> Memory:
        memory = Memory(
            content=content,
            content_hash=generate_content_hash(content),
            context=context,
            importance=importance,
            creator=context.get("user_id"),
            created_at=created_at if created_at is not None else time.time(),
        )
        await store.create_memory(memory)
        memory.embedding_reference = await index.index(memory.id, content, context)
        await store.update_memory(memory)
        return memory

    return _make
