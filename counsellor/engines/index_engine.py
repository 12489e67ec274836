"""
Per-student Semantic Index + bounded cache.

Each StudentRecord becomes six labelled chunks (one per record category),
embedded independently and stored in a FAISS inner-product index over
L2-normalised vectors (cosine similarity). Indexes are immutable; a data
refresh invalidates the cached index and the next question rebuilds it.

Cache features:
- Single-flight builds: concurrent callers for the same student share one build
- LRU eviction when `max_entries` is reached
- TTL-based expiration
- Explicit invalidation on record refresh
"""

import asyncio
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import faiss
import numpy as np

from counsellor.config import Config
from counsellor.core.records import CATEGORIES, StudentRecord, is_empty_document
from counsellor.engines.embedding_engine import EmbeddingProvider
from counsellor.utils.logging_utils import get_logger

logger = get_logger("index")

NO_DATA_TEXT = "no data available"


@dataclass(frozen=True)
class IndexChunk:
    label: str
    text: str
    vector: np.ndarray


def serialize_category(label: str, value: Any) -> str:
    if is_empty_document(value):
        return f"{label}: {NO_DATA_TEXT}"
    if isinstance(value, str):
        return f"{label}: {value}"
    return f"{label}: {json.dumps(value, default=str, ensure_ascii=False)}"


def record_chunks(record: StudentRecord) -> List[Tuple[str, str]]:
    """(label, text) for every category, in a fixed order."""
    return [(label, serialize_category(label, record.category(attr))) for attr, _, label in CATEGORIES]


def _as_matrix(vectors: Sequence[np.ndarray]) -> np.ndarray:
    matrix = np.vstack([np.asarray(v, dtype="float32").reshape(1, -1) for v in vectors])
    matrix = np.ascontiguousarray(matrix, dtype="float32")
    faiss.normalize_L2(matrix)
    return matrix


class SemanticIndex:
    def __init__(self, student_id: str, chunks: Sequence[IndexChunk]):
        if not chunks:
            raise ValueError("SemanticIndex needs at least one chunk")
        self.student_id = student_id
        self.chunks: Tuple[IndexChunk, ...] = tuple(chunks)
        matrix = _as_matrix([c.vector for c in self.chunks])
        self.dimension = int(matrix.shape[1])
        self.index = faiss.IndexFlatIP(self.dimension)
        self.index.add(matrix)
        self.built_at = time.monotonic()

    def __len__(self) -> int:
        return len(self.chunks)

    @property
    def labels(self) -> List[str]:
        return [c.label for c in self.chunks]

    def search(self, query_vector: np.ndarray, top_k: int = 5) -> List[Tuple[IndexChunk, float]]:
        """Return up to `top_k` chunks ranked by cosine similarity."""
        k = max(1, min(int(top_k), len(self.chunks)))
        query = _as_matrix([query_vector])
        if query.shape[1] != self.dimension:
            raise ValueError(
                f"Query dimension {query.shape[1]} does not match index dimension {self.dimension}"
            )
        distances, indices = self.index.search(query, k)
        ranked: List[Tuple[IndexChunk, float]] = []
        for idx, score in zip(indices[0], distances[0]):
            if idx < 0:
                continue
            ranked.append((self.chunks[int(idx)], float(score)))
        return ranked


async def build_semantic_index(
    student_id: str, record: StudentRecord, embedder: EmbeddingProvider
) -> SemanticIndex:
    pairs = record_chunks(record)
    vectors = await asyncio.gather(*(embedder.embed(text) for _, text in pairs))
    chunks = [IndexChunk(label, text, np.asarray(vec, dtype="float32")) for (label, text), vec in zip(pairs, vectors)]
    return SemanticIndex(student_id, chunks)


class SemanticIndexCache:
    def __init__(
        self,
        embedder: EmbeddingProvider,
        max_entries: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.embedder = embedder
        self.max_entries = max_entries or Config.INDEX_CACHE_MAX_ENTRIES
        self.ttl_seconds = ttl_seconds or Config.INDEX_CACHE_TTL_SECONDS
        self._clock = clock

        # student_id -> (index, stored_at); ordered oldest-used first
        self._entries: "OrderedDict[str, Tuple[SemanticIndex, float]]" = OrderedDict()
        self._inflight: Dict[str, "asyncio.Task[SemanticIndex]"] = {}
        self._generation: Dict[str, int] = {}

        self.stats = {"hits": 0, "misses": 0, "builds": 0, "evictions": 0, "build_failures": 0}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, student_id: str) -> bool:
        return self._lookup(student_id) is not None

    def _lookup(self, student_id: str) -> Optional[SemanticIndex]:
        entry = self._entries.get(student_id)
        if entry is None:
            return None
        index, stored_at = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[student_id]
            self.stats["evictions"] += 1
            return None
        self._entries.move_to_end(student_id)
        return index

    def _store(self, student_id: str, index: SemanticIndex) -> None:
        self._entries[student_id] = (index, self._clock())
        self._entries.move_to_end(student_id)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.stats["evictions"] += 1
            logger.debug(f"[Index] Evicted LRU index for {evicted}")

    async def _build(self, student_id: str, record: StudentRecord, generation: int) -> SemanticIndex:
        self.stats["builds"] += 1
        started = time.perf_counter()
        try:
            index = await build_semantic_index(student_id, record, self.embedder)
        except Exception:
            self.stats["build_failures"] += 1
            raise
        if self._generation.get(student_id, 0) == generation:
            self._store(student_id, index)
        logger.info(f"[Index] Built {len(index)} chunks in {time.perf_counter() - started:.2f}s")
        return index

    def _release(self, student_id: str, task: "asyncio.Task[SemanticIndex]") -> None:
        if self._inflight.get(student_id) is task:
            del self._inflight[student_id]
        if not task.cancelled():
            # Mark the exception as retrieved; waiters already received it.
            task.exception()

    async def get_or_build(self, student_id: str, record: StudentRecord) -> SemanticIndex:
        """Return the cached index or build it, with at most one build per key in flight."""
        cached = self._lookup(student_id)
        if cached is not None:
            self.stats["hits"] += 1
            return cached

        # No await between the lookup and registering the task, so the
        # check-and-register is atomic on the event loop.
        task = self._inflight.get(student_id)
        if task is None:
            self.stats["misses"] += 1
            generation = self._generation.get(student_id, 0)
            task = asyncio.ensure_future(self._build(student_id, record, generation))
            self._inflight[student_id] = task
            task.add_done_callback(lambda t, key=student_id: self._release(key, t))
        return await asyncio.shield(task)

    def invalidate(self, student_id: str) -> bool:
        """Drop the cached index so the next question rebuilds from fresh data."""
        self._generation[student_id] = self._generation.get(student_id, 0) + 1
        self._inflight.pop(student_id, None)
        return self._entries.pop(student_id, None) is not None

    def get_stats(self) -> Dict[str, Any]:
        total = self.stats["hits"] + self.stats["misses"]
        hit_rate = (self.stats["hits"] / total * 100) if total > 0 else 0
        return {
            **self.stats,
            "hit_rate": f"{hit_rate:.1f}%",
            "cache_size": len(self._entries),
            "max_size": self.max_entries,
            "in_flight": len(self._inflight),
        }

    def clear(self) -> None:
        for student_id in list(self._entries) + list(self._inflight):
            self._generation[student_id] = self._generation.get(student_id, 0) + 1
        self._entries.clear()
        self._inflight.clear()
