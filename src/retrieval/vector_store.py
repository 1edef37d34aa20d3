"""Vector store for transcript chunks.

Two implementations share one contract:

- ``SupabaseVectorStore`` keeps chunks in Postgres with pgvector and an
  IVFFlat cosine index. Multi-row writes go through SQL functions so a
  video's chunk set is replaced or embedded in one transaction.
- ``InMemoryVectorStore`` keeps everything in process with numpy and an
  IVF coarse quantizer, for local development and tests.

Queries never return chunks whose embedding is still null.
"""

import asyncio
import math
from abc import ABC, abstractmethod

import numpy as np
from supabase import Client

from src.ingestion.schemas import Chunk
from src.utils.errors import ProviderError
from src.utils.logging import get_logger

from .schemas import ChunkMatch, ChunkStats, SearchScope

logger = get_logger(__name__)

CHUNK_COLUMNS = (
    "video_id, chunk_index, text, start_seconds, end_seconds, "
    "word_count, overlap_word_count, segment_count"
)


class VectorStore(ABC):
    """Persistence and nearest-neighbor search for chunk vectors."""

    @abstractmethod
    async def replace_chunks(self, video_id: str, owner_id: str, chunks: list[Chunk]) -> None:
        """Delete a video's chunks and insert ``chunks`` in one transaction."""

    async def upsert(self, chunks: list[Chunk], owner_id: str) -> None:
        """Replace the chunk set of the video ``chunks`` belong to."""
        if not chunks:
            return
        video_ids = {chunk.video_id for chunk in chunks}
        if len(video_ids) != 1:
            raise ValueError("upsert takes the chunks of exactly one video")
        await self.replace_chunks(video_ids.pop(), owner_id, chunks)

    @abstractmethod
    async def attach_embeddings(self, video_id: str, vectors: dict[int, list[float]]) -> None:
        """Set embeddings by chunk index, all or nothing.

        Raises:
            ProviderError: If ``vectors`` does not cover exactly the stored
                chunk indices.
        """

    @abstractmethod
    async def query(self, vector: list[float], k: int, scope: SearchScope) -> list[ChunkMatch]:
        """Top ``k`` embedded chunks in ``scope`` by cosine similarity, best first."""

    @abstractmethod
    async def get_chunks(self, video_id: str) -> list[Chunk]:
        """Stored chunks of a video ordered by index, without embeddings."""

    @abstractmethod
    async def delete_video_chunks(self, video_id: str) -> None: ...

    @abstractmethod
    async def chunk_stats(self, video_id: str) -> ChunkStats: ...


class SupabaseVectorStore(VectorStore):
    """pgvector-backed store using the project's SQL functions.

    ``n_probe`` is passed to ``match_video_chunks``, which sets
    ``ivfflat.probes`` and an iterative index scan for the query so owner and
    course filters still fill ``k`` results.
    """

    def __init__(self, client: Client, n_probe: int = 8):
        self.client = client
        self.n_probe = n_probe

    async def replace_chunks(self, video_id: str, owner_id: str, chunks: list[Chunk]) -> None:
        rows = [chunk.model_dump(mode="json", exclude={"embedding"}) for chunk in chunks]
        try:
            self.client.rpc(
                "replace_video_chunks",
                {"p_video_id": video_id, "p_owner_id": owner_id, "p_chunks": rows},
            ).execute()
            logger.info("chunks_replaced", video_id=video_id, count=len(rows))
        except Exception as e:
            logger.exception(
                "chunks_replace_failed",
                video_id=video_id,
                error_type=type(e).__name__,
            )
            raise

    async def attach_embeddings(self, video_id: str, vectors: dict[int, list[float]]) -> None:
        payload = [
            {"chunk_index": index, "embedding": vector}
            for index, vector in sorted(vectors.items())
        ]
        try:
            self.client.rpc(
                "attach_chunk_embeddings",
                {"p_video_id": video_id, "p_embeddings": payload},
            ).execute()
            logger.info("embeddings_attached", video_id=video_id, count=len(payload))
        except Exception as e:
            logger.exception(
                "embeddings_attach_failed",
                video_id=video_id,
                error_type=type(e).__name__,
            )
            raise ProviderError(
                f"Attaching embeddings failed for {video_id}: {e}", provider="supabase"
            ) from e

    async def query(self, vector: list[float], k: int, scope: SearchScope) -> list[ChunkMatch]:
        if scope.video_ids is not None and not scope.video_ids:
            return []
        response = self.client.rpc(
            "match_video_chunks",
            {
                "query_embedding": vector,
                "match_count": k,
                "p_owner_id": scope.owner_id,
                "p_video_ids": scope.video_ids,
                "p_probes": self.n_probe,
            },
        ).execute()
        matches = [ChunkMatch.model_validate(row) for row in response.data or []]
        logger.debug("vector_query_completed", owner_id=scope.owner_id, results=len(matches))
        return matches

    async def get_chunks(self, video_id: str) -> list[Chunk]:
        response = (
            self.client.table("video_chunks")
            .select(CHUNK_COLUMNS)
            .eq("video_id", video_id)
            .order("chunk_index")
            .execute()
        )
        return [Chunk.model_validate(row) for row in response.data or []]

    async def delete_video_chunks(self, video_id: str) -> None:
        self.client.table("video_chunks").delete().eq("video_id", video_id).execute()
        logger.info("chunks_deleted", video_id=video_id)

    async def chunk_stats(self, video_id: str) -> ChunkStats:
        total = (
            self.client.table("video_chunks")
            .select("chunk_index", count="exact")
            .eq("video_id", video_id)
            .execute()
        )
        embedded = (
            self.client.table("video_chunks")
            .select("chunk_index", count="exact")
            .eq("video_id", video_id)
            .not_.is_("embedding", "null")
            .execute()
        )
        return ChunkStats(total=total.count or 0, embedded=embedded.count or 0)


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def train_ivf(
    vectors: np.ndarray, n_lists: int, iterations: int = 10, seed: int = 0
) -> tuple[np.ndarray, np.ndarray]:
    """Spherical k-means over unit vectors.

    Returns:
        ``(centroids, assignments)`` where ``assignments[i]`` is the list of
        row ``i``.
    """
    rng = np.random.default_rng(seed)
    n_lists = max(1, min(n_lists, len(vectors)))
    centroids = vectors[rng.choice(len(vectors), size=n_lists, replace=False)].copy()
    assignments = np.zeros(len(vectors), dtype=np.int64)

    for _ in range(iterations):
        assignments = np.argmax(vectors @ centroids.T, axis=1)
        for list_id in range(n_lists):
            members = vectors[assignments == list_id]
            if len(members):
                centroids[list_id] = members.mean(axis=0)
        centroids = _normalize_rows(centroids)

    return centroids, np.argmax(vectors @ centroids.T, axis=1)


class InMemoryVectorStore(VectorStore):
    """numpy vector store with an IVF index.

    Below ``train_threshold`` embedded chunks every query is an exact scan.
    Above it, vectors are partitioned into about sqrt(N) lists and a query
    scores only the ``n_probe`` lists whose centroids are nearest, probing
    further lists when the scope filter leaves fewer than ``k`` candidates.
    """

    def __init__(self, dimensions: int = 1536, train_threshold: int = 1024, n_probe: int = 8):
        self.dimensions = dimensions
        self.train_threshold = train_threshold
        self.n_probe = n_probe
        self._chunks: dict[str, list[Chunk]] = {}
        self._owners: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._dirty = True
        self._matrix = np.zeros((0, dimensions), dtype=np.float32)
        self._keys: list[tuple[str, int]] = []
        self._centroids: np.ndarray | None = None
        self._lists: list[np.ndarray] = []

    @property
    def is_trained(self) -> bool:
        return self._centroids is not None

    async def replace_chunks(self, video_id: str, owner_id: str, chunks: list[Chunk]) -> None:
        if any(chunk.video_id != video_id for chunk in chunks):
            raise ValueError("every chunk must belong to the replaced video")
        indices = sorted(chunk.chunk_index for chunk in chunks)
        if indices != list(range(len(chunks))):
            raise ValueError("chunk indices must be dense and zero-based")

        async with self._lock:
            self._chunks[video_id] = [
                chunk.model_copy(update={"embedding": None})
                for chunk in sorted(chunks, key=lambda c: c.chunk_index)
            ]
            self._owners[video_id] = owner_id
            self._dirty = True
        logger.info("chunks_replaced", video_id=video_id, count=len(chunks))

    async def attach_embeddings(self, video_id: str, vectors: dict[int, list[float]]) -> None:
        async with self._lock:
            stored = self._chunks.get(video_id, [])
            if set(vectors) != {chunk.chunk_index for chunk in stored}:
                raise ProviderError(
                    f"Embeddings for {video_id} do not match its stored chunk set",
                    provider="vector_store",
                )
            for vector in vectors.values():
                if len(vector) != self.dimensions:
                    raise ProviderError(
                        f"Embedding dimension {len(vector)} != {self.dimensions}",
                        provider="vector_store",
                    )
            self._chunks[video_id] = [
                chunk.model_copy(update={"embedding": list(vectors[chunk.chunk_index])})
                for chunk in stored
            ]
            self._dirty = True
        logger.info("embeddings_attached", video_id=video_id, count=len(vectors))

    async def get_chunks(self, video_id: str) -> list[Chunk]:
        return [
            chunk.model_copy(update={"embedding": None})
            for chunk in self._chunks.get(video_id, [])
        ]

    async def delete_video_chunks(self, video_id: str) -> None:
        async with self._lock:
            self._chunks.pop(video_id, None)
            self._owners.pop(video_id, None)
            self._dirty = True

    async def chunk_stats(self, video_id: str) -> ChunkStats:
        chunks = self._chunks.get(video_id, [])
        return ChunkStats(
            total=len(chunks),
            embedded=sum(1 for chunk in chunks if chunk.embedding is not None),
        )

    def _rebuild(self) -> None:
        keys: list[tuple[str, int]] = []
        rows: list[list[float]] = []
        for video_id, chunks in self._chunks.items():
            for chunk in chunks:
                if chunk.embedding is not None:
                    keys.append((video_id, chunk.chunk_index))
                    rows.append(chunk.embedding)

        matrix = np.asarray(rows, dtype=np.float32).reshape(len(rows), self.dimensions)
        self._matrix = _normalize_rows(matrix) if len(rows) else matrix
        self._keys = keys
        self._centroids = None
        self._lists = []

        if len(keys) >= self.train_threshold:
            n_lists = max(1, int(math.sqrt(len(keys))))
            self._centroids, assignments = train_ivf(self._matrix, n_lists)
            self._lists = [np.flatnonzero(assignments == i) for i in range(len(self._centroids))]
            logger.info("ivf_index_trained", vectors=len(keys), lists=len(self._centroids))

        self._dirty = False

    def _candidate_rows(self, query: np.ndarray, allowed: np.ndarray, k: int) -> np.ndarray:
        if self._centroids is None:
            return np.flatnonzero(allowed)

        order = np.argsort(-(self._centroids @ query))
        probe = min(self.n_probe, len(order))
        while True:
            rows = np.concatenate([self._lists[i] for i in order[:probe]])
            rows = rows[allowed[rows]]
            if len(rows) >= k or probe >= len(order):
                return rows
            probe = min(probe * 2, len(order))

    async def query(self, vector: list[float], k: int, scope: SearchScope) -> list[ChunkMatch]:
        async with self._lock:
            if self._dirty:
                self._rebuild()
            if not self._keys or k <= 0:
                return []

            allowed_videos = {
                video_id
                for video_id, owner in self._owners.items()
                if owner == scope.owner_id
                and (scope.video_ids is None or video_id in scope.video_ids)
            }
            allowed = np.fromiter(
                (video_id in allowed_videos for video_id, _ in self._keys),
                dtype=bool,
                count=len(self._keys),
            )

            query_vec = np.asarray(vector, dtype=np.float32)
            norm = np.linalg.norm(query_vec)
            if norm == 0:
                return []
            query_vec = query_vec / norm

            rows = self._candidate_rows(query_vec, allowed, k)
            if len(rows) == 0:
                return []
            sims = self._matrix[rows] @ query_vec
            best = np.argsort(-sims, kind="stable")[:k]

            matches = []
            for pos in best:
                video_id, chunk_index = self._keys[rows[pos]]
                chunk = self._chunks[video_id][chunk_index]
                matches.append(
                    ChunkMatch(
                        video_id=video_id,
                        chunk_index=chunk_index,
                        text=chunk.text,
                        start_seconds=chunk.start_seconds,
                        end_seconds=chunk.end_seconds,
                        similarity=float(sims[pos]),
                    )
                )
            return matches


def create_vector_store(
    backend: str,
    client: Client | None = None,
    dimensions: int = 1536,
    train_threshold: int = 1024,
    n_probe: int = 8,
) -> VectorStore:
    """Build the configured vector store backend.

    Raises:
        ValueError: Unknown backend, or ``supabase`` without a client.
    """
    match backend:
        case "supabase":
            if client is None:
                raise ValueError("The supabase vector backend needs a Supabase client")
            return SupabaseVectorStore(client, n_probe)
        case "memory":
            return InMemoryVectorStore(dimensions, train_threshold, n_probe)
        case _:
            raise ValueError(f"Unknown vector backend: {backend}")
