"""Retrieval with composite re-ranking.

Candidates come back from the vector store by cosine similarity, then are
re-scored as::

    score = similarity * w_sim + recency * w_rec + popularity * w_pop

where recency decays exponentially with video age and popularity grows with
views and past citations (both capped at 1.0).
"""

import math
from datetime import UTC, datetime
from typing import Protocol

from src.ingestion.embedding_service import EmbeddingService
from src.ingestion.schemas import Video
from src.utils.cache import TTLCache
from src.utils.logging import get_logger

from .config import RetrievalConfig
from .formatting import format_video_url
from .schemas import ChunkMatch, Citation, RetrievalResult, SearchScope
from .vector_store import VectorStore

logger = get_logger(__name__)

SNIPPET_CHARS = 280


class VideoLookup(Protocol):
    async def get_videos(self, video_ids: list[str]) -> list[Video]: ...


def recency_boost(created_at: datetime, decay_days: float, now: datetime) -> float:
    age_days = max((now - created_at).total_seconds() / 86400, 0.0)
    return math.exp(-age_days / decay_days)


def popularity_boost(views: int, references: int, view_cap: int, reference_cap: int) -> float:
    view_score = min(views / view_cap, 1.0) if view_cap > 0 else 0.0
    reference_score = min(references / reference_cap, 1.0) if reference_cap > 0 else 0.0
    return 0.4 * view_score + 0.6 * reference_score


def make_snippet(text: str, limit: int = SNIPPET_CHARS) -> str:
    """Quote the start of a chunk, cut on a word boundary."""
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(" ", 1)[0]
    return f"{cut}..."


def dedupe_adjacent(citations: list[Citation]) -> list[Citation]:
    """Drop citations whose neighbouring chunk in the same video ranks higher."""
    taken: dict[str, set[int]] = {}
    kept: list[Citation] = []
    for citation in sorted(
        citations, key=lambda c: (-c.relevance_score, c.video_id, c.chunk_index)
    ):
        indices = taken.setdefault(citation.video_id, set())
        if citation.chunk_index - 1 in indices or citation.chunk_index + 1 in indices:
            continue
        indices.add(citation.chunk_index)
        kept.append(citation)
    return kept


def normalize_query(query_text: str) -> str:
    return " ".join(query_text.lower().split())


class RetrievalService:
    """Embeds a question, fetches candidates and ranks them into citations."""

    def __init__(
        self,
        config: RetrievalConfig,
        embeddings: EmbeddingService,
        vector_store: VectorStore,
        videos: VideoLookup,
        cache: TTLCache[list[Citation]] | None = None,
    ):
        self.config = config
        self.embeddings = embeddings
        self.vector_store = vector_store
        self.videos = videos
        self.cache = cache or TTLCache(config.cache_ttl_seconds, config.cache_max_entries)

    def score(self, match: ChunkMatch, video: Video | None, now: datetime) -> float:
        recency = 0.0
        popularity = 0.0
        if video is not None:
            recency = recency_boost(video.created_at, self.config.recency_decay_days, now)
            popularity = popularity_boost(
                video.view_count,
                video.reference_count,
                self.config.popularity_view_cap,
                self.config.popularity_reference_cap,
            )
        return (
            match.similarity * self.config.weight_similarity
            + recency * self.config.weight_recency
            + popularity * self.config.weight_popularity
        )

    async def retrieve(
        self, query_text: str, scope: SearchScope, k: int | None = None
    ) -> RetrievalResult:
        """Return up to ``k`` citations for ``query_text`` within ``scope``.

        Results are sorted by non-increasing composite score and all belong
        to videos inside the scope. Repeated lookups within the cache TTL are
        answered without calling the embedding provider.
        """
        k = k or self.config.default_k
        cache_key = (normalize_query(query_text), scope.cache_key(), k)

        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info("retrieval_cache_hit", owner_id=scope.owner_id, results=len(cached))
            return RetrievalResult(citations=cached, embedding_calls=0, cached=True)

        query_vector = await self.embeddings.embed_query(query_text)
        candidates = await self.vector_store.query(
            query_vector, k * self.config.candidate_multiplier, scope
        )

        video_ids = sorted({match.video_id for match in candidates})
        videos = {video.id: video for video in await self.videos.get_videos(video_ids)}
        now = datetime.now(UTC)

        citations = []
        for match in candidates:
            video = videos.get(match.video_id)
            if video is not None and video.owner_id != scope.owner_id:
                continue
            if scope.video_ids is not None and match.video_id not in scope.video_ids:
                continue
            citations.append(
                Citation(
                    video_id=match.video_id,
                    video_title=video.title if video else "",
                    chunk_index=match.chunk_index,
                    timestamp_seconds=match.start_seconds,
                    end_seconds=match.end_seconds,
                    relevance_score=self.score(match, video, now),
                    similarity=match.similarity,
                    text=match.text,
                    snippet=make_snippet(match.text),
                    url=(
                        format_video_url(video.source_kind, video.locator, match.start_seconds)
                        if video
                        else None
                    ),
                )
            )

        ranked = sorted(
            dedupe_adjacent(citations),
            key=lambda c: (-c.relevance_score, c.video_id, c.chunk_index),
        )[:k]

        self.cache.set(cache_key, ranked)
        logger.info(
            "retrieval_completed",
            owner_id=scope.owner_id,
            candidates=len(candidates),
            results=len(ranked),
            top_score=ranked[0].relevance_score if ranked else None,
        )
        return RetrievalResult(citations=ranked, embedding_calls=1, cached=False)
