"""Pydantic schemas for retrieval."""

from pydantic import BaseModel, Field


class SearchScope(BaseModel):
    """Restricts a search to one creator's videos, optionally a subset.

    ``video_ids`` is set when the search is scoped to a course; the course is
    resolved to its videos before the vector store is queried.
    """

    owner_id: str
    video_ids: list[str] | None = None

    def cache_key(self) -> tuple[str, tuple[str, ...] | None]:
        ids = tuple(sorted(set(self.video_ids))) if self.video_ids is not None else None
        return (self.owner_id, ids)


class ChunkStats(BaseModel):
    total: int = 0
    embedded: int = 0

    @property
    def complete(self) -> bool:
        return self.total > 0 and self.embedded == self.total


class ChunkMatch(BaseModel):
    """A chunk returned by a nearest-neighbor query."""

    video_id: str
    chunk_index: int
    text: str
    start_seconds: float
    end_seconds: float
    similarity: float


class Citation(BaseModel):
    """A ranked chunk, mapped back to its video and timestamp."""

    video_id: str
    video_title: str = ""
    chunk_index: int
    timestamp_seconds: float
    end_seconds: float
    relevance_score: float
    similarity: float
    text: str
    snippet: str
    url: str | None = None


class RetrievalResult(BaseModel):
    citations: list[Citation] = Field(default_factory=list)
    embedding_calls: int = 0
    cached: bool = False
