"""Shared fixtures and in-memory fakes for the Supabase-backed services."""

import zlib
from collections.abc import Callable
from datetime import datetime
from typing import Any
from unittest.mock import patch

import httpx
import pytest

from src.chat.config import ChatConfig
from src.chat.schemas import ChatMessage, ChatSession
from src.ingestion.config import IngestionConfig
from src.ingestion.schemas import Chunk, Transcript, Video, VideoStatus, utc_now
from src.retrieval.config import RetrievalConfig
from src.retrieval.vector_store import InMemoryVectorStore
from src.utils.errors import InvalidTransitionError, NotFoundError

EMBED_DIMENSIONS = 32


def word_count(text: str) -> int:
    return len(text.split())


def fake_vector(text: str, dimensions: int = EMBED_DIMENSIONS) -> list[float]:
    """Bag-of-words vector: texts sharing words point the same way."""
    vector = [0.0] * dimensions
    for word in text.lower().split():
        token = "".join(ch for ch in word if ch.isalnum())
        if token:
            vector[zlib.crc32(token.encode()) % dimensions] += 1.0
    vector[0] += 0.01
    return vector


class FakeStorageService:
    """In-memory stand-in for ``StorageService``."""

    def __init__(self) -> None:
        self.videos: dict[str, Video] = {}
        self.transcripts: dict[str, Transcript] = {}
        self.course_videos: dict[str, list[str]] = {}
        self.objects: dict[str, bytes] = {}
        self.status_updates: list[tuple[str, VideoStatus, VideoStatus]] = []

    async def create_video(self, video: Video) -> Video:
        self.videos[video.id] = video.model_copy()
        return video

    async def get_video(self, video_id: str) -> Video | None:
        video = self.videos.get(video_id)
        return video.model_copy() if video else None

    async def require_video(self, video_id: str) -> Video:
        video = await self.get_video(video_id)
        if video is None:
            raise NotFoundError(f"Video {video_id} not found")
        return video

    async def get_videos(self, video_ids: list[str]) -> list[Video]:
        return [self.videos[v].model_copy() for v in video_ids if v in self.videos]

    async def update_video_status(
        self,
        video_id: str,
        *,
        expected: VideoStatus,
        status: VideoStatus,
        error_reason: str | None = None,
        error_message: str | None = None,
    ) -> Video:
        current = self.videos.get(video_id)
        if current is None or current.status != expected:
            raise InvalidTransitionError(
                video_id, current.status.value if current else "missing", status.value
            )
        now = utc_now()
        updated = current.model_copy(
            update={
                "status": status,
                "error_reason": error_reason,
                "error_message": error_message,
                "status_changed_at": now,
                "updated_at": now,
            }
        )
        self.videos[video_id] = updated
        self.status_updates.append((video_id, expected, status))
        return updated.model_copy()

    async def update_video_fields(self, video_id: str, fields: dict[str, Any]) -> None:
        current = self.videos[video_id].model_dump()
        self.videos[video_id] = Video.model_validate({**current, **fields})

    async def list_videos_by_status(
        self, statuses: list[VideoStatus], owner_id: str | None = None
    ) -> list[Video]:
        return [
            v.model_copy()
            for v in self.videos.values()
            if v.status in statuses and (owner_id is None or v.owner_id == owner_id)
        ]

    async def list_stuck_videos(self, older_than: datetime) -> list[Video]:
        in_progress = {VideoStatus.TRANSCRIBING, VideoStatus.CHUNKING, VideoStatus.EMBEDDING}
        return [
            v.model_copy()
            for v in self.videos.values()
            if v.status in in_progress and v.status_changed_at < older_than
        ]

    async def increment_reference_counts(self, video_ids: list[str]) -> None:
        for video_id in set(video_ids):
            video = self.videos[video_id]
            self.videos[video_id] = video.model_copy(
                update={"reference_count": video.reference_count + 1}
            )

    async def list_course_video_ids(self, course_id: str) -> list[str]:
        return list(self.course_videos.get(course_id, []))

    async def save_transcript(self, transcript: Transcript) -> None:
        self.transcripts[transcript.video_id] = transcript

    async def get_transcript(self, video_id: str) -> Transcript | None:
        return self.transcripts.get(video_id)

    async def object_exists(self, path: str) -> bool:
        return path in self.objects

    async def download_object(self, path: str) -> bytes:
        return self.objects[path]

    def set_status(self, video_id: str, status: VideoStatus, **fields: Any) -> None:
        """Test helper: force a stored status without the state machine."""
        self.videos[video_id] = self.videos[video_id].model_copy(
            update={"status": status, **fields}
        )


class FakeChatStore:
    """In-memory stand-in for ``ChatStore``."""

    def __init__(self) -> None:
        self.sessions: dict[str, ChatSession] = {}
        self.messages: list[ChatMessage] = []

    async def create_session(self, session: ChatSession) -> ChatSession:
        self.sessions[session.id] = session.model_copy()
        return session

    async def get_session(self, session_id: str) -> ChatSession | None:
        session = self.sessions.get(session_id)
        return session.model_copy() if session else None

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> None:
        current = self.sessions[session_id].model_dump()
        self.sessions[session_id] = ChatSession.model_validate({**current, **fields})

    async def insert_message(self, message: ChatMessage) -> ChatMessage:
        self.messages.append(message)
        return message

    async def list_messages(self, session_id: str) -> list[ChatMessage]:
        return [m for m in self.messages if m.session_id == session_id]


class FakeEmbeddingService:
    """Deterministic embeddings with call counting."""

    def __init__(self, dimensions: int = EMBED_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.calls = 0
        self.query_calls = 0
        self.fail_with: Exception | None = None

    async def embed_query(self, text: str) -> list[float]:
        self.calls += 1
        self.query_calls += 1
        return fake_vector(text, self.dimensions)

    async def embed_chunks(self, chunks: list[Chunk]) -> list[Chunk]:
        if self.fail_with is not None:
            raise self.fail_with
        self.calls += 1
        return [
            chunk.model_copy(update={"embedding": fake_vector(chunk.text, self.dimensions)})
            for chunk in chunks
        ]


@pytest.fixture
def ingestion_config() -> IngestionConfig:
    """Small chunk sizes and no backoff delay."""
    return IngestionConfig(
        target_words=20,
        min_words=10,
        max_words=30,
        overlap_words=5,
        embedding_dimensions=EMBED_DIMENSIONS,
        retry_max_attempts=3,
        retry_base_delay=0,
        retry_max_delay=0,
        supabase_url="https://test.supabase.co",
        supabase_key="test_key",
    )


@pytest.fixture
def retrieval_config() -> RetrievalConfig:
    return RetrievalConfig(default_k=5, candidate_multiplier=4, cache_ttl_seconds=300)


@pytest.fixture
def chat_config() -> ChatConfig:
    return ChatConfig(
        llm_choice="gpt-4o-mini",
        llm_api_key="test_key",
        pricing_model="gpt-4o-mini",
        context_token_budget=8000,
        history_pairs=5,
        title_timeout_seconds=1,
    )


@pytest.fixture
def storage() -> FakeStorageService:
    return FakeStorageService()


@pytest.fixture
def chat_store() -> FakeChatStore:
    return FakeChatStore()


@pytest.fixture
def embeddings() -> FakeEmbeddingService:
    return FakeEmbeddingService()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore(dimensions=EMBED_DIMENSIONS, train_threshold=1024, n_probe=8)


@pytest.fixture
def count_tokens() -> Callable[[str], int]:
    """Whitespace token counter so tests never download a tokenizer."""
    return word_count


@pytest.fixture
def http_mock() -> Callable:
    """Route every httpx.AsyncClient request to a handler.

    Usage: ``with http_mock(handler): ...``
    """
    real_client = httpx.AsyncClient

    def install(handler: Callable[[httpx.Request], httpx.Response]):
        def factory(*args: Any, **kwargs: Any) -> httpx.AsyncClient:
            return real_client(*args, transport=httpx.MockTransport(handler), **kwargs)

        return patch("httpx.AsyncClient", side_effect=factory)

    return install


@pytest.fixture
def vectorize() -> Callable[[str], list[float]]:
    """The fake embedding function, for seeding stores directly."""
    return fake_vector
