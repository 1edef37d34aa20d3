"""End-to-end flows: ingestion through chat, with only external providers faked."""

from collections.abc import AsyncIterator
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import RateLimitError
from pydantic_ai.messages import ModelMessage, UserPromptPart
from pydantic_ai.models.function import AgentInfo, FunctionModel
from pydantic_ai.models.test import TestModel

from src.chat.completion_service import CompletionService
from src.chat.context_builder import ContextBuilder
from src.chat.schemas import ChatRequest, MessageRole
from src.chat.service import ChatService
from src.chat.session_manager import SessionManager
from src.ingestion.caption_tiers import SupadataCaptionTier
from src.ingestion.embedding_service import EmbeddingService
from src.ingestion.pipeline import VideoPipeline
from src.ingestion.schemas import IngestionRequest, SourceKind, VideoStatus
from src.ingestion.sources import SourceRegistry
from src.ingestion.transcript_service import TranscriptService
from src.retrieval.ranking import RetrievalService
from src.retrieval.schemas import SearchScope
from src.utils.errors import SourceUnavailableError

CREATOR = "creator-1"
VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
QUESTION = "What is this video about?"


def supadata_transcript(words: int = 450, seconds: int = 180, segments: int = 18):
    """Supadata-shaped response: offsets and durations in milliseconds."""
    per_segment = words // segments
    step_ms = seconds * 1000 // segments
    return SimpleNamespace(
        lang="en",
        content=[
            SimpleNamespace(
                text=" ".join(f"decorators{i}_{j}" for j in range(per_segment)),
                offset=i * step_ms,
                duration=step_ms,
            )
            for i in range(segments)
        ],
    )


def rate_limit_error() -> RateLimitError:
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    return RateLimitError(
        "rate limited", response=httpx.Response(429, request=request), body=None
    )


@pytest.mark.integration
class TestEndToEnd:
    """Ingest a video, then chat over it."""

    @pytest.fixture
    def config(self, ingestion_config):
        """Production chunk sizes with test dimensions and no backoff delay."""
        return ingestion_config.model_copy(
            update={"target_words": 750, "min_words": 500, "max_words": 1000, "overlap_words": 100}
        )

    @pytest.fixture
    def supadata(self) -> MagicMock:
        client = MagicMock()
        client.youtube.transcript.return_value = supadata_transcript()
        return client

    @pytest.fixture
    def openai_client(self, vectorize) -> MagicMock:
        client = MagicMock()
        client.fail_first = False
        client.requests = 0

        async def create(input, model):
            client.requests += 1
            if client.fail_first and client.requests == 1:
                raise rate_limit_error()
            return SimpleNamespace(
                data=[
                    SimpleNamespace(index=i, embedding=vectorize(text))
                    for i, text in enumerate(input)
                ],
                usage=SimpleNamespace(total_tokens=10 * len(input)),
            )

        client.embeddings.create = AsyncMock(side_effect=create)
        return client

    @pytest.fixture
    def pipeline(self, config, storage, vector_store, supadata, openai_client) -> VideoPipeline:
        sources = SourceRegistry(config, storage)
        sources.youtube._extract_info = MagicMock(
            return_value={"title": "Intro to Decorators", "duration": 180, "subtitles": {"en": []}}
        )
        transcripts = TranscriptService(
            config, tiers={SourceKind.YOUTUBE: [SupadataCaptionTier(config, client=supadata)]}
        )
        return VideoPipeline(
            config,
            storage,
            vector_store,
            sources=sources,
            transcripts=transcripts,
            embeddings=EmbeddingService(config, client=openai_client),
        )

    @pytest.fixture
    def chat(
        self,
        chat_config,
        chat_store,
        retrieval_config,
        storage,
        vector_store,
        pipeline,
        count_tokens,
    ):
        def _chat(model) -> ChatService:
            return ChatService(
                chat_config,
                SessionManager(
                    chat_config, chat_store, title_model=TestModel(custom_output_text="Decorators")
                ),
                RetrievalService(retrieval_config, pipeline.embeddings, vector_store, storage),
                ContextBuilder(chat_config, count_tokens=count_tokens),
                CompletionService(chat_config, model=model, count_tokens=count_tokens),
                storage,
            )

        return _chat

    async def ingest(self, pipeline: VideoPipeline):
        video = await pipeline.ingest(
            IngestionRequest(
                source_kind=SourceKind.YOUTUBE, source_locator=VIDEO_URL, owner_id=CREATOR
            )
        )
        return await pipeline.process_video(video.id)

    @pytest.mark.asyncio
    async def test_short_video_is_one_embedded_chunk(self, pipeline, storage, vector_store) -> None:
        """A 3-minute, 450-word transcript becomes exactly one embedded chunk."""
        video = await self.ingest(pipeline)

        assert video.status == VideoStatus.COMPLETED
        assert storage.transcripts[video.id].word_count == 450
        stats = await vector_store.chunk_stats(video.id)
        assert (stats.total, stats.embedded) == (1, 1)
        chunk = (await vector_store.get_chunks(video.id))[0]
        assert chunk.start_seconds == 0.0
        assert chunk.end_seconds == pytest.approx(180.0)
        assert storage.videos[video.id].title == "Intro to Decorators"

    @pytest.mark.asyncio
    async def test_unavailable_source_fails_cleanly(
        self, pipeline, storage, vector_store, supadata
    ) -> None:
        """A private or deleted source fails the video and writes no transcript or chunks."""
        pipeline.sources.youtube._extract_info.side_effect = SourceUnavailableError("private")

        video = await self.ingest(pipeline)

        assert video.status == VideoStatus.FAILED
        assert video.error_reason == "SourceUnavailable"
        assert storage.transcripts == {}
        assert (await vector_store.chunk_stats(video.id)).total == 0
        supadata.youtube.transcript.assert_not_called()

    @pytest.mark.asyncio
    async def test_answer_cites_the_video(self, pipeline, chat) -> None:
        """A question over one completed video cites that video."""
        video = await self.ingest(pipeline)
        service = chat(TestModel(custom_output_text="It covers decorators [Source 1]."))

        events = [
            event
            async for event in service.ask(
                ChatRequest(message=QUESTION, creator_id=CREATOR, student_id="student-1")
            )
        ]

        answer = events[-1].message
        assert events[-1].type == "message"
        assert video.id in {ref.video_id for ref in answer.video_references}

    @pytest.mark.asyncio
    async def test_history_continuity(self, pipeline, chat, chat_store) -> None:
        """The second question is answered with the first one in context."""
        await self.ingest(pipeline)
        seen: list[list[ModelMessage]] = []

        async def stream(messages: list[ModelMessage], info: AgentInfo) -> AsyncIterator[str]:
            seen.append(messages)
            yield "An answer."

        service = chat(FunctionModel(stream_function=stream))
        first = [
            e
            async for e in service.ask(
                ChatRequest(message=QUESTION, creator_id=CREATOR, student_id="student-1")
            )
        ]
        session_id = first[0].session_id
        async for _ in service.ask(
            ChatRequest(
                message="Can you go deeper?",
                creator_id=CREATOR,
                student_id="student-1",
                session_id=session_id,
            )
        ):
            pass

        second_prompt = [
            part.content
            for message in seen[1]
            for part in message.parts
            if isinstance(part, UserPromptPart)
        ]
        assert QUESTION in second_prompt
        stored = [m for m in chat_store.messages if m.session_id == session_id]
        assert [m.role for m in stored] == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.USER,
            MessageRole.ASSISTANT,
        ]
        assert [m.created_at for m in stored] == sorted(m.created_at for m in stored)

    @pytest.mark.asyncio
    async def test_embedding_rate_limit_recovers(
        self, pipeline, storage, vector_store, openai_client
    ) -> None:
        """A rate-limited first embedding call is retried and the video completes."""
        openai_client.fail_first = True

        video = await self.ingest(pipeline)

        assert video.status == VideoStatus.COMPLETED
        assert openai_client.embeddings.create.await_count == 2
        assert (video.id, VideoStatus.EMBEDDING, VideoStatus.COMPLETED) in storage.status_updates
        matches = await vector_store.query(
            await pipeline.embeddings.embed_query("decorators0_1"), 1, SearchScope(owner_id=CREATOR)
        )
        assert matches[0].video_id == video.id
