"""Unit tests for embedding service."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from openai import BadRequestError, RateLimitError

from src.ingestion.config import IngestionConfig
from src.ingestion.embedding_service import EmbeddingService
from src.ingestion.schemas import Chunk
from src.utils.errors import ProviderError, RateLimitedError

DIMS = 32


def embeddings_response(inputs: list[str], dims: int = DIMS, reverse: bool = True):
    """Build a fake embeddings response, optionally with items out of order."""
    items = [
        SimpleNamespace(index=i, embedding=[float(len(text))] + [0.0] * (dims - 1))
        for i, text in enumerate(inputs)
    ]
    if reverse:
        items.reverse()
    return SimpleNamespace(data=items, usage=SimpleNamespace(total_tokens=len(inputs) * 3))


def openai_error(cls, status: int):
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    return cls("error", response=httpx.Response(status, request=request), body=None)


def make_chunks(count: int) -> list[Chunk]:
    return [
        Chunk(
            video_id="video-1",
            chunk_index=i,
            text="x" * (i + 1),
            start_seconds=float(i),
            end_seconds=float(i + 1),
            word_count=1,
            segment_count=1,
        )
        for i in range(count)
    ]


@pytest.mark.unit
class TestEmbeddingService:
    """Test suite for EmbeddingService class."""

    @pytest.fixture
    def config(self, ingestion_config: IngestionConfig) -> IngestionConfig:
        return ingestion_config.model_copy(
            update={
                "embedding_provider": "openai",
                "embedding_base_url": "https://api.openai.com/v1",
                "embedding_api_key": "test_api_key",
                "embedding_batch_size": 2,
                "embedding_concurrency": 2,
            }
        )

    @pytest.fixture
    def mock_client(self) -> MagicMock:
        client = MagicMock()
        client.embeddings.create = AsyncMock(
            side_effect=lambda input, model: embeddings_response(input)
        )
        return client

    def test_service_initialization_openai(self, config: IngestionConfig) -> None:
        """Test service initialization with OpenAI provider."""
        with patch("src.ingestion.embedding_service.AsyncOpenAI") as mock_openai:
            EmbeddingService(config)

            mock_openai.assert_called_once_with(
                base_url="https://api.openai.com/v1",
                api_key="test_api_key",
            )

    def test_service_initialization_ollama(self, config: IngestionConfig) -> None:
        """Test Ollama uses a placeholder API key."""
        ollama = config.model_copy(
            update={
                "embedding_provider": "ollama",
                "embedding_base_url": "http://localhost:11434/v1",
            }
        )
        with patch("src.ingestion.embedding_service.AsyncOpenAI") as mock_openai:
            EmbeddingService(ollama)

            mock_openai.assert_called_once_with(
                base_url="http://localhost:11434/v1",
                api_key="ollama",
            )

    @pytest.mark.asyncio
    async def test_embed_query(self, config: IngestionConfig, mock_client: MagicMock) -> None:
        """Test a query embeds in one call."""
        service = EmbeddingService(config, client=mock_client)

        vector = await service.embed_query("hello")

        assert len(vector) == DIMS
        assert vector[0] == 5.0
        assert service.calls == 1
        mock_client.embeddings.create.assert_awaited_once_with(
            input=["hello"], model=config.embedding_model
        )

    @pytest.mark.asyncio
    async def test_embed_chunks_batches_in_order(
        self, config: IngestionConfig, mock_client: MagicMock
    ) -> None:
        """Test chunks are batched and vectors land on the right chunks."""
        service = EmbeddingService(config, client=mock_client)
        chunks = make_chunks(5)

        embedded = await service.embed_chunks(chunks)

        assert mock_client.embeddings.create.await_count == 3
        assert [c.chunk_index for c in embedded] == [0, 1, 2, 3, 4]
        assert [c.embedding[0] for c in embedded] == [1.0, 2.0, 3.0, 4.0, 5.0]
        assert all(c.embedding is None for c in chunks)
        assert service.total_tokens == 15

    @pytest.mark.asyncio
    async def test_embed_no_chunks(self, config: IngestionConfig, mock_client: MagicMock) -> None:
        """Test an empty chunk list makes no calls."""
        service = EmbeddingService(config, client=mock_client)

        assert await service.embed_chunks([]) == []
        mock_client.embeddings.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_retried_then_succeeds(
        self, config: IngestionConfig, mock_client: MagicMock
    ) -> None:
        """Test a 429 is retried with backoff and the retry result is used."""
        mock_client.embeddings.create.side_effect = [
            openai_error(RateLimitError, 429),
            embeddings_response(["abc"]),
        ]
        service = EmbeddingService(config, client=mock_client)

        vector = await service.embed_query("abc")

        assert vector[0] == 3.0
        assert mock_client.embeddings.create.await_count == 2

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(
        self, config: IngestionConfig, mock_client: MagicMock
    ) -> None:
        """Test persistent rate limiting surfaces as RateLimitedError."""
        mock_client.embeddings.create.side_effect = openai_error(RateLimitError, 429)
        service = EmbeddingService(config, client=mock_client)

        with pytest.raises(RateLimitedError):
            await service.embed_query("abc")

        assert mock_client.embeddings.create.await_count == config.retry_max_attempts

    @pytest.mark.asyncio
    async def test_client_error_not_retried(
        self, config: IngestionConfig, mock_client: MagicMock
    ) -> None:
        """Test a 400 fails immediately as a non-retryable ProviderError."""
        mock_client.embeddings.create.side_effect = openai_error(BadRequestError, 400)
        service = EmbeddingService(config, client=mock_client)

        with pytest.raises(ProviderError) as exc_info:
            await service.embed_chunks(make_chunks(1))

        assert exc_info.value.retryable is False
        assert exc_info.value.status_code == 400
        assert mock_client.embeddings.create.await_count == 1

    @pytest.mark.asyncio
    async def test_wrong_dimensions_rejected(
        self, config: IngestionConfig, mock_client: MagicMock
    ) -> None:
        """Test vectors of the wrong dimension fail the whole call."""
        mock_client.embeddings.create.side_effect = lambda input, model: embeddings_response(
            input, dims=DIMS + 1
        )
        service = EmbeddingService(config, client=mock_client)

        with pytest.raises(ProviderError):
            await service.embed_chunks(make_chunks(3))

    @pytest.mark.asyncio
    async def test_one_failed_batch_fails_all(
        self, config: IngestionConfig, mock_client: MagicMock
    ) -> None:
        """Test a failing batch fails the call; no partial result is returned."""

        async def create(input, model):
            if "xxx" in input:
                raise openai_error(BadRequestError, 400)
            return embeddings_response(input)

        mock_client.embeddings.create.side_effect = create
        service = EmbeddingService(config, client=mock_client)

        with pytest.raises(ProviderError):
            await service.embed_chunks(make_chunks(4))
