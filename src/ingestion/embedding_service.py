"""Embedding service for generating text embeddings via OpenAI-compatible APIs."""

import asyncio

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from src.utils.errors import ProviderError, RateLimitedError
from src.utils.logging import get_logger
from src.utils.retry import create_retry_decorator

from .config import IngestionConfig
from .schemas import Chunk

logger = get_logger(__name__)


class EmbeddingService:
    """Service for generating text embeddings.

    Supports OpenAI-compatible providers (OpenAI, Ollama, OpenRouter).
    Chunks are sent in fixed-size batches with a small number of requests in
    flight. Rate limits and transient server errors are retried with
    backoff; anything else fails the whole call so that no chunk set is ever
    half embedded.
    """

    _retryable_exceptions: tuple[type[Exception], ...] = (
        RateLimitError,
        APITimeoutError,
        APIConnectionError,
        InternalServerError,
    )

    def __init__(self, config: IngestionConfig, client: AsyncOpenAI | None = None):
        """Initialize embedding service with configuration.

        Args:
            config: Configuration object with embedding provider settings.
            client: Pre-built client, mainly for tests.
        """
        self.config = config
        self.client = client or self._get_client()
        self.calls = 0
        self.total_tokens = 0
        self._with_retry = create_retry_decorator(
            config.retry_policy(), self._retryable_exceptions
        )
        logger.info(
            "embedding_service_initialized",
            provider=config.embedding_provider,
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            batch_size=config.embedding_batch_size,
            concurrency=config.embedding_concurrency,
        )

    def _get_client(self) -> AsyncOpenAI:
        """Initialize OpenAI-compatible client based on provider.

        Returns:
            Configured AsyncOpenAI client instance.
        """
        if self.config.embedding_provider == "ollama":
            # Ollama doesn't require a real API key
            return AsyncOpenAI(
                base_url=self.config.embedding_base_url,
                api_key="ollama",
            )
        return AsyncOpenAI(
            base_url=self.config.embedding_base_url,
            api_key=self.config.embedding_api_key,
        )

    async def _create(self, inputs: list[str]) -> list[list[float]]:
        """Embed ``inputs`` in one request, with retries and dimension checks."""

        @self._with_retry
        async def _request():
            return await self.client.embeddings.create(
                input=inputs,
                model=self.config.embedding_model,
            )

        try:
            response = await _request()
        except RateLimitError as e:
            raise RateLimitedError(
                "Embedding provider rate limit persisted after retries", provider="openai"
            ) from e
        except (APITimeoutError, APIConnectionError, InternalServerError) as e:
            raise ProviderError(
                f"Embedding request failed after retries: {e}",
                provider="openai",
                retryable=True,
            ) from e
        except APIStatusError as e:
            raise ProviderError(
                f"Embedding request rejected: {e}",
                provider="openai",
                retryable=False,
                status_code=e.status_code,
            ) from e

        self.calls += 1
        usage = getattr(response, "usage", None)
        if usage is not None:
            self.total_tokens += getattr(usage, "total_tokens", 0) or 0

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(inputs):
            raise ProviderError(
                f"Embedding provider returned {len(data)} vectors for {len(inputs)} inputs",
                provider="openai",
            )
        vectors = [item.embedding for item in data]
        for vector in vectors:
            if len(vector) != self.config.embedding_dimensions:
                raise ProviderError(
                    f"Embedding dimension {len(vector)} != {self.config.embedding_dimensions}",
                    provider="openai",
                )
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        """Generate embedding for a single text.

        Args:
            text: Text content to embed.

        Returns:
            Embedding vector as a list of floats.
        """
        vectors = await self._create([text])
        logger.debug("query_embedded", text_length=len(text))
        return vectors[0]

    async def embed_chunks(self, chunks: list[Chunk]) -> list[Chunk]:
        """Attach embeddings to every chunk, all or nothing.

        Args:
            chunks: Chunks of one video.

        Returns:
            Copies of the chunks with ``embedding`` set, in input order.

        Raises:
            RateLimitedError: Rate limiting outlasted the retry budget.
            ProviderError: A batch failed or returned a malformed vector.
        """
        if not chunks:
            return []

        batch_size = self.config.embedding_batch_size
        batches = [chunks[i : i + batch_size] for i in range(0, len(chunks), batch_size)]
        semaphore = asyncio.Semaphore(self.config.embedding_concurrency)

        logger.info(
            "batch_embedding_started",
            video_id=chunks[0].video_id,
            count=len(chunks),
            batches=len(batches),
        )

        async def _run(batch_num: int, batch: list[Chunk]) -> list[list[float]]:
            async with semaphore:
                vectors = await self._create([chunk.text for chunk in batch])
                logger.debug("batch_completed", batch_num=batch_num, count=len(batch))
                return vectors

        tasks = [
            asyncio.create_task(_run(num, batch)) for num, batch in enumerate(batches, start=1)
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException as e:
            for task in tasks:
                task.cancel()
            logger.error(
                "batch_embedding_failed",
                video_id=chunks[0].video_id,
                error_type=type(e).__name__,
            )
            raise

        vectors = [vector for batch_vectors in results for vector in batch_vectors]
        embedded = [
            chunk.model_copy(update={"embedding": vector})
            for chunk, vector in zip(chunks, vectors, strict=True)
        ]
        logger.info(
            "batch_embedding_completed",
            video_id=chunks[0].video_id,
            total_embeddings=len(embedded),
        )
        return embedded
