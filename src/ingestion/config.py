"""Configuration module for the video ingestion pipeline."""

import math
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from src.utils.retry import RetryPolicy

# Load environment variables from .env file
load_dotenv()

# Headroom between the longest stage timeout and the stuck threshold
STUCK_MARGIN_SECONDS = 60


class IngestionConfig(BaseModel):
    """Configuration for the video ingestion pipeline.

    Covers source credentials, transcript tiers, chunk sizing, embedding
    batching, stage timeouts and storage. All settings can be overridden via
    environment variables.
    """

    # Source and caption provider credentials
    supadata_api_key: str = Field(
        default_factory=lambda: os.getenv("SUPADATA_API_KEY", "")
    )
    loom_api_key: str = Field(default_factory=lambda: os.getenv("LOOM_API_KEY", ""))
    mux_token_id: str = Field(default_factory=lambda: os.getenv("MUX_TOKEN_ID", ""))
    mux_token_secret: str = Field(
        default_factory=lambda: os.getenv("MUX_TOKEN_SECRET", "")
    )
    transcript_languages: list[str] = Field(
        default_factory=lambda: os.getenv("TRANSCRIPT_LANGUAGES", "en").split(",")
    )
    http_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("SOURCE_HTTP_TIMEOUT", "30"))
    )

    # Paid speech-to-text fallback
    whisper_model: str = Field(
        default_factory=lambda: os.getenv("WHISPER_MODEL", "whisper-1")
    )
    whisper_cost_per_minute: str = Field(
        default_factory=lambda: os.getenv("WHISPER_COST_PER_MINUTE", "0.006")
    )
    whisper_max_bytes: int = Field(
        default_factory=lambda: int(os.getenv("WHISPER_MAX_BYTES", str(25 * 1024 * 1024)))
    )

    # Chunking settings (word-based)
    target_words: int = Field(
        default_factory=lambda: int(os.getenv("CHUNK_TARGET_WORDS", "750"))
    )
    min_words: int = Field(
        default_factory=lambda: int(os.getenv("CHUNK_MIN_WORDS", "500"))
    )
    max_words: int = Field(
        default_factory=lambda: int(os.getenv("CHUNK_MAX_WORDS", "1000"))
    )
    overlap_words: int = Field(
        default_factory=lambda: int(os.getenv("CHUNK_OVERLAP_WORDS", "100"))
    )

    # Embedding settings
    embedding_provider: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_PROVIDER", "openai")
    )
    embedding_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "EMBEDDING_BASE_URL", "https://api.openai.com/v1"
        )
    )
    embedding_api_key: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_API_KEY", "")
    )
    embedding_model: str = Field(
        default_factory=lambda: os.getenv(
            "EMBEDDING_MODEL_CHOICE", "text-embedding-3-small"
        )
    )
    embedding_dimensions: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))
    )
    embedding_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_BATCH_SIZE", "20"))
    )
    embedding_concurrency: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_CONCURRENCY", "3"))
    )

    # Backoff shared by caption tiers and embedding batches
    retry_max_attempts: int = Field(
        default_factory=lambda: int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
    )
    retry_base_delay: float = Field(
        default_factory=lambda: float(os.getenv("RETRY_BASE_DELAY", "1.0"))
    )
    retry_max_delay: float = Field(
        default_factory=lambda: float(os.getenv("RETRY_MAX_DELAY", "30.0"))
    )

    # Orchestration
    transcribe_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("TRANSCRIBE_TIMEOUT_SECONDS", "600"))
    )
    chunk_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CHUNK_TIMEOUT_SECONDS", "60"))
    )
    embed_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("EMBED_TIMEOUT_SECONDS", "600"))
    )
    stuck_after_minutes: int = Field(
        default_factory=lambda: int(os.getenv("STUCK_AFTER_MINUTES", "15"))
    )
    pipeline_concurrency: int = Field(
        default_factory=lambda: int(os.getenv("PIPELINE_CONCURRENCY", "4"))
    )

    # Database and storage settings
    supabase_url: str = Field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    supabase_key: str = Field(
        default_factory=lambda: os.getenv("SUPABASE_SERVICE_KEY", "")
    )
    upload_bucket: str = Field(
        default_factory=lambda: os.getenv("UPLOAD_BUCKET", "videos")
    )

    def retry_policy(self) -> RetryPolicy:
        """Backoff policy used inside a stage."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    def stage_timeouts(self) -> dict[str, float]:
        """Upper bound in seconds for each processing stage."""
        return {
            "transcribing": self.transcribe_timeout_seconds,
            "chunking": self.chunk_timeout_seconds,
            "embedding": self.embed_timeout_seconds,
        }

    def min_stuck_minutes(self) -> int:
        """Smallest stuck threshold that cannot catch a stage still within its timeout."""
        return math.floor((max(self.stage_timeouts().values()) + STUCK_MARGIN_SECONDS) / 60) + 1

    @model_validator(mode="after")
    def check_stuck_threshold(self) -> "IngestionConfig":
        if self.stuck_after_minutes < self.min_stuck_minutes():
            raise ValueError(
                f"stuck_after_minutes must be at least {self.min_stuck_minutes()} "
                "to exceed the longest stage timeout"
            )
        return self


def get_config() -> IngestionConfig:
    """Get validated configuration instance.

    Returns:
        IngestionConfig: Validated configuration object with all settings.

    Raises:
        ValidationError: If environment variables hold invalid values.
    """
    return IngestionConfig()
