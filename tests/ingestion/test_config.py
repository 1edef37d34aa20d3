"""Unit tests for ingestion configuration."""

import pytest
from pydantic import ValidationError

from src.ingestion.config import IngestionConfig, get_config


@pytest.mark.unit
class TestIngestionConfig:
    """Test suite for IngestionConfig class."""

    def test_config_with_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test config creation with default values."""
        for name in ("CHUNK_TARGET_WORDS", "EMBEDDING_PROVIDER", "EMBEDDING_MODEL_CHOICE"):
            monkeypatch.delenv(name, raising=False)

        config = IngestionConfig()

        assert config.target_words == 750
        assert config.embedding_provider == "openai"
        assert config.embedding_model == "text-embedding-3-small"
        assert config.embedding_dimensions == 1536

    def test_config_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test config loads from environment variables."""
        monkeypatch.setenv("CHUNK_TARGET_WORDS", "600")
        monkeypatch.setenv("EMBEDDING_PROVIDER", "ollama")
        monkeypatch.setenv("TRANSCRIPT_LANGUAGES", "en,es")
        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")

        config = IngestionConfig()

        assert config.target_words == 600
        assert config.embedding_provider == "ollama"
        assert config.transcript_languages == ["en", "es"]
        assert config.retry_max_attempts == 5

    def test_retry_policy(self, ingestion_config: IngestionConfig) -> None:
        """Test the retry policy mirrors the backoff settings."""
        policy = ingestion_config.retry_policy()

        assert policy.max_attempts == 3
        assert policy.base_delay == 0

    def test_stage_timeouts(self) -> None:
        """Test every processing stage has a timeout."""
        config = IngestionConfig(transcribe_timeout_seconds=5, embed_timeout_seconds=7)

        assert config.stage_timeouts() == {
            "transcribing": 5,
            "chunking": config.chunk_timeout_seconds,
            "embedding": 7,
        }

    def test_stuck_threshold_below_stage_timeout_rejected(self) -> None:
        """Test a stuck threshold inside the longest stage timeout is refused."""
        with pytest.raises(ValidationError, match="stuck_after_minutes"):
            IngestionConfig(
                transcribe_timeout_seconds=600,
                embed_timeout_seconds=600,
                stuck_after_minutes=10,
            )

    def test_min_stuck_minutes(self) -> None:
        """Test the minimum stuck threshold clears the longest timeout plus a margin."""
        default = IngestionConfig(
            transcribe_timeout_seconds=600,
            chunk_timeout_seconds=60,
            embed_timeout_seconds=600,
        )
        short = IngestionConfig(
            transcribe_timeout_seconds=60,
            chunk_timeout_seconds=30,
            embed_timeout_seconds=60,
            stuck_after_minutes=3,
        )

        assert default.min_stuck_minutes() == 12
        assert short.min_stuck_minutes() == 3
        assert short.stuck_after_minutes == 3

    def test_get_config_function(self) -> None:
        """Test get_config helper function returns valid config."""
        assert isinstance(get_config(), IngestionConfig)
