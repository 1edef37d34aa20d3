"""Chat configuration utilities.

Provides the chat settings model and the configured LLM for answers and
title generation, loaded from environment variables.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

# Check if we're in production
is_production = os.getenv("ENVIRONMENT") == "production"

if not is_production:
    # Development: prioritize .env file
    project_root = Path(__file__).resolve().parent.parent.parent
    dotenv_path = project_root / ".env"
    load_dotenv(dotenv_path, override=True)
else:
    # Production: use cloud platform env vars only
    load_dotenv()


class ChatConfig(BaseModel):
    """Settings for the chat query path."""

    llm_choice: str = Field(default_factory=lambda: os.getenv("LLM_CHOICE") or "gpt-4o-mini")
    llm_base_url: str = Field(
        default_factory=lambda: os.getenv("LLM_BASE_URL") or "https://api.openai.com/v1"
    )
    llm_api_key: str = Field(default_factory=lambda: os.getenv("LLM_API_KEY") or "ollama")
    # Price table key; defaults to the model name
    pricing_model: str = Field(
        default_factory=lambda: (
            os.getenv("PRICING_MODEL") or os.getenv("LLM_CHOICE") or "gpt-4o-mini"
        )
    )
    embedding_model: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_MODEL_CHOICE", "text-embedding-3-small")
    )

    context_token_budget: int = Field(
        default_factory=lambda: int(os.getenv("CONTEXT_TOKEN_BUDGET", "8000"))
    )
    history_pairs: int = Field(
        default_factory=lambda: int(os.getenv("CHAT_HISTORY_PAIRS", "5"))
    )
    retrieval_k: int = Field(default_factory=lambda: int(os.getenv("RETRIEVAL_K", "5")))

    title_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("TITLE_TIMEOUT_SECONDS", "10"))
    )
    title_max_words: int = Field(
        default_factory=lambda: int(os.getenv("TITLE_MAX_WORDS", "6"))
    )

    supabase_url: str = Field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    supabase_key: str = Field(
        default_factory=lambda: os.getenv("SUPABASE_SERVICE_KEY", "")
    )


def get_chat_config() -> ChatConfig:
    """Get validated chat configuration."""
    return ChatConfig()


def get_model(config: ChatConfig | None = None) -> OpenAIChatModel:
    """Get the configured LLM model.

    Reads configuration from environment variables:
    - LLM_CHOICE: Model name (default: gpt-4o-mini)
    - LLM_BASE_URL: API base URL (default: https://api.openai.com/v1)
    - LLM_API_KEY: API key (default: ollama for local testing)

    Returns:
        OpenAIChatModel configured with environment settings.

    Examples:
        >>> model = get_model()
        >>> # Uses gpt-4o-mini by default
    """
    config = config or get_chat_config()
    return OpenAIChatModel(
        config.llm_choice,
        provider=OpenAIProvider(base_url=config.llm_base_url, api_key=config.llm_api_key),
    )
