"""Token counting for prompt budgets and usage estimates.

OpenAI models are counted exactly with their tiktoken encoding; other
models fall back to a HuggingFace tokenizer.
"""

from functools import lru_cache
from typing import Any

import tiktoken
from transformers import AutoTokenizer

from src.utils.logging import get_logger

logger = get_logger(__name__)

# Map non-OpenAI models to compatible HuggingFace tokenizers
TOKENIZER_MAP = {
    "nomic-embed-text": "bert-base-uncased",
    "all-MiniLM-L6-v2": "sentence-transformers/all-MiniLM-L6-v2",
}
DEFAULT_TOKENIZER = "sentence-transformers/all-MiniLM-L6-v2"


@lru_cache(maxsize=8)
def get_encoding(model: str) -> tiktoken.Encoding | None:
    """The tiktoken encoding for an OpenAI model, or None if tiktoken doesn't know it."""
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return None


@lru_cache(maxsize=4)
def get_tokenizer(model: str) -> Any:
    """Load (once) the HuggingFace tokenizer used for a non-OpenAI model.

    Returns:
        AutoTokenizer instance (untyped due to transformers library).
    """
    tokenizer_name = TOKENIZER_MAP.get(model, DEFAULT_TOKENIZER)
    logger.info("loading_tokenizer", model=model, tokenizer=tokenizer_name)
    return AutoTokenizer.from_pretrained(tokenizer_name)  # type: ignore


class TokenCounter:
    """Counts tokens the way ``model`` does.

    The encoding or tokenizer is loaded on first use.
    """

    def __init__(self, model: str):
        self.model = model

    def __call__(self, text: str) -> int:
        if not text:
            return 0
        encoding = get_encoding(self.model)
        if encoding is not None:
            return len(encoding.encode(text, disallowed_special=()))
        tokenizer = get_tokenizer(self.model)
        return len(tokenizer.encode(text, add_special_tokens=False))
