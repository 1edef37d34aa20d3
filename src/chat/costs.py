"""Per-model unit pricing and cost computation.

Prices are USD per million tokens. Costs are computed in ``Decimal`` so the
same token counts always give the same total.
"""

from decimal import Decimal

from pydantic import BaseModel

from src.utils.logging import get_logger

logger = get_logger(__name__)

PER_MILLION = Decimal(1_000_000)
COST_QUANTUM = Decimal("0.000001")

# Average tokens in an embedded chat question
QUERY_EMBEDDING_TOKENS = 50


class ModelPricing(BaseModel):
    input_per_million: Decimal
    output_per_million: Decimal = Decimal("0")


CHAT_PRICING: dict[str, ModelPricing] = {
    "gpt-4o-mini": ModelPricing(
        input_per_million=Decimal("0.15"), output_per_million=Decimal("0.60")
    ),
    "gpt-4o": ModelPricing(
        input_per_million=Decimal("2.50"), output_per_million=Decimal("10.00")
    ),
    "gpt-4.1-mini": ModelPricing(
        input_per_million=Decimal("0.40"), output_per_million=Decimal("1.60")
    ),
    "gpt-4.1": ModelPricing(
        input_per_million=Decimal("2.00"), output_per_million=Decimal("8.00")
    ),
    "claude-haiku": ModelPricing(
        input_per_million=Decimal("1.00"), output_per_million=Decimal("5.00")
    ),
    "claude-sonnet": ModelPricing(
        input_per_million=Decimal("3.00"), output_per_million=Decimal("15.00")
    ),
}

EMBEDDING_PRICING: dict[str, Decimal] = {
    "text-embedding-3-small": Decimal("0.02"),
    "text-embedding-3-large": Decimal("0.13"),
}

DEFAULT_CHAT_MODEL = "gpt-4o-mini"


def get_chat_pricing(model: str) -> ModelPricing:
    """Look up pricing by exact name, then by longest matching prefix.

    Dated model names such as ``gpt-4o-mini-2024-07-18`` resolve to their
    family; ``claude-3-5-haiku-latest`` resolves to ``claude-haiku``.
    """
    if model in CHAT_PRICING:
        return CHAT_PRICING[model]

    prefixes = sorted(
        (name for name in CHAT_PRICING if model.startswith(name)), key=len, reverse=True
    )
    if prefixes:
        return CHAT_PRICING[prefixes[0]]

    for family in ("haiku", "sonnet"):
        if model.startswith("claude") and family in model:
            return CHAT_PRICING[f"claude-{family}"]

    logger.warning("pricing_model_unknown", model=model, fallback=DEFAULT_CHAT_MODEL)
    return CHAT_PRICING[DEFAULT_CHAT_MODEL]


def compute_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    embedding_calls: int = 0,
    embedding_model: str = "text-embedding-3-small",
) -> Decimal:
    """Total cost of one answer in USD, rounded to micro-dollars."""
    pricing = get_chat_pricing(model)
    completion = (
        Decimal(input_tokens) * pricing.input_per_million
        + Decimal(output_tokens) * pricing.output_per_million
    ) / PER_MILLION

    embedding_price = EMBEDDING_PRICING.get(embedding_model, Decimal("0"))
    embedding = (
        Decimal(embedding_calls * QUERY_EMBEDDING_TOKENS) * embedding_price / PER_MILLION
    )
    return (completion + embedding).quantize(COST_QUANTUM)
