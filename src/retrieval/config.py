"""Configuration for vector storage and ranked retrieval."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

load_dotenv()


class RetrievalConfig(BaseModel):
    """Retrieval and ranking settings.

    Ranking weights are tunable policy. Similarity must stay the dominant
    term, so ``weight_similarity`` has to exceed the other two combined.
    """

    default_k: int = Field(default_factory=lambda: int(os.getenv("RETRIEVAL_K", "5")))
    candidate_multiplier: int = Field(
        default_factory=lambda: int(os.getenv("RETRIEVAL_CANDIDATE_MULTIPLIER", "4"))
    )

    weight_similarity: float = Field(
        default_factory=lambda: float(os.getenv("RANK_WEIGHT_SIMILARITY", "0.6"))
    )
    weight_recency: float = Field(
        default_factory=lambda: float(os.getenv("RANK_WEIGHT_RECENCY", "0.15"))
    )
    weight_popularity: float = Field(
        default_factory=lambda: float(os.getenv("RANK_WEIGHT_POPULARITY", "0.15"))
    )
    recency_decay_days: float = Field(
        default_factory=lambda: float(os.getenv("RANK_RECENCY_DECAY_DAYS", "90"))
    )
    popularity_view_cap: int = Field(
        default_factory=lambda: int(os.getenv("RANK_POPULARITY_VIEW_CAP", "1000"))
    )
    popularity_reference_cap: int = Field(
        default_factory=lambda: int(os.getenv("RANK_POPULARITY_REFERENCE_CAP", "500"))
    )

    cache_ttl_seconds: float = Field(
        default_factory=lambda: float(os.getenv("RETRIEVAL_CACHE_TTL_SECONDS", "300"))
    )
    cache_max_entries: int = Field(
        default_factory=lambda: int(os.getenv("RETRIEVAL_CACHE_MAX_ENTRIES", "512"))
    )

    # "supabase" (pgvector) or "memory" (in-process numpy IVF)
    vector_backend: str = Field(
        default_factory=lambda: os.getenv("VECTOR_BACKEND", "supabase")
    )
    ivf_train_threshold: int = Field(
        default_factory=lambda: int(os.getenv("IVF_TRAIN_THRESHOLD", "1024"))
    )
    ivf_n_probe: int = Field(default_factory=lambda: int(os.getenv("IVF_N_PROBE", "8")))

    @model_validator(mode="after")
    def _similarity_dominates(self) -> "RetrievalConfig":
        if self.weight_similarity <= self.weight_recency + self.weight_popularity:
            raise ValueError(
                "weight_similarity must exceed weight_recency + weight_popularity"
            )
        return self


def get_retrieval_config() -> RetrievalConfig:
    """Get validated retrieval configuration."""
    return RetrievalConfig()
