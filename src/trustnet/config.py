from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


def _default_category_keywords() -> dict[str, list[str]]:
    return {
        "scientific": ["Nature", "Science", "The Lancet", "JAMA"],
        "financial": ["Financial Times", "Wall Street Journal", "The Economist"],
        "news": ["Folha", "Estado", "Globo", "G1"],
        "agency": ["Agência Brasil", "Reuters"],
    }


class Settings(BaseSettings):
    """Configuration sourced from environment variables."""

    database_url: str = "sqlite+aiosqlite:///./trustnet.db"
    redis_url: str | None = None
    resolver_cache_ttl: int = 300

    newsdata_api_key: str | None = None
    openpagerank_api_key: str | None = None
    reputation_timeout: float = 8.0
    reputation_cache_ttl: int = 3600
    reputation_miss_ttl: int = 300

    recompute_interval_seconds: float = 300.0
    default_bfs_depth: int = 3

    # Connection synthesis
    synthesis_threshold: float = 0.3
    credibility_weight: float = 0.4
    volume_weight: float = 0.3
    category_weight: float = 0.3
    category_match_score: float = 0.8
    category_mismatch_score: float = 0.3
    category_keywords: dict[str, list[str]] = Field(default_factory=_default_category_keywords)

    # Feedback adjustment
    feedback_source_delta: float = 0.1
    feedback_edge_delta: float = 0.05

    # Confidence defaults
    neutral_confidence: float = 0.5
    unknown_source_confidence: float = 0.3

    log_level: str = "INFO"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "",
        "case_sensitive": False,
    }


@lru_cache(1)
def get_settings() -> Settings:
    return Settings()
