"""Application settings loaded from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables prefixed with CM_."""

    # Database
    database_url: str = ""
    feed_database_url: str = ""

    # Match policy thresholds (confidence points, 0-100)
    merge_threshold: int = 85
    review_threshold: int = 35
    prefilter_threshold: int = 50

    # Candidate generation caps
    strategy_limit: int = 30
    candidate_cap: int = 10
    review_limit: int = 8

    # Batch sizes
    feed_batch_size: int = 100
    backfill_page_size: int = 200

    # External feed
    image_base_url: str = "https://www.finewineandgoodspirits.com"

    model_config = {"env_file": ".env", "env_prefix": "CM_"}


def get_settings() -> Settings:
    """Build Settings from the current environment."""
    return Settings()
