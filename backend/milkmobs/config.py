"""Application configuration."""
from pathlib import Path
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MILKMOBS_",
    )

    # App settings
    app_name: str = "MilkMobs"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/milkmobs.db"

    # Data directories
    data_dir: Path = Path("./data")

    # Campaign rules
    campaign_hashtags: List[str] = ["gotmilk", "milkmob"]

    # Validation (weights must sum to 1.0)
    validation_threshold: float = 0.7
    weight_hashtags: float = 0.3
    weight_mentions: float = 0.2
    weight_object: float = 0.3
    weight_action: float = 0.2

    # Clustering
    similarity_threshold: float = 0.7  # Min similarity for cluster membership
    join_threshold: float = 0.8  # Min similarity for fast-path join
    neighbor_k: int = 10
    small_corpus_cutoff: int = 20  # Below this, exact similarity graph
    batch_neighbor_limit: int = 50
    kmeans_iterations: int = 10
    kmeans_tolerance: float = 0.001
    kmeans_seed: int = 0  # Fixed so rebuilds of an unchanged corpus repeat
    example_tag_limit: int = 5

    # Retry / backoff
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_multiplier: float = 2.0
    retry_max_delay: float = 8.0

    # Per-call deadlines (seconds)
    analysis_timeout: float = 300.0
    store_timeout: float = 10.0
    index_timeout: float = 10.0
    execution_stale_seconds: float = 1800.0  # Longer than a fully retried run

    # Analysis backend
    analysis_base_url: str = "http://localhost:9000"
    analysis_api_key: str = ""

    # Similarity index (empty endpoint = index unavailable)
    opensearch_endpoint: str = ""
    opensearch_index_name: str = "videos"
    embedding_dimension: int = 256

    # Completion event subscribers
    event_webhook_urls: List[str] = []

    # Batch scheduling
    enable_rebuild_schedule: bool = True
    rebuild_interval_seconds: float = 3600.0


settings = Settings()
