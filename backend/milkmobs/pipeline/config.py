"""Pipeline configuration."""
from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass
class ValidationConfig:
    """Configuration for participation validation."""

    threshold: float = 0.7
    campaign_hashtags: Tuple[str, ...] = ("gotmilk", "milkmob")

    # Evidence weights (sum to 1.0 to stay comparable with the backend score)
    weight_hashtags: float = 0.3
    weight_mentions: float = 0.2
    weight_object: float = 0.3
    weight_action: float = 0.2

    def __post_init__(self):
        total = self.weight_hashtags + self.weight_mentions + self.weight_object + self.weight_action
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Validation weights must sum to 1.0, got {total:.3f}")


@dataclass
class ClusteringConfig:
    """Configuration for online assignment and batch rebuilds."""

    similarity_threshold: float = 0.7
    join_threshold: float = 0.8
    neighbor_k: int = 10

    # Batch
    small_corpus_cutoff: int = 20
    batch_neighbor_limit: int = 50
    kmeans_iterations: int = 10
    kmeans_tolerance: float = 0.001
    kmeans_seed: Optional[int] = 0

    # Community metadata
    example_tag_limit: int = 5


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for infrastructure calls."""

    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Delay to sleep after a failed attempt (1-based)."""
        return min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))


@dataclass
class Deadlines:
    """Per-call deadlines in seconds."""

    analysis: float = 300.0
    store: float = 10.0
    index: float = 10.0


@dataclass
class PipelineConfig:
    """Everything the core needs, grouped."""

    validation: ValidationConfig = field(default_factory=ValidationConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    deadlines: Deadlines = field(default_factory=Deadlines)

    @classmethod
    def from_settings(cls, settings) -> "PipelineConfig":
        """Project application settings onto the pipeline config."""
        return cls(
            validation=ValidationConfig(
                threshold=settings.validation_threshold,
                campaign_hashtags=tuple(settings.campaign_hashtags),
                weight_hashtags=settings.weight_hashtags,
                weight_mentions=settings.weight_mentions,
                weight_object=settings.weight_object,
                weight_action=settings.weight_action,
            ),
            clustering=ClusteringConfig(
                similarity_threshold=settings.similarity_threshold,
                join_threshold=settings.join_threshold,
                neighbor_k=settings.neighbor_k,
                small_corpus_cutoff=settings.small_corpus_cutoff,
                batch_neighbor_limit=settings.batch_neighbor_limit,
                kmeans_iterations=settings.kmeans_iterations,
                kmeans_tolerance=settings.kmeans_tolerance,
                kmeans_seed=settings.kmeans_seed,
                example_tag_limit=settings.example_tag_limit,
            ),
            retry=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay,
                multiplier=settings.retry_multiplier,
                max_delay=settings.retry_max_delay,
            ),
            deadlines=Deadlines(
                analysis=settings.analysis_timeout,
                store=settings.store_timeout,
                index=settings.index_timeout,
            ),
        )


DEFAULT_PIPELINE_CONFIG = PipelineConfig()
