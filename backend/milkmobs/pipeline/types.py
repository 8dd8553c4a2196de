"""Data types and result containers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Highlight:
    """Time-coded moment the analysis backend found relevant."""
    timestamp: float  # seconds
    description: str
    score: Optional[float] = None  # 0-1 relevance

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "description": self.description, "score": self.score}


@dataclass
class ParticipationResult:
    """Participation judgment from the analysis backend."""
    participation_score: float
    mentions_subject: bool
    shows_object: bool
    action_aligned: bool
    rationale: str = ""
    highlights: list[Highlight] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)
    objects_scenes: list[str] = field(default_factory=list)
    detected_text: list[str] = field(default_factory=list)


@dataclass
class EmbeddingResult:
    """Embedding vector from the analysis backend."""
    embedding: list[float]
    dim: int


@dataclass
class AnalysisPayload:
    """Participation and embedding outputs combined into one record."""
    participation_score: float
    mentions_subject: bool
    shows_object: bool
    action_aligned: bool
    rationale: str
    highlights: list[Highlight]
    actions: list[str]
    objects_scenes: list[str]
    detected_text: list[str]
    embedding: list[float]
    embedding_dim: int

    def to_fields(self) -> dict[str, Any]:
        """Field map for a partial content store update."""
        return {
            "participation_score": self.participation_score,
            "mentions_subject": self.mentions_subject,
            "shows_object": self.shows_object,
            "action_aligned": self.action_aligned,
            "rationale": self.rationale,
            "highlights": [h.to_dict() for h in self.highlights],
            "actions": list(self.actions),
            "objects_scenes": list(self.objects_scenes),
            "detected_text": list(self.detected_text),
            "embedding": list(self.embedding),
            "embedding_dim": self.embedding_dim,
        }


@dataclass
class ValidationVerdict:
    """Outcome of participation validation."""
    passed: bool
    score: float
    reasons: list[str]


@dataclass
class ClusterMember:
    """What clustering needs to know about one content item."""
    id: str
    embedding: list[float]
    hashtags: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)
    objects_scenes: list[str] = field(default_factory=list)
    community_id: Optional[str] = None

    @classmethod
    def from_item(cls, item) -> "ClusterMember":
        return cls(
            id=item.id,
            embedding=list(item.embedding or []),
            hashtags=list(item.hashtags or []),
            actions=list(item.actions or []),
            objects_scenes=list(item.objects_scenes or []),
            community_id=item.community_id,
        )

    @classmethod
    def from_metadata(cls, item_id: str, embedding: list[float], metadata: dict) -> "ClusterMember":
        return cls(
            id=item_id,
            embedding=list(embedding or []),
            hashtags=list(metadata.get("hashtags") or []),
            actions=list(metadata.get("actions") or []),
            objects_scenes=list(metadata.get("objects_scenes") or []),
            community_id=metadata.get("community_id"),
        )


@dataclass
class Neighbor:
    """One similarity search hit."""
    id: str
    score: float
    metadata: dict = field(default_factory=dict)
    embedding: Optional[list[float]] = None

    @property
    def community_id(self) -> Optional[str]:
        return self.metadata.get("community_id")


@dataclass
class Cluster:
    """A group of members that belong to one community."""
    community_id: str
    members: list[ClusterMember]
    centroid: list[float]

    @property
    def size(self) -> int:
        return len(self.members)


@dataclass
class RebuildReport:
    """Summary of a batch rebuild."""
    algorithm: str
    corpus_size: int
    clusters: list[Cluster] = field(default_factory=list)
    communities_reset: list[str] = field(default_factory=list)

    @property
    def cluster_count(self) -> int:
        return len(self.clusters)

    def to_dict(self) -> dict:
        return {
            "algorithm": self.algorithm,
            "corpus_size": self.corpus_size,
            "cluster_count": self.cluster_count,
            "clusters": {c.community_id: c.size for c in self.clusters},
            "communities_reset": list(self.communities_reset),
        }


@dataclass
class CompletionEvent:
    """Final outcome of one pipeline execution, sent to subscribers."""
    id: str
    status: str
    participation_score: Optional[float]
    community_id: Optional[str]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "participation_score": self.participation_score,
            "community_id": self.community_id,
        }
