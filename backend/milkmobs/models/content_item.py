"""Content item model."""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum, Float, Boolean, Text, JSON

from milkmobs.db.database import Base


class ContentStatus(str, enum.Enum):
    """Content item lifecycle status."""
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    VALIDATED = "validated"
    REJECTED = "rejected"


class ContentItem(Base):
    """One submitted campaign video and everything the pipeline learns about it."""

    __tablename__ = "content_items"

    id = Column(String(128), primary_key=True, index=True)
    user_id = Column(String(255), nullable=False)
    user_handle = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Submission
    content_ref = Column(String(4096), nullable=False)  # Blob locator
    hashtags = Column(JSON, default=list, nullable=False)  # Ordered, may repeat
    status = Column(Enum(ContentStatus), default=ContentStatus.UPLOADED, nullable=False, index=True)

    # Participation analysis
    participation_score = Column(Float, nullable=True)  # 0.0 to 1.0
    mentions_subject = Column(Boolean, nullable=True)
    shows_object = Column(Boolean, nullable=True)
    action_aligned = Column(Boolean, nullable=True)
    rationale = Column(Text, nullable=True)
    highlights = Column(JSON(none_as_null=True), nullable=True)  # [{timestamp, description, score}]
    actions = Column(JSON(none_as_null=True), nullable=True)
    objects_scenes = Column(JSON(none_as_null=True), nullable=True)
    detected_text = Column(JSON(none_as_null=True), nullable=True)

    # Embedding
    embedding = Column(JSON(none_as_null=True), nullable=True)
    embedding_dim = Column(Integer, nullable=True)

    # Validation
    validation_score = Column(Float, nullable=True)
    validation_reasons = Column(JSON(none_as_null=True), nullable=True)
    rejection_reason = Column(String(1024), nullable=True)
    validated_at = Column(DateTime, nullable=True)

    # Clustering
    community_id = Column(String(255), nullable=True, index=True)

    def __repr__(self):
        return f"<ContentItem(id='{self.id}', status={self.status}, community_id={self.community_id})>"

    @property
    def has_analysis(self) -> bool:
        """Whether participation and embedding outputs have both been written."""
        return self.participation_score is not None and self.embedding is not None

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_handle": self.user_handle,
            "content_ref": self.content_ref,
            "hashtags": list(self.hashtags or []),
            "status": self.status.value if self.status else None,
            "participation_score": self.participation_score,
            "mentions_subject": self.mentions_subject,
            "shows_object": self.shows_object,
            "action_aligned": self.action_aligned,
            "rationale": self.rationale,
            "highlights": self.highlights or [],
            "actions": self.actions or [],
            "objects_scenes": self.objects_scenes or [],
            "embedding_dim": self.embedding_dim,
            "validation_score": self.validation_score,
            "validation_reasons": self.validation_reasons or [],
            "rejection_reason": self.rejection_reason,
            "community_id": self.community_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "validated_at": self.validated_at.isoformat() if self.validated_at else None,
        }
