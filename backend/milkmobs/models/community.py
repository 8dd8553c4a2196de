"""Community ("mob") model."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from milkmobs.db.database import Base


class Community(Base):
    """A discovered cluster of similar content items."""

    __tablename__ = "communities"

    id = Column(String(255), primary_key=True, index=True)  # Content-derived slug
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    member_count = Column(Integer, default=0, nullable=False)

    centroid = Column(JSON(none_as_null=True), nullable=True)  # Running mean of member embeddings
    example_tags = Column(JSON, default=list, nullable=False)  # Top tags, bounded
    tag_counts = Column(JSON, default=dict, nullable=False)  # tag -> frequency
    version = Column(Integer, nullable=False)  # Bumped on every write

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Community(id='{self.id}', name='{self.name}', members={self.member_count})>"

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "member_count": self.member_count,
            "example_tags": list(self.example_tags or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
