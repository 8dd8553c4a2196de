"""Pipeline execution model for tracking per-item runs."""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Index, Text, text
from sqlalchemy.orm import relationship

from milkmobs.db.database import Base


class ExecutionStatus(str, enum.Enum):
    """Execution status enumeration."""
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.IN_PROGRESS


class StageStatus(str, enum.Enum):
    """Stage status enumeration."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Stage(str, enum.Enum):
    """Pipeline stages in execution order."""
    MARK_PROCESSING = "mark_processing"
    PARTICIPATION = "participation"
    EMBEDDING = "embedding"
    MERGE_RESULTS = "merge_results"
    PERSIST_RESULTS = "persist_results"
    VALIDATE = "validate"
    CLUSTER_ASSIGNMENT = "cluster_assignment"
    EMIT_EVENT = "emit_event"


STAGE_ORDER = list(Stage)


class PipelineExecution(Base):
    """One run of the stage graph for one content item."""

    __tablename__ = "pipeline_executions"
    __table_args__ = (
        # At most one in-progress execution per item, across processes
        Index(
            "uq_pipeline_executions_active_item",
            "content_item_id",
            unique=True,
            sqlite_where=text("status = 'IN_PROGRESS'"),
            postgresql_where=text("status = 'IN_PROGRESS'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    content_item_id = Column(String(128), nullable=False, index=True)

    status = Column(Enum(ExecutionStatus), default=ExecutionStatus.IN_PROGRESS, nullable=False)
    error = Column(Text, nullable=True)

    # Timestamps
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    stages = relationship(
        "StageRecord",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="StageRecord.ordering",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<PipelineExecution(id={self.id}, item='{self.content_item_id}', status={self.status})>"

    def stage(self, stage: Stage) -> "StageRecord":
        """Look up the record for a stage."""
        for record in self.stages:
            if record.stage == stage:
                return record
        raise KeyError(stage)

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "content_item_id": self.content_item_id,
            "status": self.status.value,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "stages": [record.to_dict() for record in self.stages],
        }


class StageRecord(Base):
    """State of a single stage within an execution."""

    __tablename__ = "pipeline_stage_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    execution_id = Column(Integer, ForeignKey("pipeline_executions.id", ondelete="CASCADE"), nullable=False)
    stage = Column(Enum(Stage), nullable=False)
    ordering = Column(Integer, nullable=False)
    status = Column(Enum(StageStatus), default=StageStatus.NOT_STARTED, nullable=False)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)

    execution = relationship("PipelineExecution", back_populates="stages")

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "stage": self.stage.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "error": self.error,
        }
