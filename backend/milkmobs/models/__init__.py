# Models module
from milkmobs.models.content_item import ContentItem, ContentStatus
from milkmobs.models.community import Community
from milkmobs.models.execution import (
    PipelineExecution,
    StageRecord,
    ExecutionStatus,
    StageStatus,
    Stage,
)

__all__ = [
    "ContentItem",
    "ContentStatus",
    "Community",
    "PipelineExecution",
    "StageRecord",
    "ExecutionStatus",
    "StageStatus",
    "Stage",
]
