"""Error taxonomy for the analysis pipeline."""
from typing import Optional


class PipelineError(RuntimeError):
    """Base class for pipeline errors."""


class InfraError(PipelineError):
    """Raised when a store, index or backend is unreachable or times out.

    Retryable. ``operation`` names the call that failed so retries and logs
    can report it.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class ConflictError(PipelineError):
    """Raised when an execution is already in progress for a content item."""

    def __init__(self, content_item_id: str):
        super().__init__(f"Execution already in progress for {content_item_id}")
        self.content_item_id = content_item_id


class NotFoundError(PipelineError):
    """Raised when a content item or community does not exist."""


class StaleCommunityError(PipelineError):
    """Raised by a conditional update when another writer changed the community first."""

    def __init__(self, community_id: str):
        super().__init__(f"Community {community_id} was modified concurrently")
        self.community_id = community_id


class NoClusterFound(PipelineError):
    """Business outcome: no similar neighbors; resolved by a fallback community."""


class DuplicateCommunityError(PipelineError):
    """Raised by a conditional create when the community id already exists."""

    def __init__(self, community_id: str):
        super().__init__(f"Community {community_id} already exists")
        self.community_id = community_id


class ExecutionCancelled(PipelineError):
    """Raised at a stage boundary when an execution was asked to stop."""

    def __init__(self, content_item_id: str):
        super().__init__(f"Execution cancelled for {content_item_id}")
        self.content_item_id = content_item_id
