"""Pydantic schemas for API requests and responses."""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


# =============================================================================
# Content Item Schemas
# =============================================================================

class ContentItemCreate(BaseModel):
    """Request to register an uploaded content item."""
    id: str = Field(..., description="Content item id")
    user_id: str = Field(..., description="Owning user id")
    content_ref: str = Field(..., description="Locator of the uploaded video blob")
    hashtags: List[str] = Field(default_factory=list, description="Hashtags submitted with the video")
    user_handle: Optional[str] = Field(None, description="Display handle of the user")


class HighlightResponse(BaseModel):
    """Time-coded highlight."""
    timestamp: float
    description: str
    score: Optional[float] = None


class ContentItemResponse(BaseModel):
    """Content item response."""
    id: str
    user_id: str
    user_handle: Optional[str]
    content_ref: str
    hashtags: List[str]
    status: str
    participation_score: Optional[float]
    mentions_subject: Optional[bool]
    shows_object: Optional[bool]
    action_aligned: Optional[bool]
    rationale: Optional[str]
    highlights: List[HighlightResponse] = []
    actions: List[str] = []
    objects_scenes: List[str] = []
    embedding_dim: Optional[int]
    validation_score: Optional[float]
    validation_reasons: List[str] = []
    rejection_reason: Optional[str]
    community_id: Optional[str]
    created_at: Optional[datetime]
    validated_at: Optional[datetime]


class SubmitResponse(BaseModel):
    """Response for an accepted pipeline submission."""
    item_id: str
    accepted: bool = True
    message: str = "Pipeline execution started"


# =============================================================================
# Execution Schemas
# =============================================================================

class StageRecordResponse(BaseModel):
    """One stage within an execution."""
    stage: str
    status: str
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    error: Optional[str]


class ExecutionResponse(BaseModel):
    """Pipeline execution response."""
    id: int
    content_item_id: str
    status: str
    error: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    stages: List[StageRecordResponse] = []


class ValidationResponse(BaseModel):
    """Validation verdict."""
    item_id: str
    passed: bool
    score: float
    reasons: List[str]


class ClusterAssignmentResponse(BaseModel):
    """Community assignment result."""
    item_id: str
    community_id: str


# =============================================================================
# Community Schemas
# =============================================================================

class CommunityResponse(BaseModel):
    """Community response."""
    id: str
    name: str
    description: Optional[str]
    member_count: int
    example_tags: List[str] = []
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class RebuildResponse(BaseModel):
    """Batch rebuild report."""
    algorithm: str
    corpus_size: int
    cluster_count: int
    clusters: Dict[str, int] = Field(default_factory=dict, description="Community id -> member count")
    communities_reset: List[str] = []


class RebuildStartedResponse(BaseModel):
    """Response when a rebuild is started in the background."""
    started: bool = True
    message: str = "Rebuild started"


# =============================================================================
# Health
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    similarity_index_available: bool
    running_jobs: int = 0
    message: Optional[str] = None
