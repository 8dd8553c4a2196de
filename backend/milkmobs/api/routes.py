"""API routes.

Internal surface for the upload-completion collaborator, the scheduler and
operators. Two kinds of entry point live here: orchestrated submission
(``POST /items/{id}/submit``, ``POST /communities/rebuild``), which runs in
the background job runner, and direct administrative operations, which run
inline against the same service.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from milkmobs.pipeline.errors import ConflictError, InfraError, NotFoundError
from milkmobs.services.mob_service import MobService
from milkmobs.workers.job_runner import REBUILD_JOB_KEY, job_runner
from milkmobs.api.schemas import (
    ClusterAssignmentResponse,
    CommunityResponse,
    ContentItemCreate,
    ContentItemResponse,
    ExecutionResponse,
    HealthResponse,
    RebuildResponse,
    RebuildStartedResponse,
    SubmitResponse,
    ValidationResponse,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def get_service(request: Request) -> MobService:
    """Dependency to get the mob service built at startup."""
    return request.app.state.mob_service


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InfraError):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# =============================================================================
# Health
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(service: MobService = Depends(get_service)):
    """Check API health and collaborators."""
    index = service.deps.index
    index_ok = index is not None and index.available
    return HealthResponse(
        status="healthy" if index_ok else "degraded",
        similarity_index_available=index_ok,
        running_jobs=job_runner.running_count,
        message=None if index_ok else "Similarity index unavailable; keyword fallback in use",
    )


# =============================================================================
# Content Items
# =============================================================================

@router.post("/items", response_model=ContentItemResponse, status_code=201)
async def register_item(
    request: ContentItemCreate,
    service: MobService = Depends(get_service),
):
    """Register an uploaded content item."""
    try:
        item = await service.register_item(
            item_id=request.id,
            user_id=request.user_id,
            content_ref=request.content_ref,
            hashtags=request.hashtags,
            user_handle=request.user_handle,
        )
    except (ValueError, InfraError) as e:
        raise _http_error(e)
    return ContentItemResponse(**item.to_dict())


@router.get("/items/{item_id}", response_model=ContentItemResponse)
async def get_item(item_id: str, service: MobService = Depends(get_service)):
    """Get a content item."""
    try:
        item = await service.get_item(item_id)
    except (NotFoundError, InfraError) as e:
        raise _http_error(e)
    return ContentItemResponse(**item.to_dict())


@router.post("/items/{item_id}/submit", response_model=SubmitResponse, status_code=202)
async def submit_item(item_id: str, service: MobService = Depends(get_service)):
    """Start a pipeline execution for an uploaded item."""
    try:
        await service.get_item(item_id)
        await service.ensure_idle(item_id)
        await job_runner.start_job(item_id, "pipeline", item_id=item_id)
    except (NotFoundError, ConflictError, InfraError) as e:
        raise _http_error(e)
    logger.info(f"Submitted item {item_id}")
    return SubmitResponse(item_id=item_id)


@router.post("/items/{item_id}/cancel")
async def cancel_item(
    item_id: str,
    force: bool = Query(False, description="Cancel immediately instead of at the next stage"),
):
    """Cancel a running pipeline execution."""
    if not job_runner.cancel_job(item_id, force=force):
        raise HTTPException(status_code=404, detail="No running execution for this item")
    return {"item_id": item_id, "cancelled": True}


@router.get("/items/{item_id}/executions", response_model=List[ExecutionResponse])
async def list_executions(item_id: str, service: MobService = Depends(get_service)):
    """Execution history for an item, newest first."""
    try:
        executions = await service.list_executions(item_id)
    except (NotFoundError, InfraError) as e:
        raise _http_error(e)
    return [ExecutionResponse(**execution.to_dict()) for execution in executions]


@router.post("/items/{item_id}/validate", response_model=ValidationResponse)
async def validate_item(item_id: str, service: MobService = Depends(get_service)):
    """Re-run validation on an item's stored analysis."""
    try:
        verdict = await service.validate_item(item_id)
    except (ValueError, NotFoundError, ConflictError, InfraError) as e:
        raise _http_error(e)
    return ValidationResponse(
        item_id=item_id, passed=verdict.passed, score=verdict.score, reasons=verdict.reasons
    )


@router.post("/items/{item_id}/cluster", response_model=ClusterAssignmentResponse)
async def cluster_item(item_id: str, service: MobService = Depends(get_service)):
    """Assign a validated item to a community."""
    try:
        community_id = await service.cluster_item(item_id)
    except (ValueError, NotFoundError, ConflictError, InfraError) as e:
        raise _http_error(e)
    return ClusterAssignmentResponse(item_id=item_id, community_id=community_id)


# =============================================================================
# Communities
# =============================================================================

@router.get("/communities", response_model=List[CommunityResponse])
async def list_communities(service: MobService = Depends(get_service)):
    """List communities, largest first."""
    try:
        communities = await service.list_communities()
    except InfraError as e:
        raise _http_error(e)
    return [CommunityResponse(**community.to_dict()) for community in communities]


@router.get("/communities/{community_id}", response_model=CommunityResponse)
async def get_community(community_id: str, service: MobService = Depends(get_service)):
    """Get a community."""
    try:
        community = await service.get_community(community_id)
    except (NotFoundError, InfraError) as e:
        raise _http_error(e)
    return CommunityResponse(**community.to_dict())


@router.post("/communities/rebuild", response_model=RebuildStartedResponse, status_code=202)
async def start_rebuild():
    """Start a full-corpus rebuild in the background."""
    try:
        await job_runner.start_job(REBUILD_JOB_KEY, "rebuild")
    except ConflictError as e:
        raise _http_error(e)
    return RebuildStartedResponse()


@router.post("/communities/rebuild/now", response_model=RebuildResponse)
async def rebuild_now(service: MobService = Depends(get_service)):
    """Run a full-corpus rebuild inline and return its report."""
    if job_runner.is_job_running(REBUILD_JOB_KEY):
        raise HTTPException(status_code=409, detail="Rebuild already running")
    try:
        report = await service.rebuild_communities()
    except InfraError as e:
        raise _http_error(e)
    return RebuildResponse(**report.to_dict())
