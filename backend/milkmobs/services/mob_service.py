"""Mob service: the one internal interface behind every entry point.

The orchestrated entry point (the job runner's pipeline and rebuild jobs) and
the direct administrative entry points (API routes, CLI) both call into this
service; neither infers its caller from the shape of its input.
"""
import asyncio
import logging
from typing import List, Optional

from milkmobs.models.community import Community
from milkmobs.models.content_item import ContentItem, ContentStatus
from milkmobs.models.execution import PipelineExecution
from milkmobs.pipeline.config import PipelineConfig
from milkmobs.pipeline.errors import ConflictError, NotFoundError
from milkmobs.pipeline.runner import PipelineDeps, PipelineRunner, RunOutcome
from milkmobs.pipeline.types import RebuildReport, ValidationVerdict
from milkmobs.pipeline.validation import ValidationEngine
from milkmobs.services.analysis_backend import HttpAnalysisBackend
from milkmobs.services.content_store import SqlContentStore
from milkmobs.services.events import build_event_sink
from milkmobs.services.similarity_index import InMemorySimilarityIndex, OpenSearchIndex

logger = logging.getLogger(__name__)


class MobService:
    """Service for running the pipeline and managing communities."""

    def __init__(self, deps: PipelineDeps, runner: Optional[PipelineRunner] = None):
        self.deps = deps
        self.runner = runner or PipelineRunner(deps)

    @property
    def store(self):
        return self.deps.store

    @property
    def clustering(self):
        return self.runner.clustering

    # =========================================================================
    # Content items
    # =========================================================================

    async def register_item(
        self,
        item_id: str,
        user_id: str,
        content_ref: str,
        hashtags: Optional[List[str]] = None,
        user_handle: Optional[str] = None,
    ) -> ContentItem:
        """Record an uploaded item so it can be submitted."""
        item = await self.store.create_item(
            item_id=item_id,
            user_id=user_id,
            content_ref=content_ref,
            hashtags=hashtags,
            user_handle=user_handle,
        )
        logger.info(f"Registered content item {item_id} for user {user_id}")
        return item

    async def get_item(self, item_id: str) -> ContentItem:
        """Get a content item, raising NotFoundError if it does not exist."""
        item = await self.store.get_item(item_id)
        if item is None:
            raise NotFoundError(f"Content item {item_id} not found")
        return item

    async def ensure_idle(self, item_id: str) -> None:
        """Raise ConflictError if an execution is in progress for the item."""
        if await self.store.get_active_execution(item_id):
            raise ConflictError(item_id)

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def run_pipeline(
        self,
        item_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunOutcome:
        """Run the full pipeline for one item and wait for the outcome."""
        return await self.runner.run(item_id, cancel_event=cancel_event)

    async def validate_item(self, item_id: str) -> ValidationVerdict:
        """
        Re-evaluate an item's stored analysis and persist the verdict.

        Raises:
            NotFoundError: Item does not exist
            ConflictError: A pipeline execution is in progress for the item
            ValueError: The item has no analysis outputs yet
        """
        item = await self.get_item(item_id)
        await self.ensure_idle(item_id)
        if not item.has_analysis:
            raise ValueError(f"Content item {item_id} has not been analyzed")

        verdict = self.runner.validation.evaluate(item)
        await self.store.update_item(item_id, **ValidationEngine.verdict_fields(verdict))
        logger.info(f"Revalidated {item_id}: passed={verdict.passed} score={verdict.score:.3f}")
        return verdict

    async def cluster_item(self, item_id: str) -> str:
        """
        Assign a validated item to a community outside a pipeline run.

        Raises:
            NotFoundError: Item does not exist
            ConflictError: A pipeline execution is in progress for the item
            ValueError: The item is not validated
        """
        item = await self.get_item(item_id)
        await self.ensure_idle(item_id)
        if item.status != ContentStatus.VALIDATED:
            raise ValueError(f"Content item {item_id} is {item.status.value}, not validated")
        if item.community_id:
            # Reassignment is the batch rebuild's job; counts stay exact this way
            return item.community_id
        return await self.clustering.assign_community(item)

    async def list_executions(self, item_id: str) -> List[PipelineExecution]:
        """Execution history for an item, newest first."""
        await self.get_item(item_id)
        return await self.store.list_executions(item_id)

    # =========================================================================
    # Communities
    # =========================================================================

    async def rebuild_communities(self) -> RebuildReport:
        """Re-cluster the full validated corpus."""
        return await self.clustering.rebuild_communities()

    async def list_communities(self) -> List[Community]:
        """All communities, largest first."""
        return await self.store.list_communities()

    async def get_community(self, community_id: str) -> Community:
        community = await self.store.get_community(community_id)
        if community is None:
            raise NotFoundError(f"Community {community_id} not found")
        return community


async def build_mob_service(settings, session_maker) -> MobService:
    """Wire collaborators from application settings."""
    config = PipelineConfig.from_settings(settings)
    store = SqlContentStore(session_maker, stale_after=settings.execution_stale_seconds)

    if settings.opensearch_endpoint:
        index = OpenSearchIndex(
            endpoint=settings.opensearch_endpoint,
            index_name=settings.opensearch_index_name,
            dimension=settings.embedding_dimension,
            timeout=settings.index_timeout,
        )
        logger.info(f"Using OpenSearch index {settings.opensearch_index_name}")
    else:
        index = InMemorySimilarityIndex()
        await index.warm(await store.list_validated_with_embeddings())

    deps = PipelineDeps(
        store=store,
        backend=HttpAnalysisBackend(
            base_url=settings.analysis_base_url,
            api_key=settings.analysis_api_key,
            timeout=settings.analysis_timeout,
        ),
        events=build_event_sink(settings.event_webhook_urls),
        index=index,
        config=config,
    )
    return MobService(deps)
