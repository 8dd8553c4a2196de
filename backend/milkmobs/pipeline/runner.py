"""Pipeline runner: drives one content item through the stage graph.

Stages run in order, with participation analysis and embedding as one
parallel region:

    mark_processing -> {participation, embedding} -> merge_results
        -> persist_results -> validate -> cluster_assignment -> emit_event

Every stage transition is recorded on the item's PipelineExecution. A
rejection by validation is a business outcome and the execution still
succeeds. An analysis failure rejects the item. A clustering failure fails
the execution but leaves the item validated for the next batch rebuild to
repair.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional, Tuple

from milkmobs.models.content_item import ContentStatus
from milkmobs.models.execution import ExecutionStatus, Stage, StageStatus
from milkmobs.services.analysis_backend import AnalysisBackend
from milkmobs.services.content_store import ContentStore
from milkmobs.services.events import EventSink
from milkmobs.services.similarity_index import SimilarityIndex, index_metadata

from .clustering import ClusteringEngine
from .config import PipelineConfig
from .errors import ExecutionCancelled, InfraError, NotFoundError
from .registry import CommunityRegistry
from .retry import call_with_retries
from .types import AnalysisPayload, CompletionEvent, EmbeddingResult, ParticipationResult
from .validation import ValidationEngine

logger = logging.getLogger(__name__)

ANALYSIS_FAILURE_REASON = "analysis failure"


@dataclass
class PipelineDeps:
    """Collaborators the pipeline calls into."""
    store: ContentStore
    backend: AnalysisBackend
    events: EventSink
    index: Optional[SimilarityIndex] = None
    config: PipelineConfig = field(default_factory=PipelineConfig)


@dataclass
class RunOutcome:
    """Final state of one execution."""
    item_id: str
    execution_id: Optional[int]
    execution_status: ExecutionStatus
    item_status: Optional[ContentStatus] = None
    community_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "execution_id": self.execution_id,
            "execution_status": self.execution_status.value,
            "item_status": self.item_status.value if self.item_status else None,
            "community_id": self.community_id,
            "error": self.error,
        }


def merge_results(participation: ParticipationResult, embedding: EmbeddingResult) -> AnalysisPayload:
    """Combine both analysis outputs into one record. Pure."""
    return AnalysisPayload(
        participation_score=participation.participation_score,
        mentions_subject=participation.mentions_subject,
        shows_object=participation.shows_object,
        action_aligned=participation.action_aligned,
        rationale=participation.rationale,
        highlights=list(participation.highlights),
        actions=list(participation.actions),
        objects_scenes=list(participation.objects_scenes),
        detected_text=list(participation.detected_text),
        embedding=list(embedding.embedding),
        embedding_dim=embedding.dim,
    )


class PipelineRunner:
    """Runs the analysis pipeline for one item at a time per call."""

    def __init__(
        self,
        deps: PipelineDeps,
        clustering: Optional[ClusteringEngine] = None,
    ):
        self.deps = deps
        self.config = deps.config
        self.validation = ValidationEngine(self.config.validation)
        if clustering is None:
            registry = CommunityRegistry(
                deps.store, self.config.clustering, self.config.retry, self.config.deadlines
            )
            clustering = ClusteringEngine(
                deps.store,
                registry,
                index=deps.index,
                config=self.config.clustering,
                retry=self.config.retry,
                deadlines=self.config.deadlines,
            )
        self.clustering = clustering

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _store(self, op, operation: str):
        return await call_with_retries(
            op, self.config.retry, operation, timeout=self.config.deadlines.store
        )

    async def _record(self, execution_id: int, stage: Stage, status: StageStatus, error: str = None):
        """Persist a stage transition. Best-effort."""
        try:
            await self._store(
                lambda: self.deps.store.update_stage(execution_id, stage, status, error),
                "update_stage",
            )
        except InfraError as e:
            logger.error(f"Execution {execution_id}: could not record {stage.value}={status.value}: {e}")

    @asynccontextmanager
    async def _stage(self, execution_id: int, stage: Stage):
        logger.info(f"Execution {execution_id}: {stage.value} started")
        await self._record(execution_id, stage, StageStatus.IN_PROGRESS)
        try:
            yield
        except asyncio.CancelledError:
            await self._record(execution_id, stage, StageStatus.FAILED, "cancelled")
            raise
        except Exception as e:
            await self._record(execution_id, stage, StageStatus.FAILED, str(e) or type(e).__name__)
            raise
        await self._record(execution_id, stage, StageStatus.SUCCEEDED)
        logger.info(f"Execution {execution_id}: {stage.value} succeeded")

    @staticmethod
    def _checkpoint(item_id: str, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ExecutionCancelled(item_id)

    async def _finish(self, execution_id: int, status: ExecutionStatus, error: Optional[str] = None):
        try:
            await self._store(
                lambda: self.deps.store.finish_execution(execution_id, status, error),
                "finish_execution",
            )
        except InfraError as e:
            logger.error(f"Execution {execution_id}: could not record {status.value}: {e}")

    async def _release_item(self, item_id: str) -> None:
        """Return an item stuck in Processing to Uploaded so it can be resubmitted."""
        try:
            item = await self._store(lambda: self.deps.store.get_item(item_id), "get_item")
            if item is not None and item.status == ContentStatus.PROCESSING:
                await self._store(
                    lambda: self.deps.store.update_item(item_id, status=ContentStatus.UPLOADED),
                    "update_item",
                )
        except InfraError as e:
            logger.error(f"Could not release item {item_id}: {e}")

    # =========================================================================
    # Stages
    # =========================================================================

    async def _analyze(
        self,
        execution_id: int,
        item,
        cancel_event: Optional[asyncio.Event],
    ) -> Tuple[ParticipationResult, EmbeddingResult]:
        """Run both analysis branches concurrently; both must succeed."""
        backend = self.deps.backend
        policy = self.config.retry
        deadline = self.config.deadlines.analysis

        async def participation():
            async with self._stage(execution_id, Stage.PARTICIPATION):
                return await call_with_retries(
                    lambda: backend.analyze_participation(item.content_ref, list(item.hashtags or [])),
                    policy,
                    "analyze_participation",
                    timeout=deadline,
                )

        async def embedding():
            async with self._stage(execution_id, Stage.EMBEDDING):
                return await call_with_retries(
                    lambda: backend.embed(item.content_ref),
                    policy,
                    "embed",
                    timeout=deadline,
                )

        branches = [asyncio.create_task(participation()), asyncio.create_task(embedding())]
        joined = asyncio.gather(*branches)
        waiter = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None

        try:
            if waiter is None:
                results = await joined
            else:
                await asyncio.wait({joined, waiter}, return_when=asyncio.FIRST_COMPLETED)
                if not joined.done():
                    raise ExecutionCancelled(item.id)
                results = joined.result()
        except BaseException:
            # No orphaned branch may finish and write stale results
            for task in branches:
                task.cancel()
            await asyncio.gather(*branches, return_exceptions=True)
            raise
        finally:
            if waiter is not None:
                waiter.cancel()

        return results[0], results[1]

    async def _persist(self, item_id: str, payload: AnalysisPayload):
        item = await self._store(
            lambda: self.deps.store.update_item(item_id, **payload.to_fields()), "update_item"
        )
        await self._index(item)
        return item

    async def _index(self, item) -> None:
        """Write the item's embedding and current status to the index. Best-effort."""
        index = self.deps.index
        if index is None or not index.available or not item.embedding:
            return
        try:
            await call_with_retries(
                lambda: index.upsert(item.id, item.embedding, index_metadata(item)),
                self.config.retry,
                "index_upsert",
                timeout=self.config.deadlines.index,
            )
        except InfraError as e:
            logger.error(f"Indexing failed for {item.id}, continuing: {e}")

    async def _emit(self, item) -> None:
        event = CompletionEvent(
            id=item.id,
            status=item.status.value,
            participation_score=item.participation_score,
            community_id=item.community_id,
        )
        await call_with_retries(
            lambda: self.deps.events.emit(event), self.config.retry, "emit_event"
        )

    # =========================================================================
    # Entry point
    # =========================================================================

    async def run(self, item_id: str, cancel_event: Optional[asyncio.Event] = None) -> RunOutcome:
        """
        Run the full pipeline for one content item.

        Args:
            item_id: Content item id; the item must already exist
            cancel_event: When set, the run stops at the next stage boundary
                (or immediately while analysis branches are in flight)

        Returns:
            RunOutcome with execution status, item status and any error

        Raises:
            NotFoundError: Item does not exist
            ConflictError: An execution is already in progress for the item
            asyncio.CancelledError: The task running this call was cancelled
        """
        store = self.deps.store
        item = await self._store(lambda: store.get_item(item_id), "get_item")
        if item is None:
            raise NotFoundError(f"Content item {item_id} not found")

        execution = await self._store(lambda: store.create_execution(item_id), "create_execution")
        execution_id = execution.id
        logger.info(f"Execution {execution_id} started for item {item_id}")

        validated = False
        try:
            self._checkpoint(item_id, cancel_event)
            async with self._stage(execution_id, Stage.MARK_PROCESSING):
                item = await self._store(
                    lambda: store.update_item(
                        item_id, status=ContentStatus.PROCESSING, community_id=None
                    ),
                    "update_item",
                )

            self._checkpoint(item_id, cancel_event)
            try:
                participation, embedding = await self._analyze(execution_id, item, cancel_event)
            except InfraError as e:
                return await self._fail_analysis(execution_id, item_id, e)

            self._checkpoint(item_id, cancel_event)
            async with self._stage(execution_id, Stage.MERGE_RESULTS):
                payload = merge_results(participation, embedding)

            self._checkpoint(item_id, cancel_event)
            async with self._stage(execution_id, Stage.PERSIST_RESULTS):
                item = await self._persist(item_id, payload)

            self._checkpoint(item_id, cancel_event)
            async with self._stage(execution_id, Stage.VALIDATE):
                verdict = self.validation.evaluate(item)
                item = await self._store(
                    lambda: store.update_item(item_id, **ValidationEngine.verdict_fields(verdict)),
                    "update_item",
                )
                # Rejected items must stop matching validated-only queries
                await self._index(item)
            validated = True
            logger.info(
                f"Item {item_id} {'validated' if verdict.passed else 'rejected'} "
                f"(score={verdict.score:.3f})"
            )

            errors = []
            if verdict.passed:
                self._checkpoint(item_id, cancel_event)
                try:
                    async with self._stage(execution_id, Stage.CLUSTER_ASSIGNMENT):
                        await self.clustering.assign_community(item)
                except InfraError as e:
                    # Item stays validated with no community until the next rebuild
                    logger.error(f"Clustering failed for {item_id}, left for batch repair: {e}")
                    errors.append(f"cluster_assignment: {e}")
                item = await self._store(lambda: store.get_item(item_id), "get_item")

            try:
                async with self._stage(execution_id, Stage.EMIT_EVENT):
                    await self._emit(item)
            except InfraError as e:
                logger.error(f"Completion event for {item_id} not delivered: {e}")
                errors.append(f"emit_event: {e}")

            error = "; ".join(errors) or None
            status = ExecutionStatus.FAILED if errors else ExecutionStatus.SUCCEEDED
            await self._finish(execution_id, status, error)
            logger.info(f"Execution {execution_id} finished: {status.value}")
            return RunOutcome(
                item_id=item_id,
                execution_id=execution_id,
                execution_status=status,
                item_status=item.status,
                community_id=item.community_id,
                error=error,
            )

        except ExecutionCancelled as e:
            return await self._cancelled(execution_id, item_id, validated, str(e))
        except asyncio.CancelledError:
            await self._cancelled(execution_id, item_id, validated, "cancelled")
            raise
        except Exception as e:
            logger.exception(f"Execution {execution_id} failed for item {item_id}")
            await self._finish(execution_id, ExecutionStatus.FAILED, str(e))
            if not validated:
                await self._release_item(item_id)
            return RunOutcome(
                item_id=item_id,
                execution_id=execution_id,
                execution_status=ExecutionStatus.FAILED,
                item_status=None,
                error=str(e),
            )

    async def _fail_analysis(self, execution_id: int, item_id: str, error: InfraError) -> RunOutcome:
        """Both analysis outputs are discarded and the item is rejected."""
        logger.error(f"Analysis failed for {item_id}: {error}")
        item_status = None
        try:
            item = await self._store(
                lambda: self.deps.store.update_item(
                    item_id,
                    status=ContentStatus.REJECTED,
                    rejection_reason=ANALYSIS_FAILURE_REASON,
                ),
                "update_item",
            )
            item_status = item.status
        except InfraError as e:
            logger.error(f"Could not mark {item_id} rejected: {e}")

        await self._finish(execution_id, ExecutionStatus.FAILED, f"{ANALYSIS_FAILURE_REASON}: {error}")
        return RunOutcome(
            item_id=item_id,
            execution_id=execution_id,
            execution_status=ExecutionStatus.FAILED,
            item_status=item_status,
            error=f"{ANALYSIS_FAILURE_REASON}: {error}",
        )

    async def _cancelled(self, execution_id: int, item_id: str, validated: bool, reason: str) -> RunOutcome:
        logger.info(f"Execution {execution_id} for {item_id} cancelled")
        await self._finish(execution_id, ExecutionStatus.CANCELLED, reason)
        if not validated:
            await self._release_item(item_id)
        return RunOutcome(
            item_id=item_id,
            execution_id=execution_id,
            execution_status=ExecutionStatus.CANCELLED,
            error=reason,
        )
