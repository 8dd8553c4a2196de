"""Shared fakes for pipeline and clustering tests."""
import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest

from milkmobs.models.community import Community
from milkmobs.models.content_item import ContentItem, ContentStatus
from milkmobs.models.execution import (
    STAGE_ORDER,
    ExecutionStatus,
    PipelineExecution,
    StageRecord,
    StageStatus,
)
from milkmobs.pipeline.config import ClusteringConfig, PipelineConfig, RetryPolicy
from milkmobs.pipeline.errors import (
    ConflictError,
    DuplicateCommunityError,
    InfraError,
    NotFoundError,
    StaleCommunityError,
)
from milkmobs.pipeline.types import EmbeddingResult, Highlight, ParticipationResult
from milkmobs.services.analysis_backend import AnalysisBackend
from milkmobs.services.content_store import ContentStore, _check_item_invariants
from milkmobs.services.events import EventSink


class FakeStore(ContentStore):
    """In-memory content store that yields to the loop on every call.

    ``fail_ops`` maps an operation name to how many more calls should raise
    InfraError (-1 for every call).
    """

    def __init__(self):
        self.items: Dict[str, ContentItem] = {}
        self.communities: Dict[str, Community] = {}
        self.executions: Dict[int, PipelineExecution] = {}
        self.fail_ops: Dict[str, int] = {}
        self.calls: List[str] = []
        self._next_execution_id = 1
        self._clock = datetime(2024, 1, 1)

    async def _io(self, operation: str):
        self.calls.append(operation)
        await asyncio.sleep(0)
        remaining = self.fail_ops.get(operation, 0)
        if remaining:
            if remaining > 0:
                self.fail_ops[operation] = remaining - 1
            raise InfraError(f"{operation} unavailable", operation)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    # Content items

    async def create_item(self, item_id, user_id, content_ref, hashtags=None, user_handle=None):
        await self._io("create_item")
        if item_id in self.items:
            raise ValueError(f"Content item {item_id} already exists")
        item = ContentItem(
            id=item_id,
            user_id=user_id,
            user_handle=user_handle,
            content_ref=content_ref,
            hashtags=list(hashtags or []),
            status=ContentStatus.UPLOADED,
            created_at=self._tick(),
        )
        self.items[item_id] = item
        return item

    async def get_item(self, item_id):
        await self._io("get_item")
        return self.items.get(item_id)

    async def update_item(self, item_id, **fields):
        await self._io("update_item")
        item = self.items.get(item_id)
        if item is None:
            raise NotFoundError(f"Content item {item_id} not found")
        _check_item_invariants(item, fields)
        for name, value in fields.items():
            setattr(item, name, value)
        return item

    async def list_validated_with_embeddings(self):
        await self._io("list_validated_with_embeddings")
        items = [
            item for item in self.items.values()
            if item.status == ContentStatus.VALIDATED and item.embedding
        ]
        return sorted(items, key=lambda i: (i.created_at, i.id))

    # Communities

    async def get_community(self, community_id):
        await self._io("get_community")
        community = self.communities.get(community_id)
        if community is None:
            return None
        # Readers get a copy, like rows detached from a closed session
        return Community(**{c.name: getattr(community, c.name) for c in Community.__table__.columns})

    async def create_community(self, community_id, **fields):
        await self._io("create_community")
        if community_id in self.communities:
            raise DuplicateCommunityError(community_id)
        fields.setdefault("member_count", 0)
        fields.setdefault("tag_counts", {})
        fields.setdefault("example_tags", [])
        community = Community(id=community_id, version=1, **fields)
        self.communities[community_id] = community
        return community

    async def update_community(self, community_id, expected_version=None, **fields):
        await self._io("update_community")
        community = self.communities.get(community_id)
        if community is None:
            raise NotFoundError(f"Community {community_id} not found")
        if expected_version is not None and community.version != expected_version:
            raise StaleCommunityError(community_id)
        for name, value in fields.items():
            setattr(community, name, value)
        community.version += 1
        return community

    async def list_communities(self):
        await self._io("list_communities")
        return sorted(self.communities.values(), key=lambda c: (-(c.member_count or 0), c.id))

    # Executions

    async def create_execution(self, item_id):
        await self._io("create_execution")
        if await self._active(item_id):
            raise ConflictError(item_id)
        execution = PipelineExecution(
            id=self._next_execution_id,
            content_item_id=item_id,
            status=ExecutionStatus.IN_PROGRESS,
            started_at=self._tick(),
        )
        execution.stages = [
            StageRecord(stage=stage, ordering=i, status=StageStatus.NOT_STARTED)
            for i, stage in enumerate(STAGE_ORDER)
        ]
        self.executions[execution.id] = execution
        self._next_execution_id += 1
        return execution

    async def update_stage(self, execution_id, stage, status, error=None):
        await self._io("update_stage")
        record = self.executions[execution_id].stage(stage)
        record.status = status
        if error:
            record.error = error

    async def finish_execution(self, execution_id, status, error=None):
        await self._io("finish_execution")
        execution = self.executions[execution_id]
        execution.status = status
        execution.error = error
        execution.completed_at = self._tick()

    async def _active(self, item_id) -> Optional[PipelineExecution]:
        for execution in self.executions.values():
            if execution.content_item_id == item_id and execution.status == ExecutionStatus.IN_PROGRESS:
                return execution
        return None

    async def get_active_execution(self, item_id):
        await self._io("get_active_execution")
        return await self._active(item_id)

    async def list_executions(self, item_id):
        await self._io("list_executions")
        return sorted(
            (e for e in self.executions.values() if e.content_item_id == item_id),
            key=lambda e: e.id,
            reverse=True,
        )

    # Test helpers

    def add_validated(
        self,
        item_id: str,
        embedding,
        hashtags=(),
        actions=(),
        objects_scenes=(),
        community_id=None,
    ) -> ContentItem:
        item = ContentItem(
            id=item_id,
            user_id=f"user-{item_id}",
            content_ref=f"s3://bucket/{item_id}.mp4",
            hashtags=list(hashtags),
            status=ContentStatus.VALIDATED,
            participation_score=0.9,
            embedding=list(embedding),
            embedding_dim=len(embedding),
            actions=list(actions),
            objects_scenes=list(objects_scenes),
            community_id=community_id,
            created_at=self._tick(),
        )
        self.items[item_id] = item
        return item


def participation_result(score=0.9, **overrides):
    fields = dict(
        participation_score=score,
        mentions_subject=True,
        shows_object=True,
        action_aligned=True,
        rationale="Pours a glass of milk",
        highlights=[Highlight(timestamp=2.5, description="Carton on table", score=0.8)],
        actions=["pour"],
        objects_scenes=["kitchen"],
    )
    fields.update(overrides)
    return ParticipationResult(**fields)


def spend(remaining):
    """Use up one scripted failure; -1 never runs out."""
    return remaining - 1 if remaining > 0 else remaining


class FakeBackend(AnalysisBackend):
    """Analysis backend with scripted results.

    ``*_errors`` is how many calls fail before succeeding (-1 for all).
    When ``gate`` is given, calls block until it is set.
    """

    def __init__(self, participation=None, embedding=None, participation_errors=0, embed_errors=0, gate=None):
        self.participation = participation or participation_result()
        self.embedding = embedding or EmbeddingResult(embedding=[1.0, 0.0, 0.0], dim=3)
        self.participation_errors = participation_errors
        self.embed_errors = embed_errors
        self.gate = gate
        self.started = asyncio.Event()
        self.calls = []
        self.cancelled = 0

    async def _wait(self):
        if self.gate is None:
            await asyncio.sleep(0)
            return
        try:
            await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise

    async def analyze_participation(self, content_ref, hashtags):
        self.calls.append("participation")
        self.started.set()
        await self._wait()
        if self.participation_errors:
            self.participation_errors = spend(self.participation_errors)
            raise InfraError("participation model overloaded", "analyze_participation")
        return self.participation

    async def embed(self, content_ref):
        self.calls.append("embed")
        self.started.set()
        await self._wait()
        if self.embed_errors:
            self.embed_errors = spend(self.embed_errors)
            raise InfraError("embedding model overloaded", "embed")
        return self.embedding


class RecordingSink(EventSink):
    def __init__(self, failures=0):
        self.events = []
        self.failures = failures

    async def emit(self, event):
        if self.failures:
            self.failures = spend(self.failures)
            raise InfraError("subscriber down", "emit")
        self.events.append(event)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def fast_retry():
    """Retry policy with no real waiting."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, multiplier=2.0, max_delay=0.0)


@pytest.fixture
def clustering_config():
    return ClusteringConfig(kmeans_seed=7)


@pytest.fixture
def pipeline_config(fast_retry, clustering_config):
    return PipelineConfig(clustering=clustering_config, retry=fast_retry)


def unit(*values):
    """Normalize a vector so cosine similarity reads as a dot product."""
    norm = sum(v * v for v in values) ** 0.5
    return [v / norm for v in values]


@pytest.fixture
def sink():
    return RecordingSink()
