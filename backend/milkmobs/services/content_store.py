"""Content store: durable records for content items, communities and executions."""
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from milkmobs.models.community import Community
from milkmobs.models.content_item import ContentItem, ContentStatus
from milkmobs.models.execution import (
    PipelineExecution,
    StageRecord,
    ExecutionStatus,
    StageStatus,
    Stage,
    STAGE_ORDER,
)
from milkmobs.pipeline.errors import (
    ConflictError,
    DuplicateCommunityError,
    InfraError,
    NotFoundError,
    StaleCommunityError,
)

logger = logging.getLogger(__name__)

STALE_EXECUTION_ERROR = "abandoned: no progress within the stale execution window"


class ContentStore(ABC):
    """Partial-field reads and writes keyed by content item id and community id."""

    # =========================================================================
    # Content items
    # =========================================================================

    @abstractmethod
    async def create_item(
        self,
        item_id: str,
        user_id: str,
        content_ref: str,
        hashtags: Optional[List[str]] = None,
        user_handle: Optional[str] = None,
    ) -> ContentItem:
        """Create a content item in the Uploaded state."""

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[ContentItem]:
        """Get a content item by id."""

    @abstractmethod
    async def update_item(self, item_id: str, **fields: Any) -> ContentItem:
        """Set the given fields on a content item."""

    @abstractmethod
    async def list_validated_with_embeddings(self) -> List[ContentItem]:
        """All validated items that carry an embedding, oldest first."""

    # =========================================================================
    # Communities
    # =========================================================================

    @abstractmethod
    async def get_community(self, community_id: str) -> Optional[Community]:
        """Get a community by id."""

    @abstractmethod
    async def create_community(self, community_id: str, **fields: Any) -> Community:
        """Create a community; raises DuplicateCommunityError if it exists."""

    @abstractmethod
    async def update_community(
        self, community_id: str, expected_version: Optional[int] = None, **fields: Any
    ) -> Community:
        """Set the given fields on a community.

        With ``expected_version`` the write only applies if the row is still at
        that version; otherwise StaleCommunityError is raised.
        """

    @abstractmethod
    async def list_communities(self) -> List[Community]:
        """List all communities."""

    # =========================================================================
    # Executions
    # =========================================================================

    @abstractmethod
    async def create_execution(self, item_id: str) -> PipelineExecution:
        """Start an execution record; raises ConflictError if one is active."""

    @abstractmethod
    async def update_stage(
        self,
        execution_id: int,
        stage: Stage,
        status: StageStatus,
        error: Optional[str] = None,
    ) -> None:
        """Record a stage transition."""

    @abstractmethod
    async def finish_execution(
        self,
        execution_id: int,
        status: ExecutionStatus,
        error: Optional[str] = None,
    ) -> None:
        """Mark an execution terminal."""

    @abstractmethod
    async def get_active_execution(self, item_id: str) -> Optional[PipelineExecution]:
        """The in-progress execution for an item, if any."""

    @abstractmethod
    async def list_executions(self, item_id: str) -> List[PipelineExecution]:
        """Execution history for an item, newest first."""


def _check_item_invariants(item: ContentItem, fields: dict) -> None:
    """Keep community assignment consistent with status."""
    status = fields.get("status", item.status)
    if status == ContentStatus.REJECTED:
        fields["community_id"] = None
    elif fields.get("community_id") is not None and status != ContentStatus.VALIDATED:
        raise ValueError(
            f"Cannot assign community to item {item.id} with status {status.value}"
        )


class SqlContentStore(ContentStore):
    """Content store on the async SQLAlchemy session factory."""

    def __init__(self, session_maker: async_sessionmaker, stale_after: Optional[float] = None):
        """
        Args:
            session_maker: Async session factory
            stale_after: Seconds after which an in-progress execution is treated
                as abandoned and no longer blocks a new one (None keeps it forever)
        """
        self._session_maker = session_maker
        self._stale_after = stale_after

    @asynccontextmanager
    async def _session(self, operation: str):
        """Open a session, translating database failures into InfraError."""
        try:
            async with self._session_maker() as session:
                yield session
        except SQLAlchemyError as e:
            raise InfraError(f"{operation} failed: {e}", operation) from e

    # =========================================================================
    # Content items
    # =========================================================================

    async def create_item(
        self,
        item_id: str,
        user_id: str,
        content_ref: str,
        hashtags: Optional[List[str]] = None,
        user_handle: Optional[str] = None,
    ) -> ContentItem:
        async with self._session("create_item") as session:
            item = ContentItem(
                id=item_id,
                user_id=user_id,
                user_handle=user_handle,
                content_ref=content_ref,
                hashtags=list(hashtags or []),
                status=ContentStatus.UPLOADED,
            )
            session.add(item)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ValueError(f"Content item {item_id} already exists") from e
            await session.refresh(item)
            return item

    async def get_item(self, item_id: str) -> Optional[ContentItem]:
        async with self._session("get_item") as session:
            return await session.get(ContentItem, item_id)

    async def update_item(self, item_id: str, **fields: Any) -> ContentItem:
        async with self._session("update_item") as session:
            item = await session.get(ContentItem, item_id)
            if not item:
                raise NotFoundError(f"Content item {item_id} not found")

            _check_item_invariants(item, fields)
            for name, value in fields.items():
                if not hasattr(ContentItem, name):
                    raise AttributeError(f"ContentItem has no field '{name}'")
                setattr(item, name, value)

            await session.commit()
            await session.refresh(item)
            return item

    async def list_validated_with_embeddings(self) -> List[ContentItem]:
        async with self._session("list_validated_with_embeddings") as session:
            result = await session.execute(
                select(ContentItem)
                .where(ContentItem.status == ContentStatus.VALIDATED)
                .where(ContentItem.embedding.is_not(None))
                .order_by(ContentItem.created_at, ContentItem.id)
            )
            return [item for item in result.scalars().all() if item.embedding]

    # =========================================================================
    # Communities
    # =========================================================================

    async def get_community(self, community_id: str) -> Optional[Community]:
        async with self._session("get_community") as session:
            return await session.get(Community, community_id)

    async def create_community(self, community_id: str, **fields: Any) -> Community:
        async with self._session("create_community") as session:
            community = Community(id=community_id, **fields)
            session.add(community)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateCommunityError(community_id) from e
            await session.refresh(community)
            return community

    async def update_community(
        self, community_id: str, expected_version: Optional[int] = None, **fields: Any
    ) -> Community:
        async with self._session("update_community") as session:
            community = await session.get(Community, community_id)
            if not community:
                raise NotFoundError(f"Community {community_id} not found")
            if expected_version is not None and community.version != expected_version:
                raise StaleCommunityError(community_id)
            for name, value in fields.items():
                setattr(community, name, value)
            try:
                # The UPDATE is guarded by the version it was read at
                await session.commit()
            except StaleDataError as e:
                await session.rollback()
                raise StaleCommunityError(community_id) from e
            await session.refresh(community)
            return community

    async def list_communities(self) -> List[Community]:
        async with self._session("list_communities") as session:
            result = await session.execute(
                select(Community).order_by(Community.member_count.desc(), Community.id)
            )
            return list(result.scalars().all())

    # =========================================================================
    # Executions
    # =========================================================================

    async def create_execution(self, item_id: str) -> PipelineExecution:
        async with self._session("create_execution") as session:
            await self._expire_stale_executions(session, item_id)
            active = await self._active_execution(session, item_id)
            if active:
                raise ConflictError(item_id)

            execution = PipelineExecution(
                content_item_id=item_id,
                status=ExecutionStatus.IN_PROGRESS,
                started_at=datetime.utcnow(),
            )
            execution.stages = [
                StageRecord(stage=stage, ordering=i, status=StageStatus.NOT_STARTED)
                for i, stage in enumerate(STAGE_ORDER)
            ]
            session.add(execution)
            try:
                await session.commit()
            except IntegrityError as e:
                # Another process started one between our read and our insert
                await session.rollback()
                raise ConflictError(item_id) from e
            return await self._load_execution(session, execution.id)

    async def update_stage(
        self,
        execution_id: int,
        stage: Stage,
        status: StageStatus,
        error: Optional[str] = None,
    ) -> None:
        async with self._session("update_stage") as session:
            result = await session.execute(
                select(StageRecord)
                .where(StageRecord.execution_id == execution_id)
                .where(StageRecord.stage == stage)
            )
            record = result.scalar_one_or_none()
            if not record:
                raise NotFoundError(f"Stage {stage.value} not found for execution {execution_id}")

            now = datetime.utcnow()
            record.status = status
            if status == StageStatus.IN_PROGRESS:
                record.started_at = now
            elif status in (StageStatus.SUCCEEDED, StageStatus.FAILED):
                record.ended_at = now
                if record.started_at is None:
                    record.started_at = now
            if error:
                record.error = error
            await session.commit()

    async def finish_execution(
        self,
        execution_id: int,
        status: ExecutionStatus,
        error: Optional[str] = None,
    ) -> None:
        async with self._session("finish_execution") as session:
            execution = await session.get(PipelineExecution, execution_id)
            if not execution:
                raise NotFoundError(f"Execution {execution_id} not found")
            execution.status = status
            execution.error = error
            execution.completed_at = datetime.utcnow()
            await session.commit()

    async def get_active_execution(self, item_id: str) -> Optional[PipelineExecution]:
        async with self._session("get_active_execution") as session:
            return await self._active_execution(session, item_id)

    async def list_executions(self, item_id: str) -> List[PipelineExecution]:
        async with self._session("list_executions") as session:
            result = await session.execute(
                select(PipelineExecution)
                .options(selectinload(PipelineExecution.stages))
                .where(PipelineExecution.content_item_id == item_id)
                .order_by(PipelineExecution.started_at.desc(), PipelineExecution.id.desc())
            )
            return list(result.scalars().all())

    async def _expire_stale_executions(self, session: AsyncSession, item_id: str) -> None:
        """Fail in-progress executions abandoned by a crashed process."""
        if self._stale_after is None:
            return
        cutoff = datetime.utcnow() - timedelta(seconds=self._stale_after)
        result = await session.execute(
            update(PipelineExecution)
            .where(PipelineExecution.content_item_id == item_id)
            .where(PipelineExecution.status == ExecutionStatus.IN_PROGRESS)
            .where(PipelineExecution.started_at < cutoff)
            .values(
                status=ExecutionStatus.FAILED,
                error=STALE_EXECUTION_ERROR,
                completed_at=datetime.utcnow(),
            )
        )
        if result.rowcount:
            logger.warning(f"Expired {result.rowcount} stale execution(s) for item {item_id}")
        await session.commit()

    async def _active_execution(
        self, session: AsyncSession, item_id: str
    ) -> Optional[PipelineExecution]:
        query = (
            select(PipelineExecution)
            .options(selectinload(PipelineExecution.stages))
            .where(PipelineExecution.content_item_id == item_id)
            .where(PipelineExecution.status == ExecutionStatus.IN_PROGRESS)
        )
        if self._stale_after is not None:
            cutoff = datetime.utcnow() - timedelta(seconds=self._stale_after)
            query = query.where(PipelineExecution.started_at >= cutoff)
        result = await session.execute(query)
        return result.scalars().first()

    async def _load_execution(self, session: AsyncSession, execution_id: int) -> PipelineExecution:
        result = await session.execute(
            select(PipelineExecution)
            .options(selectinload(PipelineExecution.stages))
            .where(PipelineExecution.id == execution_id)
        )
        return result.scalar_one()
