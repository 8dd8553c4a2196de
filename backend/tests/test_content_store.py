"""Tests for the SQLAlchemy content store."""
import asyncio
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update

from milkmobs.db.database import close_db, create_engine_and_sessions, init_db
from milkmobs.models.content_item import ContentStatus
from milkmobs.models.execution import ExecutionStatus, PipelineExecution, Stage, StageStatus
from milkmobs.pipeline.errors import (
    ConflictError,
    DuplicateCommunityError,
    InfraError,
    NotFoundError,
    StaleCommunityError,
)
from milkmobs.services.content_store import STALE_EXECUTION_ERROR, SqlContentStore


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine, session_maker = create_engine_and_sessions(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield SqlContentStore(session_maker)
    await close_db(engine)


async def _validated(store, item_id, embedding, community_id=None):
    await store.create_item(item_id, "user-1", f"s3://bucket/{item_id}.mp4", ["#gotmilk"])
    await store.update_item(
        item_id,
        participation_score=0.9,
        embedding=embedding,
        embedding_dim=len(embedding),
        status=ContentStatus.VALIDATED,
    )
    if community_id:
        await store.update_item(item_id, community_id=community_id)


@pytest.mark.asyncio
async def test_create_and_partial_update(sql_store):
    item = await sql_store.create_item("vid-1", "user-1", "s3://bucket/vid-1.mp4", ["#gotmilk", "#gotmilk"])
    assert item.status == ContentStatus.UPLOADED
    assert item.hashtags == ["#gotmilk", "#gotmilk"]

    await sql_store.update_item("vid-1", rationale="Pours milk")
    updated = await sql_store.update_item("vid-1", participation_score=0.8)

    assert updated.rationale == "Pours milk"
    assert updated.participation_score == 0.8


@pytest.mark.asyncio
async def test_duplicate_item(sql_store):
    await sql_store.create_item("vid-1", "user-1", "s3://bucket/vid-1.mp4")
    with pytest.raises(ValueError, match="already exists"):
        await sql_store.create_item("vid-1", "user-2", "s3://bucket/other.mp4")


@pytest.mark.asyncio
async def test_update_missing_item(sql_store):
    with pytest.raises(NotFoundError):
        await sql_store.update_item("nope", rationale="x")


@pytest.mark.asyncio
async def test_community_requires_validated_status(sql_store):
    await sql_store.create_item("vid-1", "user-1", "s3://bucket/vid-1.mp4")
    with pytest.raises(ValueError, match="Cannot assign community"):
        await sql_store.update_item("vid-1", community_id="misc")


@pytest.mark.asyncio
async def test_rejection_clears_community(sql_store):
    await _validated(sql_store, "vid-1", [1.0, 0.0], community_id="misc")

    item = await sql_store.update_item("vid-1", status=ContentStatus.REJECTED)

    assert item.community_id is None


@pytest.mark.asyncio
async def test_validated_corpus_query(sql_store):
    await _validated(sql_store, "vid-1", [1.0, 0.0], community_id="misc")
    await _validated(sql_store, "vid-2", [0.0, 1.0])
    await sql_store.create_item("vid-3", "user-1", "s3://bucket/vid-3.mp4")

    corpus = await sql_store.list_validated_with_embeddings()

    assert [item.id for item in corpus] == ["vid-1", "vid-2"]
    assert corpus[0].community_id == "misc"


@pytest.mark.asyncio
async def test_conditional_community_create(sql_store):
    await sql_store.create_community("misc", name="Misc Milk Mob", member_count=1, tag_counts={"gotmilk": 1})

    with pytest.raises(DuplicateCommunityError):
        await sql_store.create_community("misc", name="Other", member_count=5)

    community = await sql_store.update_community("misc", member_count=2, centroid=[0.5, 0.5])
    assert community.name == "Misc Milk Mob"
    assert community.member_count == 2
    assert community.centroid == [0.5, 0.5]


@pytest.mark.asyncio
async def test_community_update_is_conditional_on_version(sql_store):
    created = await sql_store.create_community("misc", name="Misc Milk Mob", member_count=1)
    assert created.version == 1

    updated = await sql_store.update_community("misc", expected_version=1, member_count=2)
    assert updated.version == 2

    # A writer that read version 1 has lost the race
    with pytest.raises(StaleCommunityError):
        await sql_store.update_community("misc", expected_version=1, member_count=5)

    community = await sql_store.get_community("misc")
    assert community.member_count == 2
    assert community.version == 2


@pytest.mark.asyncio
async def test_communities_listed_largest_first(sql_store):
    await sql_store.create_community("b", name="B", member_count=1)
    await sql_store.create_community("a", name="A", member_count=1)
    await sql_store.create_community("c", name="C", member_count=4)

    assert [c.id for c in await sql_store.list_communities()] == ["c", "a", "b"]


@pytest.mark.asyncio
async def test_execution_lifecycle(sql_store):
    await sql_store.create_item("vid-1", "user-1", "s3://bucket/vid-1.mp4")
    execution = await sql_store.create_execution("vid-1")

    assert [r.stage for r in execution.stages] == list(Stage)
    assert {r.status for r in execution.stages} == {StageStatus.NOT_STARTED}

    with pytest.raises(ConflictError):
        await sql_store.create_execution("vid-1")

    await sql_store.update_stage(execution.id, Stage.MARK_PROCESSING, StageStatus.IN_PROGRESS)
    await sql_store.update_stage(execution.id, Stage.MARK_PROCESSING, StageStatus.SUCCEEDED)
    await sql_store.update_stage(execution.id, Stage.EMBEDDING, StageStatus.FAILED, "timeout")
    await sql_store.finish_execution(execution.id, ExecutionStatus.FAILED, "timeout")

    assert await sql_store.get_active_execution("vid-1") is None
    history = await sql_store.list_executions("vid-1")
    assert len(history) == 1
    record = history[0].stage(Stage.MARK_PROCESSING)
    assert record.status == StageStatus.SUCCEEDED
    assert record.started_at is not None and record.ended_at is not None
    assert history[0].stage(Stage.EMBEDDING).error == "timeout"

    second = await sql_store.create_execution("vid-1")
    assert second.id != execution.id


@pytest.mark.asyncio
async def test_concurrent_starts_admit_one_execution(sql_store):
    await sql_store.create_item("vid-1", "user-1", "s3://bucket/vid-1.mp4")

    results = await asyncio.gather(
        sql_store.create_execution("vid-1"),
        sql_store.create_execution("vid-1"),
        return_exceptions=True,
    )

    started = [r for r in results if isinstance(r, PipelineExecution)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(started) == 1
    assert len(conflicts) == 1
    history = await sql_store.list_executions("vid-1")
    assert [e.status for e in history] == [ExecutionStatus.IN_PROGRESS]


@pytest.mark.asyncio
async def test_stale_execution_no_longer_blocks(tmp_path):
    engine, session_maker = create_engine_and_sessions(f"sqlite+aiosqlite:///{tmp_path / 'stale.db'}")
    await init_db(engine)
    store = SqlContentStore(session_maker, stale_after=60)
    await store.create_item("vid-1", "user-1", "s3://bucket/vid-1.mp4")
    abandoned = await store.create_execution("vid-1")

    with pytest.raises(ConflictError):
        await store.create_execution("vid-1")

    # The process running it died five minutes ago
    async with session_maker() as session:
        await session.execute(
            update(PipelineExecution)
            .where(PipelineExecution.id == abandoned.id)
            .values(started_at=datetime.utcnow() - timedelta(minutes=5))
        )
        await session.commit()

    assert await store.get_active_execution("vid-1") is None
    fresh = await store.create_execution("vid-1")

    history = {e.id: e for e in await store.list_executions("vid-1")}
    assert history[abandoned.id].status == ExecutionStatus.FAILED
    assert history[abandoned.id].error == STALE_EXECUTION_ERROR
    assert history[fresh.id].status == ExecutionStatus.IN_PROGRESS

    await close_db(engine)


@pytest.mark.asyncio
async def test_database_errors_become_infra_errors(tmp_path):
    engine, session_maker = create_engine_and_sessions(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    store = SqlContentStore(session_maker)

    # No tables were created
    with pytest.raises(InfraError):
        await store.get_item("vid-1")

    await close_db(engine)
