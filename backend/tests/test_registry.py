"""Tests for community upserts."""
import asyncio

import pytest

from milkmobs.pipeline.config import ClusteringConfig
from milkmobs.pipeline.errors import DuplicateCommunityError, InfraError, StaleCommunityError
from milkmobs.pipeline.registry import MAX_WRITE_CONFLICTS, CommunityRegistry, top_tags


@pytest.fixture
def registry(store, fast_retry):
    return CommunityRegistry(store, ClusteringConfig(), fast_retry)


def test_top_tags_ranked_by_count_then_name():
    counts = {"b": 2, "a": 2, "c": 5, "d": 1, "e": 1, "f": 1, "z": 0}
    assert top_tags(counts, 5) == ["c", "a", "b", "d", "e"]


@pytest.mark.asyncio
async def test_creates_with_derived_name(registry, store):
    community = await registry.upsert(
        "skate_drink_skatepark", 1, ["gotmilk", "skate"], [[1.0, 0.0]]
    )

    assert community.name == "Skate & Drink at Skatepark"
    assert community.description == "Videos featuring Skate, Drink, Skatepark"
    assert community.member_count == 1
    assert community.centroid == pytest.approx([1.0, 0.0])
    assert community.example_tags == ["gotmilk", "skate"]


@pytest.mark.asyncio
async def test_update_adds_count_merges_tags_and_centroid(registry):
    await registry.upsert("pour_kitchen", 2, ["gotmilk", "pour"], [[1.0, 0.0], [1.0, 0.0]])
    community = await registry.upsert("pour_kitchen", 1, ["gotmilk"], [[0.0, 1.0]])

    assert community.member_count == 3
    assert community.tag_counts == {"gotmilk": 2, "pour": 1}
    assert community.example_tags == ["gotmilk", "pour"]
    assert community.centroid == pytest.approx([2 / 3, 1 / 3])


@pytest.mark.asyncio
async def test_example_tags_bounded(registry):
    tags = ["t1", "t2", "t3", "t4", "t5", "t6", "t6"]
    community = await registry.upsert("misc", 1, tags, [[1.0]])
    assert community.example_tags == ["t6", "t1", "t2", "t3", "t4"]


@pytest.mark.asyncio
async def test_concurrent_upserts_do_not_lose_updates(registry, store):
    vectors = [[float(i), 1.0] for i in range(20)]

    await asyncio.gather(
        *(registry.upsert("skatepark", 1, ["skate"], [v]) for v in vectors)
    )

    community = store.communities["skatepark"]
    assert community.member_count == 20
    assert community.tag_counts == {"skate": 20}
    assert community.centroid == pytest.approx([9.5, 1.0])


@pytest.mark.asyncio
async def test_lost_create_race_merges_into_winner(store, fast_retry):
    # Another process creates the community between our read and our insert
    original_create = store.create_community

    async def create_after_rival(community_id, **fields):
        if community_id not in store.communities:
            await original_create(community_id, name="Rival", member_count=4, tag_counts={"a": 4})
        raise DuplicateCommunityError(community_id)

    store.create_community = create_after_rival
    registry = CommunityRegistry(store, ClusteringConfig(), fast_retry)

    community = await registry.upsert("rival", 1, ["a"], [[1.0, 0.0]])

    assert community.name == "Rival"
    assert community.member_count == 5
    assert community.tag_counts == {"a": 5}


@pytest.mark.asyncio
async def test_replace_sets_exact_values(registry, store):
    await registry.upsert("drink_kitchen_0", 7, ["x"], [[1.0, 1.0]])

    community = await registry.replace("drink_kitchen_0", 2, ["y", "y", "z"], [0.5, 0.5])

    assert community.member_count == 2
    assert community.tag_counts == {"y": 2, "z": 1}
    assert community.centroid == [0.5, 0.5]


@pytest.mark.asyncio
async def test_replace_creates_missing(registry, store):
    community = await registry.replace("skatelife_1", 3, ["skatelife"], [0.1, 0.2])
    assert community.name == "Skatelife Mob"
    assert store.communities["skatelife_1"].member_count == 3


@pytest.mark.asyncio
async def test_reset_keeps_record(registry, store):
    await registry.upsert("misc", 3, ["gotmilk"], [[1.0]])

    await registry.reset("misc")

    community = store.communities["misc"]
    assert community.member_count == 0
    assert community.example_tags == []


@pytest.mark.asyncio
async def test_store_errors_are_retried(registry, store):
    store.fail_ops["get_community"] = 2

    community = await registry.upsert("misc", 1, [], [[1.0]])

    assert community.member_count == 1


@pytest.mark.asyncio
async def test_store_outage_surfaces(registry, store):
    store.fail_ops["update_community"] = -1
    await registry.upsert("misc", 1, [], [[1.0]])

    with pytest.raises(InfraError):
        await registry.upsert("misc", 1, [], [[1.0]])


@pytest.mark.asyncio
async def test_write_from_another_process_is_not_lost(registry, store):
    await registry.upsert("skatepark", 1, ["skate"], [[1.0, 0.0]])
    original_update = store.update_community
    rival_wrote = []

    async def update_after_rival(community_id, expected_version=None, **fields):
        # A writer outside this registry lands between our read and our write
        if not rival_wrote:
            rival_wrote.append(community_id)
            current = store.communities[community_id]
            await original_update(
                community_id, member_count=current.member_count + 4, tag_counts={"skate": 5}
            )
        return await original_update(community_id, expected_version=expected_version, **fields)

    store.update_community = update_after_rival

    community = await registry.upsert("skatepark", 1, ["skate"], [[1.0, 0.0]])

    assert community.member_count == 6
    assert community.tag_counts == {"skate": 6}


@pytest.mark.asyncio
async def test_endless_write_conflicts_surface_as_infra_error(registry, store):
    await registry.upsert("misc", 1, [], [[1.0]])
    attempts = []

    async def always_stale(community_id, expected_version=None, **fields):
        attempts.append(expected_version)
        raise StaleCommunityError(community_id)

    store.update_community = always_stale

    with pytest.raises(InfraError, match="kept changing"):
        await registry.upsert("misc", 1, [], [[1.0]])

    assert len(attempts) == MAX_WRITE_CONFLICTS
    assert store.communities["misc"].member_count == 1


@pytest.mark.asyncio
async def test_locks_are_released_after_use(registry):
    await asyncio.gather(
        *(registry.upsert(f"mob_{i % 3}", 1, [], [[1.0]]) for i in range(9))
    )
    await registry.reset("mob_0")

    assert registry._locks == {}
