"""Community metadata upserts.

Community rows are written concurrently by many items' clustering decisions,
possibly from more than one process. Within a process, every read-modify-write
of a community's count, tag table and centroid runs under one lock per
community id. Across processes, each update is conditional on the version it
was computed from; a writer that loses re-reads and recomputes. Creation is a
conditional insert, so two creators of the same id converge the same way.
"""
import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Sequence

from milkmobs.models.community import Community

from .config import ClusteringConfig, Deadlines, RetryPolicy
from .errors import DuplicateCommunityError, InfraError, StaleCommunityError
from .naming import community_description, community_name
from .retry import call_with_retries
from .vectors import running_mean

logger = logging.getLogger(__name__)

# Re-reads allowed when other writers keep changing the same community
MAX_WRITE_CONFLICTS = 5


def top_tags(tag_counts: Dict[str, int], limit: int) -> List[str]:
    """Most frequent tags, ties broken alphabetically."""
    ranked = sorted(tag_counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [tag for tag, count in ranked[:limit] if count > 0]


class CommunityRegistry:
    """Serialized upserts of community records."""

    def __init__(
        self,
        store,
        config: Optional[ClusteringConfig] = None,
        retry: Optional[RetryPolicy] = None,
        deadlines: Optional[Deadlines] = None,
    ):
        self.store = store
        self.config = config or ClusteringConfig()
        self.retry = retry or RetryPolicy()
        self.deadlines = deadlines or Deadlines()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _serialized(self, community_id: str):
        """Hold the community's lock; drop it once nobody holds or waits on it."""
        lock = self._locks.setdefault(community_id, asyncio.Lock())
        self._lock_users[community_id] = self._lock_users.get(community_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[community_id] -= 1
            if not self._lock_users[community_id]:
                del self._lock_users[community_id]
                del self._locks[community_id]

    async def _store(self, op, operation: str):
        return await call_with_retries(op, self.retry, operation, timeout=self.deadlines.store)

    async def _until_consistent(self, community_id: str, write):
        """Run ``write`` again whenever another writer got there first."""
        for attempt in range(1, MAX_WRITE_CONFLICTS + 1):
            try:
                return await write()
            except StaleCommunityError:
                logger.info(
                    f"Community {community_id} changed concurrently, "
                    f"re-reading ({attempt}/{MAX_WRITE_CONFLICTS})"
                )
        raise InfraError(
            f"Community {community_id} kept changing during update", "update_community"
        )

    async def upsert(
        self,
        community_id: str,
        member_delta: int,
        tags: Sequence[str] = (),
        new_vectors: Sequence[Sequence[float]] = (),
    ) -> Community:
        """
        Add members to a community, creating it on first sight.

        Args:
            community_id: Derived community id
            member_delta: Number of members being added
            tags: Normalized hashtags contributed by the added members
            new_vectors: Embeddings of the added members, folded into the centroid

        Returns:
            The community after the update
        """
        async with self._serialized(community_id):
            return await self._until_consistent(
                community_id,
                lambda: self._upsert_once(community_id, member_delta, tags, new_vectors),
            )

    async def _upsert_once(self, community_id, member_delta, tags, new_vectors) -> Community:
        existing = await self._store(
            lambda: self.store.get_community(community_id), "get_community"
        )
        if existing is None:
            counts = Counter(t for t in tags if t)
            try:
                community = await self._store(
                    lambda: self.store.create_community(
                        community_id,
                        name=community_name(community_id),
                        description=community_description(community_id),
                        member_count=member_delta,
                        centroid=running_mean(None, 0, new_vectors) or None,
                        tag_counts=dict(counts),
                        example_tags=top_tags(counts, self.config.example_tag_limit),
                    ),
                    "create_community",
                )
                logger.info(f"Created community {community_id} with {member_delta} member(s)")
                return community
            except DuplicateCommunityError:
                # Another writer created it first; fold into theirs
                logger.info(f"Community {community_id} created concurrently, merging")
                existing = await self._store(
                    lambda: self.store.get_community(community_id), "get_community"
                )

        counts = Counter(existing.tag_counts or {})
        counts.update(t for t in tags if t)
        current_count = existing.member_count or 0
        community = await self._store(
            lambda: self.store.update_community(
                community_id,
                expected_version=existing.version,
                member_count=max(0, current_count + member_delta),
                centroid=running_mean(existing.centroid, current_count, new_vectors) or None,
                tag_counts=dict(counts),
                example_tags=top_tags(counts, self.config.example_tag_limit),
            ),
            "update_community",
        )
        logger.debug(
            f"Community {community_id}: {current_count} -> {community.member_count} members"
        )
        return community

    async def replace(
        self,
        community_id: str,
        member_count: int,
        tags: Sequence[str],
        centroid: Optional[List[float]],
    ) -> Community:
        """
        Overwrite a community's count, tags and centroid with exact values.

        Used by batch rebuilds, which recompute membership from scratch.
        """
        counts = Counter(t for t in tags if t)
        fields = dict(
            member_count=member_count,
            tag_counts=dict(counts),
            example_tags=top_tags(counts, self.config.example_tag_limit),
        )
        if centroid:
            fields["centroid"] = list(centroid)

        async def write():
            existing = await self._store(
                lambda: self.store.get_community(community_id), "get_community"
            )
            if existing is None:
                try:
                    return await self._store(
                        lambda: self.store.create_community(
                            community_id,
                            name=community_name(community_id),
                            description=community_description(community_id),
                            **fields,
                        ),
                        "create_community",
                    )
                except DuplicateCommunityError:
                    logger.info(f"Community {community_id} created concurrently, overwriting")
            return await self._store(
                lambda: self.store.update_community(community_id, **fields),
                "update_community",
            )

        async with self._serialized(community_id):
            return await self._until_consistent(community_id, write)

    async def reset(self, community_id: str) -> Community:
        """Zero a community that no longer has members. The record is kept."""
        async with self._serialized(community_id):
            return await self._until_consistent(
                community_id,
                lambda: self._store(
                    lambda: self.store.update_community(
                        community_id, member_count=0, tag_counts={}, example_tags=[]
                    ),
                    "update_community",
                ),
            )
