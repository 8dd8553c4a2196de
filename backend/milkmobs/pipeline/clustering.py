"""Community assignment, per item and over the whole corpus.

Online assignment runs once per newly validated item. It queries the
similarity index and then takes one of three paths:

- fast path: the best neighbor clears the join threshold and already has a
  community, so the item joins it
- provisional cluster: the item and its qualifying neighbors name a community
  from their dominant action/scene tags
- keyword fallback: the index is unavailable or the query failed, so a fixed
  category is picked from hashtag and tag substrings

Batch rebuilds recompute membership for every validated item. Small corpora
become a similarity graph split into connected components. Larger corpora go
through a single greedy pass of index queries, or k-means over raw embeddings
when no index is configured or it fails its health check. Only documents
whose index metadata says validated are ever returned as neighbors. Index
scores and raw cosine scores are never mixed within one pass.
"""
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from milkmobs.models.content_item import ContentStatus
from milkmobs.services.similarity_index import SimilarityIndex, index_metadata

from .config import ClusteringConfig, Deadlines, RetryPolicy
from .errors import InfraError, NoClusterFound
from .naming import derive_community_id, keyword_community_id, member_tags
from .registry import CommunityRegistry
from .retry import call_with_retries
from .types import Cluster, ClusterMember, Neighbor, RebuildReport
from .vectors import (
    adaptive_k,
    as_matrix,
    centroid,
    connected_components,
    cosine_similarity_matrix,
    kmeans_labels,
)

logger = logging.getLogger(__name__)

ALGORITHM_GRAPH = "similarity_graph"
ALGORITHM_GREEDY = "greedy_similarity"
ALGORITHM_KMEANS = "kmeans"

# Only validated documents may influence membership or naming
VALIDATED_ONLY = {"status": ContentStatus.VALIDATED.value}


class ClusteringEngine:
    """Decide community membership from embedding similarity."""

    def __init__(
        self,
        store,
        registry: CommunityRegistry,
        index: Optional[SimilarityIndex] = None,
        config: Optional[ClusteringConfig] = None,
        retry: Optional[RetryPolicy] = None,
        deadlines: Optional[Deadlines] = None,
    ):
        self.store = store
        self.registry = registry
        self.index = index
        self.config = config or ClusteringConfig()
        self.retry = retry or RetryPolicy()
        self.deadlines = deadlines or Deadlines()

    @property
    def index_available(self) -> bool:
        return self.index is not None and self.index.available

    async def _store(self, op, operation: str):
        return await call_with_retries(op, self.retry, operation, timeout=self.deadlines.store)

    async def _query(self, vector, k: int, exclude_id: str) -> List[Neighbor]:
        return await call_with_retries(
            lambda: self.index.query(
                vector,
                k,
                min_score=self.config.similarity_threshold,
                exclude_id=exclude_id,
                filters=VALIDATED_ONLY,
            ),
            self.retry,
            "index_query",
            timeout=self.deadlines.index,
        )

    async def index_reachable(self) -> bool:
        """Whether the configured index answers a health check right now."""
        if not self.index_available:
            return False
        try:
            await call_with_retries(
                lambda: self.index.ping(), self.retry, "index_ping", timeout=self.deadlines.index
            )
        except InfraError as e:
            logger.warning(f"Similarity index unreachable, using raw embeddings: {e}")
            return False
        return True

    # =========================================================================
    # Online assignment
    # =========================================================================

    async def find_neighbors(self, member: ClusterMember) -> List[Neighbor]:
        """
        Qualifying neighbors of one member, best first.

        Raises:
            NoClusterFound: When the index is unavailable or the query failed
        """
        if not self.index_available or not member.embedding:
            raise NoClusterFound(f"No similarity index available for {member.id}")
        try:
            neighbors = await self._query(member.embedding, self.config.neighbor_k, member.id)
        except InfraError as e:
            raise NoClusterFound(f"Neighbor query failed for {member.id}: {e}") from e
        return [n for n in neighbors if n.score >= self.config.similarity_threshold]

    def choose_community(self, member: ClusterMember, neighbors: Sequence[Neighbor]) -> Tuple[str, str]:
        """
        Pick a community for a member given its qualifying neighbors.

        Returns:
            (community_id, path) where path is "join" or "provisional"
        """
        best = neighbors[0] if neighbors else None
        if best is not None and best.score >= self.config.join_threshold and best.community_id:
            return best.community_id, "join"

        provisional = [member] + [
            ClusterMember.from_metadata(n.id, n.embedding or [], n.metadata) for n in neighbors
        ]
        return derive_community_id(provisional), "provisional"

    async def assign_community(self, item) -> str:
        """
        Assign a validated item to a community and record the membership.

        Args:
            item: Validated content item with an embedding

        Returns:
            The assigned community id

        Raises:
            InfraError: When the community or item write fails after retries
        """
        member = ClusterMember.from_item(item)

        try:
            neighbors = await self.find_neighbors(member)
            community_id, path = self.choose_community(member, neighbors)
            logger.info(
                f"Item {item.id}: {len(neighbors)} neighbor(s), "
                f"best={neighbors[0].score if neighbors else None}, {path} -> {community_id}"
            )
        except NoClusterFound as e:
            community_id = keyword_community_id(member.hashtags, member.actions, member.objects_scenes)
            logger.warning(f"{e}; keyword fallback -> {community_id}")

        vectors = [member.embedding] if member.embedding else []
        await self.registry.upsert(community_id, 1, member_tags([member]), vectors)
        updated = await self._store(
            lambda: self.store.update_item(item.id, community_id=community_id), "update_item"
        )
        await self._reindex(updated)
        return community_id

    async def _reindex(self, item) -> None:
        """Refresh the item's index metadata. Best-effort."""
        if not self.index_available or not item.embedding:
            return
        try:
            await call_with_retries(
                lambda: self.index.upsert(item.id, item.embedding, index_metadata(item)),
                self.retry,
                "index_upsert",
                timeout=self.deadlines.index,
            )
        except InfraError as e:
            logger.error(f"Failed to refresh index metadata for {item.id}: {e}")

    # =========================================================================
    # Batch rebuild
    # =========================================================================

    async def rebuild_communities(self) -> RebuildReport:
        """
        Re-cluster every validated item and converge community counts.

        Returns:
            RebuildReport naming the algorithm, clusters and reset communities
        """
        items = await self._store(
            lambda: self.store.list_validated_with_embeddings(), "list_validated_with_embeddings"
        )
        corpus = [ClusterMember.from_item(item) for item in items]
        items_by_id = {item.id: item for item in items}
        logger.info(f"Rebuilding communities over {len(corpus)} validated item(s)")

        algorithm, groups = await self.cluster_corpus(corpus)
        clusters = [
            Cluster(
                community_id=derive_community_id(members, index),
                members=members,
                centroid=centroid([m.embedding for m in members]),
            )
            for index, members in enumerate(groups)
        ]

        for cluster in clusters:
            await self.registry.replace(
                cluster.community_id,
                cluster.size,
                member_tags(cluster.members),
                cluster.centroid,
            )
            for member in cluster.members:
                if member.community_id == cluster.community_id:
                    continue
                updated = await self._store(
                    lambda: self.store.update_item(member.id, community_id=cluster.community_id),
                    "update_item",
                )
                items_by_id[member.id] = updated
                await self._reindex(updated)

        assigned = {c.community_id for c in clusters}
        communities = await self._store(lambda: self.store.list_communities(), "list_communities")
        reset = []
        for community in communities:
            if community.id in assigned or not community.member_count:
                continue
            await self.registry.reset(community.id)
            reset.append(community.id)
        if reset:
            logger.info(f"Reset {len(reset)} emptied communities: {reset}")

        report = RebuildReport(
            algorithm=algorithm,
            corpus_size=len(corpus),
            clusters=clusters,
            communities_reset=reset,
        )
        logger.info(
            f"Rebuild complete: {algorithm}, {report.cluster_count} clusters "
            f"over {len(corpus)} item(s)"
        )
        return report

    async def cluster_corpus(self, corpus: List[ClusterMember]) -> Tuple[str, List[List[ClusterMember]]]:
        """
        Partition the corpus into clusters.

        Returns:
            (algorithm name, clusters as member lists in deterministic order)
        """
        if not corpus:
            return ALGORITHM_GRAPH, []
        use_index = await self.index_reachable()
        if len(corpus) < self.config.small_corpus_cutoff:
            return ALGORITHM_GRAPH, await self.similarity_graph_clusters(corpus, use_index)
        if use_index:
            return ALGORITHM_GREEDY, await self.greedy_clusters(corpus)
        return ALGORITHM_KMEANS, self.kmeans_clusters(corpus)

    async def similarity_graph_clusters(
        self, corpus: List[ClusterMember], use_index: bool
    ) -> List[List[ClusterMember]]:
        """Connected components of the thresholded similarity graph.

        Edges come from index queries when ``use_index`` is set, otherwise from
        raw cosine similarity of the embeddings.
        """
        positions = {m.id: i for i, m in enumerate(corpus)}
        edges = []

        if use_index:
            for i, member in enumerate(corpus):
                try:
                    neighbors = await self._query(member.embedding, len(corpus), member.id)
                except InfraError as e:
                    logger.warning(f"Similarity query failed for {member.id}, no edges: {e}")
                    continue
                for neighbor in neighbors:
                    j = positions.get(neighbor.id)
                    if j is not None and neighbor.score >= self.config.similarity_threshold:
                        edges.append((i, j))
        else:
            similarities = cosine_similarity_matrix(as_matrix([m.embedding for m in corpus]))
            n = len(corpus)
            for i in range(n):
                for j in range(i + 1, n):
                    if similarities[i, j] >= self.config.similarity_threshold:
                        edges.append((i, j))

        components = connected_components(len(corpus), edges)
        logger.info(f"Similarity graph: {len(edges)} edges, {len(components)} components")
        return [[corpus[i] for i in component] for component in components]

    async def greedy_clusters(self, corpus: List[ClusterMember]) -> List[List[ClusterMember]]:
        """
        One pass over the corpus in order. Each unassigned item absorbs its
        unassigned neighbors above threshold; a failed query leaves a singleton.
        """
        by_id = {m.id: m for m in corpus}
        limit = min(self.config.batch_neighbor_limit, len(corpus))
        assigned = set()
        clusters = []

        for member in corpus:
            if member.id in assigned:
                continue
            cluster = [member]
            assigned.add(member.id)
            try:
                neighbors = await self._query(member.embedding, limit, member.id)
            except InfraError as e:
                logger.warning(f"Similarity query failed for {member.id}, singleton: {e}")
                neighbors = []

            for neighbor in neighbors:
                candidate = by_id.get(neighbor.id)
                if (
                    candidate is not None
                    and neighbor.id not in assigned
                    and neighbor.score >= self.config.similarity_threshold
                ):
                    cluster.append(candidate)
                    assigned.add(neighbor.id)
            clusters.append(cluster)

        return clusters

    def kmeans_clusters(self, corpus: List[ClusterMember]) -> List[List[ClusterMember]]:
        """K-means over raw embeddings with an adaptive cluster count."""
        k = adaptive_k(len(corpus))
        labels = kmeans_labels(
            as_matrix([m.embedding for m in corpus]),
            k,
            max_iterations=self.config.kmeans_iterations,
            tolerance=self.config.kmeans_tolerance,
            seed=self.config.kmeans_seed,
        )

        # Order clusters by first appearance so ids follow input order
        groups: Dict[int, List[ClusterMember]] = {}
        for member, label in zip(corpus, labels):
            groups.setdefault(int(label), []).append(member)
        logger.info(f"K-means with k={k}: {len(groups)} non-empty clusters")
        return list(groups.values())
