"""Vector similarity search over indexed content embeddings."""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import httpx
import numpy as np

from milkmobs.pipeline.errors import InfraError
from milkmobs.pipeline.types import Neighbor

logger = logging.getLogger(__name__)
INDEX_HTTP_TIMEOUT_SECONDS = 10.0


class SimilarityIndex(ABC):
    """Abstract similarity index.

    Scores are only comparable with other scores from the same index.
    """

    @property
    def available(self) -> bool:
        """Whether an index is configured. Reachability is checked by ``ping``."""
        return True

    @abstractmethod
    async def upsert(self, item_id: str, vector: List[float], metadata: Dict) -> None:
        """Insert or replace one document."""

    @abstractmethod
    async def query(
        self,
        vector: List[float],
        k: int,
        min_score: Optional[float] = None,
        exclude_id: Optional[str] = None,
        filters: Optional[Dict[str, str]] = None,
    ) -> List[Neighbor]:
        """Top-k neighbors of ``vector``, best first.

        ``filters`` restricts hits to documents whose metadata has exactly the
        given values.
        """

    async def ping(self) -> None:
        """Raise InfraError when the index cannot serve queries right now."""


class InMemorySimilarityIndex(SimilarityIndex):
    """Exact cosine similarity over vectors held in process memory."""

    def __init__(self):
        self._docs: Dict[str, Tuple[np.ndarray, Dict]] = {}
        self._lock = asyncio.Lock()

    def __len__(self):
        return len(self._docs)

    async def upsert(self, item_id: str, vector: List[float], metadata: Dict) -> None:
        async with self._lock:
            self._docs[item_id] = (np.asarray(vector, dtype=np.float64), dict(metadata))

    async def query(
        self,
        vector: List[float],
        k: int,
        min_score: Optional[float] = None,
        exclude_id: Optional[str] = None,
        filters: Optional[Dict[str, str]] = None,
    ) -> List[Neighbor]:
        query_vec = np.asarray(vector, dtype=np.float64)
        query_norm = np.linalg.norm(query_vec)

        hits = []
        for doc_id, (doc_vec, metadata) in self._docs.items():
            if doc_id == exclude_id or doc_vec.shape != query_vec.shape:
                continue
            if filters and any(metadata.get(key) != value for key, value in filters.items()):
                continue
            denom = query_norm * np.linalg.norm(doc_vec)
            score = float(np.dot(query_vec, doc_vec) / denom) if denom else 0.0
            if min_score is not None and score < min_score:
                continue
            hits.append(
                Neighbor(id=doc_id, score=score, metadata=dict(metadata), embedding=doc_vec.tolist())
            )

        # Best first; id breaks ties so results are stable
        hits.sort(key=lambda n: (-n.score, n.id))
        return hits[:k]

    async def warm(self, items) -> int:
        """Load embeddings for existing content items."""
        count = 0
        for item in items:
            if item.embedding:
                await self.upsert(item.id, item.embedding, index_metadata(item))
                count += 1
        logger.info(f"In-memory similarity index warmed with {count} embeddings")
        return count


class OpenSearchIndex(SimilarityIndex):
    """
    OpenSearch k-NN index.

    Scores come from OpenSearch's cosine space (``cosinesimil``), which is not
    raw cosine similarity.
    """

    def __init__(
        self,
        endpoint: str,
        index_name: str = "videos",
        dimension: int = 256,
        timeout: float = INDEX_HTTP_TIMEOUT_SECONDS,
    ):
        self.endpoint = endpoint.rstrip("/")
        if self.endpoint and not self.endpoint.startswith("http"):
            self.endpoint = f"https://{self.endpoint}"
        self.index_name = index_name
        self.dimension = dimension
        self.timeout = timeout
        self._index_ready = False

    @property
    def available(self) -> bool:
        return bool(self.endpoint)

    async def ping(self) -> None:
        response = await self._request("GET", f"{self._index_url}/_count", "ping")
        if response.status_code >= 400:
            raise InfraError(f"OpenSearch health check failed: {response.status_code}", "ping")

    @property
    def _index_url(self) -> str:
        return f"{self.endpoint}/{self.index_name}"

    async def _request(self, method: str, url: str, operation: str, json: Optional[Dict] = None) -> httpx.Response:
        if not self.available:
            raise InfraError("OpenSearch endpoint not configured", operation)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, json=json)
        except httpx.HTTPError as e:
            raise InfraError(f"OpenSearch {operation} failed: {e}", operation) from e
        return response

    async def ensure_index(self) -> None:
        """Create the index with a k-NN mapping if it does not exist."""
        if self._index_ready:
            return

        response = await self._request("HEAD", self._index_url, "index_exists")
        if response.status_code == 404:
            mapping = {
                "settings": {"index": {"knn": True}},
                "mappings": {
                    "properties": {
                        "item_id": {"type": "keyword"},
                        "embedding": {
                            "type": "knn_vector",
                            "dimension": self.dimension,
                            "method": {
                                "name": "hnsw",
                                "space_type": "cosinesimil",
                                "engine": "nmslib",
                            },
                        },
                        "user_handle": {"type": "keyword"},
                        "hashtags": {"type": "keyword"},
                        "actions": {"type": "keyword"},
                        "objects_scenes": {"type": "keyword"},
                        "community_id": {"type": "keyword"},
                        "status": {"type": "keyword"},
                    }
                },
            }
            created = await self._request("PUT", self._index_url, "create_index", json=mapping)
            if created.status_code >= 400:
                raise InfraError(
                    f"Failed to create OpenSearch index: {created.status_code} {created.text}",
                    "create_index",
                )
            logger.info(f"Created OpenSearch index {self.index_name}")
        elif response.status_code >= 400:
            raise InfraError(f"OpenSearch index check failed: {response.status_code}", "index_exists")

        self._index_ready = True

    async def upsert(self, item_id: str, vector: List[float], metadata: Dict) -> None:
        await self.ensure_index()
        document = {**metadata, "item_id": item_id, "embedding": list(vector)}
        response = await self._request(
            "PUT", f"{self._index_url}/_doc/{item_id}", "upsert", json=document
        )
        if response.status_code >= 400:
            raise InfraError(
                f"OpenSearch indexing failed: {response.status_code} {response.text}", "upsert"
            )

    async def query(
        self,
        vector: List[float],
        k: int,
        min_score: Optional[float] = None,
        exclude_id: Optional[str] = None,
        filters: Optional[Dict[str, str]] = None,
    ) -> List[Neighbor]:
        # One extra hit in case the excluded document comes back
        size = k + (1 if exclude_id else 0)
        knn = {"knn": {"embedding": {"vector": list(vector), "k": size}}}
        if filters:
            query = {
                "bool": {
                    "must": [knn],
                    "filter": [{"term": {key: value}} for key, value in filters.items()],
                }
            }
        else:
            query = knn
        body = {"size": size, "query": query}
        response = await self._request("POST", f"{self._index_url}/_search", "query", json=body)
        if response.status_code >= 400:
            raise InfraError(f"OpenSearch query failed: {response.status_code} {response.text}", "query")

        neighbors = []
        for hit in response.json().get("hits", {}).get("hits", []):
            doc = hit.get("_source", {})
            doc_id = doc.get("item_id") or hit.get("_id")
            if exclude_id and doc_id == exclude_id:
                continue
            score = float(hit.get("_score") or 0.0)
            if min_score is not None and score < min_score:
                continue
            embedding = doc.pop("embedding", None)
            neighbors.append(Neighbor(id=doc_id, score=score, metadata=doc, embedding=embedding))
        return neighbors[:k]


def index_metadata(item) -> Dict:
    """Metadata stored alongside an item's embedding."""
    return {
        "user_handle": item.user_handle or item.user_id,
        "hashtags": list(item.hashtags or []),
        "actions": list(item.actions or []),
        "objects_scenes": list(item.objects_scenes or []),
        "community_id": item.community_id,
        "status": item.status.value if item.status else None,
    }
