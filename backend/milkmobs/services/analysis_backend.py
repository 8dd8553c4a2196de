"""Multimodal analysis backend client."""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from milkmobs.pipeline.errors import InfraError
from milkmobs.pipeline.types import EmbeddingResult, Highlight, ParticipationResult

logger = logging.getLogger(__name__)
ANALYSIS_HTTP_TIMEOUT_SECONDS = 300.0


class AnalysisBackend(ABC):
    """Abstract base class for the content analysis service.

    The two calls are independent: each has its own latency and failure
    profile and may be issued concurrently.
    """

    @abstractmethod
    async def analyze_participation(self, content_ref: str, hashtags: List[str]) -> ParticipationResult:
        """
        Judge whether content satisfies the campaign's participation rules.

        Args:
            content_ref: Locator of the content blob
            hashtags: Hashtags submitted with the content

        Returns:
            ParticipationResult with score, boolean signals, rationale and highlights
        """

    @abstractmethod
    async def embed(self, content_ref: str) -> EmbeddingResult:
        """
        Produce an embedding vector for the content.

        Args:
            content_ref: Locator of the content blob

        Returns:
            EmbeddingResult with the vector and its dimension
        """


def _parse_highlights(raw: Optional[List[Dict[str, Any]]]) -> List[Highlight]:
    highlights = []
    for entry in raw or []:
        try:
            highlights.append(
                Highlight(
                    timestamp=float(entry["timestamp"]),
                    description=str(entry.get("description", "")),
                    score=float(entry["score"]) if entry.get("score") is not None else None,
                )
            )
        except (KeyError, TypeError, ValueError):
            logger.debug(f"Skipping malformed highlight: {entry}")
    return highlights


def parse_participation(payload: Dict[str, Any]) -> ParticipationResult:
    """Build a ParticipationResult from the backend's JSON payload."""
    score = payload.get("participation_score")
    return ParticipationResult(
        participation_score=float(score) if score is not None else 0.0,
        mentions_subject=bool(payload.get("mentions_subject", False)),
        shows_object=bool(payload.get("shows_object", False)),
        action_aligned=bool(payload.get("action_aligned", False)),
        rationale=str(payload.get("rationale") or ""),
        highlights=_parse_highlights(payload.get("highlights")),
        actions=[str(a) for a in payload.get("actions") or []],
        objects_scenes=[str(o) for o in payload.get("objects_scenes") or []],
        detected_text=[str(t) for t in payload.get("detected_text") or []],
    )


def parse_embedding(payload: Dict[str, Any]) -> EmbeddingResult:
    """Build an EmbeddingResult from the backend's JSON payload."""
    vector = [float(v) for v in payload.get("embedding") or []]
    if not vector:
        raise InfraError("Analysis backend returned an empty embedding", "embed")
    dim = int(payload.get("dim") or len(vector))
    if dim != len(vector):
        raise InfraError(
            f"Embedding dimension mismatch: declared {dim}, got {len(vector)}", "embed"
        )
    return EmbeddingResult(embedding=vector, dim=dim)


class HttpAnalysisBackend(AnalysisBackend):
    """Analysis backend reached over a JSON HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = ANALYSIS_HTTP_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, body: Dict[str, Any], operation: str) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}{path}", json=body, headers=self._headers()
                )
        except httpx.HTTPError as e:
            raise InfraError(f"Analysis backend {operation} failed: {e}", operation) from e

        if response.status_code >= 500 or response.status_code == 429:
            raise InfraError(
                f"Analysis backend {operation} returned {response.status_code}", operation
            )
        if response.status_code >= 400:
            # Client errors won't improve on retry, but the pipeline still treats
            # them as an analysis failure
            raise InfraError(
                f"Analysis backend rejected {operation}: {response.status_code} {response.text}",
                operation,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise InfraError(f"Analysis backend {operation} returned invalid JSON", operation) from e

        usage = payload.get("usage")
        if usage:
            logger.info(
                f"Analysis backend {operation} usage: "
                f"input_tokens={usage.get('input_tokens')} output_tokens={usage.get('output_tokens')}"
            )
        return payload

    async def analyze_participation(self, content_ref: str, hashtags: List[str]) -> ParticipationResult:
        payload = await self._post(
            "/participation",
            {"content_ref": content_ref, "hashtags": list(hashtags), "detect_text": True},
            "analyze_participation",
        )
        return parse_participation(payload)

    async def embed(self, content_ref: str) -> EmbeddingResult:
        payload = await self._post("/embeddings", {"content_ref": content_ref}, "embed")
        return parse_embedding(payload)
