from typing import Any, Dict, List, Optional, Sequence
import uuid

import httpx
from prometheus_client import Counter
from pydantic import ValidationError
import structlog

from decision_explorer.core.config import AppConstants, get_settings
from decision_explorer.models.pathway import PathwayNode
from decision_explorer.schemas.common import PatientContext
from decision_explorer.schemas.decision import NodeScore, ScorerRecommendation, ScoringResult

logger = structlog.get_logger(__name__)

SCORER_REQUESTS = Counter(
    "pathway_scorer_requests_total",
    "Requests made to the external pathway scorer",
    ["endpoint", "outcome"]
)


class ScoringService:
    """
    Client for the external ML pathway scorer.

    The scorer is optional: every failure mode (disabled, network error,
    timeout, non-2xx status, malformed body) yields an empty result and a
    warning log, never an exception.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.scorer.SCORER_BASE_URL,
            timeout=httpx.Timeout(self.settings.scorer.SCORER_TIMEOUT_SECONDS),
            transport=self._transport,
        )

    async def _post(self, endpoint: str, path: str, payload: Dict[str, Any]) -> Optional[httpx.Response]:
        if not self.settings.scorer.SCORER_ENABLED:
            SCORER_REQUESTS.labels(endpoint=endpoint, outcome="disabled").inc()
            return None

        try:
            async with self._client() as client:
                response = await client.post(path, json=payload)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            SCORER_REQUESTS.labels(endpoint=endpoint, outcome="timeout").inc()
            logger.warning("Scorer request timed out", endpoint=endpoint, path=path, error=str(e))
            return None
        except httpx.HTTPStatusError as e:
            SCORER_REQUESTS.labels(endpoint=endpoint, outcome="http_error").inc()
            logger.warning(
                "Scorer returned an error status",
                endpoint=endpoint,
                path=path,
                status_code=e.response.status_code
            )
            return None
        except httpx.HTTPError as e:
            SCORER_REQUESTS.labels(endpoint=endpoint, outcome="unavailable").inc()
            logger.warning("Scorer unavailable", endpoint=endpoint, path=path, error=str(e))
            return None

        SCORER_REQUESTS.labels(endpoint=endpoint, outcome="success").inc()
        return response

    @staticmethod
    def _json(response: httpx.Response, endpoint: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            logger.warning("Scorer returned malformed JSON", endpoint=endpoint, error=str(e))
            return None

    async def score_tree(
        self,
        pathway_id: uuid.UUID,
        nodes: Sequence[PathwayNode],
        patient_context: PatientContext
    ) -> ScoringResult:
        """Score every node of a pathway for one patient"""
        payload = {
            "nodes": [
                {
                    "id": str(node.id),
                    "node_type": node.node_type.value,
                    "title": node.title,
                    "action_type": node.action_type.value if node.action_type else None,
                    "decision_factors": node.decision_factors or [],
                    "base_confidence": node.base_confidence,
                }
                for node in nodes
            ],
            "patient_context": patient_context.model_dump(mode="json"),
        }

        response = await self._post("score_tree", f"/pathways/{pathway_id}/score-tree", payload)
        if response is None:
            return ScoringResult()

        body = self._json(response, "score_tree")
        if not isinstance(body, dict):
            if body is not None:
                logger.warning("Scorer returned unexpected payload", endpoint="score_tree")
            return ScoringResult(model_version=response.headers.get(AppConstants.MODEL_VERSION_HEADER))

        scores: Dict[str, NodeScore] = {}
        rejected = 0
        for node_id, entry in body.items():
            try:
                scores[str(node_id)] = NodeScore.model_validate(entry)
            except ValidationError:
                rejected += 1

        if rejected:
            logger.warning("Scorer entries rejected", pathway_id=str(pathway_id), rejected=rejected)

        logger.info("Pathway tree scored", pathway_id=str(pathway_id), scored_nodes=len(scores))
        return ScoringResult(
            scores=scores,
            model_version=response.headers.get(AppConstants.MODEL_VERSION_HEADER),
        )

    async def recommend_pathways(
        self,
        patient_context: PatientContext,
        max_results: int
    ) -> List[ScorerRecommendation]:
        """Ask the scorer which pathways fit a patient"""
        payload = {
            "patient_context": patient_context.model_dump(mode="json"),
            "max_results": max_results,
        }

        response = await self._post("recommend", "/pathways/recommend", payload)
        if response is None:
            return []

        body = self._json(response, "recommend")
        if not isinstance(body, list):
            if body is not None:
                logger.warning("Scorer returned unexpected payload", endpoint="recommend")
            return []

        recommendations: List[ScorerRecommendation] = []
        for entry in body:
            try:
                recommendations.append(ScorerRecommendation.model_validate(entry))
            except ValidationError:
                logger.warning("Scorer recommendation rejected", entry=str(entry)[:200])
        return recommendations

    async def generate_pathway_embeddings(self, pathway_id: uuid.UUID) -> bool:
        """Ask the scorer to (re)index a pathway for recommendation matching"""
        response = await self._post(
            "pathway_embeddings", f"/pathways/{pathway_id}/generate-embeddings", {}
        )
        return response is not None

    async def generate_node_embeddings(self, pathway_id: uuid.UUID) -> int:
        """Ask the scorer to (re)index the nodes of a pathway; returns the indexed node count"""
        response = await self._post(
            "node_embeddings", f"/pathways/{pathway_id}/generate-node-embeddings", {}
        )
        if response is None:
            return 0
        body = self._json(response, "node_embeddings")
        if not isinstance(body, dict):
            return 0
        try:
            return int(body.get("count") or 0)
        except (TypeError, ValueError):
            return 0

    async def ping(self) -> bool:
        """Cheap reachability probe used by the detailed health check"""
        try:
            async with self._client() as client:
                response = await client.get("/health")
                return response.status_code < 500
        except httpx.HTTPError:
            return False


__all__ = ["ScoringService", "SCORER_REQUESTS"]
