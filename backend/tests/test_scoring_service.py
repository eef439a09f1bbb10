import json
import uuid

import httpx
import pytest

from decision_explorer.core.config import ScorerSettings, get_settings
from decision_explorer.models import NodeType
from decision_explorer.schemas.common import PatientContext
from decision_explorer.services.scoring_service import ScoringService

from factories import PATHWAY_ID, make_node


def scoring_service(handler, enabled=True) -> ScoringService:
    service = ScoringService(transport=httpx.MockTransport(handler))
    service.settings = get_settings().model_copy(
        update={"scorer": ScorerSettings(SCORER_ENABLED=enabled, SCORER_BASE_URL="http://scorer.test")}
    )
    return service


@pytest.fixture
def nodes():
    root = make_node("Confirm diagnosis", NodeType.ROOT, base_confidence=0.9)
    child = make_node("Stage 1", NodeType.BRANCH, parent=root)
    return [root, child]


@pytest.fixture
def patient_context():
    return PatientContext(condition_codes=["I10"], age=61, medication_codes=["197361"])


class TestScoreTree:
    """Scorer failures degrade to an empty result"""

    async def test_scores_and_model_version(self, nodes, patient_context):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    str(nodes[0].id): {"confidence": 0.88, "isRecommended": True},
                    str(nodes[1].id): {"confidence": 0.41, "is_recommended": False},
                },
                headers={"X-Model-Version": "pathways-2024.3"},
            )

        result = await scoring_service(handler).score_tree(PATHWAY_ID, nodes, patient_context)

        assert result.model_version == "pathways-2024.3"
        assert result.scores[str(nodes[0].id)].confidence == 0.88
        assert result.scores[str(nodes[0].id)].is_recommended is True
        assert result.scores[str(nodes[1].id)].is_recommended is False

        sent = json.loads(requests[0].content)
        assert requests[0].url.path == f"/pathways/{PATHWAY_ID}/score-tree"
        assert [entry["id"] for entry in sent["nodes"]] == [str(node.id) for node in nodes]
        assert sent["patient_context"]["condition_codes"] == ["I10"]

    async def test_malformed_entries_dropped(self, nodes, patient_context):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    str(nodes[0].id): {"confidence": 0.7},
                    str(nodes[1].id): {"confidence": 3.5},
                    "garbage": "not an object",
                },
            )

        result = await scoring_service(handler).score_tree(PATHWAY_ID, nodes, patient_context)

        assert list(result.scores) == [str(nodes[0].id)]
        assert result.model_version is None

    async def test_server_error_yields_empty_result(self, nodes, patient_context):
        result = await scoring_service(lambda request: httpx.Response(500)).score_tree(
            PATHWAY_ID, nodes, patient_context
        )

        assert result.scores == {}

    async def test_timeout_yields_empty_result(self, nodes, patient_context):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        result = await scoring_service(handler).score_tree(PATHWAY_ID, nodes, patient_context)

        assert result.scores == {}

    async def test_connection_error_yields_empty_result(self, nodes, patient_context):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await scoring_service(handler).score_tree(PATHWAY_ID, nodes, patient_context)

        assert result.scores == {}

    async def test_non_json_body(self, nodes, patient_context):
        result = await scoring_service(lambda request: httpx.Response(200, text="<html>")).score_tree(
            PATHWAY_ID, nodes, patient_context
        )

        assert result.scores == {}

    async def test_disabled_scorer_makes_no_request(self, nodes, patient_context):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("scorer should not be called")

        result = await scoring_service(handler, enabled=False).score_tree(PATHWAY_ID, nodes, patient_context)

        assert result.scores == {}


class TestRecommendAndEmbeddings:

    async def test_recommendations_accept_camel_case(self, patient_context):
        pathway_id = uuid.uuid4()

        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["max_results"] == 3
            return httpx.Response(
                200,
                json=[
                    {"pathwayId": str(pathway_id), "matchScore": 0.92, "matchReasons": ["I10 match"]},
                    {"pathwayId": "not-a-uuid"},
                ],
            )

        recommendations = await scoring_service(handler).recommend_pathways(patient_context, max_results=3)

        assert len(recommendations) == 1
        assert recommendations[0].pathway_id == pathway_id
        assert recommendations[0].match_score == 0.92
        assert recommendations[0].ml_confidence is None

    async def test_recommendations_with_object_body(self, patient_context):
        handler = lambda request: httpx.Response(200, json={"unexpected": True})  # noqa: E731

        assert await scoring_service(handler).recommend_pathways(patient_context, max_results=3) == []

    async def test_pathway_embeddings(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == f"/pathways/{PATHWAY_ID}/generate-embeddings"
            return httpx.Response(200, json={})

        assert await scoring_service(handler).generate_pathway_embeddings(PATHWAY_ID) is True
        assert await scoring_service(lambda request: httpx.Response(503)).generate_pathway_embeddings(
            PATHWAY_ID
        ) is False

    async def test_node_embeddings_count(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == f"/pathways/{PATHWAY_ID}/generate-node-embeddings"
            return httpx.Response(200, json={"count": 12})

        assert await scoring_service(handler).generate_node_embeddings(PATHWAY_ID) == 12
        assert await scoring_service(handler, enabled=False).generate_node_embeddings(PATHWAY_ID) == 0

    async def test_ping(self):
        assert await scoring_service(lambda request: httpx.Response(200)).ping() is True
        assert await scoring_service(lambda request: httpx.Response(502)).ping() is False
