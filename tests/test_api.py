"""
Tests for the HTTP routes.

The search service is replaced by a mock on app.state; the lifespan is
not run.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.api.main import create_app
from src.api.search_routes import GENERIC_ERROR
from src.ai.evolution_tracker import EvolutionReport
from src.ai.predictive_reasoner import ScenarioProjection
from src.orchestrator.search_service import QueryValidationError
from src.rag.models import (
    AnswerBullet,
    Citation,
    ResultItem,
    SearchFilters,
    SearchResponse,
)
from src.rag.vector_store import VectorSearchError


RESPONSE = SearchResponse(
    answer=[AnswerBullet(
        text="Publish contract data",
        citations=[Citation("Disclosure Guide", "https://infrastructuretransparency.org/guide")],
    )],
    items=[ResultItem(
        id="guide:0",
        title="Disclosure Guide",
        type="Guide",
        summary="Provides guidance on disclosure.",
        url="https://infrastructuretransparency.org/guide",
        country="Uganda",
        year=2020,
    )],
    page=1,
    page_size=10,
    has_more=False,
)


@pytest.fixture
def service():
    mock = MagicMock()
    mock.search = AsyncMock(return_value=RESPONSE)
    mock.intelligent_search = AsyncMock(return_value=RESPONSE)
    mock.evolution = AsyncMock(return_value=EvolutionReport(topic="assurance"))
    mock.predict = AsyncMock(return_value=ScenarioProjection(scenario="budget cuts"))
    mock.health = AsyncMock(return_value={
        "status": "ok",
        "version": "1.0.0",
        "database": {"status": "connected", "chunks": 3},
        "cache": {"backend": "memory"},
        "externalSearch": False,
    })
    return mock


@pytest.fixture
def client(service):
    app = create_app()
    app.state.search_service = service
    return TestClient(app)


class TestSearchRoute:
    """Tests for GET /search."""

    def test_search(self, client, service):
        response = client.get("/search", params={
            "q": "contract disclosure", "country": "Uganda", "yearFrom": 2018, "yearTo": 2022,
            "sortBy": "date", "page": 2,
        })

        assert response.status_code == 200
        body = response.json()
        assert body["answer"][0]["citations"][0]["title"] == "Disclosure Guide"
        assert body["items"][0]["summary"] == "Provides guidance on disclosure."
        assert body["pageSize"] == 10
        assert body["hasMore"] is False

        args, kwargs = service.search.await_args
        assert args == ("contract disclosure",)
        assert kwargs["filters"] == SearchFilters(country="Uganda", year_from=2018, year_to=2022)
        assert kwargs["sort_by"] == "date"
        assert kwargs["page"] == 2

    def test_missing_query(self, client):
        assert client.get("/search").status_code == 422

    def test_unknown_sort(self, client):
        assert client.get("/search", params={"q": "x", "sortBy": "popularity"}).status_code == 422

    def test_validation_error_is_400(self, client, service):
        service.search.side_effect = QueryValidationError("Query must be at least 2 characters", "q")

        response = client.get("/search", params={"q": "a"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Query must be at least 2 characters"

    def test_store_error_is_generic_500(self, client, service):
        service.search.side_effect = VectorSearchError("connection refused to 10.0.0.5")

        response = client.get("/search", params={"q": "disclosure"})

        assert response.status_code == 500
        assert response.json()["detail"] == GENERIC_ERROR

    def test_service_not_ready(self):
        app = create_app()
        response = TestClient(app).get("/search", params={"q": "disclosure"})
        assert response.status_code == 503


class TestIntelligentRoutes:
    """Tests for the intelligent search endpoints."""

    def test_default_enhance(self, client, service):
        assert client.get("/intelligent-search", params={"q": "disclosure"}).status_code == 200
        assert service.intelligent_search.await_args.kwargs["enhance"] == "fast"

    def test_hybrid_enhance(self, client, service):
        client.get("/intelligent-search", params={"q": "disclosure", "enhance": "hybrid"})
        assert service.intelligent_search.await_args.kwargs["enhance"] == "hybrid"

    def test_layer_keys_kept_in_response(self, client, service):
        layered = SearchResponse(
            answer=[],
            items=[],
            page=1,
            page_size=10,
            has_more=False,
            layers={"enhance": "fast", "alignment": {"isFallback": True}},
        )
        service.intelligent_search = AsyncMock(return_value=layered)

        body = client.get("/intelligent-search", params={"q": "disclosure"}).json()

        assert body["enhance"] == "fast"
        assert body["alignment"] == {"isFallback": True}
        assert body["hasMore"] is False

    def test_unknown_enhance(self, client):
        response = client.get("/intelligent-search", params={"q": "disclosure", "enhance": "turbo"})
        assert response.status_code == 422

    def test_evolution_accepts_q_alias(self, client, service):
        response = client.get("/intelligent-search/evolution", params={"q": "assurance"})

        assert response.status_code == 200
        assert response.json()["topic"] == "assurance"
        assert service.evolution.await_args.args == ("assurance",)

    def test_evolution_missing_topic(self, client, service):
        service.evolution.side_effect = QueryValidationError("Missing required topic parameter", "topic")
        response = client.get("/intelligent-search/evolution")
        assert response.status_code == 400

    def test_predict(self, client, service):
        response = client.get("/intelligent-search/predict", params={"scenario": "budget cuts", "topic": "assurance"})

        assert response.status_code == 200
        assert response.json()["scenario"] == "budget cuts"
        assert service.predict.await_args.kwargs["topic"] == "assurance"


class TestHealthRoute:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"]["status"] == "connected"
