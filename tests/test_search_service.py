"""
Tests for the search service pipeline.

Embedder, vector store and model are mocked; the cache is the real
in-memory backend.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.cache.redis_cache import RedisCache
from src.config import ExternalSearchConfig, SearchConfig, Settings
from src.orchestrator.search_service import (
    INTELLIGENT_FULL_LIMIT,
    INTELLIGENT_LIMIT,
    TIMELINE_LIMIT,
    QueryValidationError,
    SearchService,
    default_sort,
    order_by_date,
)
from src.rag.embedder import EmbeddingError
from src.rag.models import ScoredChunk, SearchFilters, SearchPage


def make_hit(index, year=2020, doc_type="Guide"):
    return ScoredChunk(
        id=f"doc-{index}:0",
        title=f"Document {index}",
        url=f"https://infrastructuretransparency.org/doc-{index}",
        type=doc_type,
        text="Short text.",
        score=1.0 - index * 0.1,
        year=year,
    )


def make_service(hits=None, has_more=False, page_size=2):
    settings = Settings(
        search=SearchConfig(page_size=page_size, summarize_items=False),
        external_search=ExternalSearchConfig(api_key=None),
    )

    embedder = MagicMock()
    embedder.embed_query = AsyncMock(return_value=[0.1, 0.2, 0.3])

    store = MagicMock()
    store.init = AsyncMock()
    store.close = AsyncMock()
    store.search = AsyncMock(return_value=SearchPage(results=list(hits or []), has_more=has_more))
    store.health = AsyncMock(return_value={"status": "connected", "chunks": 10})

    llm = MagicMock()
    llm.provider_name = "fake"
    llm.generate = AsyncMock(return_value=SimpleNamespace(content="- Grounded point [#1]"))

    service = SearchService(
        settings,
        embedder=embedder,
        vector_store=store,
        cache=RedisCache(redis_url=None),
        llm=llm,
    )
    asyncio.run(service.init())
    return service


HITS = [make_hit(0, 2018), make_hit(1, None), make_hit(2, 2022)]


class TestHelpers:
    """Tests for sort helpers."""

    def test_default_sort(self):
        assert default_sort("latest assurance reports") == "date"
        assert default_sort("What is NEW in OC4IDS") == "date"
        assert default_sort("renewal of contracts") == "relevance"
        assert default_sort("assurance") == "relevance"

    def test_order_by_date(self):
        ordered = order_by_date(HITS)
        assert [h.year for h in ordered] == [2022, 2018, None]


class TestValidation:
    """Tests for SearchService.validate_request."""

    def setup_method(self):
        self.service = make_service()

    def test_whitespace_collapsed(self):
        request = self.service.validate_request("  contract   disclosure ")
        assert request.query == "contract disclosure"
        assert request.sort_by == "relevance"

    def test_too_short(self):
        with pytest.raises(QueryValidationError) as exc_info:
            self.service.validate_request(" a ")
        assert exc_info.value.field_name == "q"

    def test_missing(self):
        with pytest.raises(QueryValidationError):
            self.service.validate_request(None)

    def test_too_long(self):
        with pytest.raises(QueryValidationError):
            self.service.validate_request("x" * 501)

    def test_bad_page(self):
        with pytest.raises(QueryValidationError):
            self.service.validate_request("disclosure", page=0)

    def test_inverted_year_range(self):
        with pytest.raises(QueryValidationError):
            self.service.validate_request("disclosure", SearchFilters(year_from=2022, year_to=2018))

    def test_unknown_sort(self):
        with pytest.raises(QueryValidationError):
            self.service.validate_request("disclosure", sort_by="popularity")

    def test_unknown_enhance(self):
        with pytest.raises(QueryValidationError):
            asyncio.run(self.service.intelligent_search("disclosure", enhance="turbo"))


class TestSearch:
    """Tests for SearchService.search."""

    def test_answer_and_items(self):
        service = make_service(HITS[:2], has_more=True)

        response = asyncio.run(service.search("contract disclosure"))

        assert [b.text for b in response.answer] == ["Grounded point"]
        assert response.answer[0].citations[0].url == HITS[0].url
        assert [i.id for i in response.items] == ["doc-0:0", "doc-1:0"]
        assert response.items[0].summary == "Guide: Document 0"
        assert response.has_more is True
        assert response.page == 1
        assert response.page_size == 2
        service.vector_store.search.assert_awaited_once_with(
            [0.1, 0.2, 0.3], limit=2, offset=0, filters=SearchFilters(),
        )

    def test_page_offset(self):
        service = make_service(HITS[:2])
        asyncio.run(service.search("contract disclosure", page=3))
        assert service.vector_store.search.await_args.kwargs["offset"] == 4

    def test_cache_hit_skips_embedding(self):
        """A repeated query is served from the cache."""
        service = make_service(HITS[:2])

        first = asyncio.run(service.search("Contract  Disclosure"))
        second = asyncio.run(service.search("contract disclosure"))

        assert service.embedder.embed_query.await_count == 1
        assert second.cached is True
        assert second.to_dict() == first.to_dict()

    def test_filters_change_cache_key(self):
        service = make_service(HITS[:2])
        asyncio.run(service.search("disclosure"))
        asyncio.run(service.search("disclosure", SearchFilters(country="Uganda")))
        assert service.embedder.embed_query.await_count == 2

    def test_date_sort(self):
        service = make_service(HITS)
        response = asyncio.run(service.search("latest disclosure"))
        assert [i.year for i in response.items] == [2022, 2018, None]

    def test_embedding_failure(self):
        service = make_service(HITS)
        service.embedder.embed_query = AsyncMock(side_effect=RuntimeError("rate limited"))
        with pytest.raises(EmbeddingError):
            asyncio.run(service.search("disclosure"))

    def test_embedding_value_error_is_validation(self):
        service = make_service(HITS)
        service.embedder.embed_query = AsyncMock(side_effect=ValueError("Cannot embed empty text"))
        with pytest.raises(QueryValidationError):
            asyncio.run(service.search("disclosure"))

    def test_model_failure_yields_empty_answer(self):
        from src.ai.llm_client import LLMError

        service = make_service(HITS[:2])
        service.llm.generate = AsyncMock(side_effect=LLMError("down"))

        response = asyncio.run(service.search("disclosure"))

        assert response.answer == []
        assert len(response.items) == 2


class TestIntelligentSearch:
    """Tests for enhancement modes."""

    def test_minimal(self):
        service = make_service(HITS)
        response = asyncio.run(service.intelligent_search("disclosure", enhance="minimal"))

        assert response.layers == {"enhance": "minimal"}
        assert service.vector_store.search.await_args.kwargs["limit"] == INTELLIGENT_LIMIT

    def test_fast(self):
        service = make_service(HITS)
        response = asyncio.run(service.intelligent_search("disclosure"))

        assert set(response.layers) == {"enhance", "connections", "alignment"}
        assert response.layers["alignment"]["isFallback"] is True
        assert len(response.items) == 2
        assert response.has_more is True

    def test_full(self):
        service = make_service(HITS)
        response = asyncio.run(service.intelligent_search("disclosure", enhance="full"))

        assert {"connections", "insightClusters", "hiddenGems", "alignment"} <= set(response.layers)
        assert "livingContext" not in response.layers
        assert response.layers["hiddenGems"] == []
        assert service.vector_store.search.await_args.kwargs["limit"] == INTELLIGENT_FULL_LIMIT

    def test_hybrid(self):
        service = make_service(HITS)
        response = asyncio.run(service.intelligent_search("disclosure", enhance="hybrid"))

        for key in ("livingContext", "evolution", "temporalInsights", "alignment", "connections"):
            assert key in response.layers
        assert response.layers["livingContext"]["summary"]["isFallback"] is True
        assert response.layers["temporalInsights"]["isFallback"] is True

    def test_modes_cached_separately(self):
        service = make_service(HITS)
        asyncio.run(service.intelligent_search("disclosure", enhance="minimal"))
        asyncio.run(service.intelligent_search("disclosure", enhance="fast"))
        asyncio.run(service.intelligent_search("disclosure", enhance="fast"))
        assert service.embedder.embed_query.await_count == 2

    def test_serialized_layers(self):
        service = make_service(HITS)
        data = asyncio.run(service.intelligent_search("disclosure")).to_dict()
        assert data["enhance"] == "fast"
        assert "hasMore" in data and "pageSize" in data


class TestTimelineEndpoints:
    """Tests for evolution and prediction."""

    def test_evolution_requires_topic(self):
        service = make_service(HITS)
        with pytest.raises(QueryValidationError):
            asyncio.run(service.evolution("   "))

    def test_evolution(self):
        service = make_service(HITS)

        report = asyncio.run(service.evolution("assurance", country="Uganda", year_from=2015, year_to=2023))

        kwargs = service.vector_store.search.await_args.kwargs
        assert kwargs["limit"] == TIMELINE_LIMIT
        assert kwargs["filters"] == SearchFilters(country="Uganda", year_from=2015, year_to=2023)
        assert report.topic == "assurance"
        assert report.is_fallback is True

    def test_evolution_inverted_range(self):
        service = make_service(HITS)
        with pytest.raises(QueryValidationError):
            asyncio.run(service.evolution("assurance", year_from=2023, year_to=2015))

    def test_predict_combines_topic_and_scenario(self):
        service = make_service(HITS)

        projection = asyncio.run(service.predict("budget cuts", topic="assurance"))

        service.embedder.embed_query.assert_awaited_once_with("assurance budget cuts")
        assert projection.scenario == "budget cuts"
        assert projection.is_fallback is True

    def test_predict_requires_scenario(self):
        service = make_service(HITS)
        with pytest.raises(QueryValidationError):
            asyncio.run(service.predict(""))


class TestHealth:
    """Tests for SearchService.health."""

    def test_ok(self):
        health = asyncio.run(make_service().health())
        assert health["status"] == "ok"
        assert health["cache"]["backend"] == "memory"
        assert health["externalSearch"] is False

    def test_degraded(self):
        service = make_service()
        service.vector_store.health = AsyncMock(return_value={"status": "disconnected", "error": "refused"})
        assert asyncio.run(service.health())["status"] == "degraded"
