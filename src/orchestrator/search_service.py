"""
InfraScope Search Service
=========================

The request pipeline behind every endpoint:

    query -> cache -> embed -> vector search (filter + page) -> answer + summaries -> cache write

Intelligent search adds advisory layers that fan out over the same
scored-document snapshot with asyncio.gather. Evolution feeds prediction,
and principle alignment runs last because it audits the synthesized
answer. Every layer degrades to a labelled fallback; only query
validation, embedding and vector search failures reach the caller.

Usage:
    service = SearchService(load_settings())
    await service.init()
    response = await service.search("contract disclosure", SearchFilters(country="Uganda"))
    await service.close()
"""

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from src.ai.answer_synthesizer import AnswerSynthesizer
from src.ai.connection_engine import ConnectionEngine
from src.ai.evolution_tracker import EvolutionReport, EvolutionTracker
from src.ai.living_context import LivingContextEngine, LivingContextPayload
from src.ai.llm_client import LLMClient, get_llm_client
from src.ai.predictive_reasoner import PredictionReport, PredictiveReasoner, ScenarioProjection
from src.ai.principle_alignment import PrincipleAlignmentAnalyzer
from src.ai.summarizer import DocumentSummarizer, first_sentence, fallback_summary
from src.cache.redis_cache import RedisCache
from src.config import Settings
from src.rag.embedder import EmbeddingError, RAGEmbedder
from src.rag.models import (
    AnswerBullet,
    DimensionMismatchError,
    QuerySignature,
    ResultItem,
    ScoredChunk,
    SearchFilters,
    SearchPage,
    SearchResponse,
)
from src.rag.retry import RetryPolicy
from src.rag.vector_store import VectorStore
from src.search.external_search import ExaSearchClient

logger = logging.getLogger(__name__)


SORT_OPTIONS = ("relevance", "date")
ENHANCE_MODES = ("minimal", "fast", "full", "hybrid")
DEFAULT_ENHANCE = "fast"

RECENCY_PATTERN = re.compile(r"\b(latest|recent|new)\b", re.IGNORECASE)

INTELLIGENT_LIMIT = 30
INTELLIGENT_FULL_LIMIT = 50
TIMELINE_LIMIT = 40
MAX_CONNECTIONS = 5
MAX_CLUSTERS = 3
MAX_HIDDEN_GEMS = 3


class QueryValidationError(ValueError):
    """Raised for malformed queries; maps to a client error."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        self.message = message
        self.field_name = field_name
        super().__init__(self.message)


@dataclass
class SearchRequest:
    """Validated query parameters."""
    query: str
    filters: SearchFilters = field(default_factory=SearchFilters)
    sort_by: str = "relevance"
    page: int = 1

    def signature(self, mode: str = "search") -> QuerySignature:
        return QuerySignature(
            query=self.query,
            filters=self.filters,
            sort_by=self.sort_by,
            page=self.page,
            mode=mode,
        )


def default_sort(query: str) -> str:
    """Queries asking for latest/recent/new material sort by date."""
    return "date" if RECENCY_PATTERN.search(query) else "relevance"


def order_by_date(chunks: List[ScoredChunk]) -> List[ScoredChunk]:
    """Year descending; undated documents keep their rank order at the end."""
    return sorted(chunks, key=lambda c: (c.year is None, -(c.year or 0)))


class SearchService:
    """
    Owns the shared resources (connection pool, cache, SDK clients) for
    the lifetime of the process. Components can be injected; anything
    not injected is built from settings in init().
    """

    def __init__(
        self,
        settings: Settings,
        embedder: Optional[RAGEmbedder] = None,
        vector_store: Optional[VectorStore] = None,
        cache: Optional[RedisCache] = None,
        llm: Optional[LLMClient] = None,
        external_client: Optional[ExaSearchClient] = None,
    ):
        self.settings = settings
        self.embedder = embedder
        self.vector_store = vector_store
        self.cache = cache
        self.llm = llm
        self.external_client = external_client
        self.page_size = settings.search.page_size
        self._initialized = False

    async def init(self) -> "SearchService":
        """
        Build missing components and open the connection pool.

        Raises:
            ConfigurationError: when a component must be built but
                credentials are missing
        """
        if self._initialized:
            return self

        if self.embedder is None or self.vector_store is None or self.llm is None:
            self.settings.validate()

        retry = RetryPolicy.from_config(self.settings.retry)
        if self.embedder is None:
            self.embedder = RAGEmbedder.from_settings(self.settings)
        if self.vector_store is None:
            self.vector_store = VectorStore.from_settings(self.settings)
        if self.cache is None:
            self.cache = RedisCache.from_settings(self.settings)
        if self.llm is None:
            self.llm = get_llm_client(self.settings.llm, retry_policy=retry)
        if self.external_client is None and self.settings.external_search.enabled:
            self.external_client = ExaSearchClient.from_settings(self.settings)

        self.synthesizer = AnswerSynthesizer(self.llm)
        self.summarizer = DocumentSummarizer(self.llm if self.settings.search.summarize_items else None)
        self.connections = ConnectionEngine(self.llm)
        self.living_context = LivingContextEngine(self.llm, self.external_client)
        self.evolution_tracker = EvolutionTracker(self.llm)
        self.reasoner = PredictiveReasoner(self.llm, self.evolution_tracker)
        self.alignment = PrincipleAlignmentAnalyzer(self.llm)

        await self.vector_store.init()
        self._initialized = True
        logger.info(
            f"Search service ready (cache={self.cache.backend}, "
            f"llm={self.llm.provider_name}, external={'on' if self.external_client else 'off'})"
        )
        return self

    async def close(self) -> None:
        if self.vector_store is not None:
            await self.vector_store.close()
        if self.cache is not None:
            self.cache.close()
        self._initialized = False
        logger.info("Search service closed")

    async def __aenter__(self) -> "SearchService":
        return await self.init()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_request(
        self,
        query: Optional[str],
        filters: Optional[SearchFilters] = None,
        sort_by: Optional[str] = None,
        page: int = 1,
    ) -> SearchRequest:
        """
        Normalize and validate query parameters.

        Raises:
            QueryValidationError: on a short or overlong query, page < 1,
                unknown sort order or an inverted year range
        """
        cfg = self.settings.search
        text = " ".join((query or "").split())
        if len(text) < cfg.min_query_length:
            raise QueryValidationError(
                f"Query must be at least {cfg.min_query_length} characters", field_name="q"
            )
        if len(text) > cfg.max_query_length:
            raise QueryValidationError(
                f"Query must be at most {cfg.max_query_length} characters", field_name="q"
            )
        if page < 1:
            raise QueryValidationError("Page must be 1 or greater", field_name="page")

        filters = filters or SearchFilters()
        if (
            filters.year_from is not None
            and filters.year_to is not None
            and filters.year_from > filters.year_to
        ):
            raise QueryValidationError("yearFrom must not be after yearTo", field_name="yearFrom")

        resolved_sort = sort_by or default_sort(text)
        if resolved_sort not in SORT_OPTIONS:
            raise QueryValidationError(
                f"sortBy must be one of: {', '.join(SORT_OPTIONS)}", field_name="sortBy"
            )

        return SearchRequest(query=text, filters=filters, sort_by=resolved_sort, page=page)

    # =========================================================================
    # RETRIEVAL
    # =========================================================================

    async def _embed(self, text: str) -> List[float]:
        try:
            return await self.embedder.embed_query(text)
        except DimensionMismatchError as e:
            raise EmbeddingError(f"Query embedding has the wrong size: {e}") from e
        except ValueError as e:
            raise QueryValidationError(str(e), field_name="q") from e
        except EmbeddingError:
            raise
        except Exception as e:
            logger.error(f"Query embedding failed: {e}")
            raise EmbeddingError(f"Query embedding failed: {e}") from e

    async def _retrieve(
        self,
        text: str,
        filters: Optional[SearchFilters],
        limit: int,
        offset: int,
        request_id: str,
    ) -> SearchPage:
        started = time.monotonic()
        vector = await self._embed(text)
        page = await self.vector_store.search(vector, limit=limit, offset=offset, filters=filters)
        logger.info(
            f"Retrieved {len(page.results)} documents",
            extra={
                "request_id": request_id,
                "stage": "retrieve",
                "duration": round(time.monotonic() - started, 3),
            },
        )
        return page

    async def _answer_and_items(
        self, query: str, hits: List[ScoredChunk]
    ) -> Tuple[List[AnswerBullet], List[ResultItem]]:
        answer, summaries = await asyncio.gather(
            self.synthesizer.synthesize(query, [h.to_snippet() for h in hits]),
            self.summarizer.summarize_chunks(hits),
        )
        return answer, self._items(hits, [s.summary for s in summaries])

    def _items(self, hits: List[ScoredChunk], summaries: List[str]) -> List[ResultItem]:
        items = []
        for hit, summary in zip(hits, summaries):
            items.append(ResultItem(
                id=hit.id,
                title=hit.title,
                type=hit.type,
                summary=summary or first_sentence(hit.text) or fallback_summary(hit.title, hit.type),
                url=hit.url,
                country=hit.country,
                year=hit.year,
            ))
        return items

    def _cached(self, key: str, request_id: str) -> Optional[SearchResponse]:
        data = self.cache.get(key)
        if data is None:
            return None
        logger.info("Cache hit", extra={"request_id": request_id, "cache": "hit"})
        response = SearchResponse.from_dict(data)
        response.cached = True
        return response

    # =========================================================================
    # SEARCH
    # =========================================================================

    async def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        sort_by: Optional[str] = None,
        page: int = 1,
    ) -> SearchResponse:
        """
        Answer a query with cited bullets and one page of result items.

        Args:
            query: Free-text query
            filters: Optional metadata filters
            sort_by: relevance | date (default depends on the query wording)
            page: 1-based page number

        Returns:
            SearchResponse

        Raises:
            QueryValidationError: malformed query
            EmbeddingError: query embedding failed
            VectorSearchError: vector store failure
        """
        request = self.validate_request(query, filters, sort_by, page)
        request_id = uuid.uuid4().hex[:12]
        started = time.monotonic()

        key = request.signature("search").cache_key()
        cached = self._cached(key, request_id)
        if cached is not None:
            return cached

        offset = (request.page - 1) * self.page_size
        result_page = await self._retrieve(
            request.query, request.filters, self.page_size, offset, request_id
        )
        hits = result_page.results
        if request.sort_by == "date":
            hits = order_by_date(hits)

        answer, items = await self._answer_and_items(request.query, hits)
        response = SearchResponse(
            answer=answer,
            items=items,
            page=request.page,
            page_size=self.page_size,
            has_more=result_page.has_more,
        )

        self.cache.set(key, response.to_dict())
        logger.info(
            f"Search complete: {len(answer)} bullets, {len(items)} items",
            extra={
                "request_id": request_id,
                "stage": "search",
                "cache": "miss",
                "duration": round(time.monotonic() - started, 3),
            },
        )
        return response

    async def intelligent_search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        sort_by: Optional[str] = None,
        page: int = 1,
        enhance: str = DEFAULT_ENHANCE,
    ) -> SearchResponse:
        """
        Search plus intelligence layers.

        Enhancement modes:
            minimal: answer and items only
            fast: + connections, principle alignment
            full: + insight clusters, hidden gems (wider candidate window)
            hybrid: + living context, evolution timeline, predictions
        """
        if enhance not in ENHANCE_MODES:
            raise QueryValidationError(
                f"enhance must be one of: {', '.join(ENHANCE_MODES)}", field_name="enhance"
            )
        request = self.validate_request(query, filters, sort_by, page)
        request_id = uuid.uuid4().hex[:12]
        started = time.monotonic()

        key = request.signature(f"intelligent-{enhance}").cache_key()
        cached = self._cached(key, request_id)
        if cached is not None:
            return cached

        limit = INTELLIGENT_FULL_LIMIT if enhance == "full" else INTELLIGENT_LIMIT
        offset = (request.page - 1) * self.page_size
        result_page = await self._retrieve(request.query, request.filters, limit, offset, request_id)

        all_hits = result_page.results
        primary = all_hits[:self.page_size]
        if request.sort_by == "date":
            primary = order_by_date(primary)
        has_more = result_page.has_more or len(all_hits) > self.page_size

        layers = await self._run_layers(request.query, primary, all_hits, enhance, request_id)
        answer, items = layers.pop("_answer"), layers.pop("_items")

        response = SearchResponse(
            answer=answer,
            items=items,
            page=request.page,
            page_size=self.page_size,
            has_more=has_more,
            layers={"enhance": enhance, **layers},
        )
        self.cache.set(key, response.to_dict())
        logger.info(
            f"Intelligent search complete ({enhance}): layers={sorted(layers)}",
            extra={
                "request_id": request_id,
                "stage": "intelligent_search",
                "cache": "miss",
                "duration": round(time.monotonic() - started, 3),
            },
        )
        return response

    async def _none(self):
        return None

    async def _hybrid_chain(
        self, query: str, hits: List[ScoredChunk]
    ) -> Tuple[LivingContextPayload, EvolutionReport, PredictionReport]:
        living, evolution = await asyncio.gather(
            self.living_context.build(query, hits),
            self.evolution_tracker.analyze(query, hits),
        )
        prediction = await self.reasoner.predict(query, hits, evolution, living.summary)
        return living, evolution, prediction

    async def _run_layers(
        self,
        query: str,
        primary: List[ScoredChunk],
        all_hits: List[ScoredChunk],
        enhance: str,
        request_id: str,
    ) -> Dict[str, Any]:
        started = time.monotonic()

        (answer, items), connections, clusters, gems, chain = await asyncio.gather(
            self._answer_and_items(query, primary),
            self.connections.discover_connections(primary) if enhance != "minimal" else self._none(),
            self.connections.extract_insight_clusters(all_hits) if enhance == "full" else self._none(),
            self.connections.find_hidden_gems(query, all_hits) if enhance == "full" else self._none(),
            self._hybrid_chain(query, all_hits) if enhance == "hybrid" else self._none(),
        )

        layers: Dict[str, Any] = {"_answer": answer, "_items": items}
        if connections is not None:
            layers["connections"] = [c.to_dict() for c in connections.connections[:MAX_CONNECTIONS]]
        if clusters is not None:
            layers["insightClusters"] = [c.to_dict() for c in clusters[:MAX_CLUSTERS]]
        if gems is not None:
            summaries = await self.summarizer.summarize_chunks(gems[:MAX_HIDDEN_GEMS])
            layers["hiddenGems"] = [
                i.to_dict() for i in self._items(gems[:MAX_HIDDEN_GEMS], [s.summary for s in summaries])
            ]

        living = prediction = None
        if chain is not None:
            living, evolution, prediction = chain
            layers["livingContext"] = living.to_dict()
            layers["evolution"] = evolution.to_dict()
            layers["temporalInsights"] = prediction.to_dict()

        if enhance != "minimal":
            report = await self.alignment.analyze(
                query,
                answer,
                living_context=living.summary if living else None,
                prediction=prediction,
            )
            layers["alignment"] = report.to_dict()

        logger.info(
            f"Intelligence layers ready: {len(layers) - 2}",
            extra={
                "request_id": request_id,
                "stage": "layers",
                "duration": round(time.monotonic() - started, 3),
            },
        )
        return layers

    # =========================================================================
    # TIMELINE ENDPOINTS
    # =========================================================================

    def _timeline_filters(
        self, country: Optional[str], year_from: Optional[int], year_to: Optional[int]
    ) -> SearchFilters:
        if year_from is not None and year_to is not None and year_from > year_to:
            raise QueryValidationError("yearFrom must not be after yearTo", field_name="yearFrom")
        return SearchFilters(country=country, year_from=year_from, year_to=year_to)

    async def evolution(
        self,
        topic: str,
        country: Optional[str] = None,
        year_from: Optional[int] = None,
        year_to: Optional[int] = None,
    ) -> EvolutionReport:
        """Methodology evolution timeline for a topic."""
        topic = " ".join((topic or "").split())
        if not topic:
            raise QueryValidationError("Missing required topic parameter", field_name="topic")

        request_id = uuid.uuid4().hex[:12]
        filters = self._timeline_filters(country, year_from, year_to)
        result_page = await self._retrieve(topic, filters, TIMELINE_LIMIT, 0, request_id)
        return await self.evolution_tracker.analyze(topic, result_page.results, topic=topic)

    async def predict(
        self,
        scenario: str,
        topic: Optional[str] = None,
        country: Optional[str] = None,
        year_from: Optional[int] = None,
        year_to: Optional[int] = None,
    ) -> ScenarioProjection:
        """Projection for a named scenario, grounded on the topic's timeline."""
        scenario = " ".join((scenario or "").split())
        if not scenario:
            raise QueryValidationError("Missing required scenario parameter", field_name="scenario")

        topic = " ".join((topic or "").split()) or scenario
        basis = scenario if topic == scenario else f"{topic} {scenario}"

        request_id = uuid.uuid4().hex[:12]
        filters = self._timeline_filters(country, year_from, year_to)
        result_page = await self._retrieve(basis, filters, TIMELINE_LIMIT, 0, request_id)

        evolution = await self.evolution_tracker.analyze(topic, result_page.results, topic=topic)
        return await self.reasoner.project_scenario(scenario, result_page.results, evolution)

    # =========================================================================
    # HEALTH
    # =========================================================================

    async def health(self) -> Dict[str, Any]:
        database = await self.vector_store.health()
        return {
            "status": "ok" if database.get("status") == "connected" else "degraded",
            "version": self.settings.app_version,
            "database": database,
            "cache": self.cache.get_stats(),
            "externalSearch": bool(self.external_client and self.external_client.enabled),
        }
