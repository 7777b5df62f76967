"""
InfraScope Search API Routes
============================

Endpoints:
    GET /search                         - Cited answer + paginated items
    GET /intelligent-search             - Search + intelligence layers
    GET /intelligent-search/evolution   - Methodology timeline for a topic
    GET /intelligent-search/predict     - Scenario projection
    GET /health                         - Component health
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from ..orchestrator.search_service import QueryValidationError, SearchService
from ..rag.embedder import EmbeddingError
from ..rag.models import SearchFilters
from ..rag.vector_store import VectorSearchError
from .models import EnhanceMode, HealthResponse, SearchResponseModel, SortBy

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])

GENERIC_ERROR = "Search is temporarily unavailable"


def get_service(request: Request) -> SearchService:
    service = getattr(request.app.state, "search_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Search service not initialized")
    return service


async def _call(operation, *args, **kwargs):
    """Run a service call, mapping domain errors to HTTP errors."""
    try:
        return await operation(*args, **kwargs)
    except QueryValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except (VectorSearchError, EmbeddingError) as e:
        logger.error(f"Search failed: {e}")
        raise HTTPException(status_code=500, detail=GENERIC_ERROR)


def _filters(topic, country, year, year_from, year_to) -> SearchFilters:
    return SearchFilters(
        topic=topic or None,
        country=country or None,
        year=year,
        year_from=year_from,
        year_to=year_to,
    )


# =============================================================================
# SEARCH
# =============================================================================

@router.get("/search", response_model=SearchResponseModel)
async def search(
    request: Request,
    q: str = Query(..., description="Search query"),
    topic: Optional[str] = Query(None, description="Document type filter"),
    country: Optional[str] = Query(None),
    year: Optional[int] = Query(None, description="Exact publication year"),
    year_from: Optional[int] = Query(None, alias="yearFrom"),
    year_to: Optional[int] = Query(None, alias="yearTo"),
    sort_by: Optional[SortBy] = Query(None, alias="sortBy"),
    page: int = Query(1, description="1-based page number"),
):
    """
    Search the corpus.

    Returns 3-6 cited answer bullets and one page of result items.
    """
    service = get_service(request)
    response = await _call(
        service.search,
        q,
        filters=_filters(topic, country, year, year_from, year_to),
        sort_by=sort_by.value if sort_by else None,
        page=page,
    )
    return response.to_dict()


@router.get("/intelligent-search", response_model=SearchResponseModel)
async def intelligent_search(
    request: Request,
    q: str = Query(..., description="Search query"),
    topic: Optional[str] = Query(None),
    country: Optional[str] = Query(None),
    year: Optional[int] = Query(None),
    year_from: Optional[int] = Query(None, alias="yearFrom"),
    year_to: Optional[int] = Query(None, alias="yearTo"),
    sort_by: Optional[SortBy] = Query(None, alias="sortBy"),
    page: int = Query(1),
    enhance: EnhanceMode = Query(EnhanceMode.FAST, description="minimal|fast|full|hybrid"),
):
    """Search plus connections, timelines, predictions and principle alignment."""
    service = get_service(request)
    response = await _call(
        service.intelligent_search,
        q,
        filters=_filters(topic, country, year, year_from, year_to),
        sort_by=sort_by.value if sort_by else None,
        page=page,
        enhance=enhance.value,
    )
    return response.to_dict()


# =============================================================================
# TIMELINE
# =============================================================================

@router.get("/intelligent-search/evolution")
async def evolution(
    request: Request,
    topic: Optional[str] = Query(None),
    q: Optional[str] = Query(None, description="Alias for topic"),
    country: Optional[str] = Query(None),
    year_from: Optional[int] = Query(None, alias="yearFrom"),
    year_to: Optional[int] = Query(None, alias="yearTo"),
):
    """How guidance on a topic shifted over time."""
    service = get_service(request)
    report = await _call(
        service.evolution,
        topic or q or "",
        country=country,
        year_from=year_from,
        year_to=year_to,
    )
    return report.to_dict()


@router.get("/intelligent-search/predict")
async def predict(
    request: Request,
    scenario: str = Query("", description="Scenario to project"),
    topic: Optional[str] = Query(None),
    country: Optional[str] = Query(None),
    year_from: Optional[int] = Query(None, alias="yearFrom"),
    year_to: Optional[int] = Query(None, alias="yearTo"),
):
    """Projections for a named scenario."""
    service = get_service(request)
    projection = await _call(
        service.predict,
        scenario,
        topic=topic,
        country=country,
        year_from=year_from,
        year_to=year_to,
    )
    return projection.to_dict()


# =============================================================================
# HEALTH
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Database, cache and external search status."""
    service = get_service(request)
    return await service.health()
