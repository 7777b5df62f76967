"""
InfraScope API Models
=====================

Pydantic models for API response serialization.
Field names match the camelCase wire contract consumed by the frontend.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Dict, Optional, Any
from enum import Enum


class SortBy(str, Enum):
    RELEVANCE = "relevance"
    DATE = "date"


class EnhanceMode(str, Enum):
    """Intelligence layers requested for an intelligent search."""
    MINIMAL = "minimal"
    FAST = "fast"
    FULL = "full"
    HYBRID = "hybrid"


class CitationModel(BaseModel):
    title: str
    url: str


class AnswerBulletModel(BaseModel):
    """One answer bullet with its supporting citations."""
    text: str
    citations: List[CitationModel] = Field(..., min_length=1)


class ResultItemModel(BaseModel):
    id: str
    title: str
    type: str
    summary: str
    country: Optional[str] = None
    year: Optional[int] = None
    url: str


class SearchResponseModel(BaseModel):
    """
    Search response.

    Intelligent search adds layer keys (connections, livingContext,
    evolution, temporalInsights, alignment, ...) next to the core fields.
    """
    answer: List[AnswerBulletModel]
    items: List[ResultItemModel]
    page: int
    pageSize: int
    hasMore: bool

    model_config = ConfigDict(extra="allow")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: Dict[str, Any]
    cache: Dict[str, Any]
    externalSearch: bool


class ErrorResponse(BaseModel):
    detail: str
    field: Optional[str] = None
