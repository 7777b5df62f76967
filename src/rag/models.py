"""
RAG Data Models
===============

Dataclass value objects shared by the retrieval pipeline.

Persisted entities carry a SCHEMA_VERSION so that field or dimension drift
is caught at write time instead of silently breaking the vector index.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Tuple


DEFAULT_DIMENSIONS = 1536


class DimensionMismatchError(ValueError):
    """Raised when an embedding does not have the pinned dimension."""

    def __init__(self, expected: int, actual: int, chunk_id: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        self.chunk_id = chunk_id
        where = f" for chunk {chunk_id}" if chunk_id else ""
        super().__init__(f"Embedding dimension mismatch{where}: expected {expected}, got {actual}")


def validate_dimension(vector: List[float], dimensions: int, chunk_id: Optional[str] = None) -> None:
    """Raise DimensionMismatchError unless len(vector) == dimensions."""
    if vector is None or len(vector) != dimensions:
        raise DimensionMismatchError(dimensions, 0 if vector is None else len(vector), chunk_id)


# =============================================================================
# CORPUS
# =============================================================================

@dataclass
class SourceDocument:
    """A full document before chunking."""
    id: str
    title: str
    url: str
    type: str
    text: str

    country: Optional[str] = None
    year: Optional[int] = None
    content_type: str = "auto"  # technical | narrative | mixed | auto
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DocumentChunk:
    """A chunk stored in the vector table."""
    SCHEMA_VERSION = 2

    id: str
    title: str
    url: str
    type: str
    text: str

    country: Optional[str] = None
    year: Optional[int] = None
    embedding: Optional[List[float]] = None

    document_id: Optional[str] = None
    chunk_index: int = 0
    total_chunks: int = 1
    content_hash: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate_dimension(self, dimensions: int = DEFAULT_DIMENSIONS) -> None:
        validate_dimension(self.embedding, dimensions, self.id)


@dataclass
class ScoredChunk:
    """Slim projection of a DocumentChunk plus its similarity score."""
    id: str
    title: str
    url: str
    type: str
    text: str
    score: float
    country: Optional[str] = None
    year: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScoredChunk":
        year = row.get("year")
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            url=row.get("url") or "",
            type=row.get("type") or "",
            text=row.get("text") or "",
            score=float(row.get("score") or 0.0),
            country=row.get("country"),
            year=int(year) if year is not None else None,
        )

    def to_snippet(self) -> "Snippet":
        return Snippet(title=self.title, url=self.url, text=self.text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "type": self.type,
            "text": self.text,
            "score": self.score,
            "country": self.country,
            "year": self.year,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoredChunk":
        return cls.from_row(data)


# =============================================================================
# GROUNDING
# =============================================================================

@dataclass
class Snippet:
    """Request-scoped grounding unit handed to synthesis."""
    title: str
    url: str
    text: str


@dataclass
class Citation:
    title: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "url": self.url}


@dataclass
class AnswerBullet:
    """One answer line. Only constructed with at least one valid citation."""
    text: str
    citations: List[Citation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "citations": [c.to_dict() for c in self.citations],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnswerBullet":
        return cls(
            text=data["text"],
            citations=[Citation(c["title"], c["url"]) for c in data.get("citations", [])],
        )


# =============================================================================
# QUERY
# =============================================================================

@dataclass
class SearchFilters:
    """
    Metadata filters for vector search.

    `year` and `year_from`/`year_to` address the same column; an exact
    year wins when both modes are supplied.
    """
    topic: Optional[str] = None
    country: Optional[str] = None
    year: Optional[int] = None
    year_from: Optional[int] = None
    year_to: Optional[int] = None

    def __post_init__(self):
        if self.year is not None:
            self.year_from = None
            self.year_to = None

    def is_empty(self) -> bool:
        return all(
            v is None or v == ""
            for v in (self.topic, self.country, self.year, self.year_from, self.year_to)
        )

    def matches(self, row: Dict[str, Any]) -> bool:
        """Post-filter predicate applied after the similarity stage."""
        if self.topic and row.get("type") != self.topic:
            return False
        if self.country and row.get("country") != self.country:
            return False

        year = row.get("year")
        if self.year is not None:
            return year is not None and int(year) == self.year
        if self.year_from is not None and (year is None or int(year) < self.year_from):
            return False
        if self.year_to is not None and (year is None or int(year) > self.year_to):
            return False
        return True

    def to_sql(self) -> Tuple[str, List[Any]]:
        """
        Render the filters as a parameterized WHERE fragment.

        Returns:
            Tuple of (sql fragment without the WHERE keyword, params)
        """
        clauses = []
        params: List[Any] = []
        if self.topic:
            clauses.append("type = %s")
            params.append(self.topic)
        if self.country:
            clauses.append("country = %s")
            params.append(self.country)
        if self.year is not None:
            clauses.append("year = %s")
            params.append(self.year)
        else:
            if self.year_from is not None:
                clauses.append("year >= %s")
                params.append(self.year_from)
            if self.year_to is not None:
                clauses.append("year <= %s")
                params.append(self.year_to)
        return " AND ".join(clauses), params

    def signature_parts(self) -> List[str]:
        """Active filter values in a fixed order, for cache keys."""
        return [
            self.topic or "",
            self.country or "",
            "" if self.year is None else str(self.year),
            "" if self.year_from is None else str(self.year_from),
            "" if self.year_to is None else str(self.year_to),
        ]


@dataclass
class QuerySignature:
    """Deterministic identity of a query, used as the cache key."""
    query: str
    filters: SearchFilters = field(default_factory=SearchFilters)
    sort_by: str = "relevance"
    page: int = 1
    mode: str = "search"

    def normalized_query(self) -> str:
        return " ".join(self.query.lower().split())

    def cache_key(self) -> str:
        payload = [self.mode, self.normalized_query(), *self.filters.signature_parts(), self.sort_by, self.page]
        digest = hashlib.sha256(json.dumps(payload).encode("utf-8")).hexdigest()
        return f"{self.mode}:{digest[:32]}"


@dataclass
class SearchPage:
    """One page of vector search results."""
    results: List[ScoredChunk] = field(default_factory=list)
    has_more: bool = False


# =============================================================================
# RESPONSE
# =============================================================================

@dataclass
class ResultItem:
    id: str
    title: str
    type: str
    summary: str
    url: str
    country: Optional[str] = None
    year: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "summary": self.summary,
            "country": self.country,
            "year": self.year,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultItem":
        return cls(
            id=data["id"],
            title=data["title"],
            type=data["type"],
            summary=data["summary"],
            url=data["url"],
            country=data.get("country"),
            year=data.get("year"),
        )


@dataclass
class SearchResponse:
    """Query contract returned upward by the search service."""
    answer: List[AnswerBullet]
    items: List[ResultItem]
    page: int
    page_size: int
    has_more: bool

    # Optional intelligence layers, already serialized
    layers: Dict[str, Any] = field(default_factory=dict)
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "answer": [b.to_dict() for b in self.answer],
            "items": [i.to_dict() for i in self.items],
            "page": self.page,
            "pageSize": self.page_size,
            "hasMore": self.has_more,
        }
        data.update(self.layers)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchResponse":
        core = {"answer", "items", "page", "pageSize", "hasMore"}
        return cls(
            answer=[AnswerBullet.from_dict(b) for b in data.get("answer", [])],
            items=[ResultItem.from_dict(i) for i in data.get("items", [])],
            page=data["page"],
            page_size=data["pageSize"],
            has_more=data["hasMore"],
            layers={k: v for k, v in data.items() if k not in core},
        )
