"""
Living Context Engine
=====================

Fuses indexed corpus evidence (#I references) with live external search
results (#E references) into one narrative:

- stable institutional knowledge vs. emerging or contested claims
- contradictions between internal and external sources, with severity
- freshness signals and human-readable recency labels

Every reference in the output must trace back to an input document or
external result; anything else is dropped. A parse failure yields a
deterministic summary built from the top 3 internal and top 3 external
items.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from src.rag.models import Citation, ScoredChunk
from src.search.external_search import (
    ExaSearchClient,
    ExternalResult,
    ExternalSearchError,
    TemporalHint,
)
from .llm_client import LLMClient, LLMError
from .parsing import (
    ParseResult,
    as_dict_list,
    as_text,
    in_taxonomy,
    parse_structured,
)

logger = logging.getLogger(__name__)


DEFAULT_INTERNAL_LIMIT = 6
DEFAULT_EXTERNAL_LIMIT = 6
FALLBACK_ITEMS = 3
INTERNAL_EXCERPT_CHARS = 900

STANCES = ("supports", "expands", "contradicts")
EMPHASES = ("reinforces", "challenges", "emerging")
SOURCE_TYPES = ("internal", "external")
SEVERITIES = ("low", "medium", "high")

YEAR_PATTERN = re.compile(r"\b(202[3-9]|2030)\b")


# =============================================================================
# TEMPORAL HELPERS
# =============================================================================

def detect_temporal_intent(query: str) -> Optional[TemporalHint]:
    """
    Map query wording to a time window for external search.

    Explicit year 2023-2030 -> that calendar year; latest/recent/current ->
    last quarter; emerging/new research -> last month.
    """
    lowered = query.lower()

    match = YEAR_PATTERN.search(lowered)
    if match:
        year = match.group(1)
        return TemporalHint(date_from=f"{year}-01", date_to=f"{year}-12")

    if any(word in lowered for word in ("latest", "recent", "current")):
        return TemporalHint(preset="lastQuarter")

    if "emerging" in lowered or "new research" in lowered:
        return TemporalHint(preset="lastMonth")

    return None


def parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def recency_label(published: Optional[str], now: Optional[datetime] = None) -> Optional[str]:
    """today / yesterday / N days / N weeks / N months / N years ago."""
    parsed = parse_date(published)
    if parsed is None:
        return None

    now = now or datetime.now(timezone.utc)
    days = (now - parsed).days
    if days < 0:
        return None
    if days == 0:
        return "today"
    if days == 1:
        return "yesterday"
    if days < 7:
        return f"{days} days ago"
    if days < 30:
        return f"{round(days / 7)} weeks ago"
    if days < 365:
        return f"{round(days / 30)} months ago"
    return f"{round(days / 365)} years ago"


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class ExternalInsight:
    title: str
    url: str
    summary: str
    stance: str
    published_date: Optional[str] = None
    recency_label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "summary": self.summary,
            "stance": self.stance,
            "publishedDate": self.published_date,
            "recencyLabel": self.recency_label,
        }


@dataclass
class FreshnessSignal:
    description: str
    emphasis: str
    source_type: str
    references: List[Citation] = field(default_factory=list)
    observed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "emphasis": self.emphasis,
            "sourceType": self.source_type,
            "references": [r.to_dict() for r in self.references],
            "observedAt": self.observed_at,
        }


@dataclass
class Contradiction:
    theme: str
    internal_position: str
    external_position: str
    severity: str
    references: List[Citation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "theme": self.theme,
            "internalPosition": self.internal_position,
            "externalPosition": self.external_position,
            "severity": self.severity,
            "references": [r.to_dict() for r in self.references],
        }


@dataclass
class LivingContextSummary:
    SCHEMA_VERSION = 1

    headline: str
    synthesis: str
    internal_highlights: List[Citation] = field(default_factory=list)
    external_insights: List[ExternalInsight] = field(default_factory=list)
    freshness_signals: List[FreshnessSignal] = field(default_factory=list)
    contradictions: List[Contradiction] = field(default_factory=list)
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "headline": self.headline,
            "synthesis": self.synthesis,
            "internalHighlights": [c.to_dict() for c in self.internal_highlights],
            "externalInsights": [i.to_dict() for i in self.external_insights],
            "freshnessSignals": [s.to_dict() for s in self.freshness_signals],
            "contradictions": [c.to_dict() for c in self.contradictions],
            "isFallback": self.is_fallback,
        }


@dataclass
class LivingContextPayload:
    summary: LivingContextSummary
    external_results: List[ExternalResult] = field(default_factory=list)
    temporal: Optional[TemporalHint] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "externalResults": [r.to_dict() for r in self.external_results],
            "temporal": self.temporal.to_dict() if self.temporal else None,
        }


# =============================================================================
# PROMPT
# =============================================================================

PROMPT_TEMPLATE = """You are the CoST Living Context Engine. Combine institutional knowledge with live web intelligence.

Task: Respond with a JSON object that fuses internal evidence (#I references) with external signals (#E references).

Rules:
- Highlight what is stable institutional wisdom vs. what is emerging or controversial.
- Detect contradictions where external sources challenge CoST guidance, rated low, medium or high.
- Flag freshness by comparing timestamps.
- Only reference URLs listed below.

JSON schema:
{{
  "headline": "string",
  "synthesis": "string",
  "internalHighlights": [{{ "title": "string", "url": "string" }}],
  "externalInsights": [
    {{"title": "string", "url": "string", "summary": "string",
      "stance": "supports" | "expands" | "contradicts", "publishedDate": "string?"}}
  ],
  "freshnessSignals": [
    {{"description": "string", "emphasis": "reinforces" | "challenges" | "emerging",
      "sourceType": "internal" | "external",
      "references": [{{ "title": "string", "url": "string" }}], "observedAt": "string"}}
  ],
  "contradictions": [
    {{"theme": "string", "internalPosition": "string", "externalPosition": "string",
      "severity": "low" | "medium" | "high",
      "references": [{{ "title": "string", "url": "string" }}]}}
  ]
}}

Focus on the question: "{query}"

Internal knowledge:
{internal}

External signals:
{external}
"""


def format_internal(docs: List[ScoredChunk]) -> str:
    blocks = []
    for index, doc in enumerate(docs, start=1):
        year = f" (Year: {doc.year})" if doc.year else ""
        country = f" [{doc.country}]" if doc.country else ""
        blocks.append(
            f"[#I{index}] {doc.title}{year}{country}\nURL: {doc.url}\nTYPE: {doc.type}\n"
            f"EXCERPT:\n{(doc.text or '')[:INTERNAL_EXCERPT_CHARS]}\n"
        )
    return "\n".join(blocks)


def format_external(results: List[ExternalResult]) -> str:
    blocks = []
    for index, result in enumerate(results, start=1):
        date = f" ({result.published_date})" if result.published_date else ""
        blocks.append(
            f"[#E{index}] {result.title}{date}\nURL: {result.url}\nSNIPPET:\n{result.text or ''}\n"
        )
    return "\n".join(blocks)


# =============================================================================
# ENGINE
# =============================================================================

class LivingContextEngine:
    """
    Hybrid internal + external context fusion.

    Never raises: external search failures degrade to internal-only input
    and model failures yield the deterministic fallback summary.
    """

    def __init__(
        self,
        llm: LLMClient,
        external_client: Optional[ExaSearchClient] = None,
        max_internal: int = DEFAULT_INTERNAL_LIMIT,
        max_external: int = DEFAULT_EXTERNAL_LIMIT,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.llm = llm
        self.external_client = external_client
        self.max_internal = max_internal
        self.max_external = max_external
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def fetch_external(self, query: str, temporal: Optional[TemporalHint]) -> List[ExternalResult]:
        if self.external_client is None or not self.external_client.enabled:
            return []
        try:
            return await self.external_client.search(
                query,
                num_results=self.max_external,
                include_content=True,
                temporal=temporal,
                sort_by="recent" if temporal else "relevance",
            )
        except ExternalSearchError as e:
            logger.warning(f"External search unavailable, using internal context only: {e}")
            return []

    async def build(
        self,
        query: str,
        internal_docs: List[ScoredChunk],
        external_results: Optional[List[ExternalResult]] = None,
        temporal_preset: Optional[str] = None,
    ) -> LivingContextPayload:
        """
        Build the living context for a query.

        Args:
            query: User question
            internal_docs: Scored chunks from the vector store
            external_results: Pre-fetched external results (skips the search call)
            temporal_preset: Force a preset instead of detecting intent

        Returns:
            LivingContextPayload with the summary and the external results used
        """
        internal = internal_docs[:self.max_internal]
        temporal = TemporalHint(preset=temporal_preset) if temporal_preset else detect_temporal_intent(query)

        if external_results is None:
            external_results = await self.fetch_external(query, temporal)
        external = external_results[:self.max_external]

        prompt = PROMPT_TEMPLATE.format(
            query=query,
            internal=format_internal(internal),
            external=format_external(external),
        )

        def fallback(reason: str) -> LivingContextSummary:
            return self.fallback_summary(query, internal, external)

        try:
            response = await self.llm.generate(prompt, max_tokens=1200, temperature=0.35)
            summary = parse_structured(
                response.content,
                lambda data: self.build_summary(data, internal, external),
                fallback,
                label="living context",
            )
        except LLMError as e:
            logger.error(f"Living context synthesis failed: {e}")
            summary = fallback(str(e))

        return LivingContextPayload(summary=summary, external_results=external, temporal=temporal)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def build_summary(
        self,
        data: Any,
        internal: List[ScoredChunk],
        external: List[ExternalResult],
    ) -> ParseResult[LivingContextSummary]:
        """Validate decoded JSON; drop untraceable references and bad enums."""
        if not isinstance(data, dict):
            return ParseResult.err("living context payload is not an object")

        headline = as_text(data.get("headline"))
        synthesis = as_text(data.get("synthesis"))
        if not headline or not synthesis:
            return ParseResult.err("missing headline or synthesis")

        internal_by_url = {d.url: Citation(d.title, d.url) for d in internal if d.url}
        external_by_url = {r.url: r for r in external if r.url}
        known = dict(internal_by_url)
        known.update({url: Citation(r.title, url) for url, r in external_by_url.items()})

        def trace(refs: Any, pool: Dict[str, Citation]) -> List[Citation]:
            citations = []
            for ref in as_dict_list(refs):
                citation = pool.get(ref.get("url"))
                if citation is not None and citation not in citations:
                    citations.append(citation)
            return citations

        now = self._now()
        insights = []
        for item in as_dict_list(data.get("externalInsights")):
            source = external_by_url.get(item.get("url"))
            if source is None or not in_taxonomy(item.get("stance"), STANCES):
                continue
            published = as_text(item.get("publishedDate")) or source.published_date
            insights.append(ExternalInsight(
                title=source.title,
                url=source.url,
                summary=as_text(item.get("summary"), source.text or ""),
                stance=item["stance"],
                published_date=published,
                recency_label=recency_label(published, now),
            ))

        signals = []
        for item in as_dict_list(data.get("freshnessSignals")):
            if not in_taxonomy(item.get("emphasis"), EMPHASES):
                continue
            if not in_taxonomy(item.get("sourceType"), SOURCE_TYPES):
                continue
            description = as_text(item.get("description"))
            if not description:
                continue
            signals.append(FreshnessSignal(
                description=description,
                emphasis=item["emphasis"],
                source_type=item["sourceType"],
                references=trace(item.get("references"), known),
                observed_at=as_text(item.get("observedAt")) or None,
            ))

        contradictions = []
        for item in as_dict_list(data.get("contradictions")):
            if not in_taxonomy(item.get("severity"), SEVERITIES):
                continue
            contradictions.append(Contradiction(
                theme=as_text(item.get("theme"), "Unspecified theme"),
                internal_position=as_text(item.get("internalPosition")),
                external_position=as_text(item.get("externalPosition")),
                severity=item["severity"],
                references=trace(item.get("references"), known),
            ))

        return ParseResult.ok(LivingContextSummary(
            headline=headline,
            synthesis=synthesis,
            internal_highlights=trace(data.get("internalHighlights"), internal_by_url),
            external_insights=insights,
            freshness_signals=signals,
            contradictions=contradictions,
        ))

    def fallback_summary(
        self,
        query: str,
        internal: List[ScoredChunk],
        external: List[ExternalResult],
    ) -> LivingContextSummary:
        """Neutral summary from the top internal and external items."""
        now = self._now()
        return LivingContextSummary(
            headline=f'Hybrid knowledge check for "{query}"',
            synthesis=(
                "Unable to synthesize a living context summary right now. "
                "Review the highlighted internal and external sources directly."
            ),
            internal_highlights=[Citation(d.title, d.url) for d in internal[:FALLBACK_ITEMS]],
            external_insights=[
                ExternalInsight(
                    title=r.title,
                    url=r.url,
                    summary=r.text or "Review the source for details.",
                    stance="expands",
                    published_date=r.published_date,
                    recency_label=recency_label(r.published_date, now),
                )
                for r in external[:FALLBACK_ITEMS]
            ],
            is_fallback=True,
        )
