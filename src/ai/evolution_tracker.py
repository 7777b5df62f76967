"""
Evolution Tracker
=================

Orders year-bearing documents chronologically and asks the model how
guidance shifted over time.

Output: phases with a {from, to} period (sorted by period.from ascending),
drivers and representative documents, plus per-year temporal perspectives.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.rag.models import Citation, ScoredChunk
from .llm_client import LLMClient, LLMError
from .parsing import (
    ParseResult,
    as_dict_list,
    as_text,
    as_text_list,
    parse_structured,
)

logger = logging.getLogger(__name__)


DEFAULT_MAX_DOCS = 18
TIMELINE_SNIPPET_CHARS = 500


@dataclass
class Period:
    start: int
    end: int

    def to_dict(self) -> Dict[str, int]:
        return {"from": self.start, "to": self.end}


@dataclass
class EvolutionShift:
    SCHEMA_VERSION = 1

    phase: str
    period: Period
    summary: str
    drivers: List[str] = field(default_factory=list)
    representative_docs: List[Citation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "period": self.period.to_dict(),
            "shiftSummary": self.summary,
            "drivers": self.drivers,
            "representativeDocs": [d.to_dict() for d in self.representative_docs],
        }


@dataclass
class TemporalPerspective:
    year: int
    viewpoint: str
    references: List[Citation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "year": self.year,
            "viewpoint": self.viewpoint,
            "references": [r.to_dict() for r in self.references],
        }


@dataclass
class EvolutionReport:
    topic: str
    shifts: List[EvolutionShift] = field(default_factory=list)
    perspectives: List[TemporalPerspective] = field(default_factory=list)
    last_updated: str = ""
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "shifts": [s.to_dict() for s in self.shifts],
            "methodologyHighlights": [p.to_dict() for p in self.perspectives],
            "lastUpdated": self.last_updated,
            "isFallback": self.is_fallback,
        }


def select_timeline(
    docs: List[ScoredChunk],
    min_year: Optional[int] = None,
    max_year: Optional[int] = None,
    max_docs: int = DEFAULT_MAX_DOCS,
) -> List[ScoredChunk]:
    """Year-bearing documents in [min_year, max_year], oldest first."""
    dated = [d for d in docs if d.year is not None]
    if min_year is not None:
        dated = [d for d in dated if d.year >= min_year]
    if max_year is not None:
        dated = [d for d in dated if d.year <= max_year]
    dated.sort(key=lambda d: d.year)
    return dated[:max_docs]


def _as_year(value: Any) -> Optional[int]:
    try:
        year = int(value)
    except (TypeError, ValueError):
        return None
    return year if 1900 <= year <= 2100 else None


PROMPT_TEMPLATE = """You are the historian for the CoST initiative.
Map how the methodology evolved for the focus "{topic}" using the provided documents.
Only reference URLs listed below.

Respond with JSON matching:
{{
  "topic": "string",
  "shifts": [
    {{"phase": "string", "period": {{"from": 2016, "to": 2019}}, "shiftSummary": "string",
      "drivers": ["string"], "representativeDocs": [{{"title": "string", "url": "string"}}]}}
  ],
  "methodologyHighlights": [
    {{"year": 2018, "viewpoint": "string", "references": [{{"title": "string", "url": "string"}}]}}
  ]
}}

Documents to analyze (chronological):
{timeline}
"""


def format_timeline(docs: List[ScoredChunk]) -> str:
    return "\n".join(
        f"[#{i}] {d.title}{f' ({d.country})' if d.country else ''} - {d.year}\n"
        f"URL: {d.url}\nType: {d.type}\nSnippet:\n{(d.text or '')[:TIMELINE_SNIPPET_CHARS]}\n"
        for i, d in enumerate(docs, start=1)
    )


class EvolutionTracker:
    """Narrates how positions changed across the timeline of retrieved documents."""

    def __init__(self, llm: LLMClient, max_docs: int = DEFAULT_MAX_DOCS):
        self.llm = llm
        self.max_docs = max_docs

    async def analyze(
        self,
        query: str,
        docs: List[ScoredChunk],
        topic: Optional[str] = None,
        min_year: Optional[int] = None,
        max_year: Optional[int] = None,
    ) -> EvolutionReport:
        """
        Build the evolution timeline.

        Returns:
            EvolutionReport, the labelled fallback when the model fails
        """
        timeline = select_timeline(docs, min_year, max_year, self.max_docs)
        topic = topic or query

        def fallback(reason: str) -> EvolutionReport:
            return self.fallback_report(topic, timeline)

        if not timeline:
            return fallback("no dated documents")

        prompt = PROMPT_TEMPLATE.format(topic=topic, timeline=format_timeline(timeline))
        try:
            response = await self.llm.generate(prompt, max_tokens=1200, temperature=0.35)
        except LLMError as e:
            logger.error(f"Evolution analysis failed: {e}")
            return fallback(str(e))

        return parse_structured(
            response.content,
            lambda data: self.build_report(data, topic, timeline),
            fallback,
            label="evolution",
        )

    def build_report(self, data: Any, topic: str, timeline: List[ScoredChunk]) -> ParseResult[EvolutionReport]:
        if not isinstance(data, dict):
            return ParseResult.err("evolution payload is not an object")

        known = {d.url: Citation(d.title, d.url) for d in timeline}
        first_year = timeline[0].year
        last_year = timeline[-1].year

        def trace(refs: Any) -> List[Citation]:
            out = []
            for ref in as_dict_list(refs):
                citation = known.get(ref.get("url"))
                if citation is not None and citation not in out:
                    out.append(citation)
            return out

        shifts = []
        for item in as_dict_list(data.get("shifts")):
            phase = as_text(item.get("phase"))
            if not phase:
                continue
            period = item.get("period") if isinstance(item.get("period"), dict) else {}
            start = _as_year(period.get("from"))
            end = _as_year(period.get("to"))
            start = start if start is not None else first_year
            end = end if end is not None else max(start, last_year)
            if end < start:
                start, end = end, start
            shifts.append(EvolutionShift(
                phase=phase,
                period=Period(start, end),
                summary=as_text(item.get("shiftSummary") or item.get("summary")),
                drivers=as_text_list(item.get("drivers")),
                representative_docs=trace(item.get("representativeDocs")),
            ))

        if not shifts:
            return ParseResult.err("no valid shifts")
        shifts.sort(key=lambda s: s.period.start)

        perspectives = []
        for item in as_dict_list(data.get("methodologyHighlights")):
            viewpoint = as_text(item.get("viewpoint"))
            if not viewpoint:
                continue
            year = _as_year(item.get("year"))
            perspectives.append(TemporalPerspective(
                year=year if year is not None else first_year,
                viewpoint=viewpoint,
                references=trace(item.get("references")),
            ))
        perspectives.sort(key=lambda p: p.year)

        return ParseResult.ok(EvolutionReport(
            topic=as_text(data.get("topic"), topic),
            shifts=shifts,
            perspectives=perspectives,
            last_updated=datetime.now(timezone.utc).isoformat(),
        ))

    def fallback_report(self, topic: str, timeline: List[ScoredChunk]) -> EvolutionReport:
        """Two generic phases anchored on the oldest document."""
        shifts = []
        if timeline:
            base = timeline[0].year
            shifts = [
                EvolutionShift(
                    phase="Foundational transparency push",
                    period=Period(base, base + 2),
                    summary=(
                        "Initial guidance focused on publishing baseline project data "
                        "to meet disclosure commitments."
                    ),
                    drivers=["Global pressure for open data", "CoST roll-outs in pilot countries"],
                    representative_docs=[Citation(d.title, d.url) for d in timeline[:1]],
                ),
                EvolutionShift(
                    phase="Institutionalization and assurance",
                    period=Period(base + 3, base + 6),
                    summary=(
                        "Practitioners integrated assurance processes and "
                        "multi-stakeholder governance."
                    ),
                    drivers=["Need for credible verification", "Learning from early implementations"],
                    representative_docs=[Citation(d.title, d.url) for d in timeline[1:3]],
                ),
            ]

        perspectives = [
            TemporalPerspective(
                year=d.year,
                viewpoint=f'Document "{d.title}" emphasized {d.type} priorities for transparency.',
                references=[Citation(d.title, d.url)],
            )
            for d in timeline[:4]
        ]

        return EvolutionReport(
            topic=topic,
            shifts=shifts,
            perspectives=perspectives,
            last_updated=datetime.now(timezone.utc).isoformat(),
            is_fallback=True,
        )
