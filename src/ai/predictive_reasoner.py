"""
Predictive Reasoner
===================

Projects forward scenarios from the evolution timeline, optionally
informed by the living context synthesis.

Confidence is clamped into [0, 1] and every reference must trace back to
a retrieved document.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.rag.models import Citation, ScoredChunk
from .evolution_tracker import EvolutionReport, EvolutionTracker
from .living_context import LivingContextSummary
from .llm_client import LLMClient, LLMError
from .parsing import (
    ParseResult,
    as_dict_list,
    as_text,
    as_text_list,
    clamp,
    parse_structured,
)

logger = logging.getLogger(__name__)


FALLBACK_ACTIONS = [
    "Review historical CoST assurance findings to anticipate systemic risks.",
    "Engage multi-stakeholder groups early to stress-test upcoming reforms.",
]


@dataclass
class PredictiveScenario:
    SCHEMA_VERSION = 1

    scenario: str
    projection: str
    confidence: float
    leading_indicators: List[str] = field(default_factory=list)
    references: List[Citation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario": self.scenario,
            "projection": self.projection,
            "confidence": self.confidence,
            "leadingIndicators": self.leading_indicators,
            "references": [r.to_dict() for r in self.references],
        }


@dataclass
class ScenarioProjection:
    """Projections for one named scenario."""
    scenario: str
    projections: List[PredictiveScenario] = field(default_factory=list)
    confidence_notes: str = ""
    generated_at: str = ""
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario": self.scenario,
            "projections": [p.to_dict() for p in self.projections],
            "confidenceNotes": self.confidence_notes,
            "generatedAt": self.generated_at,
            "isFallback": self.is_fallback,
        }


@dataclass
class PredictionReport:
    """Time-aware insights: timeline, perspectives, scenarios and actions."""
    evolution: EvolutionReport
    scenarios: List[PredictiveScenario] = field(default_factory=list)
    recommended_actions: List[str] = field(default_factory=list)
    generated_at: str = ""
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "temporalPerspective": [p.to_dict() for p in self.evolution.perspectives],
            "evolutionTimeline": [s.to_dict() for s in self.evolution.shifts],
            "predictiveScenarios": [s.to_dict() for s in self.scenarios],
            "recommendedActions": self.recommended_actions,
            "generatedAt": self.generated_at,
            "isFallback": self.is_fallback,
        }


def format_shifts(evolution: EvolutionReport) -> str:
    lines = []
    for shift in evolution.shifts:
        drivers = ", ".join(shift.drivers) or "No drivers recorded"
        docs = " | ".join(f"{d.title} <{d.url}>" for d in shift.representative_docs)
        lines.append(
            f"{shift.phase} ({shift.period.start} - {shift.period.end})\n"
            f"Drivers: {drivers}\nDocs: {docs}\nSummary: {shift.summary}\n"
        )
    return "\n".join(lines) or "No timeline available."


def format_perspectives(evolution: EvolutionReport) -> str:
    return "\n".join(
        f"{p.year}: {p.viewpoint} (Refs: {' | '.join(r.title for r in p.references)})"
        for p in evolution.perspectives
    ) or "No temporal perspectives available."


INSIGHTS_PROMPT = """You are the CoST Time Oracle.
Generate predictive scenarios and time-aware advice for the query "{query}".

Evolution timeline:
{shifts}

Temporal perspectives:
{perspectives}

Living context:
{living}

Reference only these URLs:
{urls}

Respond with JSON only:
{{
  "projections": [
    {{"scenario": "string", "projection": "string", "confidence": 0.0,
      "leadingIndicators": ["string"], "references": [{{"title": "string", "url": "string"}}]}}
  ]
}}"""

SCENARIO_PROMPT = """You are the Time Oracle. Build a predictive model for "{scenario}" using historical trends.

Evolution timeline:
{shifts}

Temporal perspectives:
{perspectives}

Reference only these URLs:
{urls}

Respond with JSON only:
{{
  "scenario": "{scenario}",
  "projections": [
    {{"scenario": "string", "projection": "string", "confidence": 0.0,
      "leadingIndicators": ["string"], "references": [{{"title": "string", "url": "string"}}]}}
  ],
  "confidenceNotes": "string"
}}"""


class PredictiveReasoner:
    """Forward-looking scenarios built on the evolution timeline."""

    def __init__(self, llm: LLMClient, evolution_tracker: Optional[EvolutionTracker] = None):
        self.llm = llm
        self.evolution_tracker = evolution_tracker or EvolutionTracker(llm)

    def _known(self, docs: List[ScoredChunk]) -> Dict[str, Citation]:
        return {d.url: Citation(d.title, d.url) for d in docs if d.url}

    def build_scenarios(self, data: Any, known: Dict[str, Citation]) -> ParseResult[List[PredictiveScenario]]:
        if isinstance(data, dict):
            data = data.get("projections")
        if not isinstance(data, list):
            return ParseResult.err("projections payload is not a list")

        scenarios = []
        for item in as_dict_list(data):
            name = as_text(item.get("scenario"))
            projection = as_text(item.get("projection"))
            if not name or not projection:
                continue
            references = []
            for ref in as_dict_list(item.get("references")):
                citation = known.get(ref.get("url"))
                if citation is not None and citation not in references:
                    references.append(citation)
            scenarios.append(PredictiveScenario(
                scenario=name,
                projection=projection,
                confidence=clamp(item.get("confidence"), 0.0, 1.0, default=0.0),
                leading_indicators=as_text_list(item.get("leadingIndicators")),
                references=references,
            ))
        if not scenarios:
            return ParseResult.err("no valid projections")
        return ParseResult.ok(scenarios)

    async def predict(
        self,
        query: str,
        docs: List[ScoredChunk],
        evolution: Optional[EvolutionReport] = None,
        living_context: Optional[LivingContextSummary] = None,
    ) -> PredictionReport:
        """
        Scenarios and recommended actions for a query.

        Args:
            query: User question
            docs: Scored documents (reference pool)
            evolution: Timeline from EvolutionTracker, computed when absent
            living_context: Optional fused context summary
        """
        if evolution is None:
            evolution = await self.evolution_tracker.analyze(query, docs)

        known = self._known(docs)
        prompt = INSIGHTS_PROMPT.format(
            query=query,
            shifts=format_shifts(evolution),
            perspectives=format_perspectives(evolution),
            living=living_context.synthesis if living_context else "No living context summary provided.",
            urls="\n".join(known) or "(none)",
        )

        now = datetime.now(timezone.utc).isoformat()
        try:
            response = await self.llm.generate(prompt, max_tokens=1100, temperature=0.45)
            scenarios = parse_structured(
                response.content,
                lambda data: self.build_scenarios(data, known),
                lambda reason: [],
                label="predictive scenarios",
            )
        except LLMError as e:
            logger.error(f"Scenario generation failed: {e}")
            scenarios = []

        if not scenarios:
            return PredictionReport(
                evolution=evolution,
                recommended_actions=list(FALLBACK_ACTIONS),
                generated_at=now,
                is_fallback=True,
            )

        actions = [
            f'Prepare for "{s.scenario}": '
            f"{', '.join(s.leading_indicators) or 'track qualitative community feedback.'}"
            for s in scenarios
        ]
        return PredictionReport(
            evolution=evolution,
            scenarios=scenarios,
            recommended_actions=actions,
            generated_at=now,
        )

    async def project_scenario(
        self,
        scenario: str,
        docs: List[ScoredChunk],
        evolution: Optional[EvolutionReport] = None,
    ) -> ScenarioProjection:
        """Stand-alone projection for a named scenario."""
        if evolution is None:
            evolution = await self.evolution_tracker.analyze(scenario, docs)

        known = self._known(docs)
        prompt = SCENARIO_PROMPT.format(
            scenario=scenario,
            shifts=format_shifts(evolution),
            perspectives=format_perspectives(evolution),
            urls="\n".join(known) or "(none)",
        )
        now = datetime.now(timezone.utc).isoformat()

        def fallback(reason: str) -> ScenarioProjection:
            return ScenarioProjection(
                scenario=scenario,
                confidence_notes="No predictive projection available. Review historical documents manually.",
                generated_at=now,
                is_fallback=True,
            )

        try:
            response = await self.llm.generate(prompt, max_tokens=1100, temperature=0.45)
        except LLMError as e:
            logger.error(f"Predictive scenario modeling failed: {e}")
            return fallback(str(e))

        def build(data: Any) -> ParseResult[ScenarioProjection]:
            if not isinstance(data, dict):
                return ParseResult.err("scenario payload is not an object")
            return self.build_scenarios(data, known).bind(lambda projections: ParseResult.ok(
                ScenarioProjection(
                    scenario=as_text(data.get("scenario"), scenario),
                    projections=projections,
                    confidence_notes=as_text(
                        data.get("confidenceNotes"),
                        "Confidence based on historical trend stability.",
                    ),
                    generated_at=now,
                )
            ))

        return parse_structured(response.content, build, fallback, label="scenario projection")
