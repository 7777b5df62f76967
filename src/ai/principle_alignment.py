"""
Principle Alignment Analyzer
============================

Audits a synthesized answer against the fixed rubric of infrastructure
transparency principles (see src.config.PRINCIPLES):

- overall and per-principle scores on a 0-10 scale
- risks tied to a principle, rated low / medium / high
- stakeholder balance across the five stakeholder groups
- power dynamics with impacted stakeholders and mitigation ideas
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.config import PRINCIPLES
from src.rag.models import AnswerBullet
from .living_context import LivingContextSummary
from .llm_client import LLMClient, LLMError
from .parsing import (
    ParseResult,
    as_dict_list,
    as_text,
    as_text_list,
    clamp,
    in_taxonomy,
    parse_structured,
)
from .predictive_reasoner import PredictionReport

logger = logging.getLogger(__name__)


PRINCIPLE_IDS = tuple(p["id"] for p in PRINCIPLES)
STAKEHOLDERS = ("government", "privateSector", "civilSociety", "beneficiaries", "oversightBodies")
EMPHASIS_LEVELS = ("strong", "balanced", "underrepresented")
RISK_SEVERITIES = ("low", "medium", "high")

FALLBACK_SCORE = 5.0


@dataclass
class PrincipleScore:
    principle: str
    score: float
    rationale: str

    def to_dict(self) -> Dict[str, Any]:
        return {"pillar": self.principle, "score": self.score, "rationale": self.rationale}


@dataclass
class AlignmentRisk:
    principle: str
    risk: str
    severity: str

    def to_dict(self) -> Dict[str, Any]:
        return {"pillar": self.principle, "risk": self.risk, "severity": self.severity}


@dataclass
class StakeholderBalance:
    stakeholder: str
    emphasis: str
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"stakeholder": self.stakeholder, "emphasis": self.emphasis, "notes": self.notes}


@dataclass
class PowerDynamic:
    description: str
    impacted_stakeholders: List[str] = field(default_factory=list)
    mitigation_ideas: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "impactedStakeholders": self.impacted_stakeholders,
            "mitigationIdeas": self.mitigation_ideas,
        }


@dataclass
class AlignmentReport:
    SCHEMA_VERSION = 1

    overall_score: float
    per_principle_scores: List[PrincipleScore] = field(default_factory=list)
    risks: List[AlignmentRisk] = field(default_factory=list)
    stakeholder_balance: List[StakeholderBalance] = field(default_factory=list)
    power_dynamics: List[PowerDynamic] = field(default_factory=list)
    generated_at: str = ""
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overallScore": self.overall_score,
            "pillarScores": [s.to_dict() for s in self.per_principle_scores],
            "risks": [r.to_dict() for r in self.risks],
            "stakeholderBalance": [s.to_dict() for s in self.stakeholder_balance],
            "powerDynamics": [p.to_dict() for p in self.power_dynamics],
            "generatedAt": self.generated_at,
            "isFallback": self.is_fallback,
        }


def format_principles() -> str:
    blocks = []
    for p in PRINCIPLES:
        blocks.append("\n".join([
            f"ID: {p['id']}",
            f"Name: {p['name']}",
            f"Description: {p['description']}",
            f"Guiding questions: {' | '.join(p['guiding_questions'])}",
            f"Positive signals: {' | '.join(p['positive_signals'])}",
            f"Red flags: {' | '.join(p['red_flags'])}",
        ]))
    return "\n\n".join(blocks)


def format_answer(answer: List[AnswerBullet]) -> str:
    return "\n".join(
        f"[#{i}] {bullet.text}\nCITES: {' | '.join(f'{c.title} ({c.url})' for c in bullet.citations)}"
        for i, bullet in enumerate(answer, start=1)
    ) or "(no answer bullets)"


PROMPT_TEMPLATE = """You are the principle alignment auditor. Audit the recommendations against the four CoST pillars.

Principles:
{principles}

User query: {query}

Answer bullets:
{answer}

Living context summary:
{living}

Temporal considerations:
{temporal}

Respond with a JSON payload matching:
{{
  "overallScore": 0-10,
  "pillarScores": [{{"pillar": "{ids}", "score": 0-10, "rationale": "string"}}],
  "risks": [{{"pillar": "string", "risk": "string", "severity": "low|medium|high"}}],
  "stakeholderBalance": [
    {{"stakeholder": "{stakeholders}", "emphasis": "strong|balanced|underrepresented", "notes": "string"}}
  ],
  "powerDynamics": [{{"description": "string", "impactedStakeholders": ["string"], "mitigationIdeas": ["string"]}}]
}}

Do NOT add explanations outside the JSON."""


class PrincipleAlignmentAnalyzer:
    """Scores answers against the principle rubric."""

    def __init__(self, llm: LLMClient, max_tokens: int = 900, temperature: float = 0.2):
        self.llm = llm
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def analyze(
        self,
        query: str,
        answer: List[AnswerBullet],
        living_context: Optional[LivingContextSummary] = None,
        prediction: Optional[PredictionReport] = None,
    ) -> AlignmentReport:
        prompt = PROMPT_TEMPLATE.format(
            principles=format_principles(),
            query=query,
            answer=format_answer(answer),
            living=living_context.synthesis if living_context else "No hybrid context available.",
            temporal=" | ".join(prediction.recommended_actions) if prediction else "No temporal notes",
            ids="|".join(PRINCIPLE_IDS),
            stakeholders="|".join(STAKEHOLDERS),
        )

        def fallback(reason: str) -> AlignmentReport:
            return self.fallback_report()

        try:
            response = await self.llm.generate(prompt, max_tokens=self.max_tokens, temperature=self.temperature)
        except LLMError as e:
            logger.error(f"Principle alignment failed: {e}")
            return fallback(str(e))

        return parse_structured(response.content, self.build_report, fallback, label="principle alignment")

    def build_report(self, data: Any) -> ParseResult[AlignmentReport]:
        if not isinstance(data, dict):
            return ParseResult.err("alignment payload is not an object")
        if data.get("overallScore") is None:
            return ParseResult.err("missing overallScore")

        scores = [
            PrincipleScore(
                principle=item["pillar"],
                score=clamp(item.get("score"), 0.0, 10.0, default=FALLBACK_SCORE),
                rationale=as_text(item.get("rationale")),
            )
            for item in as_dict_list(data.get("pillarScores"))
            if in_taxonomy(item.get("pillar"), PRINCIPLE_IDS)
        ]

        risks = [
            AlignmentRisk(principle=item["pillar"], risk=as_text(item.get("risk")), severity=item["severity"])
            for item in as_dict_list(data.get("risks"))
            if in_taxonomy(item.get("pillar"), PRINCIPLE_IDS)
            and in_taxonomy(item.get("severity"), RISK_SEVERITIES)
        ]

        balance = [
            StakeholderBalance(
                stakeholder=item["stakeholder"],
                emphasis=item["emphasis"],
                notes=as_text(item.get("notes")),
            )
            for item in as_dict_list(data.get("stakeholderBalance"))
            if in_taxonomy(item.get("stakeholder"), STAKEHOLDERS)
            and in_taxonomy(item.get("emphasis"), EMPHASIS_LEVELS)
        ]

        dynamics = [
            PowerDynamic(
                description=as_text(item.get("description")),
                impacted_stakeholders=as_text_list(item.get("impactedStakeholders")),
                mitigation_ideas=as_text_list(item.get("mitigationIdeas")),
            )
            for item in as_dict_list(data.get("powerDynamics"))
            if as_text(item.get("description"))
        ]

        return ParseResult.ok(AlignmentReport(
            overall_score=clamp(data.get("overallScore"), 0.0, 10.0, default=FALLBACK_SCORE),
            per_principle_scores=scores,
            risks=risks,
            stakeholder_balance=balance,
            power_dynamics=dynamics,
            generated_at=datetime.now(timezone.utc).isoformat(),
        ))

    def fallback_report(self) -> AlignmentReport:
        """Neutral scores with manual review prompts."""
        return AlignmentReport(
            overall_score=FALLBACK_SCORE,
            per_principle_scores=[
                PrincipleScore(
                    principle=p["id"],
                    score=FALLBACK_SCORE,
                    rationale=f"No automated assessment available for {p['name']}. Manual review recommended.",
                )
                for p in PRINCIPLES
            ],
            stakeholder_balance=[
                StakeholderBalance("government", "balanced", "No automated insight"),
                StakeholderBalance("privateSector", "balanced", "No automated insight"),
                StakeholderBalance("civilSociety", "underrepresented", "Confirm inclusion of community voice."),
                StakeholderBalance("beneficiaries", "underrepresented", "Check for citizen-facing follow-ups."),
                StakeholderBalance("oversightBodies", "balanced", "Verify assurance partners are engaged."),
            ],
            generated_at=datetime.now(timezone.utc).isoformat(),
            is_fallback=True,
        )
