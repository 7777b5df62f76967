"""
Answer Synthesizer
==================

Produces 3-6 citation-bearing bullets from retrieved snippets.

Citation integrity is enforced procedurally, not just by prompt:
a bullet survives only if it references at least one [#N] marker that
maps back to a snippet supplied to this call.
"""

import logging
import re
from typing import List, Optional, Tuple

from src.rag.models import AnswerBullet, Citation, Snippet
from .llm_client import LLMClient, LLMError

logger = logging.getLogger(__name__)


EXCERPT_MAX_CHARS = 1200

MARKER_PATTERN = re.compile(r"\[#(\d+)\]")
MARKER_STRIP = re.compile(r"\s*\[#\d+\]")
BULLET_PATTERN = re.compile(r"^(?:[-•*]|\d+[.)])\s*")

PROMPT_TEMPLATE = """You answer in 3–6 short bullets. Every bullet MUST cite one or more sources using [#N] where N is from the bracketed list.
Only use the provided excerpts. If unsure, say you don't have evidence.

Question: {query}

Sources:
{context}
"""


def number_snippets(snippets: List[Snippet]) -> List[Tuple[int, Snippet]]:
    """Assign 1-based reference numbers, skipping snippets without text."""
    usable = [s for s in snippets if s.text and s.text.strip()]
    return list(enumerate(usable, start=1))


def build_prompt(query: str, numbered: List[Tuple[int, Snippet]]) -> str:
    context = "\n".join(
        f"[#{n}] {s.title}\nURL: {s.url}\nEXCERPT:\n{s.text[:EXCERPT_MAX_CHARS]}\n"
        for n, s in numbered
    )
    return PROMPT_TEMPLATE.format(query=query, context=context)


def parse_bullets(text: str, numbered: List[Tuple[int, Snippet]]) -> List[AnswerBullet]:
    """
    Turn model output into validated bullets.

    Keeps list-item lines only, maps markers back to snippets, strips the
    markers from the display text and drops bullets with no valid citation.
    """
    by_number = {n: s for n, s in numbered}
    bullets = []

    for line in (text or "").splitlines():
        line = line.strip()
        if not BULLET_PATTERN.match(line):
            continue

        citations: List[Citation] = []
        seen = set()
        for match in MARKER_PATTERN.finditer(line):
            snippet = by_number.get(int(match.group(1)))
            if snippet is None or snippet.url in seen:
                continue
            seen.add(snippet.url)
            citations.append(Citation(title=snippet.title, url=snippet.url))

        if not citations:
            continue

        clean = BULLET_PATTERN.sub("", MARKER_STRIP.sub("", line), count=1).strip()
        if clean:
            bullets.append(AnswerBullet(text=clean, citations=citations))

    return bullets


class AnswerSynthesizer:
    """
    Grounded answer synthesis.

    A model failure yields an empty answer, never an uncited bullet.
    """

    def __init__(self, llm: LLMClient, max_tokens: int = 700, temperature: float = 0.2):
        self.llm = llm
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def synthesize(self, query: str, snippets: List[Snippet]) -> List[AnswerBullet]:
        """
        Args:
            query: User question
            snippets: Ordered grounding snippets

        Returns:
            Bullets, each with at least one citation from `snippets`
        """
        numbered = number_snippets(snippets)
        if not numbered:
            return []

        prompt = build_prompt(query, numbered)
        try:
            response = await self.llm.generate(
                prompt, max_tokens=self.max_tokens, temperature=self.temperature
            )
        except LLMError as e:
            logger.error(f"Answer synthesis failed: {e}")
            return []

        bullets = parse_bullets(response.content, numbered)
        logger.info(f"Synthesized {len(bullets)} cited bullets from {len(numbered)} snippets")
        return bullets
