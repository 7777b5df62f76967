"""
Document Summarizer
===================

One-sentence descriptions for result items, so a researcher knows what a
document offers without opening it.

Fallback chain: model summary -> first sentence of cleaned text ->
type-based verb + title.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from src.rag.models import ScoredChunk
from .llm_client import LLMClient, LLMError

logger = logging.getLogger(__name__)


MIN_TEXT_CHARS = 50
PROMPT_TEXT_CHARS = 2500
MAX_SUMMARY_CHARS = 250

ACTION_VERBS = {
    "Guide": "Provides guidance on",
    "Manual": "Details procedures for",
    "Template": "Offers template for",
    "Report": "Presents findings on",
    "News": "Discusses recent developments in",
    "Blog": "Explores topics related to",
    "Case Study": "Examines case study of",
    "Framework": "Outlines framework for",
    "Policy": "Describes policy on",
    "Standard": "Defines standards for",
}

NOISE_PATTERNS = [
    re.compile(r"Skip to (content|main|navigation)", re.IGNORECASE),
    re.compile(r"Search\s+(About|Home|Menu|Tools)", re.IGNORECASE),
    re.compile(r"^(Email|From|To|Subject|Date|Reply-To):[^\n]*", re.IGNORECASE | re.MULTILINE),
    re.compile(r"Home\s+About\s+Blog\s+Contact", re.IGNORECASE),
    re.compile(r"Menu\s+(Home|About|Contact|Blog)", re.IGNORECASE),
    re.compile(r"(Copyright\s*©|All rights reserved|Privacy Policy|Terms of Service).*$",
               re.IGNORECASE | re.MULTILINE),
    re.compile(r"(CoST\s*–?\s*Infrastructure Transparency Initiative\s*){2,}", re.IGNORECASE),
]

PROMPT_TEMPLATE = """You are a research assistant helping infrastructure transparency researchers.

Write ONE complete sentence (20-30 words) that captures what this document offers.

RULES:
- Start with action verb: Explains/Provides/Outlines/Details/Describes
- Focus on practical value and key content
- Complete sentence, no truncation or "..."
- No metadata, navigation text, or emails

Document Title: {title}
Type: {type}
Content: {content}

Write ONE complete sentence (20-30 words):"""


@dataclass
class DocumentSummary:
    summary: str
    error: Optional[str] = None


def clean_text(text: str) -> str:
    """Strip navigation, mail headers and boilerplate."""
    if not text:
        return ""
    cleaned = text
    for pattern in NOISE_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    cleaned = re.sub(r"\s{3,}", " ", cleaned)
    return cleaned.strip()


def first_sentence(text: str, max_chars: int = 180) -> str:
    cleaned = clean_text(text)
    match = re.match(r"^[^.!?]+[.!?]", cleaned)
    if match:
        return match.group(0).strip()

    words = []
    length = 0
    for word in cleaned.split():
        if length + len(word) > max_chars:
            break
        words.append(word)
        length += len(word) + 1
    return " ".join(words)


def fallback_summary(title: str, doc_type: str) -> str:
    """Type-based verb + cleaned title, cut at a word boundary."""
    clean_title = re.sub(r"\s*[–|]\s*CoST.*$", "", title, flags=re.IGNORECASE)
    clean_title = re.sub(r"\s*\(Part \d+/\d+\).*$", "", clean_title, flags=re.IGNORECASE).strip()

    verb = ACTION_VERBS.get(doc_type, "Covers")
    max_len = 150 - len(verb)
    if len(clean_title) > max_len:
        clean_title = re.sub(r"\s+\S+$", "", clean_title[:max_len]).strip()
    return f"{verb} {clean_title}."


def tidy_summary(generated: str) -> str:
    summary = generated.strip().strip("\"'")
    summary = re.sub(r"^-\s*", "", summary)
    summary = re.sub(r"(\.{2,}|…)$", "", summary)
    summary = re.sub(r"\s+", " ", summary).strip()
    if summary and summary[-1] not in ".!?":
        summary += "."
    if len(summary) > MAX_SUMMARY_CHARS:
        summary = re.sub(r"\s+\S+$", "", summary[:MAX_SUMMARY_CHARS - 3]).rstrip(",;:") + "."
    return summary


class DocumentSummarizer:
    """Generates item summaries in parallel; never raises."""

    def __init__(self, llm: Optional[LLMClient] = None, max_tokens: int = 100):
        self.llm = llm
        self.max_tokens = max_tokens

    async def summarize(self, title: str, text: str, doc_type: str) -> DocumentSummary:
        if not text or len(text.strip()) < MIN_TEXT_CHARS:
            short_title = title if len(title) <= 120 else title[:120] + "…"
            return DocumentSummary(summary=f"{doc_type}: {short_title}")

        cleaned = clean_text(text)
        if len(cleaned) < MIN_TEXT_CHARS:
            return DocumentSummary(summary=fallback_summary(title, doc_type))

        if self.llm is None:
            return self._excerpt_or_title(title, text, doc_type, None)

        prompt = PROMPT_TEMPLATE.format(
            title=title, type=doc_type, content=cleaned[:PROMPT_TEXT_CHARS]
        )
        try:
            response = await self.llm.generate(prompt, max_tokens=self.max_tokens, temperature=0.3)
        except LLMError as e:
            logger.warning(f"Summary generation failed for '{title}': {e}")
            return self._excerpt_or_title(title, text, doc_type, "AI summary unavailable")

        summary = tidy_summary(response.content or "")
        if len(summary) < 20:
            return DocumentSummary(summary=fallback_summary(title, doc_type), error="AI summary too short")
        return DocumentSummary(summary=summary)

    def _excerpt_or_title(self, title, text, doc_type, error) -> DocumentSummary:
        sentence = first_sentence(text)
        if len(sentence) > 20:
            if len(sentence) > 200:
                sentence = re.sub(r"\s+\S+$", "", sentence[:197]) + "."
            return DocumentSummary(summary=sentence, error=error)
        return DocumentSummary(summary=fallback_summary(title, doc_type), error=error)

    async def summarize_chunks(self, chunks: List[ScoredChunk]) -> List[DocumentSummary]:
        """Summaries aligned index-for-index with `chunks`."""
        return list(await asyncio.gather(*(
            self.summarize(c.title, c.text, c.type) for c in chunks
        )))
