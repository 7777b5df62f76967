"""
Connection Engine
=================

Mines retrieved documents for relationships that are not obvious from
titles or keywords:

- pairwise connections (causal, temporal, thematic, contradictory, complementary)
- insight clusters spanning several documents
- hidden gems: low-ranked documents that still answer the query
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from src.rag.models import Citation, ScoredChunk
from .llm_client import LLMClient, LLMError
from .parsing import (
    ParseResult,
    as_dict_list,
    as_list,
    as_text,
    clamp,
    in_taxonomy,
    parse_structured,
)

logger = logging.getLogger(__name__)


CONNECTION_KINDS = ("causal", "temporal", "thematic", "contradictory", "complementary")

MAX_CONNECTION_DOCS = 10
MAX_CLUSTER_DOCS = 15
FALLBACK_CONFIDENCE = 0.3
FALLBACK_CLUSTER_SIZE = 5
MAX_HIDDEN_GEMS = 3


@dataclass
class Connection:
    SCHEMA_VERSION = 1

    kind: str
    doc_a: Citation
    doc_b: Citation
    relationship: str
    insight: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "docA": self.doc_a.to_dict(),
            "docB": self.doc_b.to_dict(),
            "relationship": self.relationship,
            "insight": self.insight,
            "confidence": self.confidence,
        }


@dataclass
class InsightCluster:
    theme: str
    documents: List[Citation]
    key_insight: str
    actionable: str
    novelty: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "theme": self.theme,
            "documents": [d.to_dict() for d in self.documents],
            "keyInsight": self.key_insight,
            "actionable": self.actionable,
            "novelty": self.novelty,
        }


@dataclass
class ConnectionReport:
    connections: List[Connection] = field(default_factory=list)
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connections": [c.to_dict() for c in self.connections],
            "isFallback": self.is_fallback,
        }


def _doc_lines(docs: List[ScoredChunk], snippet_chars: int) -> str:
    return "\n\n".join(
        f"[{i}] {d.title} ({d.type}, {d.year or 'n.d.'})\nSnippet: {(d.text or '')[:snippet_chars]}..."
        for i, d in enumerate(docs)
    )


CONNECTIONS_PROMPT = """You are an expert at finding hidden connections in infrastructure transparency research.

Analyze these {count} documents:

{docs}

Find 3-5 SURPRISING connections between these documents that:
1. Wouldn't be obvious from titles alone
2. Reveal patterns, contradictions, or evolution of ideas
3. Provide actionable insights

Allowed types: causal, temporal, thematic, contradictory, complementary.
Refer to documents by their bracketed id.

Respond ONLY with a valid JSON array:
[
  {{"type": "causal", "docA": 0, "docB": 3,
    "relationship": "Document 0's findings about X directly influenced Document 3's approach to Y",
    "insight": "Why this connection matters",
    "confidence": 0.85}}
]"""

CLUSTERS_PROMPT = """Analyze these {count} documents about infrastructure transparency:

{docs}

Identify 2-4 EMERGENT THEMES that connect multiple documents, reveal evolution,
contradictions or gaps, and offer actionable recommendations.
Refer to documents by their bracketed id.

Respond ONLY with a valid JSON array:
[
  {{"theme": "Shift from compliance to impact measurement",
    "documents": [0, 2, 5],
    "keyInsight": "The 'aha' moment",
    "actionable": "What practitioners should do with this",
    "novelty": 0.85}}
]"""

HIDDEN_GEMS_PROMPT = """User query: "{query}"

These documents ranked LOW in similarity search but might be surprisingly relevant:

{docs}

Which 2-3 of these are HIDDEN GEMS that address the query from a unique angle,
provide context the top results miss, or offer practical examples?

Respond ONLY with a JSON array of ids, e.g. [5, 12, 23]"""


class ConnectionEngine:
    """Relationship and theme discovery over a scored-document snapshot."""

    def __init__(self, llm: LLMClient, temperature: float = 0.7):
        self.llm = llm
        self.temperature = temperature

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    async def discover_connections(self, docs: List[ScoredChunk]) -> ConnectionReport:
        """
        Find pairwise relationships between documents.

        Returns:
            ConnectionReport; the deterministic fallback when the model
            output is unusable
        """
        if len(docs) < 2:
            return ConnectionReport()

        subset = docs[:MAX_CONNECTION_DOCS]
        prompt = CONNECTIONS_PROMPT.format(count=len(subset), docs=_doc_lines(subset, 300))

        def fallback(reason: str) -> ConnectionReport:
            return self.fallback_connections(subset)

        try:
            response = await self.llm.generate(prompt, max_tokens=1000, temperature=self.temperature)
        except LLMError as e:
            logger.error(f"Connection discovery failed: {e}")
            return fallback(str(e))

        return parse_structured(
            response.content,
            lambda data: self.build_connections(data, subset),
            fallback,
            label="connections",
        )

    def _resolve(self, ref: Any, docs: List[ScoredChunk]) -> Optional[ScoredChunk]:
        """Resolve a document reference given as id or exact title."""
        if isinstance(ref, bool):
            return None
        if isinstance(ref, (int, float)) or (isinstance(ref, str) and ref.strip().isdigit()):
            index = int(ref)
            return docs[index] if 0 <= index < len(docs) else None
        if isinstance(ref, str):
            for doc in docs:
                if doc.title == ref.strip():
                    return doc
        return None

    def build_connections(self, data: Any, docs: List[ScoredChunk]) -> ParseResult[ConnectionReport]:
        if isinstance(data, dict):
            data = data.get("connections")
        if not isinstance(data, list):
            return ParseResult.err("connections payload is not a list")

        connections = []
        for item in as_dict_list(data):
            if not in_taxonomy(item.get("type"), CONNECTION_KINDS):
                continue
            doc_a = self._resolve(item.get("docA", item.get("doc1Title")), docs)
            doc_b = self._resolve(item.get("docB", item.get("doc2Title")), docs)
            if doc_a is None or doc_b is None or doc_a.url == doc_b.url:
                continue
            relationship = as_text(item.get("relationship"))
            if not relationship:
                continue
            connections.append(Connection(
                kind=item["type"],
                doc_a=Citation(doc_a.title, doc_a.url),
                doc_b=Citation(doc_b.title, doc_b.url),
                relationship=relationship,
                insight=as_text(item.get("insight")),
                confidence=clamp(item.get("confidence"), 0.0, 1.0, default=FALLBACK_CONFIDENCE),
            ))

        if not connections:
            return ParseResult.err("no valid connections")
        return ParseResult.ok(ConnectionReport(connections=connections))

    def fallback_connections(self, docs: List[ScoredChunk]) -> ConnectionReport:
        """Low-confidence links between adjacent top documents."""
        connections = []
        for doc_a, doc_b in zip(docs, docs[1:4]):
            if doc_a.year and doc_b.year and doc_a.year != doc_b.year:
                kind = "temporal"
                relationship = f"Published {doc_a.year} and {doc_b.year}; compare how guidance changed."
            elif doc_a.type == doc_b.type:
                kind = "thematic"
                relationship = f"Both are {doc_a.type or 'documents'} retrieved for the same question."
            else:
                kind = "complementary"
                relationship = f"A {doc_a.type or 'document'} and a {doc_b.type or 'document'} covering the same question."
            connections.append(Connection(
                kind=kind,
                doc_a=Citation(doc_a.title, doc_a.url),
                doc_b=Citation(doc_b.title, doc_b.url),
                relationship=relationship,
                insight="Automated pairing; review both sources together.",
                confidence=FALLBACK_CONFIDENCE,
            ))
        return ConnectionReport(connections=connections, is_fallback=True)

    # =========================================================================
    # CLUSTERS
    # =========================================================================

    async def extract_insight_clusters(self, docs: List[ScoredChunk]) -> List[InsightCluster]:
        """Themes spanning three or more documents."""
        if len(docs) < 3:
            return []

        subset = docs[:MAX_CLUSTER_DOCS]
        prompt = CLUSTERS_PROMPT.format(count=len(subset), docs=_doc_lines(subset, 200))

        def fallback(reason: str) -> List[InsightCluster]:
            return self.fallback_clusters(subset)

        try:
            response = await self.llm.generate(prompt, max_tokens=1000, temperature=self.temperature)
        except LLMError as e:
            logger.error(f"Insight extraction failed: {e}")
            return fallback(str(e))

        return parse_structured(
            response.content,
            lambda data: self.build_clusters(data, subset),
            fallback,
            label="insight clusters",
        )

    def build_clusters(self, data: Any, docs: List[ScoredChunk]) -> ParseResult[List[InsightCluster]]:
        if isinstance(data, dict):
            data = data.get("clusters")
        if not isinstance(data, list):
            return ParseResult.err("clusters payload is not a list")

        clusters = []
        for item in as_dict_list(data):
            theme = as_text(item.get("theme"))
            members = []
            for ref in as_list(item.get("documents")):
                doc = self._resolve(ref, docs)
                if doc is not None and all(m.url != doc.url for m in members):
                    members.append(Citation(doc.title, doc.url))
            if not theme or len(members) < 2:
                continue
            clusters.append(InsightCluster(
                theme=theme,
                documents=members,
                key_insight=as_text(item.get("keyInsight")),
                actionable=as_text(item.get("actionable")),
                novelty=clamp(item.get("novelty"), 0.0, 1.0, default=0.5),
            ))

        if not clusters:
            return ParseResult.err("no valid clusters")
        return ParseResult.ok(clusters)

    def fallback_clusters(self, docs: List[ScoredChunk]) -> List[InsightCluster]:
        """Group documents by type; groups of two or more become clusters.

        When every document has its own type, the top documents form a
        single cluster so the layer is never empty.
        """
        by_type: Dict[str, List[Citation]] = {}
        for doc in docs:
            members = by_type.setdefault(doc.type or "Other", [])
            if all(m.url != doc.url for m in members):
                members.append(Citation(doc.title, doc.url))

        clusters = []
        for doc_type, unique in by_type.items():
            if len(unique) < 2:
                continue
            clusters.append(InsightCluster(
                theme=f"{doc_type} sources",
                documents=unique,
                key_insight=f"{len(unique)} {doc_type} documents address this question.",
                actionable="Read these together for a consistent view.",
                novelty=0.0,
            ))
        if clusters:
            return clusters

        top: List[Citation] = []
        for doc in docs:
            if all(t.url != doc.url for t in top):
                top.append(Citation(doc.title, doc.url))
            if len(top) == FALLBACK_CLUSTER_SIZE:
                break
        if not top:
            return []
        return [InsightCluster(
            theme="Top sources for this question",
            documents=top,
            key_insight=f"The {len(top)} highest-ranked documents cover different angles of this question.",
            actionable="Start with these for a broad view.",
            novelty=0.0,
        )]

    # =========================================================================
    # HIDDEN GEMS
    # =========================================================================

    async def find_hidden_gems(
        self,
        query: str,
        docs: List[ScoredChunk],
        start: int = 20,
        end: int = 50,
    ) -> List[ScoredChunk]:
        """Pick low-ranked documents (ranks start..end) that still matter.

        Falls back to the first low-ranked documents when the model output
        is unusable.
        """
        low_ranked = docs[start:end]
        if not low_ranked:
            return []

        prompt = HIDDEN_GEMS_PROMPT.format(query=query, docs=_doc_lines(low_ranked, 250))
        try:
            response = await self.llm.generate(prompt, max_tokens=200, temperature=self.temperature)
        except LLMError as e:
            logger.error(f"Hidden gems discovery failed: {e}")
            return low_ranked[:MAX_HIDDEN_GEMS]

        def build(data: Any) -> ParseResult[List[ScoredChunk]]:
            if not isinstance(data, list):
                return ParseResult.err("hidden gems payload is not a list")
            gems = []
            for ref in data:
                doc = self._resolve(ref, low_ranked)
                if doc is not None and doc not in gems:
                    gems.append(doc)
            if not gems:
                return ParseResult.err("no traceable hidden gems")
            return ParseResult.ok(gems[:MAX_HIDDEN_GEMS])

        return parse_structured(
            response.content, build, lambda reason: low_ranked[:MAX_HIDDEN_GEMS], label="hidden gems"
        )
