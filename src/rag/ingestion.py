"""
RAG Ingestion Pipeline
======================

Pipeline for loading source documents into the vector table.

Flow:
1. Load documents (JSON array or JSON lines)
2. Chunk into pieces
3. Estimate embedding cost (optional budget gate)
4. Generate embeddings
5. Upsert to the vector table
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .chunker import RAGChunker
from .embedder import CostEstimate, RAGEmbedder
from .models import DocumentChunk, SourceDocument
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


class BudgetExceededError(Exception):
    """Raised when the estimated embedding cost exceeds the budget."""

    def __init__(self, estimate: CostEstimate, max_cost: float):
        self.estimate = estimate
        self.max_cost = max_cost
        super().__init__(
            f"Estimated cost ${estimate.estimated_cost_usd:.4f} exceeds budget ${max_cost:.4f}"
        )


@dataclass
class IngestionReport:
    documents: int = 0
    chunks: int = 0
    embedded: int = 0
    dropped: int = 0
    upserted: int = 0
    estimate: Optional[CostEstimate] = None
    dry_run: bool = False
    empty_documents: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documents": self.documents,
            "chunks": self.chunks,
            "embedded": self.embedded,
            "dropped": self.dropped,
            "upserted": self.upserted,
            "approximate_tokens": self.estimate.approximate_tokens if self.estimate else 0,
            "estimated_cost_usd": self.estimate.estimated_cost_usd if self.estimate else 0.0,
            "dry_run": self.dry_run,
        }


# =============================================================================
# LOADING
# =============================================================================

def document_from_dict(data: Dict[str, Any], position: int = 0) -> SourceDocument:
    """
    Build a SourceDocument from a loose record.

    Accepts `text` or `content` for the body; the id defaults to the url.
    """
    text = data.get("text") or data.get("content") or ""
    url = data.get("url") or ""
    year = data.get("year")
    return SourceDocument(
        id=str(data.get("id") or url or f"doc-{position}"),
        title=data.get("title") or url or f"Document {position}",
        url=url,
        type=data.get("type") or "Other",
        text=text,
        country=data.get("country") or None,
        year=int(year) if year not in (None, "") else None,
        content_type=data.get("content_type", "auto"),
        metadata=data.get("metadata") or {},
    )


def load_documents(path: str) -> List[SourceDocument]:
    """
    Load documents from a .json (array) or .jsonl file.

    Raises:
        FileNotFoundError: if the path does not exist
        ValueError: on malformed JSON
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    with open(path, "r", encoding="utf-8") as f:
        if path.endswith(".jsonl"):
            records = [json.loads(line) for line in f if line.strip()]
        else:
            records = json.load(f)

    if isinstance(records, dict):
        records = records.get("documents", [])
    if not isinstance(records, list):
        raise ValueError(f"Expected a list of documents in {path}")

    documents = [document_from_dict(r, i) for i, r in enumerate(records) if isinstance(r, dict)]
    logger.info(f"Loaded {len(documents)} documents from {path}")
    return documents


# =============================================================================
# PIPELINE
# =============================================================================

class RAGIngestion:
    """
    Ingestion pipeline for the knowledge base.

    Handles:
    - Chunking
    - Cost estimation with an optional budget
    - Embedding generation (failed items are dropped, not fatal)
    - Upsert with dimension validation
    """

    def __init__(
        self,
        embedder: RAGEmbedder,
        vector_store: VectorStore,
        chunker: Optional[RAGChunker] = None,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.chunker = chunker or RAGChunker()

    def chunk_documents(self, documents: List[SourceDocument], report: IngestionReport) -> List[DocumentChunk]:
        chunks = []
        for document in documents:
            pieces = self.chunker.chunk_document(document)
            if not pieces:
                report.empty_documents.append(document.id)
            chunks.extend(pieces)
        return chunks

    async def ingest(
        self,
        documents: List[SourceDocument],
        max_cost: Optional[float] = None,
        dry_run: bool = False,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> IngestionReport:
        """
        Ingest documents.

        Args:
            documents: Documents to ingest
            max_cost: Abort before embedding if the estimate exceeds this (USD)
            dry_run: Stop after the cost estimate
            on_progress: Optional callback(completed, total) for embeddings

        Returns:
            IngestionReport

        Raises:
            BudgetExceededError: if the estimate exceeds max_cost
        """
        report = IngestionReport(documents=len(documents), dry_run=dry_run)

        chunks = self.chunk_documents(documents, report)
        report.chunks = len(chunks)
        logger.info(f"Created {len(chunks)} chunks from {len(documents)} documents")

        report.estimate = self.embedder.estimate_cost([c.text for c in chunks])
        logger.info(
            f"Estimated embedding cost: ~{report.estimate.approximate_tokens:,} tokens, "
            f"${report.estimate.estimated_cost_usd:.4f}"
        )

        if max_cost is not None and report.estimate.estimated_cost_usd > max_cost:
            raise BudgetExceededError(report.estimate, max_cost)
        if dry_run or not chunks:
            return report

        results = await self.embedder.embed_batch([c.text for c in chunks], on_progress=on_progress)
        embedded = []
        for result in results:
            chunk = chunks[result.index]
            chunk.embedding = result.embedding
            embedded.append(chunk)

        report.embedded = len(embedded)
        report.dropped = len(chunks) - len(embedded)
        if report.dropped:
            logger.warning(f"{report.dropped} chunks were dropped during embedding")

        report.upserted = await self.vector_store.upsert_chunks(embedded)
        logger.info(f"Ingestion complete: {report.to_dict()}")
        return report
