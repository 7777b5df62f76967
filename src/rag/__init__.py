"""
InfraScope RAG Module
=====================

Retrieval pipeline over the infrastructure transparency corpus.

Architecture:
- Content-aware chunking (technical / narrative / mixed)
- OpenAI text-embedding-3-large at a pinned 1536 dimensions
- pgvector for vector storage
- Oversampled candidate pool -> metadata post-filter -> page
"""

from .embedder import RAGEmbedder, EmbeddingError
from .chunker import RAGChunker, ChunkConfig
from .vector_store import VectorStore, VectorSearchError
from .ingestion import RAGIngestion
from .retry import RetryPolicy
from .models import (
    SourceDocument,
    DocumentChunk,
    ScoredChunk,
    SearchFilters,
    SearchPage,
    SearchResponse,
    DimensionMismatchError,
)

__all__ = [
    "RAGEmbedder",
    "EmbeddingError",
    "RAGChunker",
    "ChunkConfig",
    "VectorStore",
    "VectorSearchError",
    "RAGIngestion",
    "RetryPolicy",
    "SourceDocument",
    "DocumentChunk",
    "ScoredChunk",
    "SearchFilters",
    "SearchPage",
    "SearchResponse",
    "DimensionMismatchError",
]
