"""
RAG Chunker
===========

Splits documents into content-aware chunks for embedding.

Rules:
- Content type (technical / narrative / mixed) picks the target size
- Split by paragraph, re-split oversized paragraphs by sentence
- Carry the last unit forward as overlap
- Prefix the detected section header to every chunk (anti-orphan)
- Stable chunking (same input = same chunks)
"""

import hashlib
import logging
import math
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .models import SourceDocument, DocumentChunk

logger = logging.getLogger(__name__)


CONTENT_TYPES = ("technical", "narrative", "mixed")

# Only the first part of a document is sampled for classification
DETECTION_SAMPLE_CHARS = 2000

TECHNICAL_PATTERNS = [
    re.compile(r"\b(schema|field|type|value|object|array|property|parameter)\b", re.IGNORECASE),
    re.compile(r"\b(function|method|class|interface|API|endpoint)\b", re.IGNORECASE),
    re.compile(r"```|`[^`]+`"),
    re.compile(r"[{}\[\]]"),
    re.compile(r"\b(MUST|SHOULD|MAY|SHALL)\b"),
]

NARRATIVE_PATTERNS = [
    re.compile(r"\b(story|example|case|impact|community|people|project)\b", re.IGNORECASE),
    re.compile(r"[.!?]\s+[A-Z]"),
    re.compile(r"\b(improved|achieved|resulted|demonstrated|benefited)\b", re.IGNORECASE),
]

HEADER_PATTERN = re.compile(r"^(#{1,6}[ \t]+.+|[A-Z][A-Za-z \t]+:)", re.MULTILINE)
PARAGRAPH_SPLIT = re.compile(r"\n\s*\n+")
SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

PARAGRAPH_SEP = "\n\n"
SENTENCE_SEP = " "

# (text, start_char, end_char) in the original document
Unit = Tuple[str, int, int]


@dataclass
class ChunkConfig:
    """Chunking configuration."""
    min_tokens: int = 256
    max_tokens: int = 768
    overlap_tokens: int = 50
    # Approximate characters per token (for estimation)
    chars_per_token: float = 4.0
    preserve_context: bool = True

    def __post_init__(self):
        if self.min_tokens <= 0 or self.max_tokens < self.min_tokens:
            raise ValueError("ChunkConfig requires 0 < min_tokens <= max_tokens")


@dataclass
class TextChunk:
    """A chunk of text with its position metadata."""
    text: str           # header + body, what gets embedded
    body: str           # chunk content without the injected header
    index: int
    total_chunks: int
    start_char: int
    end_char: int
    content_type: str
    token_count: int    # estimate for body
    header: Optional[str] = None
    overlap: Optional[str] = None  # unit carried over from the previous chunk
    content_hash: str = ""


@dataclass
class _Pending:
    units: List[Unit] = field(default_factory=list)
    overlap: Optional[str] = None


class RAGChunker:
    """
    Splits text into adaptively sized, overlapping chunks.

    Preserves context by:
    1. Keeping the section header in each chunk
    2. Carrying the last paragraph or sentence into the next chunk
    3. Respecting paragraph and sentence boundaries
    """

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()

    # =========================================================================
    # CLASSIFICATION
    # =========================================================================

    def detect_content_type(self, text: str) -> str:
        """
        Classify text as technical, narrative or mixed.

        ratio = technical / (narrative + 1); > 2 technical, < 0.5 narrative.
        """
        sample = text[:DETECTION_SAMPLE_CHARS]
        technical = sum(len(p.findall(sample)) for p in TECHNICAL_PATTERNS)
        narrative = sum(len(p.findall(sample)) for p in NARRATIVE_PATTERNS)

        ratio = technical / (narrative + 1)
        if ratio > 2:
            return "technical"
        if ratio < 0.5:
            return "narrative"
        return "mixed"

    def target_tokens(self, content_type: str) -> int:
        """Effective chunk size for a content type."""
        min_tokens = self.config.min_tokens
        max_tokens = self.config.max_tokens
        if content_type == "technical":
            return max(min_tokens, int(max_tokens * 0.4))
        if content_type == "narrative":
            return max_tokens
        return (min_tokens + max_tokens) // 2

    # =========================================================================
    # CHUNKING
    # =========================================================================

    def chunk_text(self, text: str, content_type: str = "auto") -> List[TextChunk]:
        """
        Split text into chunks.

        Args:
            text: Full document text
            content_type: technical | narrative | mixed | auto

        Returns:
            Ordered TextChunk list with contiguous 0-based indices
        """
        if not text or not text.strip():
            return []

        if content_type == "auto":
            content_type = self.detect_content_type(text)
        elif content_type not in CONTENT_TYPES:
            raise ValueError(f"Unknown content type: {content_type}")

        target = self.target_tokens(content_type)
        header = self._extract_header(text) if self.config.preserve_context else None

        groups: List[Tuple[_Pending, str]] = []
        run: List[Unit] = []

        for paragraph in self._split_units(text, 0, PARAGRAPH_SPLIT):
            if self._estimate_tokens(paragraph[0]) > target:
                # Flush the paragraph run, then pack this paragraph by sentence
                if run:
                    groups.extend((g, PARAGRAPH_SEP) for g in self._pack(run, PARAGRAPH_SEP, target))
                    run = []
                sentences = self._split_units(paragraph[0], paragraph[1], SENTENCE_SPLIT)
                groups.extend((g, SENTENCE_SEP) for g in self._pack(sentences, SENTENCE_SEP, target))
            else:
                run.append(paragraph)

        if run:
            groups.extend((g, PARAGRAPH_SEP) for g in self._pack(run, PARAGRAPH_SEP, target))

        chunks = []
        total = len(groups)
        for index, (group, sep) in enumerate(groups):
            body = sep.join(u[0] for u in group.units)
            if group.overlap is not None:
                body = f"{group.overlap}{sep}{body}"
            full_text = f"{header}\n\n{body}" if header else body
            chunks.append(TextChunk(
                text=full_text,
                body=body,
                index=index,
                total_chunks=total,
                start_char=group.units[0][1],
                end_char=group.units[-1][2],
                content_type=content_type,
                token_count=self._estimate_tokens(body),
                header=header,
                overlap=group.overlap,
                content_hash=self._hash_content(full_text),
            ))

        if chunks:
            avg = round(sum(c.token_count for c in chunks) / len(chunks))
            logger.debug(
                f"Chunked {len(text)} chars as {content_type} (target {target} tokens): "
                f"{len(chunks)} chunks, avg {avg} tokens"
            )
        return chunks

    def chunk_document(self, document: SourceDocument) -> List[DocumentChunk]:
        """
        Split a document into storable chunks (without embeddings).

        Args:
            document: SourceDocument with text to chunk

        Returns:
            List of DocumentChunk objects
        """
        if not document.text.strip():
            logger.warning(f"Empty document: {document.title}")
            return []

        pieces = self.chunk_text(document.text, document.content_type)

        result = []
        for piece in pieces:
            metadata = dict(document.metadata)
            metadata.update({
                "content_type": piece.content_type,
                "token_count": piece.token_count,
                "start_char": piece.start_char,
                "end_char": piece.end_char,
            })
            result.append(DocumentChunk(
                id=f"{document.id}:{piece.index}",
                title=document.title,
                url=document.url,
                type=document.type,
                text=piece.text,
                country=document.country,
                year=document.year,
                document_id=document.id,
                chunk_index=piece.index,
                total_chunks=piece.total_chunks,
                content_hash=piece.content_hash,
                metadata=metadata,
            ))

        logger.info(f"Chunked '{document.title}' into {len(result)} chunks")
        return result

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _pack(self, units: List[Unit], sep: str, target: int) -> List[_Pending]:
        """
        Accumulate units until the running estimate would exceed target.

        The last unit of a closed group is carried into the next group when
        overlap is enabled and the carried unit still fits.
        """
        groups = []
        current = _Pending()

        for unit in units:
            candidate = self._joined(current, unit[0], sep)
            if current.units and self._estimate_tokens(candidate) > target:
                groups.append(current)
                carry = current.units[-1][0]
                current = _Pending()
                if self.config.overlap_tokens > 0:
                    with_overlap = f"{carry}{sep}{unit[0]}"
                    if self._estimate_tokens(with_overlap) <= target:
                        current.overlap = carry
            current.units.append(unit)

        if current.units:
            groups.append(current)
        return groups

    def _joined(self, pending: _Pending, text: str, sep: str) -> str:
        parts = [u[0] for u in pending.units] + [text]
        if pending.overlap is not None:
            parts.insert(0, pending.overlap)
        return sep.join(parts)

    def _split_units(self, text: str, base: int, pattern: "re.Pattern") -> List[Unit]:
        """Split on pattern, keeping character offsets into the document."""
        units = []
        cursor = 0
        for piece in pattern.split(text):
            stripped = piece.strip()
            if not stripped:
                continue
            start = text.find(stripped, cursor)
            end = start + len(stripped)
            units.append((stripped, base + start, base + end))
            cursor = end
        return units

    def _extract_header(self, text: str) -> Optional[str]:
        match = HEADER_PATTERN.search(text)
        return match.group(0).strip() if match else None

    def _estimate_tokens(self, text: str) -> int:
        """
        Estimate token count for text.
        """
        return math.ceil(len(text) / self.config.chars_per_token)

    def _hash_content(self, content: str) -> str:
        """
        Generate SHA256 hash of content for deduplication.
        """
        return hashlib.sha256(content.encode('utf-8')).hexdigest()
