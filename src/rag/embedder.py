"""
RAG Embedder
============

Generates embeddings using OpenAI text-embedding-3-large, with the output
dimension pinned to the vector index (1536 by default).

Batch failures degrade instead of aborting:
batch -> retried batch -> per-item calls -> drop the failing item.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Callable

from .models import DEFAULT_DIMENSIONS, DimensionMismatchError, validate_dimension
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Raised when a text cannot be embedded."""

    def __init__(self, message: str, index: Optional[int] = None):
        self.message = message
        self.index = index
        super().__init__(self.message)


@dataclass
class EmbeddingResult:
    """Result of embedding generation, keyed by the caller's index."""
    text: str
    embedding: List[float]
    index: int
    token_count: int = 0


@dataclass
class CostEstimate:
    """Pre-flight cost estimate for a set of texts."""
    characters: int
    approximate_tokens: int
    estimated_cost_usd: float


class RAGEmbedder:
    """
    Generates embeddings using OpenAI text-embedding-3-large.

    Cost: $0.13 per 1M tokens
    Dimensions: pinned (default 1536)
    Max batch: 2048 inputs per request
    """

    MODEL = "text-embedding-3-large"
    DIMENSIONS = DEFAULT_DIMENSIONS
    MAX_BATCH_SIZE = 2048
    PRICE_PER_MILLION_TOKENS = 0.13

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        batch_size: int = 500,
        batch_delay_ms: int = 1000,
        item_delay_ms: int = 200,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        client=None,
    ):
        self.api_key = api_key
        if not self.api_key and client is None:
            raise ValueError("OpenAI API key required for embeddings")

        self.model = model or self.MODEL
        self.dimensions = dimensions or self.DIMENSIONS
        self.batch_size = max(1, min(batch_size, self.MAX_BATCH_SIZE))
        self.batch_delay_ms = batch_delay_ms
        self.item_delay_ms = item_delay_ms
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()

        self._client = client
        self._total_tokens = 0
        self._total_requests = 0
        self._dropped = 0

    @classmethod
    def from_settings(cls, settings, client=None) -> "RAGEmbedder":
        cfg = settings.openai
        return cls(
            api_key=cfg.api_key,
            model=cfg.embedding_model,
            dimensions=cfg.dimensions,
            batch_size=cfg.batch_size,
            batch_delay_ms=cfg.batch_delay_ms,
            item_delay_ms=cfg.item_delay_ms,
            timeout=cfg.request_timeout,
            retry_policy=RetryPolicy.from_config(settings.retry),
            client=client,
        )

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    async def _create(self, inputs):
        response = await self.client.embeddings.create(
            model=self.model,
            input=inputs,
            dimensions=self.dimensions,
        )
        self._total_requests += 1
        usage = getattr(response, "usage", None)
        if usage is not None:
            self._total_tokens += usage.total_tokens or 0
        return response

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for a single text.

        Raises:
            ValueError: on empty text
            DimensionMismatchError: if the provider returns the wrong size
        """
        if not text.strip():
            raise ValueError("Cannot embed empty text")

        response = await self.retry_policy.run(self._create, text, label="embed")
        embedding = response.data[0].embedding
        validate_dimension(embedding, self.dimensions)

        usage = getattr(response, "usage", None)
        return EmbeddingResult(
            text=text,
            embedding=embedding,
            index=0,
            token_count=usage.total_tokens if usage is not None else 0,
        )

    async def embed_query(self, query: str) -> List[float]:
        """
        Embed a search query.

        Same as embed() but returns just the vector for convenience.
        """
        result = await self.embed(query)
        return result.embedding

    async def embed_batch(
        self,
        texts: List[str],
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> List[EmbeddingResult]:
        """
        Generate embeddings for multiple texts.

        Args:
            texts: Texts to embed
            on_progress: Optional callback(completed, total)

        Returns:
            EmbeddingResult list ordered by original index; failed items
            are absent
        """
        results: List[EmbeddingResult] = []
        total_batches = math.ceil(len(texts) / self.batch_size) if texts else 0

        logger.info(
            f"Embedding {len(texts)} texts in {total_batches} batches "
            f"({self.model}, {self.dimensions} dims)"
        )

        for start in range(0, len(texts), self.batch_size):
            batch_number = start // self.batch_size + 1
            indexed = [
                (start + offset, text)
                for offset, text in enumerate(texts[start:start + self.batch_size])
            ]

            empty = [i for i, t in indexed if not t.strip()]
            for i in empty:
                logger.warning(f"Skipping empty text at index {i}")
            indexed = [(i, t) for i, t in indexed if t.strip()]
            if not indexed:
                continue

            try:
                response = await self.retry_policy.run(
                    self._create, [t for _, t in indexed], label=f"embedding batch {batch_number}"
                )
                per_item_tokens = 0
                usage = getattr(response, "usage", None)
                if usage is not None and indexed:
                    per_item_tokens = (usage.total_tokens or 0) // len(indexed)

                for (index, text), item in zip(indexed, response.data):
                    result = self._accept(index, text, item.embedding, per_item_tokens)
                    if result is not None:
                        results.append(result)

            except Exception as e:
                logger.error(f"Batch {batch_number}/{total_batches} failed after retries: {e}")
                logger.info(f"Retrying batch {batch_number} with individual requests")
                results.extend(await self._embed_individually(indexed))

            if on_progress:
                on_progress(len(results), len(texts))

            if start + self.batch_size < len(texts) and self.batch_delay_ms > 0:
                await asyncio.sleep(self.batch_delay_ms / 1000)

        results.sort(key=lambda r: r.index)
        logger.info(f"Generated {len(results)}/{len(texts)} embeddings")
        return results

    async def _embed_individually(self, indexed) -> List[EmbeddingResult]:
        """Per-item fallback for a failed batch. Failing items are dropped."""
        results = []
        for index, text in indexed:
            try:
                response = await self._create(text)
                usage = getattr(response, "usage", None)
                result = self._accept(
                    index, text, response.data[0].embedding,
                    usage.total_tokens if usage is not None else 0,
                )
                if result is not None:
                    results.append(result)
            except Exception as e:
                self._dropped += 1
                logger.warning(f"Dropping text at index {index}: {e}")

            if self.item_delay_ms > 0:
                await asyncio.sleep(self.item_delay_ms / 1000)
        return results

    def _accept(self, index: int, text: str, embedding, token_count: int) -> Optional[EmbeddingResult]:
        try:
            validate_dimension(embedding, self.dimensions)
        except DimensionMismatchError as e:
            self._dropped += 1
            logger.warning(f"Dropping text at index {index}: {e}")
            return None
        return EmbeddingResult(text=text, embedding=embedding, index=index, token_count=token_count)

    # =========================================================================
    # COST
    # =========================================================================

    def estimate_cost(self, texts: List[str]) -> CostEstimate:
        """
        Estimate cost before running an expensive batch.

        characters -> tokens (chars / 4) -> USD at the model price.
        """
        characters = sum(len(t) for t in texts)
        tokens = math.ceil(characters / 4)
        return CostEstimate(
            characters=characters,
            approximate_tokens=tokens,
            estimated_cost_usd=(tokens / 1_000_000) * self.PRICE_PER_MILLION_TOKENS,
        )

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def total_requests(self) -> int:
        return self._total_requests

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def estimated_cost(self) -> float:
        """Estimated cost in USD."""
        return (self._total_tokens / 1_000_000) * self.PRICE_PER_MILLION_TOKENS
