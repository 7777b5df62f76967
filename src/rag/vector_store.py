"""
Vector Store
============

pgvector similarity search with metadata filtering under pagination.

Pipeline per query:
1. Similarity stage: ORDER BY embedding <=> query, LIMIT candidate pool
2. Projection to the slim result shape + score (1 - cosine distance)
3. Post-filter on metadata (type, country, year)
4. Sort by score descending, skip offset, take limit + 1

The candidate pool is oversampled (x10) whenever filters are present, capped
at a hard scan ceiling. Without oversampling, filtered pages under-fill and
report has_more incorrectly.
"""

import asyncio
import logging
from typing import List, Optional, Dict, Any, Callable, Iterable

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2 import sql
from psycopg2.extras import RealDictCursor, Json, execute_values

from .models import (
    DEFAULT_DIMENSIONS,
    DocumentChunk,
    ScoredChunk,
    SearchFilters,
    SearchPage,
)
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


DEFAULT_SCAN_CAP = 1000
DEFAULT_FILTER_MULTIPLIER = 10


class VectorSearchError(Exception):
    """Raised when the document store cannot serve a similarity search."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.message = message
        self.cause = cause
        super().__init__(self.message)


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError))


def candidate_pool_size(
    limit: int,
    offset: int,
    has_filters: bool,
    multiplier: int = DEFAULT_FILTER_MULTIPLIER,
    scan_cap: int = DEFAULT_SCAN_CAP,
) -> int:
    """
    Number of candidates the similarity stage must return.

    offset + limit + 1 rows are needed to decide has_more; under filters the
    pool is scaled by the multiplier to absorb filter attrition.
    """
    base = max(0, offset) + max(1, limit) + 1
    if has_filters:
        base *= multiplier
    return min(base, scan_cap)


def paginate(
    rows: Iterable[Dict[str, Any]],
    filters: Optional[SearchFilters],
    limit: int,
    offset: int,
) -> SearchPage:
    """
    Post-filter, sort, skip and trim a candidate set into one page.

    Args:
        rows: Projected candidates with a `score` key
        filters: Filters to apply, or None when already applied upstream
        limit: Page size
        offset: Rows to skip

    Returns:
        SearchPage with at most `limit` results
    """
    limit = max(1, limit)
    offset = max(0, offset)

    matched = [r for r in rows if filters is None or filters.matches(r)]
    matched.sort(key=lambda r: float(r.get("score") or 0.0), reverse=True)

    window = matched[offset:offset + limit + 1]
    has_more = len(window) > limit
    return SearchPage(
        results=[ScoredChunk.from_row(r) for r in window[:limit]],
        has_more=has_more,
    )


def _vector_literal(vector: List[float]) -> str:
    return "[" + ",".join(repr(float(v)) for v in vector) + "]"


class VectorStore:
    """
    Similarity search over the chunk table.

    The connection pool is created lazily on first use (or by init()); a
    single asyncio.Lock guards creation so concurrent callers never race to
    create duplicate pools. Blocking psycopg2 calls run in worker threads.
    """

    def __init__(
        self,
        dsn: str,
        table: str = "doc_chunks",
        dimensions: int = DEFAULT_DIMENSIONS,
        scan_cap: int = DEFAULT_SCAN_CAP,
        filter_multiplier: int = DEFAULT_FILTER_MULTIPLIER,
        native_filter_pushdown: bool = False,
        pool_min_size: int = 1,
        pool_max_size: int = 10,
        statement_timeout_ms: int = 10000,
        retry_policy: Optional[RetryPolicy] = None,
        pool_factory: Optional[Callable[[], Any]] = None,
    ):
        if not dsn and pool_factory is None:
            raise ValueError("DATABASE_URL required for vector store")

        self.dsn = dsn
        self.table = table
        self.dimensions = dimensions
        self.scan_cap = scan_cap
        self.filter_multiplier = filter_multiplier
        self.native_filter_pushdown = native_filter_pushdown
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self.statement_timeout_ms = statement_timeout_ms
        self.retry_policy = retry_policy or RetryPolicy(is_retryable=_is_transient)

        self._pool_factory = pool_factory or self._create_pool
        self._pool = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, pool_factory=None) -> "VectorStore":
        db = settings.database
        return cls(
            dsn=db.url,
            table=db.table,
            dimensions=settings.openai.dimensions,
            scan_cap=db.scan_cap,
            filter_multiplier=db.filter_multiplier,
            native_filter_pushdown=db.native_filter_pushdown,
            pool_min_size=db.pool_min_size,
            pool_max_size=db.pool_max_size,
            statement_timeout_ms=db.statement_timeout_ms,
            retry_policy=RetryPolicy.from_config(settings.retry, is_retryable=_is_transient),
            pool_factory=pool_factory,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def _create_pool(self):
        return pg_pool.ThreadedConnectionPool(
            self.pool_min_size,
            self.pool_max_size,
            self.dsn,
            options=f"-c statement_timeout={self.statement_timeout_ms}",
        )

    async def init(self):
        """Create the connection pool once, even under concurrent callers."""
        if self._pool is not None:
            return self._pool
        async with self._lock:
            if self._pool is None:
                self._pool = await asyncio.to_thread(self._pool_factory)
                logger.info(f"Vector store pool created (table={self.table})")
        return self._pool

    async def close(self):
        async with self._lock:
            if self._pool is not None:
                await asyncio.to_thread(self._pool.closeall)
                self._pool = None
                logger.info("Vector store pool closed")

    def _run(self, func, *args):
        """Borrow a pooled connection for a blocking call."""
        conn = self._pool.getconn()
        try:
            return func(conn, *args)
        finally:
            self._pool.putconn(conn)

    # =========================================================================
    # SEARCH
    # =========================================================================

    def candidate_pool_size(self, limit: int, offset: int, has_filters: bool) -> int:
        multiplier = 1 if self.native_filter_pushdown else self.filter_multiplier
        return candidate_pool_size(limit, offset, has_filters, multiplier, self.scan_cap)

    def build_search_query(self, pool_size: int, filters: Optional[SearchFilters], vector: str):
        """
        Compose the similarity-stage statement.

        Returns:
            Tuple of (sql.Composed, params)
        """
        where = sql.SQL("")
        where_params: List[Any] = []
        if filters is not None and not filters.is_empty():
            fragment, where_params = filters.to_sql()
            where = sql.SQL(" WHERE ") + sql.SQL(fragment)

        query = sql.SQL(
            "SELECT id, title, url, type, country, year, text, "
            "1 - (embedding <=> %s::vector) AS score "
            "FROM {table}{where} "
            "ORDER BY embedding <=> %s::vector "
            "LIMIT %s"
        ).format(table=sql.Identifier(self.table), where=where)

        params = [vector, *where_params, vector, pool_size]
        return query, params

    def _search_sync(self, conn, query, params) -> List[Dict[str, Any]]:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            return [dict(row) for row in cur.fetchall()]

    async def search(
        self,
        query_vector: List[float],
        limit: int = 10,
        offset: int = 0,
        filters: Optional[SearchFilters] = None,
    ) -> SearchPage:
        """
        Run a paginated similarity search.

        Args:
            query_vector: Query embedding (pinned dimension)
            limit: Page size
            offset: Rows to skip
            filters: Optional metadata filters

        Returns:
            SearchPage with has_more

        Raises:
            VectorSearchError: on store failure or a wrong-sized query vector
        """
        if len(query_vector) != self.dimensions:
            raise VectorSearchError(
                f"Query vector has {len(query_vector)} dimensions, index expects {self.dimensions}"
            )

        limit = max(1, limit)
        offset = max(0, offset)
        has_filters = filters is not None and not filters.is_empty()
        pool_size = self.candidate_pool_size(limit, offset, has_filters)

        pushed = filters if (has_filters and self.native_filter_pushdown) else None
        query, params = self.build_search_query(pool_size, pushed, _vector_literal(query_vector))

        try:
            await self.init()
            rows = await self.retry_policy.run(
                asyncio.to_thread, self._run, self._search_sync, query, params,
                label="vector search",
            )
        except psycopg2.Error as e:
            logger.error(f"Vector search failed: {e}")
            raise VectorSearchError("Vector search failed", cause=e)

        post_filters = filters if (has_filters and pushed is None) else None
        page = paginate(rows, post_filters, limit, offset)

        logger.info(
            f"Vector search: pool={pool_size} candidates={len(rows)} "
            f"returned={len(page.results)} has_more={page.has_more}",
            extra={"stage": "vector_search"},
        )
        return page

    # =========================================================================
    # WRITE
    # =========================================================================

    def _upsert_sync(self, conn, rows) -> int:
        statement = sql.SQL("""
            INSERT INTO {table} (
                id, document_id, chunk_index, total_chunks, title, url, type,
                country, year, text, content_hash, metadata, schema_version, embedding
            ) VALUES %s
            ON CONFLICT (id) DO UPDATE SET
                title = EXCLUDED.title,
                url = EXCLUDED.url,
                type = EXCLUDED.type,
                country = EXCLUDED.country,
                year = EXCLUDED.year,
                text = EXCLUDED.text,
                content_hash = EXCLUDED.content_hash,
                metadata = EXCLUDED.metadata,
                schema_version = EXCLUDED.schema_version,
                embedding = EXCLUDED.embedding,
                updated_at = NOW()
        """).format(table=sql.Identifier(self.table))

        with conn.cursor() as cur:
            execute_values(
                cur,
                statement.as_string(conn),
                rows,
                template="(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::vector)",
            )
        conn.commit()
        return len(rows)

    async def upsert_chunks(self, chunks: List[DocumentChunk]) -> int:
        """
        Insert or update chunks.

        Every embedding is validated against the pinned dimension before
        anything is written.

        Raises:
            DimensionMismatchError: if any chunk has a wrong-sized vector
        """
        for chunk in chunks:
            chunk.validate_dimension(self.dimensions)
        if not chunks:
            return 0

        rows = [
            (
                c.id, c.document_id, c.chunk_index, c.total_chunks, c.title, c.url, c.type,
                c.country, c.year, c.text, c.content_hash, Json(c.metadata),
                DocumentChunk.SCHEMA_VERSION, _vector_literal(c.embedding),
            )
            for c in chunks
        ]

        await self.init()
        written = await asyncio.to_thread(self._run, self._upsert_sync, rows)
        logger.info(f"Upserted {written} chunks into {self.table}")
        return written

    def _ensure_schema_sync(self, conn) -> None:
        with conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
            cur.execute(sql.SQL("""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    document_id TEXT,
                    chunk_index INTEGER NOT NULL DEFAULT 0,
                    total_chunks INTEGER NOT NULL DEFAULT 1,
                    title TEXT NOT NULL,
                    url TEXT NOT NULL,
                    type TEXT NOT NULL,
                    country TEXT,
                    year INTEGER,
                    text TEXT NOT NULL,
                    content_hash TEXT,
                    metadata JSONB NOT NULL DEFAULT '{{}}',
                    schema_version INTEGER NOT NULL,
                    embedding vector({dims}) NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """).format(table=sql.Identifier(self.table), dims=sql.Literal(self.dimensions)))
            cur.execute(sql.SQL(
                "CREATE INDEX IF NOT EXISTS {index} ON {table} "
                "USING hnsw (embedding vector_cosine_ops)"
            ).format(
                index=sql.Identifier(f"{self.table}_embedding_idx"),
                table=sql.Identifier(self.table),
            ))
        conn.commit()

    async def ensure_schema(self) -> None:
        """Create the pgvector extension, chunk table and HNSW index."""
        await self.init()
        await asyncio.to_thread(self._run, self._ensure_schema_sync)
        logger.info(f"Schema ready: {self.table} vector({self.dimensions})")

    def _health_sync(self, conn) -> Dict[str, Any]:
        with conn.cursor() as cur:
            cur.execute(sql.SQL("SELECT COUNT(*) FROM {table}").format(table=sql.Identifier(self.table)))
            count = cur.fetchone()[0]
        return {"status": "connected", "chunks": count}

    async def health(self) -> Dict[str, Any]:
        """Non-raising health probe."""
        try:
            await self.init()
            return await asyncio.to_thread(self._run, self._health_sync)
        except Exception as e:
            logger.warning(f"Vector store health check failed: {e}")
            return {"status": "disconnected", "error": str(e)}
