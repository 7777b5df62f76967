"""
Tests for vector search pagination, filters and the pgvector store.

The psycopg2 pool is replaced through `pool_factory`; no database is used.
"""

import asyncio
from unittest.mock import MagicMock

import psycopg2
import pytest

from src.rag.models import (
    DimensionMismatchError,
    DocumentChunk,
    QuerySignature,
    SearchFilters,
)
from src.rag.retry import NO_RETRY
from src.rag.vector_store import (
    VectorSearchError,
    VectorStore,
    candidate_pool_size,
    paginate,
)


def make_rows(count, **overrides):
    rows = []
    for i in range(count):
        row = {
            "id": f"chunk-{i}",
            "title": f"Doc {i}",
            "url": f"https://infrastructuretransparency.org/doc-{i}",
            "type": "Guide",
            "country": "Uganda",
            "year": 2020,
            "text": f"Text {i}",
            "score": 1.0 - i * 0.01,
        }
        row.update(overrides)
        rows.append(row)
    return rows


def make_store(rows=None, dimensions=3, **kwargs):
    pool = MagicMock()
    conn = pool.getconn.return_value
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.fetchall.return_value = rows or []
    store = VectorStore(
        dsn=None,
        dimensions=dimensions,
        retry_policy=NO_RETRY,
        pool_factory=lambda: pool,
        **kwargs,
    )
    return store, pool, cursor


class TestCandidatePool:
    """Tests for oversampling arithmetic."""

    def test_without_filters(self):
        assert candidate_pool_size(10, 0, has_filters=False) == 11
        assert candidate_pool_size(10, 20, has_filters=False) == 31

    def test_with_filters_oversampled(self):
        assert candidate_pool_size(10, 0, has_filters=True) == 110

    def test_capped_at_scan_limit(self):
        assert candidate_pool_size(10, 990, has_filters=True) == 1000
        assert candidate_pool_size(10, 0, has_filters=True, scan_cap=50) == 50

    def test_pushdown_disables_multiplier(self):
        store, _, _ = make_store(native_filter_pushdown=True)
        assert store.candidate_pool_size(10, 0, has_filters=True) == 11


class TestPaginate:
    """Tests for post-filter + page slicing."""

    def test_first_page_has_more(self):
        page = paginate(make_rows(25), None, limit=10, offset=0)
        assert len(page.results) == 10
        assert page.has_more is True

    def test_last_partial_page(self):
        page = paginate(make_rows(25), None, limit=10, offset=20)
        assert len(page.results) == 5
        assert page.has_more is False

    def test_exact_fill_has_no_more(self):
        """A page that exactly exhausts the results reports has_more=False."""
        page = paginate(make_rows(20), None, limit=10, offset=10)
        assert len(page.results) == 10
        assert page.has_more is False

    def test_sorted_by_score(self):
        rows = make_rows(3)
        rows[0]["score"], rows[2]["score"] = 0.1, 0.9
        page = paginate(rows, None, limit=10, offset=0)
        scores = [r.score for r in page.results]
        assert scores == sorted(scores, reverse=True)

    def test_filters_applied_before_paging(self):
        rows = make_rows(10) + make_rows(10, country="Kenya")
        for i, row in enumerate(rows):
            row["id"] = f"chunk-{i}"
        page = paginate(rows, SearchFilters(country="Kenya"), limit=5, offset=0)

        assert len(page.results) == 5
        assert all(r.country == "Kenya" for r in page.results)
        assert page.has_more is True

    def test_pages_do_not_overlap(self):
        rows = make_rows(30)
        first = paginate(rows, None, limit=10, offset=0)
        second = paginate(rows, None, limit=10, offset=10)
        assert not {r.id for r in first.results} & {r.id for r in second.results}


class TestSearchFilters:
    """Tests for filter matching and SQL rendering."""

    def test_exact_year_wins_over_range(self):
        filters = SearchFilters(year=2019, year_from=2015, year_to=2020)
        assert filters.year_from is None
        assert filters.year_to is None
        assert filters.matches({"year": 2019})
        assert not filters.matches({"year": 2018})

    def test_year_range(self):
        filters = SearchFilters(year_from=2018, year_to=2020)
        assert filters.matches({"year": 2018})
        assert filters.matches({"year": 2020})
        assert not filters.matches({"year": 2021})
        assert not filters.matches({"year": None})

    def test_topic_matches_type_column(self):
        filters = SearchFilters(topic="Manual")
        assert filters.matches({"type": "Manual"})
        assert not filters.matches({"type": "Guide"})

    def test_is_empty(self):
        assert SearchFilters().is_empty()
        assert SearchFilters(topic="").is_empty()
        assert not SearchFilters(country="Uganda").is_empty()

    def test_to_sql(self):
        fragment, params = SearchFilters(topic="Guide", country="Uganda", year_from=2018).to_sql()
        assert fragment == "type = %s AND country = %s AND year >= %s"
        assert params == ["Guide", "Uganda", 2018]


class TestQuerySignature:
    """Tests for cache key determinism."""

    def test_same_query_same_key(self):
        a = QuerySignature("Contract  Disclosure", SearchFilters(country="Uganda"))
        b = QuerySignature("contract disclosure", SearchFilters(country="Uganda"))
        assert a.cache_key() == b.cache_key()

    def test_filters_and_page_change_key(self):
        base = QuerySignature("disclosure")
        assert base.cache_key() != QuerySignature("disclosure", SearchFilters(year=2020)).cache_key()
        assert base.cache_key() != QuerySignature("disclosure", page=2).cache_key()
        assert base.cache_key() != QuerySignature("disclosure", mode="intelligent-fast").cache_key()

    def test_key_is_prefixed_by_mode(self):
        assert QuerySignature("disclosure").cache_key().startswith("search:")


class TestVectorStoreSearch:
    """Tests for VectorStore.search against a mocked pool."""

    def test_requires_dsn_or_factory(self):
        with pytest.raises(ValueError):
            VectorStore(dsn=None)

    def test_search_oversamples_and_post_filters(self):
        rows = make_rows(5) + make_rows(5, country="Kenya")
        for i, row in enumerate(rows):
            row["id"] = f"chunk-{i}"
        store, pool, cursor = make_store(rows)

        page = asyncio.run(store.search([0.1, 0.2, 0.3], limit=3, filters=SearchFilters(country="Kenya")))

        params = cursor.execute.call_args[0][1]
        assert params[-1] == 40  # (0 + 3 + 1) * 10
        assert params[0] == params[1] == "[0.1,0.2,0.3]"
        assert len(page.results) == 3
        assert all(r.country == "Kenya" for r in page.results)
        assert page.has_more is True
        pool.putconn.assert_called_once()

    def test_search_without_filters(self):
        store, _, cursor = make_store(make_rows(2))

        page = asyncio.run(store.search([0.1, 0.2, 0.3], limit=10))

        assert cursor.execute.call_args[0][1][-1] == 11
        assert len(page.results) == 2
        assert page.has_more is False

    def test_filtered_under_fill_has_no_more(self):
        """Filters matching fewer rows than the page return exactly those rows."""
        rows = make_rows(5) + make_rows(2, country="Kenya")
        for i, row in enumerate(rows):
            row["id"] = f"chunk-{i}"
        store, _, cursor = make_store(rows)

        page = asyncio.run(store.search([0.1, 0.2, 0.3], limit=10, filters=SearchFilters(country="Kenya")))

        assert cursor.execute.call_args[0][1][-1] == 110
        assert len(page.results) == 2
        assert page.has_more is False

    def test_sparse_year_matches_found_beyond_default_pool(self):
        """Three 2019 documents ranked past the unfiltered window are all returned."""
        rows = make_rows(40)
        for i in (15, 27, 39):
            rows[i]["year"] = 2019
        store, _, cursor = make_store(rows)

        page = asyncio.run(store.search([0.1, 0.2, 0.3], limit=10, filters=SearchFilters(year=2019)))

        pool_size = cursor.execute.call_args[0][1][-1]
        assert pool_size == 110
        assert pool_size > candidate_pool_size(10, 0, has_filters=False)
        assert [r.id for r in page.results] == ["chunk-15", "chunk-27", "chunk-39"]
        assert page.has_more is False

    def test_pushdown_sends_filters_to_sql(self):
        store, _, cursor = make_store(make_rows(2, country="Kenya"), native_filter_pushdown=True)

        asyncio.run(store.search([0.1, 0.2, 0.3], limit=10, filters=SearchFilters(country="Kenya")))

        params = cursor.execute.call_args[0][1]
        assert params[1] == "Kenya"
        assert params[-1] == 11

    def test_wrong_query_dimension(self):
        store, _, cursor = make_store()
        with pytest.raises(VectorSearchError):
            asyncio.run(store.search([0.1, 0.2]))
        cursor.execute.assert_not_called()

    def test_database_error_wrapped(self):
        store, _, cursor = make_store()
        cursor.execute.side_effect = psycopg2.OperationalError("connection lost")

        with pytest.raises(VectorSearchError) as exc_info:
            asyncio.run(store.search([0.1, 0.2, 0.3]))
        assert isinstance(exc_info.value.cause, psycopg2.OperationalError)

    def test_pool_creation_error_wrapped(self):
        def broken():
            raise psycopg2.OperationalError("could not connect")

        store = VectorStore(dsn=None, dimensions=3, retry_policy=NO_RETRY, pool_factory=broken)

        with pytest.raises(VectorSearchError) as exc_info:
            asyncio.run(store.search([0.1, 0.2, 0.3]))
        assert isinstance(exc_info.value.cause, psycopg2.OperationalError)

    def test_pool_created_once(self):
        calls = []
        pool = MagicMock()

        def factory():
            calls.append(1)
            return pool

        store = VectorStore(dsn=None, pool_factory=factory)

        async def init_many():
            await asyncio.gather(*(store.init() for _ in range(5)))

        asyncio.run(init_many())
        assert len(calls) == 1


class TestVectorStoreWrite:
    """Tests for upsert validation and health."""

    def test_upsert_rejects_wrong_dimension(self):
        store, pool, _ = make_store()
        chunk = DocumentChunk(
            id="doc:0", title="T", url="u", type="Guide", text="text", embedding=[0.1, 0.2],
        )
        with pytest.raises(DimensionMismatchError):
            asyncio.run(store.upsert_chunks([chunk]))
        pool.getconn.assert_not_called()

    def test_upsert_nothing(self):
        store, pool, _ = make_store()
        assert asyncio.run(store.upsert_chunks([])) == 0
        pool.getconn.assert_not_called()

    def test_health_connected(self):
        store, _, cursor = make_store()
        cursor.fetchone.return_value = (42,)
        assert asyncio.run(store.health()) == {"status": "connected", "chunks": 42}

    def test_health_disconnected(self):
        def broken():
            raise psycopg2.OperationalError("refused")

        store = VectorStore(dsn=None, pool_factory=broken)
        health = asyncio.run(store.health())
        assert health["status"] == "disconnected"
        assert "refused" in health["error"]
