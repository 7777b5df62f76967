"""
Tests for document loading and the ingestion pipeline.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.rag.chunker import ChunkConfig, RAGChunker
from src.rag.embedder import CostEstimate, EmbeddingResult
from src.rag.ingestion import (
    BudgetExceededError,
    RAGIngestion,
    document_from_dict,
    load_documents,
)
from src.rag.models import SourceDocument


PARAGRAPHS = "\n\n".join([
    "Alpha paragraph text number 1.",
    "Alpha paragraph text number 2.",
    "Alpha paragraph text number 3.",
])


def make_pipeline(cost=0.01, drop_index=None):
    embedder = MagicMock()
    embedder.estimate_cost.side_effect = lambda texts: CostEstimate(
        characters=sum(len(t) for t in texts),
        approximate_tokens=sum(len(t) for t in texts) // 4,
        estimated_cost_usd=cost,
    )

    async def embed_batch(texts, on_progress=None):
        return [
            EmbeddingResult(text=t, embedding=[0.1, 0.2, 0.3], index=i)
            for i, t in enumerate(texts)
            if i != drop_index
        ]

    embedder.embed_batch = AsyncMock(side_effect=embed_batch)

    store = MagicMock()
    store.upsert_chunks = AsyncMock(side_effect=lambda chunks: len(chunks))

    chunker = RAGChunker(ChunkConfig(min_tokens=10, max_tokens=20, overlap_tokens=5, preserve_context=False))
    return RAGIngestion(embedder, store, chunker=chunker), embedder, store


def make_doc(doc_id="doc-1", text=PARAGRAPHS):
    return SourceDocument(
        id=doc_id, title="Guide", url=f"https://infrastructuretransparency.org/{doc_id}",
        type="Guide", text=text, content_type="narrative",
    )


class TestDocumentLoading:
    """Tests for reading document files."""

    def test_document_from_dict_defaults(self):
        doc = document_from_dict({"content": "Body", "url": "https://x.org/a", "year": "2019"})
        assert doc.id == "https://x.org/a"
        assert doc.title == "https://x.org/a"
        assert doc.type == "Other"
        assert doc.text == "Body"
        assert doc.year == 2019

    def test_document_without_url(self):
        doc = document_from_dict({"text": "Body"}, position=7)
        assert doc.id == "doc-7"
        assert doc.year is None

    def test_json_array(self, tmp_path):
        path = tmp_path / "docs.json"
        path.write_text(json.dumps([{"id": "a", "text": "A"}, {"id": "b", "text": "B"}]))
        assert [d.id for d in load_documents(str(path))] == ["a", "b"]

    def test_json_object_with_documents(self, tmp_path):
        path = tmp_path / "docs.json"
        path.write_text(json.dumps({"documents": [{"id": "a", "text": "A"}]}))
        assert [d.id for d in load_documents(str(path))] == ["a"]

    def test_jsonl(self, tmp_path):
        path = tmp_path / "docs.jsonl"
        path.write_text('{"id": "a", "text": "A"}\n\n{"id": "b", "text": "B"}\n')
        assert [d.id for d in load_documents(str(path))] == ["a", "b"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_documents(str(tmp_path / "nope.json"))

    def test_not_a_list(self, tmp_path):
        path = tmp_path / "docs.json"
        path.write_text('"just a string"')
        with pytest.raises(ValueError):
            load_documents(str(path))


class TestIngestion:
    """Tests for RAGIngestion.ingest."""

    def test_ingest(self):
        pipeline, embedder, store = make_pipeline()

        report = asyncio.run(pipeline.ingest([make_doc()]))

        assert report.documents == 1
        assert report.chunks == 2
        assert report.embedded == 2
        assert report.upserted == 2
        chunks = store.upsert_chunks.await_args.args[0]
        assert all(c.embedding == [0.1, 0.2, 0.3] for c in chunks)

    def test_dropped_chunks_not_upserted(self):
        pipeline, _, store = make_pipeline(drop_index=0)

        report = asyncio.run(pipeline.ingest([make_doc()]))

        assert report.embedded == 1
        assert report.dropped == 1
        assert [c.id for c in store.upsert_chunks.await_args.args[0]] == ["doc-1:1"]

    def test_budget_exceeded(self):
        pipeline, embedder, store = make_pipeline(cost=5.0)
        with pytest.raises(BudgetExceededError) as exc_info:
            asyncio.run(pipeline.ingest([make_doc()], max_cost=1.0))
        assert exc_info.value.max_cost == 1.0
        embedder.embed_batch.assert_not_awaited()
        store.upsert_chunks.assert_not_awaited()

    def test_dry_run(self):
        pipeline, embedder, store = make_pipeline()

        report = asyncio.run(pipeline.ingest([make_doc()], dry_run=True))

        assert report.dry_run is True
        assert report.chunks == 2
        assert report.estimate.estimated_cost_usd == 0.01
        embedder.embed_batch.assert_not_awaited()
        store.upsert_chunks.assert_not_awaited()

    def test_empty_documents_reported(self):
        pipeline, embedder, _ = make_pipeline()

        report = asyncio.run(pipeline.ingest([make_doc("blank", text="   ")]))

        assert report.empty_documents == ["blank"]
        assert report.chunks == 0
        embedder.embed_batch.assert_not_awaited()
