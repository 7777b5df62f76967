"""
RAG CLI
=======

Command-line interface for knowledge base management.

Usage:
    python -m src.rag.cli init-db                          # Create pgvector schema
    python -m src.rag.cli ingest docs.jsonl --max-cost 2   # Chunk, embed, upsert
    python -m src.rag.cli ingest docs.json --dry-run       # Cost estimate only
    python -m src.rag.cli search "contract disclosure"     # Test search
    python -m src.rag.cli stats                            # Show statistics
"""

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv
load_dotenv()

from src.config import ConfigurationError, load_settings
from src.orchestrator.logging_config import setup_from_settings
from src.rag.embedder import RAGEmbedder
from src.rag.ingestion import BudgetExceededError, RAGIngestion, load_documents
from src.rag.models import SearchFilters
from src.rag.vector_store import VectorSearchError, VectorStore

logger = logging.getLogger(__name__)


async def init_db(settings) -> bool:
    """Initialize the vector table schema."""
    store = VectorStore.from_settings(settings)
    try:
        await store.ensure_schema()
        return True
    finally:
        await store.close()


async def ingest(settings, path: str, max_cost=None, dry_run: bool = False) -> bool:
    """Ingest a document file."""
    documents = load_documents(path)
    embedder = RAGEmbedder.from_settings(settings)
    store = VectorStore.from_settings(settings)

    def progress(completed, total):
        percent = (completed / total * 100) if total else 100.0
        sys.stdout.write(f"\r  Progress: {completed}/{total} ({percent:.1f}%)")
        sys.stdout.flush()

    try:
        report = await RAGIngestion(embedder, store).ingest(
            documents, max_cost=max_cost, dry_run=dry_run, on_progress=progress,
        )
    except BudgetExceededError as e:
        logger.error(str(e))
        return False
    finally:
        await store.close()

    print()
    print("=" * 60)
    print("INGESTION SUMMARY" + (" (dry run)" if dry_run else ""))
    print("=" * 60)
    print(f"  Documents:        {report.documents}")
    print(f"  Chunks:           {report.chunks}")
    print(f"  Embedded:         {report.embedded}")
    print(f"  Dropped:          {report.dropped}")
    print(f"  Upserted:         {report.upserted}")
    print(f"  Approx. tokens:   {report.estimate.approximate_tokens:,}")
    print(f"  Estimated cost:   ${report.estimate.estimated_cost_usd:.4f}")
    return True


async def search(settings, query: str, limit: int = 5, country=None, topic=None) -> bool:
    """Run a raw vector search and print the hits."""
    embedder = RAGEmbedder.from_settings(settings)
    store = VectorStore.from_settings(settings)
    try:
        vector = await embedder.embed_query(query)
        page = await store.search(vector, limit=limit, filters=SearchFilters(topic=topic, country=country))
    except VectorSearchError as e:
        logger.error(f"Search failed: {e}")
        return False
    finally:
        await store.close()

    print(f"\n{'=' * 60}")
    print(f"Query: {query}")
    print(f"Results: {len(page.results)} (more: {page.has_more})")
    print("=" * 60)
    for i, hit in enumerate(page.results, 1):
        print(f"\n[{i}] Score: {hit.score:.3f}")
        print(f"    {hit.title} ({hit.type}, {hit.country or '-'}, {hit.year or 'n.d.'})")
        print(f"    {hit.url}")
        print(f"    {hit.text[:200]}...")
    return True


async def stats(settings) -> bool:
    store = VectorStore.from_settings(settings)
    try:
        health = await store.health()
    finally:
        await store.close()
    print(f"Vector store: {health.get('status')}")
    if "chunks" in health:
        print(f"Chunks: {health['chunks']:,}")
    if "error" in health:
        print(f"Error: {health['error']}")
    return health.get("status") == "connected"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="InfraScope knowledge base CLI")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser("init-db", help="Create the pgvector schema")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest a .json or .jsonl document file")
    ingest_parser.add_argument("path", help="Document file")
    ingest_parser.add_argument("--max-cost", type=float, default=None, help="Abort if estimate exceeds USD")
    ingest_parser.add_argument("--dry-run", action="store_true", help="Only estimate the cost")

    search_parser = subparsers.add_parser("search", help="Test search")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("-k", type=int, default=5, help="Number of results")
    search_parser.add_argument("--country", default=None)
    search_parser.add_argument("--topic", default=None)

    subparsers.add_parser("stats", help="Show statistics")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    settings = load_settings()
    setup_from_settings(settings)

    if not settings.database.url:
        logger.error("DATABASE_URL not set")
        sys.exit(1)
    if args.command in ("ingest", "search") and not settings.openai.api_key:
        logger.error("OPENAI_API_KEY not set")
        sys.exit(1)

    try:
        if args.command == "init-db":
            success = asyncio.run(init_db(settings))
        elif args.command == "ingest":
            success = asyncio.run(ingest(settings, args.path, args.max_cost, args.dry_run))
        elif args.command == "search":
            success = asyncio.run(search(settings, args.query, args.k, args.country, args.topic))
        else:
            success = asyncio.run(stats(settings))
    except ConfigurationError as e:
        logger.error(str(e))
        success = False

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
