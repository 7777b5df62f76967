"""
Tests for the living context engine.
"""

import asyncio
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import requests

from src.ai.living_context import (
    LivingContextEngine,
    detect_temporal_intent,
    recency_label,
)
from src.ai.llm_client import LLMError
from src.rag.models import ScoredChunk
from src.rag.retry import NO_RETRY
from src.search.external_search import ExaSearchClient, ExternalResult, ExternalSearchError


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

INTERNAL = [
    ScoredChunk(
        id=f"doc-{i}:0",
        title=f"CoST Guide {i}",
        url=f"https://infrastructuretransparency.org/guide-{i}",
        type="Guide",
        text="Disclosure guidance.",
        score=0.9 - i * 0.1,
        year=2020,
    )
    for i in range(4)
]

EXTERNAL = [
    ExternalResult(
        title="Procurement reform news",
        url="https://worldbank.org/news/reform",
        published_date="2026-01-10",
        text="Governments are adopting open contracting.",
    ),
]


def scripted_llm(content=None, error=None):
    llm = MagicMock()
    if error is not None:
        llm.generate = AsyncMock(side_effect=error)
    else:
        llm.generate = AsyncMock(return_value=SimpleNamespace(content=content))
    return llm


def make_engine(llm, external_client=None):
    return LivingContextEngine(llm, external_client=external_client, now=lambda: NOW)


class TestTemporalIntent:
    """Tests for query -> time window detection."""

    def test_explicit_year(self):
        hint = detect_temporal_intent("road projects in 2024")
        assert (hint.date_from, hint.date_to) == ("2024-01", "2024-12")

    def test_old_year_ignored(self):
        assert detect_temporal_intent("projects from 2019") is None

    def test_recent_words(self):
        assert detect_temporal_intent("latest disclosure rules").preset == "lastQuarter"
        assert detect_temporal_intent("current practice").preset == "lastQuarter"

    def test_emerging(self):
        assert detect_temporal_intent("emerging risks").preset == "lastMonth"

    def test_no_intent(self):
        assert detect_temporal_intent("assurance process") is None


class TestRecencyLabel:
    """Tests for human-readable recency."""

    def test_labels(self):
        assert recency_label("2026-01-15", NOW) == "today"
        assert recency_label("2026-01-14", NOW) == "yesterday"
        assert recency_label("2026-01-10", NOW) == "5 days ago"
        assert recency_label("2025-12-25", NOW) == "3 weeks ago"
        assert recency_label("2025-10-15", NOW) == "3 months ago"
        assert recency_label("2024-01-15", NOW) == "2 years ago"

    def test_iso_with_zulu(self):
        assert recency_label("2026-01-15T08:00:00Z", NOW) == "today"

    def test_unparseable_or_future(self):
        assert recency_label(None, NOW) is None
        assert recency_label("last spring", NOW) is None
        assert recency_label("2026-02-01", NOW) is None


class TestBuild:
    """Tests for LivingContextEngine.build."""

    def test_untraceable_references_dropped(self):
        payload = {
            "headline": "Disclosure is spreading",
            "synthesis": "Internal guidance is reinforced by recent reforms.",
            "internalHighlights": [
                {"title": "CoST Guide 0", "url": INTERNAL[0].url},
                {"title": "Invented", "url": "https://made-up.org/x"},
            ],
            "externalInsights": [
                {"url": EXTERNAL[0].url, "summary": "Reform adopted.", "stance": "supports"},
                {"url": "https://made-up.org/y", "summary": "Fake", "stance": "supports"},
                {"url": EXTERNAL[0].url, "summary": "Bad stance", "stance": "neutral"},
            ],
            "freshnessSignals": [
                {"description": "New reforms", "emphasis": "emerging", "sourceType": "external",
                 "references": [{"url": EXTERNAL[0].url}, {"url": "https://made-up.org/z"}]},
                {"description": "Unknown", "emphasis": "trending", "sourceType": "external"},
            ],
            "contradictions": [
                {"theme": "Timing", "internalPosition": "Annual", "externalPosition": "Real-time",
                 "severity": "medium", "references": [{"url": INTERNAL[1].url}]},
                {"theme": "Scope", "severity": "critical"},
            ],
        }
        engine = make_engine(scripted_llm(json.dumps(payload)))

        result = asyncio.run(engine.build("disclosure", INTERNAL, external_results=EXTERNAL))
        summary = result.summary

        assert summary.is_fallback is False
        assert [c.url for c in summary.internal_highlights] == [INTERNAL[0].url]
        assert len(summary.external_insights) == 1
        assert summary.external_insights[0].recency_label == "5 days ago"
        assert summary.external_insights[0].title == "Procurement reform news"
        assert len(summary.freshness_signals) == 1
        assert [c.url for c in summary.freshness_signals[0].references] == [EXTERNAL[0].url]
        assert [c.severity for c in summary.contradictions] == ["medium"]
        assert summary.contradictions[0].references[0].title == "CoST Guide 1"

    def test_malformed_output_falls_back(self):
        engine = make_engine(scripted_llm("Sorry, I can't produce JSON."))

        result = asyncio.run(engine.build("disclosure", INTERNAL, external_results=EXTERNAL))
        summary = result.summary

        assert summary.is_fallback is True
        assert summary.headline == 'Hybrid knowledge check for "disclosure"'
        assert len(summary.internal_highlights) == 3
        assert summary.external_insights[0].stance == "expands"
        assert summary.external_insights[0].recency_label == "5 days ago"

    def test_model_failure_falls_back(self):
        engine = make_engine(scripted_llm(error=LLMError("timeout")))
        result = asyncio.run(engine.build("disclosure", INTERNAL, external_results=[]))
        assert result.summary.is_fallback is True
        assert result.summary.external_insights == []

    def test_missing_headline_falls_back(self):
        engine = make_engine(scripted_llm('{"synthesis": "only synthesis"}'))
        result = asyncio.run(engine.build("disclosure", INTERNAL, external_results=[]))
        assert result.summary.is_fallback is True

    def test_external_search_failure_degrades(self):
        client = MagicMock()
        client.enabled = True
        client.search = AsyncMock(side_effect=ExternalSearchError("quota", status_code=429))
        llm = scripted_llm('{"headline": "H", "synthesis": "S"}')
        engine = make_engine(llm, external_client=client)

        result = asyncio.run(engine.build("latest disclosure rules", INTERNAL))

        assert result.external_results == []
        assert result.temporal.preset == "lastQuarter"
        assert result.summary.headline == "H"
        llm.generate.assert_awaited_once()

    def test_temporal_hint_passed_to_search(self):
        client = MagicMock()
        client.enabled = True
        client.search = AsyncMock(return_value=EXTERNAL)
        engine = make_engine(scripted_llm('{"headline": "H", "synthesis": "S"}'), external_client=client)

        result = asyncio.run(engine.build("emerging risks", INTERNAL))

        kwargs = client.search.await_args.kwargs
        assert kwargs["temporal"].preset == "lastMonth"
        assert kwargs["sort_by"] == "recent"
        assert result.external_results == EXTERNAL

    def test_payload_serialization(self):
        engine = make_engine(scripted_llm("not json"))
        result = asyncio.run(engine.build("disclosure", INTERNAL[:1], external_results=[]))
        data = result.to_dict()
        assert data["summary"]["isFallback"] is True
        assert data["externalResults"] == []
        assert data["temporal"] is None

    def _exa_client(self, response):
        session = MagicMock()
        session.post.return_value = response
        return ExaSearchClient(
            api_key="exa-key",
            domain_allowlist=["worldbank.org"],
            retry_policy=NO_RETRY,
            session=session,
        )

    def test_non_json_external_body_degrades(self):
        response = MagicMock(status_code=200, text="<html>")
        response.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0)
        llm = scripted_llm('{"headline": "H", "synthesis": "S"}')
        engine = make_engine(llm, external_client=self._exa_client(response))

        result = asyncio.run(engine.build("latest procurement reform", INTERNAL))

        assert result.external_results == []
        assert result.summary.headline == "H"

    def test_list_external_body_degrades(self):
        response = MagicMock(status_code=200, text="[]")
        response.json.return_value = ["unexpected"]
        engine = make_engine(scripted_llm("not json"), external_client=self._exa_client(response))

        result = asyncio.run(engine.build("latest procurement reform", INTERNAL))

        assert result.external_results == []
        assert result.summary.is_fallback is True
