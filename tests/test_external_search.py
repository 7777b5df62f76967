"""
Tests for the Exa search client.

HTTP is replaced by a mocked requests.Session.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
import requests

from src.rag.retry import NO_RETRY
from src.search.external_search import (
    ExaSearchClient,
    ExternalSearchError,
    TemporalHint,
    matches_domain,
    normalize_result,
)


ALLOWLIST = ["infrastructuretransparency.org", "worldbank.org"]


def make_response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.text = text
    return response


def make_client(response=None, error=None, **kwargs):
    session = MagicMock()
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value = response
    client = ExaSearchClient(
        api_key=kwargs.pop("api_key", "exa-key"),
        domain_allowlist=ALLOWLIST,
        retry_policy=NO_RETRY,
        session=session,
        **kwargs,
    )
    return client, session


class TestTemporalHint:
    """Tests for query hint rendering."""

    def test_preset(self):
        assert TemporalHint(preset="lastMonth").to_query_hint() == "published:past-30-days"

    def test_range(self):
        assert TemporalHint(date_from="2024-01", date_to="2024-12").to_query_hint() == "published:2024-01..2024-12"

    def test_open_ranges(self):
        assert TemporalHint(date_from="2024-01").to_query_hint() == "published:2024-01.."
        assert TemporalHint(date_to="2024-12").to_query_hint() == "published:..2024-12"

    def test_unknown_preset(self):
        assert TemporalHint(preset="lastDecade").to_query_hint() is None


class TestDomainMatching:
    """Tests for allowlist host matching."""

    def test_exact_and_subdomain(self):
        assert matches_domain("https://infrastructuretransparency.org/x", ALLOWLIST)
        assert matches_domain("https://www.worldbank.org/en/topic", ALLOWLIST)

    def test_lookalike_rejected(self):
        assert not matches_domain("https://notinfrastructuretransparency.org/x", ALLOWLIST)
        assert not matches_domain("https://worldbank.org.evil.com/x", ALLOWLIST)

    def test_wildcard(self):
        assert matches_domain("https://data.gov.uk/x", ["*.gov.uk"])

    def test_empty_inputs(self):
        assert not matches_domain("https://worldbank.org", [])
        assert not matches_domain("not a url", ALLOWLIST)


class TestBuildRequest:
    """Tests for request body construction."""

    def setup_method(self):
        self.client, _ = make_client(make_response())

    def test_basic_body(self):
        body = self.client.build_request("contract disclosure", num_results=4)
        assert body["query"] == "contract disclosure"
        assert body["numResults"] == 4
        assert body["includeDomains"] == ALLOWLIST
        assert "sortBy" not in body
        assert "contents" not in body

    def test_temporal_hint_appended(self):
        body = self.client.build_request("procurement", temporal=TemporalHint(preset="lastQuarter"))
        assert body["query"] == "procurement published:past-90-days"
        assert body["sortBy"] == "recent"

    def test_include_domains_merged(self):
        body = self.client.build_request("q", include_domains=["WorldBank.org", "oecd.org"])
        assert body["includeDomains"] == ALLOWLIST + ["oecd.org"]

    def test_allow_all_domains(self):
        body = self.client.build_request("q", allow_all_domains=True)
        assert "includeDomains" not in body

    def test_content_options(self):
        body = self.client.build_request("q", include_content=True, exclude_domains=["spam.org"])
        assert body["contents"] == {"includeHtml": False, "maxCharacters": 1600}
        assert body["excludeDomains"] == ["spam.org"]


class TestNormalizeResult:
    """Tests for response normalization."""

    def test_fields(self):
        result = normalize_result({
            "title": "  Open Contracting  ",
            "url": "https://worldbank.org/a",
            "published_at": "2025-03-01",
            "highlights": [{"snippet": "Highlight text"}, "plain"],
        })
        assert result.title == "Open Contracting"
        assert result.published_date == "2025-03-01"
        assert result.text == "Highlight text"
        assert result.highlights == ["Highlight text", "plain"]

    def test_title_defaults_to_url(self):
        assert normalize_result({"url": "https://worldbank.org/b"}).title == "https://worldbank.org/b"


class TestSearch:
    """Tests for ExaSearchClient.search."""

    def test_off_allowlist_results_dropped(self):
        payload = {"results": [
            {"title": "CoST", "url": "https://infrastructuretransparency.org/news"},
            {"title": "Elsewhere", "url": "https://example.com/story"},
            {"title": "No URL"},
        ]}
        client, session = make_client(make_response(payload=payload))

        results = asyncio.run(client.search("disclosure"))

        assert [r.url for r in results] == ["https://infrastructuretransparency.org/news"]
        headers = session.post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer exa-key"

    def test_missing_key(self):
        client, session = make_client(make_response(), api_key=None)
        assert client.enabled is False
        with pytest.raises(ExternalSearchError):
            asyncio.run(client.search("q"))
        session.post.assert_not_called()

    def test_invalid_key(self):
        client, _ = make_client(make_response(status_code=401))
        with pytest.raises(ExternalSearchError) as exc_info:
            asyncio.run(client.search("q"))
        assert exc_info.value.status_code == 401

    def test_server_error(self):
        client, _ = make_client(make_response(status_code=503, text="unavailable"))
        with pytest.raises(ExternalSearchError) as exc_info:
            asyncio.run(client.search("q"))
        assert exc_info.value.status_code == 503

    def test_connection_error_wrapped(self):
        client, _ = make_client(error=requests.ConnectionError("dns failure"))
        with pytest.raises(ExternalSearchError):
            asyncio.run(client.search("q"))

    def test_non_json_body(self):
        response = make_response()
        response.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0)
        client, _ = make_client(response)

        with pytest.raises(ExternalSearchError) as exc_info:
            asyncio.run(client.search("q"))
        assert exc_info.value.status_code is None

    def test_list_body(self):
        client, _ = make_client(make_response(payload=["unexpected"]))
        with pytest.raises(ExternalSearchError):
            asyncio.run(client.search("q"))

    def test_results_not_a_list(self):
        client, _ = make_client(make_response(payload={"results": "oops"}))
        with pytest.raises(ExternalSearchError):
            asyncio.run(client.search("q"))

    def test_malformed_entries_skipped(self):
        payload = {"results": [
            "stray string",
            None,
            {"title": "CoST", "url": "https://infrastructuretransparency.org/news"},
        ]}
        client, _ = make_client(make_response(payload=payload))

        results = asyncio.run(client.search("disclosure"))

        assert [r.title for r in results] == ["CoST"]
