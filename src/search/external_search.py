"""
Exa Search Client
=================

Live web search with temporal hints and an enforced domain allowlist.

Domain filtering happens twice: as `includeDomains` in the request and
again on the response, so a provider that ignores the parameter still
cannot leak off-allowlist results.

API: POST https://api.exa.ai/search
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
from urllib.parse import urlparse

import requests

from src.rag.retry import RetryPolicy

logger = logging.getLogger(__name__)


TEMPORAL_PRESETS = {
    "lastWeek": "published:past-7-days",
    "lastMonth": "published:past-30-days",
    "lastQuarter": "published:past-90-days",
    "lastYear": "published:past-365-days",
}


class ExternalSearchError(Exception):
    """Raised when the external search provider fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(error, ExternalSearchError):
        return error.status_code == 429 or (error.status_code or 0) >= 500
    return False


@dataclass
class TemporalHint:
    """Time window for external results: a preset or explicit from/to."""
    preset: Optional[str] = None     # lastWeek | lastMonth | lastQuarter | lastYear
    date_from: Optional[str] = None  # YYYY-MM-DD or YYYY-MM
    date_to: Optional[str] = None

    def to_query_hint(self) -> Optional[str]:
        if self.date_from and self.date_to:
            return f"published:{self.date_from}..{self.date_to}"
        if self.date_from:
            return f"published:{self.date_from}.."
        if self.date_to:
            return f"published:..{self.date_to}"
        return TEMPORAL_PRESETS.get(self.preset)

    def to_dict(self) -> Dict[str, Any]:
        return {"preset": self.preset, "from": self.date_from, "to": self.date_to}


@dataclass
class ExternalResult:
    """A normalized external search hit."""
    title: str
    url: str
    published_date: Optional[str] = None
    text: Optional[str] = None
    author: Optional[str] = None
    score: Optional[float] = None
    highlights: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "publishedDate": self.published_date,
            "text": self.text,
            "author": self.author,
            "score": self.score,
        }


def normalize_domains(domains: Optional[List[str]]) -> List[str]:
    return [d.strip().lower() for d in (domains or []) if d and d.strip()]


def matches_domain(url: str, domains: List[str]) -> bool:
    """True if the URL's host equals a domain or is a subdomain of it."""
    if not domains:
        return False
    try:
        hostname = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    if not hostname:
        return False
    for domain in domains:
        normalized = domain[2:] if domain.startswith("*.") else domain
        if hostname == normalized or hostname.endswith(f".{normalized}"):
            return True
    return False


def _first_text(*values) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def normalize_result(raw: Dict[str, Any]) -> ExternalResult:
    highlights = []
    for fragment in raw.get("highlights") or []:
        if isinstance(fragment, str):
            highlights.append(fragment)
        elif isinstance(fragment, dict):
            snippet = _first_text(fragment.get("snippet"), fragment.get("text"))
            if snippet:
                highlights.append(snippet)

    return ExternalResult(
        title=_first_text(raw.get("title")) or raw.get("url", ""),
        url=raw.get("url", ""),
        published_date=_first_text(raw.get("publishedDate"), raw.get("published_at"), raw.get("published")),
        text=_first_text(raw.get("text"), raw.get("snippet"), highlights[0] if highlights else None),
        author=_first_text(raw.get("author")),
        score=raw.get("score"),
        highlights=highlights,
    )


class ExaSearchClient:
    """
    Client for the Exa search API.

    Usage:
        client = ExaSearchClient(api_key, domain_allowlist=["infrastructuretransparency.org"])
        results = await client.search("contract disclosure", temporal=TemporalHint(preset="lastMonth"))
    """

    API_URL = "https://api.exa.ai/search"

    def __init__(
        self,
        api_key: Optional[str],
        domain_allowlist: Optional[List[str]] = None,
        endpoint: Optional[str] = None,
        timeout: float = 12.0,
        content_max_characters: int = 1600,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.domain_allowlist = normalize_domains(domain_allowlist)
        self.endpoint = endpoint or self.API_URL
        self.timeout = timeout
        self.content_max_characters = content_max_characters
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2, is_retryable=_is_transient)
        self.session = session or requests.Session()
        self._requests_made = 0

    @classmethod
    def from_settings(cls, settings) -> "ExaSearchClient":
        cfg = settings.external_search
        return cls(
            api_key=cfg.api_key,
            domain_allowlist=cfg.domain_allowlist,
            endpoint=cfg.endpoint,
            timeout=cfg.request_timeout,
            content_max_characters=cfg.content_max_characters,
            retry_policy=RetryPolicy.from_config(settings.retry, is_retryable=_is_transient),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def build_request(
        self,
        query: str,
        num_results: int = 5,
        include_content: bool = False,
        content_max_characters: Optional[int] = None,
        temporal: Optional[TemporalHint] = None,
        sort_by: Optional[str] = None,
        include_domains: Optional[List[str]] = None,
        exclude_domains: Optional[List[str]] = None,
        allow_all_domains: bool = False,
    ) -> Dict[str, Any]:
        """Build the request body for a search call."""
        hint = temporal.to_query_hint() if temporal else None
        final_query = " ".join(part for part in (query.strip(), hint) if part)

        body: Dict[str, Any] = {
            "query": final_query,
            "numResults": num_results,
            "useAutoprompt": False,
            "type": "keyword",
        }

        allowlist = self.effective_allowlist(include_domains, allow_all_domains)
        if allowlist:
            body["includeDomains"] = allowlist

        excluded = normalize_domains(exclude_domains)
        if excluded:
            body["excludeDomains"] = excluded

        resolved_sort = sort_by or ("recent" if temporal else None)
        if resolved_sort:
            body["sortBy"] = resolved_sort

        if include_content:
            body["contents"] = {
                "includeHtml": False,
                "maxCharacters": content_max_characters or self.content_max_characters,
            }
        return body

    def effective_allowlist(self, include_domains=None, allow_all_domains: bool = False) -> List[str]:
        if allow_all_domains:
            return []
        merged = []
        for domain in self.domain_allowlist + normalize_domains(include_domains):
            if domain not in merged:
                merged.append(domain)
        return merged

    def filter_results(
        self,
        results: List[Dict[str, Any]],
        allowlist: List[str],
        excluded: List[str],
    ) -> List[ExternalResult]:
        """Post-response safety filter; violations are dropped, not raised."""
        kept = []
        for raw in results:
            if not isinstance(raw, dict):
                continue
            url = raw.get("url")
            if not url:
                continue
            if excluded and matches_domain(url, excluded):
                continue
            if allowlist and not matches_domain(url, allowlist):
                logger.debug(f"Dropping off-allowlist result: {url}")
                continue
            kept.append(normalize_result(raw))
        return kept

    def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(
                self.endpoint,
                json=body,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout):
            raise
        except requests.RequestException as e:
            raise ExternalSearchError(f"Request failed: {e}")

        self._requests_made += 1

        if response.status_code == 401:
            raise ExternalSearchError("Invalid Exa API key", status_code=401)
        if response.status_code != 200:
            raise ExternalSearchError(
                f"Exa API error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ExternalSearchError(f"Exa returned a non-JSON body: {e}")
        if not isinstance(data, dict):
            raise ExternalSearchError(f"Exa returned an unexpected payload: {type(data).__name__}")
        return data

    async def search(self, query: str, num_results: int = 5, **options) -> List[ExternalResult]:
        """
        Search the web.

        Args:
            query: Search text
            num_results: Results requested from the provider
            **options: include_content, content_max_characters, temporal,
                sort_by, include_domains, exclude_domains, allow_all_domains

        Returns:
            Allowlisted, normalized results

        Raises:
            ExternalSearchError: on missing key or provider failure
        """
        if not self.enabled:
            raise ExternalSearchError("EXA_SEARCH_API_KEY not configured")

        body = self.build_request(query, num_results=num_results, **options)

        try:
            data = await self.retry_policy.run(asyncio.to_thread, self._post, body, label="exa search")
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ExternalSearchError(f"Exa search failed: {e}")

        allowlist = self.effective_allowlist(
            options.get("include_domains"), options.get("allow_all_domains", False)
        )
        excluded = normalize_domains(options.get("exclude_domains"))
        raw_results = data.get("results") or []
        if not isinstance(raw_results, list):
            raise ExternalSearchError("Exa payload has no results list")
        results = self.filter_results(raw_results, allowlist, excluded)

        logger.info(
            f"Exa: {len(results)}/{len(raw_results)} results kept for '{query[:50]}'",
            extra={"stage": "external_search"},
        )
        return results
