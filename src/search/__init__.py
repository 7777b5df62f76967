"""
InfraScope External Search
==========================

Live web results (Exa) restricted to an allowlist of domains.
"""

from .external_search import ExaSearchClient, ExternalResult, ExternalSearchError, TemporalHint

__all__ = ["ExaSearchClient", "ExternalResult", "ExternalSearchError", "TemporalHint"]
