"""
InfraScope Orchestrator Module
==============================

Request orchestration for the search API.

Components:
    - SearchService: owns the pool, cache and model clients; runs queries
    - setup_logging: structured logging configuration

Usage:
    from src.orchestrator import SearchService

    async with SearchService(load_settings()) as service:
        response = await service.search("assurance reports")
"""

from .search_service import (
    SearchService,
    SearchRequest,
    QueryValidationError,
)
from .logging_config import setup_logging

__all__ = [
    "SearchService",
    "SearchRequest",
    "QueryValidationError",
    "setup_logging",
]
