"""
InfraScope Configuration Module
===============================

Centralized configuration management using environment variables.
Supports both .env files and system environment variables.

Environment Variables:
    OPENAI_API_KEY: OpenAI key for embeddings (required)
    OPENAI_EMBEDDING_MODEL: Embedding model (default: text-embedding-3-large)
    EMBEDDING_DIMENSIONS: Pinned vector dimension (default: 1536)
    EMBEDDING_BATCH_SIZE: Texts per embedding request (default: 500)

    LLM_PROVIDER: anthropic | openai (default: auto-detect)
    LLM_MODEL: Generative model name (default: provider default)
    ANTHROPIC_API_KEY: Anthropic key (one generative key is required)

    DATABASE_URL: PostgreSQL + pgvector connection string (required)
    VECTOR_TABLE: Chunk table name (default: doc_chunks)
    VECTOR_SCAN_CAP: Hard ceiling on scanned candidates (default: 1000)
    VECTOR_FILTER_MULTIPLIER: Oversampling factor under filters (default: 10)
    VECTOR_NATIVE_FILTER_PUSHDOWN: Push filters into the similarity stage (default: false)

    REDIS_URL: Redis URL (optional, in-memory LRU when absent)
    CACHE_TTL_SECONDS: Query cache TTL (default: 60)
    CACHE_MAX_ENTRIES: In-memory LRU bound (default: 500)

    EXA_SEARCH_API_KEY: Exa key for live web results (optional)
    EXA_DOMAIN_ALLOWLIST: Comma separated domains
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Any

from dotenv import load_dotenv


# Load environment variables from .env file if present
env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()


class ConfigurationError(Exception):
    """Raised at startup when required credentials or settings are missing."""
    pass


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """
    Get environment variable with optional default and required validation.

    Args:
        key: Environment variable name
        default: Default value if not set
        required: If True, raises ConfigurationError when not set

    Returns:
        Environment variable value or default

    Raises:
        ConfigurationError: If required=True and variable is not set
    """
    value = os.getenv(key, default)
    if required and value is None:
        raise ConfigurationError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Environment variable '{key}' must be an integer, got: {value}")


def get_env_float(key: str, default: float) -> float:
    """Get environment variable as float."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"Environment variable '{key}' must be a float, got: {value}")


def get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def get_env_list(key: str, default: List[str]) -> List[str]:
    """Get comma separated environment variable as a list."""
    value = os.getenv(key)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class OpenAIConfig:
    """Embedding provider configuration."""

    api_key: Optional[str] = field(
        default_factory=lambda: get_env("OPENAI_API_KEY") or get_env("GPT_API_KEY")
    )
    embedding_model: str = field(
        default_factory=lambda: get_env("OPENAI_EMBEDDING_MODEL", "text-embedding-3-large")
    )

    # Must match the dimension of the vector index exactly
    dimensions: int = field(default_factory=lambda: get_env_int("EMBEDDING_DIMENSIONS", 1536))

    batch_size: int = field(default_factory=lambda: get_env_int("EMBEDDING_BATCH_SIZE", 500))
    batch_delay_ms: int = field(default_factory=lambda: get_env_int("EMBEDDING_BATCH_DELAY_MS", 1000))
    item_delay_ms: int = field(default_factory=lambda: get_env_int("EMBEDDING_ITEM_DELAY_MS", 200))
    request_timeout: float = field(default_factory=lambda: get_env_float("OPENAI_TIMEOUT", 30.0))

    # USD per 1M tokens (text-embedding-3-large)
    price_per_million_tokens: float = 0.13

    def __post_init__(self):
        if self.dimensions <= 0:
            raise ConfigurationError("EMBEDDING_DIMENSIONS must be positive")
        if not 0 < self.batch_size <= 2048:
            raise ConfigurationError("EMBEDDING_BATCH_SIZE must be between 1 and 2048")


@dataclass
class LLMConfig:
    """Generative model configuration."""

    provider: Optional[str] = field(default_factory=lambda: get_env("LLM_PROVIDER"))
    model: Optional[str] = field(default_factory=lambda: get_env("LLM_MODEL"))
    anthropic_api_key: Optional[str] = field(default_factory=lambda: get_env("ANTHROPIC_API_KEY"))
    openai_api_key: Optional[str] = field(
        default_factory=lambda: get_env("OPENAI_API_KEY") or get_env("GPT_API_KEY")
    )
    request_timeout: float = field(default_factory=lambda: get_env_float("LLM_TIMEOUT", 45.0))

    @property
    def has_credentials(self) -> bool:
        return bool(self.anthropic_api_key or self.openai_api_key)


@dataclass
class DatabaseConfig:
    """PostgreSQL + pgvector document store configuration."""

    url: Optional[str] = field(default_factory=lambda: get_env("DATABASE_URL"))
    table: str = field(default_factory=lambda: get_env("VECTOR_TABLE", "doc_chunks"))
    embedding_column: str = "embedding"

    # Connection pool settings
    pool_min_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MIN", 1))
    pool_max_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MAX", 10))
    statement_timeout_ms: int = field(default_factory=lambda: get_env_int("DATABASE_STATEMENT_TIMEOUT_MS", 10000))

    # Oversampling under post-filtering
    scan_cap: int = field(default_factory=lambda: get_env_int("VECTOR_SCAN_CAP", 1000))
    filter_multiplier: int = field(default_factory=lambda: get_env_int("VECTOR_FILTER_MULTIPLIER", 10))
    native_filter_pushdown: bool = field(
        default_factory=lambda: get_env_bool("VECTOR_NATIVE_FILTER_PUSHDOWN", False)
    )

    def __post_init__(self):
        if self.pool_min_size > self.pool_max_size:
            raise ConfigurationError("pool_min_size cannot exceed pool_max_size")
        if self.scan_cap <= 0:
            raise ConfigurationError("VECTOR_SCAN_CAP must be positive")
        if self.filter_multiplier < 1:
            raise ConfigurationError("VECTOR_FILTER_MULTIPLIER must be at least 1")


@dataclass
class CacheConfig:
    """Query cache configuration."""

    redis_url: Optional[str] = field(default_factory=lambda: get_env("REDIS_URL"))
    prefix: str = field(default_factory=lambda: get_env("CACHE_PREFIX", "infrascope"))
    ttl_seconds: int = field(default_factory=lambda: get_env_int("CACHE_TTL_SECONDS", 60))
    max_entries: int = field(default_factory=lambda: get_env_int("CACHE_MAX_ENTRIES", 500))


@dataclass
class ExternalSearchConfig:
    """Live web search (Exa) configuration."""

    api_key: Optional[str] = field(default_factory=lambda: get_env("EXA_SEARCH_API_KEY"))
    endpoint: str = field(default_factory=lambda: get_env("EXA_ENDPOINT", "https://api.exa.ai/search"))
    domain_allowlist: List[str] = field(default_factory=lambda: get_env_list(
        "EXA_DOMAIN_ALLOWLIST",
        ["infrastructuretransparency.org", "infrastructuretransparencyinitiative.org"],
    ))
    request_timeout: float = field(default_factory=lambda: get_env_float("EXA_TIMEOUT", 12.0))
    content_max_characters: int = 1600

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass
class SearchConfig:
    """Query contract settings."""

    page_size: int = field(default_factory=lambda: get_env_int("SEARCH_PAGE_SIZE", 10))
    min_query_length: int = 2
    max_query_length: int = 500
    summarize_items: bool = field(default_factory=lambda: get_env_bool("SEARCH_SUMMARIZE_ITEMS", True))


@dataclass
class RetryConfig:
    """Shared backoff settings for outbound calls."""

    max_attempts: int = field(default_factory=lambda: get_env_int("RETRY_MAX_ATTEMPTS", 3))
    base_delay: float = field(default_factory=lambda: get_env_float("RETRY_BASE_DELAY", 1.0))
    max_delay: float = field(default_factory=lambda: get_env_float("RETRY_MAX_DELAY", 20.0))


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE"))
    json_logs: bool = field(default_factory=lambda: get_env_bool("LOG_JSON", False))


# Fixed rubric for principle alignment scoring
PRINCIPLES: List[Dict[str, Any]] = [
    {
        "id": "disclosureTransparency",
        "name": "Disclosure Transparency",
        "description": "Public authorities publish timely, accessible information across the infrastructure project lifecycle.",
        "guiding_questions": [
            "Are all major project milestones, contracts, and updates disclosed without delay?",
            "Is information accessible in formats communities and watchdogs can interrogate?",
        ],
        "positive_signals": [
            "Open data formats with structured fields aligned to OC4IDS.",
            "Transparent change logs documenting amendments and approvals.",
        ],
        "red_flags": [
            "Key contract details or change orders are absent or heavily redacted.",
            "Data releases lag months behind real-world decisions.",
        ],
    },
    {
        "id": "assuranceQuality",
        "name": "Assurance Quality",
        "description": "Independent validation confirms that disclosed information is true, complete, and meaningful.",
        "guiding_questions": [
            "Are independent specialists reviewing and verifying the published data?",
            "Do assurance findings lead to corrective actions and public reporting?",
        ],
        "positive_signals": [
            "Assurance teams have multidisciplinary expertise and independence.",
            "Findings lead to corrective action plans with owners.",
        ],
        "red_flags": [
            "Assurance is sporadic, under-resourced, or lacks methodological rigor.",
            "The same actors responsible for delivery also review themselves.",
        ],
    },
    {
        "id": "multiStakeholderParticipation",
        "name": "Multi-Stakeholder Participation",
        "description": "Government, private sector, and civil society co-create decisions and oversight.",
        "guiding_questions": [
            "Are civil society and community voices embedded in governance structures?",
            "Is participation continuous from planning to delivery, not one-off?",
        ],
        "positive_signals": [
            "Balanced governance bodies with formalized roles for civil society.",
            "Feedback loops show how citizen input alters project decisions.",
        ],
        "red_flags": [
            "Participation mechanisms are tokenistic or consult once without follow-up.",
            "Dominant actors can veto or ignore multi-stakeholder recommendations.",
        ],
    },
    {
        "id": "socialAccountability",
        "name": "Social Accountability",
        "description": "Communities can monitor delivery, raise grievances, and secure remedies.",
        "guiding_questions": [
            "Do citizens have channels to monitor performance and costs?",
            "Are grievance mechanisms accessible and protective of whistleblowers?",
        ],
        "positive_signals": [
            "Public dashboards surface performance, cost, and delivery commitments.",
            "Grievance cases lead to transparent resolution and systemic fixes.",
        ],
        "red_flags": [
            "Affected communities fear retaliation for speaking up.",
            "Issues raised through hotlines vanish without documented resolutions.",
        ],
    },
]


@dataclass
class Settings:
    """Main application settings container."""

    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    external_search: ExternalSearchConfig = field(default_factory=ExternalSearchConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    app_name: str = "infrascope"
    app_version: str = "1.0.0"
    environment: str = field(default_factory=lambda: get_env("ENVIRONMENT", "development"))

    def validate(self) -> None:
        """
        Startup check for credentials the pipeline cannot run without.

        Raises:
            ConfigurationError: listing every missing setting
        """
        missing = []
        if not self.openai.api_key:
            missing.append("OPENAI_API_KEY")
        if not self.database.url:
            missing.append("DATABASE_URL")
        if not self.llm.has_credentials:
            missing.append("ANTHROPIC_API_KEY or OPENAI_API_KEY")
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() in ("production", "prod")


def load_settings() -> Settings:
    """
    Load all application settings.

    Raises:
        ConfigurationError: If a value is present but malformed
    """
    return Settings()
