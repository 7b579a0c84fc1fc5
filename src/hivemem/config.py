"""Configuration dataclasses for hivemem.

Every component takes its own config object; ``MemoryConfig`` bundles them.
``MemoryConfig.from_env()`` reads a ``.env`` file (via python-dotenv) and
``HIVEMEM_*`` / ``POSTGRES_*`` environment variables.
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass
class PostgresConfig:
    """Configuration for PostgreSQL connection."""
    host: str = "localhost"
    port: int = 5432
    database: str = "hivemem"
    user: str = ""       # Empty = use current system user
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    command_timeout: float = 30.0
    trigram_threshold: float = 0.1   # Minimum pg_trgm similarity for fuzzy fulltext hits

    @classmethod
    def from_env(cls) -> "PostgresConfig":
        return cls(
            host=os.getenv("POSTGRES_HOST", "localhost"),
            port=int(os.getenv("POSTGRES_PORT", "5432")),
            database=os.getenv("POSTGRES_DB", "hivemem"),
            user=os.getenv("POSTGRES_USER", ""),
            password=os.getenv("POSTGRES_PASSWORD", ""),
            min_connections=int(os.getenv("POSTGRES_MIN_CONNECTIONS", "2")),
            max_connections=int(os.getenv("POSTGRES_MAX_CONNECTIONS", "10")),
        )


@dataclass
class WorkingMemoryConfig:
    """Configuration for the token-bounded working memory."""
    max_tokens: int = 128_000


@dataclass
class BreakerConfig:
    """Configuration shared by the enrichment circuit breakers."""
    failure_threshold: int = 5
    reset_timeout: float = 60.0    # Seconds in open state before a trial call is allowed
    half_open_max_calls: int = 1


@dataclass
class RetrievalConfig:
    """Configuration for ranking and candidate selection."""
    neutral_similarity: float = 0.5     # Used for items not yet embedded
    similarity_weight: float = 0.7
    tag_weight: float = 0.3
    prefilter_limit: int = 100
    max_limit: int = 1000
    min_term_length: int = 3

    # Relevance scoring; the four weights must sum to 1.0
    relevance_semantic_weight: float = 0.5
    relevance_tag_weight: float = 0.3
    relevance_recency_weight: float = 0.1
    relevance_access_weight: float = 0.1
    recency_half_life_hours: float = 168.0


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding provider."""
    provider: str = "ollama"
    model: str = "nomic-embed-text"
    dimension: int = 768
    ollama_host: str | None = None  # None = default localhost:11434
    timeout: float = 60.0
    max_content_length: int = 8000


@dataclass
class TagConfig:
    """Configuration for the tag-extraction provider."""
    provider: str = "litellm"
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    api_base: str | None = None
    temperature: float = 0.0
    max_tokens: int = 512
    timeout: float = 60.0
    max_depth: int = 4
    taxonomy_hint_size: int = 100


@dataclass
class EnrichmentConfig:
    """Configuration for background enrichment dispatch."""
    backend: str = "thread"      # "inline", "thread" or "cooperative"
    max_concurrency: int = 4     # Cooperative backend only


@dataclass
class MemoryConfig:
    """Master configuration for the memory system."""
    owner_name: str = "default"
    postgres_config: PostgresConfig | None = None
    working_memory_config: WorkingMemoryConfig | None = None
    breaker_config: BreakerConfig | None = None
    retrieval_config: RetrievalConfig | None = None
    embedding_config: EmbeddingConfig | None = None
    tag_config: TagConfig | None = None
    enrichment_config: EnrichmentConfig | None = None

    max_content_bytes: int = 1_000_000
    default_recall_limit: int = 20
    token_model: str = "gpt-4o-mini"

    def __post_init__(self):
        self.postgres_config = self.postgres_config or PostgresConfig()
        self.working_memory_config = self.working_memory_config or WorkingMemoryConfig()
        self.breaker_config = self.breaker_config or BreakerConfig()
        self.retrieval_config = self.retrieval_config or RetrievalConfig()
        self.embedding_config = self.embedding_config or EmbeddingConfig()
        self.tag_config = self.tag_config or TagConfig()
        self.enrichment_config = self.enrichment_config or EnrichmentConfig()

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Build a config from ``.env`` and the process environment."""
        load_dotenv()

        return cls(
            owner_name=os.getenv("HIVEMEM_OWNER", "default"),
            postgres_config=PostgresConfig.from_env(),
            working_memory_config=WorkingMemoryConfig(
                max_tokens=int(os.getenv("HIVEMEM_WORKING_MEMORY_TOKENS", "128000")),
            ),
            breaker_config=BreakerConfig(
                failure_threshold=int(os.getenv("HIVEMEM_BREAKER_THRESHOLD", "5")),
                reset_timeout=float(os.getenv("HIVEMEM_BREAKER_RESET_TIMEOUT", "60")),
                half_open_max_calls=int(os.getenv("HIVEMEM_BREAKER_HALF_OPEN_CALLS", "1")),
            ),
            retrieval_config=RetrievalConfig(
                neutral_similarity=float(os.getenv("HIVEMEM_NEUTRAL_SIMILARITY", "0.5")),
                recency_half_life_hours=float(os.getenv("HIVEMEM_RECENCY_HALF_LIFE_HOURS", "168")),
            ),
            embedding_config=EmbeddingConfig(
                provider=os.getenv("HIVEMEM_EMBEDDING_PROVIDER", "ollama"),
                model=os.getenv("HIVEMEM_EMBEDDING_MODEL", "nomic-embed-text"),
                dimension=int(os.getenv("HIVEMEM_EMBEDDING_DIMENSION", "768")),
                ollama_host=os.getenv("OLLAMA_HOST"),
            ),
            tag_config=TagConfig(
                provider=os.getenv("HIVEMEM_TAG_PROVIDER", "litellm"),
                model=os.getenv("HIVEMEM_TAG_MODEL", "gpt-4o-mini"),
                api_key=os.getenv("HIVEMEM_TAG_API_KEY"),
                api_base=os.getenv("HIVEMEM_TAG_API_BASE"),
                max_depth=int(os.getenv("HIVEMEM_MAX_TAG_DEPTH", "4")),
            ),
            enrichment_config=EnrichmentConfig(
                backend=os.getenv("HIVEMEM_JOB_BACKEND", "thread"),
                max_concurrency=int(os.getenv("HIVEMEM_JOB_CONCURRENCY", "4")),
            ),
            token_model=os.getenv("HIVEMEM_TOKEN_MODEL", "gpt-4o-mini"),
        )


def configure_logging(level: str | int | None = None) -> None:
    """Opt-in console logging for applications embedding hivemem."""
    if level is None:
        level = os.getenv("HIVEMEM_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
