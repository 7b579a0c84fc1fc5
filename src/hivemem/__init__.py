"""hivemem - shared two-tier memory for autonomous workers ("robots").

Architecture:
- Working memory: token-bounded in-process context with importance/recency eviction
- Long-term memory: PostgreSQL (pgvector + tsvector + pg_trgm), deduplicated by content hash
- Enrichment: embeddings (Ollama) and hierarchical tags (LiteLLM), computed in the
  background behind circuit breakers

Usage:
    from src.hivemem import MemoryManager, MemoryConfig

    # Initialize
    config = MemoryConfig.from_env()
    memory = MemoryManager(config)
    await memory.initialize()

    # Remember (returns once stored; enrichment runs in the background)
    item_id = await memory.remember("PostgreSQL supports vector search via pgvector")

    # Recall
    results = await memory.recall("vector search", timeframe="last week", strategy="hybrid")

    # Build LLM context from working memory
    context = memory.create_context(strategy="balanced")
"""

from src.hivemem.config import (
    MemoryConfig,
    PostgresConfig,
    WorkingMemoryConfig,
    BreakerConfig,
    RetrievalConfig,
    EmbeddingConfig,
    TagConfig,
    EnrichmentConfig,
    configure_logging,
)
from src.hivemem.errors import (
    HiveMemError,
    ValidationError,
    NotFoundError,
    BreakerOpenError,
    EmbeddingError,
    TagError,
    StoreError,
)
from src.hivemem.models import (
    StoredItem,
    OwnerLink,
    AddResult,
    RankedItem,
    TimeWindow,
    RecallStrategy,
    ContextStrategy,
    BreakerStatus,
)
from src.hivemem.circuit_breaker import CircuitBreaker
from src.hivemem.working_memory import WorkingMemory
from src.hivemem.retrieval import RetrievalEngine
from src.hivemem.relevance import RelevanceScorer
from src.hivemem.memory_manager import MemoryManager

__all__ = [
    # Config
    "MemoryConfig",
    "PostgresConfig",
    "WorkingMemoryConfig",
    "BreakerConfig",
    "RetrievalConfig",
    "EmbeddingConfig",
    "TagConfig",
    "EnrichmentConfig",
    "configure_logging",
    # Errors
    "HiveMemError",
    "ValidationError",
    "NotFoundError",
    "BreakerOpenError",
    "EmbeddingError",
    "TagError",
    "StoreError",
    # Models
    "StoredItem",
    "OwnerLink",
    "AddResult",
    "RankedItem",
    "TimeWindow",
    "RecallStrategy",
    "ContextStrategy",
    "BreakerStatus",
    # Components
    "CircuitBreaker",
    "WorkingMemory",
    "RetrievalEngine",
    "RelevanceScorer",
    # Main API
    "MemoryManager",
]
