"""Background enrichment: embeddings and tags for stored items."""

from src.hivemem.enrichment.executors import (
    JobExecutor,
    InlineExecutor,
    ThreadExecutor,
    CooperativeExecutor,
    build_executor,
)
from src.hivemem.enrichment.jobs import EmbeddingJob, TagJob
from src.hivemem.enrichment.pipeline import EnrichmentPipeline, RememberWorkflow
from src.hivemem.enrichment.providers import (
    EmbeddingProvider,
    OllamaEmbeddingProvider,
    CallableEmbeddingProvider,
    TagProvider,
    LLMTagProvider,
    CallableTagProvider,
    TokenCounter,
)

__all__ = [
    # Executors
    "JobExecutor",
    "InlineExecutor",
    "ThreadExecutor",
    "CooperativeExecutor",
    "build_executor",
    # Jobs
    "EmbeddingJob",
    "TagJob",
    "EnrichmentPipeline",
    "RememberWorkflow",
    # Providers
    "EmbeddingProvider",
    "OllamaEmbeddingProvider",
    "CallableEmbeddingProvider",
    "TagProvider",
    "LLMTagProvider",
    "CallableTagProvider",
    "TokenCounter",
]
