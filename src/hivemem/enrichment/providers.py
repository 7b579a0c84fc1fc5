"""Enrichment providers - embedding, tag extraction and token counting.

The provider strategy is chosen once, at construction, from config:
``build_embedding_provider`` / ``build_tag_provider``. Providers raise
EmbeddingError / TagError on failure so the circuit breaker can count it.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import weakref
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import litellm
import ollama
from litellm import acompletion

from src.hivemem.config import EmbeddingConfig, TagConfig
from src.hivemem.errors import EmbeddingError, TagError, ValidationError

logger = logging.getLogger(__name__)


TAG_SYSTEM_PROMPT = """You are a taxonomy classifier. You assign hierarchical topic tags to text.
Tags are lowercase, use hyphens inside words, and separate hierarchy levels with colons.
Reply with tags only, one per line, no commentary."""

TAG_USER_PROMPT = """Extract hierarchical topic tags for the text below.

## Rules
- Format: root:subtopic:detail (lowercase letters, digits, hyphens)
- At most {max_depth} levels per tag
- Never repeat a level inside one tag, and never end a tag with its own root
- Prefer reusing the existing taxonomy when it fits
- Return between 1 and 5 tags

## Existing taxonomy
{taxonomy_context}

## Text
{text}

## Tags"""


# ==================== Embedding ====================

class EmbeddingProvider(ABC):
    """Turns text into a numeric vector."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        pass

    async def close(self) -> None:
        pass


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeddings via the Ollama Python client.

    The underlying httpx connection pool is bound to the event loop that
    opened it, and thread-backed enrichment runs every job on a fresh
    loop, so one client is kept per running loop.
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        self.config = config or EmbeddingConfig()
        self._clients: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()
        self._lock = threading.Lock()

    def _new_client(self) -> ollama.AsyncClient:
        return ollama.AsyncClient(
            host=self.config.ollama_host,
            timeout=self.config.timeout,
        )

    def _get_client(self) -> ollama.AsyncClient:
        loop = asyncio.get_running_loop()
        with self._lock:
            client = self._clients.get(loop)
            if client is None:
                client = self._new_client()
                self._clients[loop] = client
            return client

    async def embed(self, text: str) -> list[float]:
        truncated = text[:self.config.max_content_length]
        try:
            response = await self._get_client().embed(
                model=self.config.model,
                input=truncated,
            )
        except Exception as e:
            raise EmbeddingError(f"Ollama embedding failed: {e}") from e

        if response and "embeddings" in response and response["embeddings"]:
            return list(response["embeddings"][0])
        raise EmbeddingError(f"Ollama returned no embedding for model {self.config.model}")

    async def close(self) -> None:
        with self._lock:
            self._clients.clear()


class CallableEmbeddingProvider(EmbeddingProvider):
    """Wraps an external ``async (text) -> vector`` function."""

    def __init__(self, fn: Callable[[str], Awaitable[list[float]]]):
        self._fn = fn

    async def embed(self, text: str) -> list[float]:
        return await self._fn(text)


def fit_dimension(vector: Any, dimension: int) -> list[float]:
    """Pad with zeros or truncate to ``dimension``."""
    if not isinstance(vector, (list, tuple)) or not vector:
        raise EmbeddingError("Embedding must be a non-empty list of numbers")
    try:
        values = [float(x) for x in vector]
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"Embedding contains non-numeric values: {e}") from e
    if len(values) < dimension:
        values.extend([0.0] * (dimension - len(values)))
    return values[:dimension]


def build_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    if config.provider == "ollama":
        return OllamaEmbeddingProvider(config)
    raise ValidationError(f"Unknown embedding provider: {config.provider}")


# ==================== Tag extraction ====================

class TagProvider(ABC):
    """Proposes hierarchical tags for text."""

    @abstractmethod
    async def extract(self, text: str, taxonomy_hint: list[str]) -> str | list[str]:
        """Return raw tag candidates: a newline-separated string or a list."""
        pass


class LLMTagProvider(TagProvider):
    """Tag extraction through any LiteLLM-supported chat model."""

    def __init__(self, config: TagConfig | None = None):
        self.config = config or TagConfig()
        litellm.drop_params = True  # Drop unsupported params for each provider

    def _build_messages(self, text: str, taxonomy_hint: list[str]) -> list[dict]:
        if taxonomy_hint:
            taxonomy_context = "Existing tags: " + ", ".join(taxonomy_hint[:20])
        else:
            taxonomy_context = "No tags exist yet; start a sensible taxonomy."
        prompt = TAG_USER_PROMPT.format(
            text=text,
            max_depth=self.config.max_depth,
            taxonomy_context=taxonomy_context,
        )
        return [
            {"role": "system", "content": TAG_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

    def _build_params(self, messages: list[dict]) -> dict:
        """Build parameters for LiteLLM call."""
        params = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "timeout": self.config.timeout,
        }
        if self.config.api_base:
            params["api_base"] = self.config.api_base
        if self.config.api_key:
            params["api_key"] = self.config.api_key
        return params

    async def extract(self, text: str, taxonomy_hint: list[str]) -> str:
        params = self._build_params(self._build_messages(text, taxonomy_hint))
        try:
            response = await acompletion(**params)
        except Exception as e:
            raise TagError(f"Tag extraction failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise TagError("Tag provider returned an empty reply")
        return content


class CallableTagProvider(TagProvider):
    """Wraps an external ``async (text, taxonomy_hint) -> tags`` function."""

    def __init__(self, fn: Callable[[str, list[str]], Awaitable[str | list[str]]]):
        self._fn = fn

    async def extract(self, text: str, taxonomy_hint: list[str]) -> str | list[str]:
        return await self._fn(text, taxonomy_hint)


def build_tag_provider(config: TagConfig) -> TagProvider:
    if config.provider == "litellm":
        return LLMTagProvider(config)
    raise ValidationError(f"Unknown tag provider: {config.provider}")


# ==================== Token counting ====================

class TokenCounter:
    """Counts tokens with LiteLLM's tokenizer for the configured model."""

    def __init__(self, model: str = "gpt-4o-mini"):
        self.model = model

    def __call__(self, text: str) -> int:
        return litellm.token_counter(model=self.model, text=text)
