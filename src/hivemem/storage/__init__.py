"""Storage layer for hivemem."""

from src.hivemem.storage.base import ContentStore
from src.hivemem.storage.memory import InMemoryContentStore
from src.hivemem.storage.postgres import PostgresContentStore

__all__ = [
    "ContentStore",
    "InMemoryContentStore",
    "PostgresContentStore",
]
