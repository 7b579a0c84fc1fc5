"""PostgreSQL content store.

Long-term memory on PostgreSQL with asyncpg. Vector similarity uses
pgvector, lexical ranking uses tsvector, and fuzzy matching uses pg_trgm.
Uniqueness and upserts are expressed in SQL so several processes can
share one database safely.
"""

from __future__ import annotations

import uuid
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import asyncpg

from src.hivemem.config import PostgresConfig
from src.hivemem.models import OwnerLink, StoredItem, TimeWindow, to_datetime
from src.hivemem.storage.base import ContentStore, cap_limit

logger = logging.getLogger(__name__)


# SQL for creating tables. {dimension} is filled from the embedding config.
CREATE_TABLES_SQL = """
CREATE EXTENSION IF NOT EXISTS vector;
CREATE EXTENSION IF NOT EXISTS pg_trgm;

-- Owners (robots) sharing the memory
CREATE TABLE IF NOT EXISTS owners (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name TEXT NOT NULL UNIQUE,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    last_active_at TIMESTAMPTZ DEFAULT NOW()
);

-- Durable memory items, deduplicated by content hash
CREATE TABLE IF NOT EXISTS items (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    content TEXT NOT NULL,
    content_hash CHAR(64) NOT NULL UNIQUE,
    token_count INTEGER NOT NULL DEFAULT 0,
    embedding vector({dimension}),
    access_count INTEGER NOT NULL DEFAULT 0,
    last_accessed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);

-- Hierarchical tags (e.g. database:postgresql:extensions)
CREATE TABLE IF NOT EXISTS tags (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    path TEXT NOT NULL UNIQUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS item_tags (
    item_id UUID NOT NULL REFERENCES items(id) ON DELETE CASCADE,
    tag_id UUID NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (item_id, tag_id)
);

CREATE TABLE IF NOT EXISTS owner_items (
    owner_id UUID NOT NULL REFERENCES owners(id) ON DELETE CASCADE,
    item_id UUID NOT NULL REFERENCES items(id) ON DELETE CASCADE,
    first_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    remember_count INTEGER NOT NULL DEFAULT 1,
    in_working_memory BOOLEAN NOT NULL DEFAULT FALSE,
    PRIMARY KEY (owner_id, item_id)
);

-- Indexes for efficient queries
CREATE INDEX IF NOT EXISTS idx_items_created ON items(created_at);
CREATE INDEX IF NOT EXISTS idx_items_deleted ON items(deleted_at) WHERE deleted_at IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_items_embedding
ON items USING hnsw (embedding vector_cosine_ops);
CREATE INDEX IF NOT EXISTS idx_items_content_fts
ON items USING gin(to_tsvector('english', content));
CREATE INDEX IF NOT EXISTS idx_items_content_trgm
ON items USING gin(content gin_trgm_ops);
CREATE INDEX IF NOT EXISTS idx_tags_path_trgm ON tags USING gin(path gin_trgm_ops);
CREATE INDEX IF NOT EXISTS idx_item_tags_tag ON item_tags(tag_id);
CREATE INDEX IF NOT EXISTS idx_owner_items_item ON owner_items(item_id);
"""

ITEM_COLUMNS = (
    "{a}id, {a}content, {a}content_hash, {a}token_count, {a}embedding::text AS embedding, "
    "{a}access_count, {a}last_accessed_at, {a}created_at, {a}updated_at, {a}deleted_at"
)


def item_columns(alias: str = "") -> str:
    return ITEM_COLUMNS.format(a=f"{alias}." if alias else "")


def vector_literal(vector: list[float]) -> str:
    """pgvector text representation, bound as ``$n::vector``."""
    return "[" + ",".join(repr(float(x)) for x in vector) + "]"


def parse_vector(text: str | None) -> list[float] | None:
    if not text:
        return None
    body = text.strip().strip("[]")
    if not body:
        return None
    return [float(x) for x in body.split(",")]


def as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def affected_rows(status: str) -> int:
    """Row count from an asyncpg command status such as ``DELETE 3``."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def window_clause(window: TimeWindow | None, params: list, column: str = "created_at") -> str:
    """SQL fragment restricting ``column`` to the window; appends its params."""
    if window is None:
        return ""
    params.append(window.start_dt)
    params.append(window.end_dt)
    return f" AND {column} BETWEEN ${len(params) - 1} AND ${len(params)}"


class PostgresContentStore(ContentStore):
    """PostgreSQL-backed ContentStore.

    The asyncpg pool is bound to the event loop that called ``connect``.
    Jobs running on another loop (the thread executor) get a short-lived
    direct connection instead.
    """

    def __init__(self, config: PostgresConfig | None = None, dimension: int = 768):
        self.config = config or PostgresConfig()
        self.dimension = dimension
        self._pool = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connected = False

    def _connect_kwargs(self) -> dict[str, Any]:
        # Build connection kwargs (empty user = use system user)
        conn_kwargs = {
            "host": self.config.host,
            "port": self.config.port,
            "database": self.config.database,
            "command_timeout": self.config.command_timeout,
        }
        if self.config.user:
            conn_kwargs["user"] = self.config.user
        if self.config.password:
            conn_kwargs["password"] = self.config.password
        return conn_kwargs

    async def connect(self) -> None:
        """Establish connection pool and ensure tables exist."""
        self._pool = await asyncpg.create_pool(
            min_size=self.config.min_connections,
            max_size=self.config.max_connections,
            **self._connect_kwargs(),
        )
        self._loop = asyncio.get_running_loop()

        async with self._pool.acquire() as conn:
            await conn.execute(CREATE_TABLES_SQL.format(dimension=self.dimension))

        self._connected = True
        logger.info(
            "Connected to PostgreSQL %s:%s/%s",
            self.config.host, self.config.port, self.config.database,
        )

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
        self._pool = None
        self._loop = None
        self._connected = False

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[Any]:
        if self._pool is not None and asyncio.get_running_loop() is self._loop:
            async with self._pool.acquire() as conn:
                yield conn
            return

        conn = await asyncpg.connect(**self._connect_kwargs())
        try:
            yield conn
        finally:
            await conn.close()

    # ==================== Item Operations ====================

    async def _find_by_hash(self, content_hash: str) -> StoredItem | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {item_columns()} FROM items WHERE content_hash = $1",
                content_hash,
            )
            return self._row_to_item(row) if row else None

    async def _insert_item(
        self, content: str, content_hash: str, token_count: int
    ) -> StoredItem | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO items (content, content_hash, token_count)
                VALUES ($1, $2, $3)
                ON CONFLICT (content_hash) DO NOTHING
                RETURNING {item_columns()}
                """,
                content,
                content_hash,
                token_count,
            )
            return self._row_to_item(row) if row else None

    async def get(self, item_id: str) -> StoredItem | None:
        uid = as_uuid(item_id)
        if uid is None:
            return None
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {item_columns()} FROM items WHERE id = $1",
                uid,
            )
            if not row:
                return None
            tags = await self._tags_for(conn, [uid])
            return self._row_to_item(row, tags.get(str(uid), []))

    async def track_access(self, item_ids: list[str]) -> None:
        uids = [u for u in (as_uuid(i) for i in item_ids) if u]
        if not uids:
            return
        async with self._acquire() as conn:
            await conn.execute(
                """
                UPDATE items
                SET access_count = access_count + 1, last_accessed_at = NOW()
                WHERE id = ANY($1::uuid[])
                """,
                uids,
            )

    async def _set_deleted_at(self, item_id: str, deleted_at: float | None) -> bool:
        uid = as_uuid(item_id)
        if uid is None:
            return False
        async with self._acquire() as conn:
            result = await conn.execute(
                "UPDATE items SET deleted_at = $2, updated_at = NOW() WHERE id = $1",
                uid,
                to_datetime(deleted_at),
            )
            return affected_rows(result) == 1

    async def _delete_item(self, item_id: str) -> bool:
        uid = as_uuid(item_id)
        if uid is None:
            return False
        async with self._acquire() as conn:
            result = await conn.execute("DELETE FROM items WHERE id = $1", uid)
            return affected_rows(result) == 1

    async def _purge_deleted(self, cutoff: float) -> int:
        async with self._acquire() as conn:
            result = await conn.execute(
                "DELETE FROM items WHERE deleted_at IS NOT NULL AND deleted_at < $1",
                to_datetime(cutoff),
            )
            return affected_rows(result)

    # ==================== Owner Operations ====================

    async def register_owner(self, name: str) -> str:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO owners (name) VALUES ($1)
                ON CONFLICT (name) DO UPDATE SET last_active_at = NOW()
                RETURNING id
                """,
                name,
            )
            return str(row["id"])

    async def link_owner(self, owner_id: str, item_id: str) -> OwnerLink:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO owner_items (owner_id, item_id)
                VALUES ($1::uuid, $2::uuid)
                ON CONFLICT (owner_id, item_id) DO UPDATE
                SET remember_count = owner_items.remember_count + 1,
                    last_seen_at = NOW()
                RETURNING *
                """,
                owner_id,
                item_id,
            )
            return self._row_to_link(row)

    async def unlink_owner(self, owner_id: str, item_id: str) -> bool:
        async with self._acquire() as conn:
            result = await conn.execute(
                "DELETE FROM owner_items WHERE owner_id = $1::uuid AND item_id = $2::uuid",
                owner_id,
                item_id,
            )
            return affected_rows(result) == 1

    async def get_owner_link(self, owner_id: str, item_id: str) -> OwnerLink | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM owner_items WHERE owner_id = $1::uuid AND item_id = $2::uuid",
                owner_id,
                item_id,
            )
            return self._row_to_link(row) if row else None

    async def set_working_memory_flag(
        self, owner_id: str, item_ids: list[str], in_working_memory: bool
    ) -> None:
        if not item_ids:
            return
        async with self._acquire() as conn:
            await conn.execute(
                """
                UPDATE owner_items SET in_working_memory = $3
                WHERE owner_id = $1::uuid AND item_id = ANY($2::uuid[])
                """,
                owner_id,
                item_ids,
                in_working_memory,
            )

    async def clear_working_memory_flags(self, owner_id: str) -> int:
        async with self._acquire() as conn:
            result = await conn.execute(
                """
                UPDATE owner_items SET in_working_memory = FALSE
                WHERE owner_id = $1::uuid AND in_working_memory
                """,
                owner_id,
            )
            return affected_rows(result)

    # ==================== Enrichment Writes ====================

    async def set_embedding(self, item_id: str, embedding: list[float]) -> bool:
        uid = as_uuid(item_id)
        if uid is None:
            return False
        async with self._acquire() as conn:
            result = await conn.execute(
                "UPDATE items SET embedding = $2::vector, updated_at = NOW() WHERE id = $1",
                uid,
                vector_literal(embedding),
            )
            return affected_rows(result) == 1

    async def add_tags(self, item_id: str, paths: list[str]) -> int:
        uid = as_uuid(item_id)
        if uid is None or not paths:
            return 0
        async with self._acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO tags (path) SELECT unnest($1::text[])
                    ON CONFLICT (path) DO NOTHING
                    """,
                    paths,
                )
                result = await conn.execute(
                    """
                    INSERT INTO item_tags (item_id, tag_id)
                    SELECT $1, id FROM tags WHERE path = ANY($2::text[])
                    ON CONFLICT (item_id, tag_id) DO NOTHING
                    """,
                    uid,
                    paths,
                )
                return affected_rows(result)

    async def item_tags(self, item_id: str) -> list[str]:
        uid = as_uuid(item_id)
        if uid is None:
            return []
        async with self._acquire() as conn:
            tags = await self._tags_for(conn, [uid])
            return tags.get(str(uid), [])

    async def recent_tag_paths(self, limit: int = 100) -> list[str]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                "SELECT path FROM tags ORDER BY created_at DESC, path LIMIT $1",
                cap_limit(limit),
            )
            return [row["path"] for row in rows]

    async def find_tags_by_segments(self, segments: list[str]) -> list[str]:
        if not segments:
            return []
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT path FROM tags
                WHERE string_to_array(path, ':') && $1::text[]
                ORDER BY path
                """,
                [s.lower() for s in segments],
            )
            return [row["path"] for row in rows]

    async def items_missing_embedding(self, limit: int = 100) -> list[str]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id FROM items
                WHERE embedding IS NULL AND deleted_at IS NULL
                ORDER BY created_at
                LIMIT $1
                """,
                cap_limit(limit),
            )
            return [str(row["id"]) for row in rows]

    async def find_ids_by_content(self, substring: str) -> list[str]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id FROM items
                WHERE deleted_at IS NULL AND strpos(lower(content), lower($1)) > 0
                ORDER BY created_at
                """,
                substring,
            )
            return [str(row["id"]) for row in rows]

    # ==================== Search Primitives ====================

    async def vector_search(
        self,
        window: TimeWindow | None,
        vector: list[float],
        limit: int,
        neutral_similarity: float,
    ) -> list[tuple[StoredItem, float]]:
        params: list = [vector_literal(vector), neutral_similarity, cap_limit(limit)]
        where = window_clause(window, params)
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {item_columns()},
                       COALESCE(1 - (embedding <=> $1::vector), $2) AS similarity
                FROM items
                WHERE deleted_at IS NULL{where}
                ORDER BY similarity DESC, created_at
                LIMIT $3
                """,
                *params,
            )
            return await self._with_tags(conn, rows, "similarity")

    async def fulltext_search(
        self,
        window: TimeWindow | None,
        query: str,
        limit: int,
    ) -> list[tuple[StoredItem, float]]:
        params: list = [query, cap_limit(limit), self.config.trigram_threshold]
        where = window_clause(window, params)
        async with self._acquire() as conn:
            # Lexical hits rank above 1.0; trigram-only hits stay below it
            rows = await conn.fetch(
                f"""
                WITH lexical AS (
                    SELECT id,
                           1.0 + ts_rank(to_tsvector('english', content),
                                         plainto_tsquery('english', $1)) AS rank
                    FROM items
                    WHERE deleted_at IS NULL{where}
                      AND to_tsvector('english', content) @@ plainto_tsquery('english', $1)
                    ORDER BY rank DESC
                    LIMIT $2
                ),
                fuzzy AS (
                    SELECT id, word_similarity($1, content) AS rank
                    FROM items
                    WHERE deleted_at IS NULL{where}
                      AND id NOT IN (SELECT id FROM lexical)
                      AND word_similarity($1, content) >= $3
                    ORDER BY rank DESC
                    LIMIT $2
                ),
                ranked AS (
                    SELECT * FROM lexical
                    UNION ALL
                    SELECT * FROM fuzzy
                )
                SELECT {item_columns('i')}, ranked.rank
                FROM ranked JOIN items i ON i.id = ranked.id
                ORDER BY ranked.rank DESC, i.created_at
                LIMIT $2
                """,
                *params,
            )
            return await self._with_tags(conn, rows, "rank")

    async def items_with_tags(
        self,
        window: TimeWindow | None,
        paths: list[str],
        limit: int,
        match_all: bool = False,
    ) -> list[tuple[StoredItem, list[str]]]:
        paths = sorted(set(paths))
        if not paths:
            return []
        params: list = [paths, cap_limit(limit)]
        where = window_clause(window, params, column="i.created_at")
        having = ""
        if match_all:
            # Every requested path must be present, not just one
            having = " HAVING count(DISTINCT t.path) = cardinality($1::text[])"
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {item_columns('i')},
                       array_agg(t.path ORDER BY t.path) AS matched
                FROM items i
                JOIN item_tags it ON it.item_id = i.id
                JOIN tags t ON t.id = it.tag_id
                WHERE i.deleted_at IS NULL{where}
                  AND t.path = ANY($1::text[])
                GROUP BY i.id{having}
                ORDER BY count(*) DESC, i.created_at
                LIMIT $2
                """,
                *params,
            )
            tags = await self._tags_for(conn, [row["id"] for row in rows])
            return [
                (self._row_to_item(row, tags.get(str(row["id"]), [])), list(row["matched"]))
                for row in rows
            ]

    async def recent_items(
        self,
        window: TimeWindow | None,
        limit: int,
    ) -> list[StoredItem]:
        params: list = [cap_limit(limit)]
        where = window_clause(window, params)
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {item_columns()}
                FROM items
                WHERE deleted_at IS NULL{where}
                ORDER BY created_at DESC
                LIMIT $1
                """,
                *params,
            )
            tags = await self._tags_for(conn, [row["id"] for row in rows])
            return [self._row_to_item(row, tags.get(str(row["id"]), [])) for row in rows]

    async def similarity_scores(
        self, item_ids: list[str], vector: list[float]
    ) -> dict[str, float | None]:
        uids = [u for u in (as_uuid(i) for i in item_ids) if u]
        if not uids:
            return {}
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id,
                       CASE WHEN embedding IS NULL THEN NULL
                            ELSE 1 - (embedding <=> $2::vector) END AS similarity
                FROM items
                WHERE id = ANY($1::uuid[])
                """,
                uids,
                vector_literal(vector),
            )
            return {
                str(row["id"]): (
                    float(row["similarity"]) if row["similarity"] is not None else None
                )
                for row in rows
            }

    async def stats(self) -> dict[str, Any]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    (SELECT count(*) FROM items) AS items,
                    (SELECT count(*) FROM items WHERE deleted_at IS NOT NULL) AS deleted_items,
                    (SELECT count(*) FROM items WHERE embedding IS NOT NULL) AS embedded_items,
                    (SELECT count(*) FROM tags) AS tags,
                    (SELECT count(*) FROM owners) AS owners
                """
            )
            return {"backend": "postgres", **dict(row)}

    # ==================== Helpers ====================

    async def _tags_for(self, conn, item_ids: list) -> dict[str, list[str]]:
        if not item_ids:
            return {}
        rows = await conn.fetch(
            """
            SELECT it.item_id, t.path
            FROM item_tags it JOIN tags t ON t.id = it.tag_id
            WHERE it.item_id = ANY($1::uuid[])
            ORDER BY t.path
            """,
            item_ids,
        )
        result: dict[str, list[str]] = {}
        for row in rows:
            result.setdefault(str(row["item_id"]), []).append(row["path"])
        return result

    async def _with_tags(self, conn, rows, score_column: str) -> list[tuple[StoredItem, float]]:
        tags = await self._tags_for(conn, [row["id"] for row in rows])
        return [
            (self._row_to_item(row, tags.get(str(row["id"]), [])), float(row[score_column]))
            for row in rows
        ]

    def _row_to_item(self, row, tags: list[str] | None = None) -> StoredItem:
        """Convert database row to StoredItem."""
        return StoredItem(
            id=str(row["id"]),
            content=row["content"],
            content_hash=row["content_hash"].strip(),
            token_count=row["token_count"],
            embedding=parse_vector(row["embedding"]),
            access_count=row["access_count"],
            last_accessed_at=_ts(row["last_accessed_at"]),
            created_at=row["created_at"].timestamp(),
            updated_at=row["updated_at"].timestamp(),
            deleted_at=_ts(row["deleted_at"]),
            tags=list(tags or []),
        )

    def _row_to_link(self, row) -> OwnerLink:
        """Convert database row to OwnerLink."""
        return OwnerLink(
            owner_id=str(row["owner_id"]),
            item_id=str(row["item_id"]),
            first_seen_at=row["first_seen_at"].timestamp(),
            last_seen_at=row["last_seen_at"].timestamp(),
            remember_count=row["remember_count"],
            in_working_memory=row["in_working_memory"],
        )


def _ts(value: datetime | None) -> float | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()
