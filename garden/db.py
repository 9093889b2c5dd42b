"""
Database plumbing: connection pool, schema bootstrap and the request-scoped
handle passed to stores.

A Handle carries either the shared pool or a single connection that is
inside a transaction. Stores always go through ``handle.acquire()``, so the
same store code runs standalone or as part of a caller's transaction.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence

import asyncpg

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://gardener@localhost:5432/garden")
DB_POOL_MIN = int(os.getenv("DB_POOL_MIN", "2"))
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "10"))
EMBEDDING_DIMENSIONS = int(os.getenv("EMBEDDING_DIMENSIONS", "768"))


async def create_pool(dsn: str = DATABASE_URL) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        dsn,
        min_size=DB_POOL_MIN,
        max_size=DB_POOL_MAX,
        command_timeout=60,
    )


class Handle:
    """Pool-or-transaction handle."""

    def __init__(self, pool=None, conn=None):
        if pool is None and conn is None:
            raise ValueError("Handle needs a pool or a connection")
        self._pool = pool
        self._conn = conn

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        if self._conn is not None:
            yield self._conn
            return
        async with self._pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Handle"]:
        """Open a transaction (a savepoint when already inside one)."""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield Handle(conn=conn)


# =============================================================================
# pgvector helpers
# =============================================================================

def vector_literal(values: Sequence[float]) -> str:
    """Render a vector as a pgvector text literal for ``$n::vector``."""
    return '[' + ','.join(str(float(x)) for x in values) + ']'


# =============================================================================
# Schema
# =============================================================================

async def ensure_schema(conn: asyncpg.Connection, dimensions: int = EMBEDDING_DIMENSIONS):
    """Create the extension, tables and indexes if they do not exist."""
    await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
    await conn.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    await conn.execute("""
        CREATE TABLE IF NOT EXISTS bookmarks (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            url TEXT NOT NULL,
            creation_date TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    await conn.execute("""
        CREATE TABLE IF NOT EXISTS http_responses (
            id BIGSERIAL PRIMARY KEY,
            bookmark_id UUID NOT NULL REFERENCES bookmarks(id),
            status_code INT NOT NULL,
            headers TEXT NOT NULL DEFAULT '{}',
            content BYTEA,
            fetch_date TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_http_responses_bookmark
        ON http_responses(bookmark_id, fetch_date DESC)
    """)

    await conn.execute("""
        CREATE TABLE IF NOT EXISTS processed_contents (
            id BIGSERIAL PRIMARY KEY,
            bookmark_id UUID NOT NULL REFERENCES bookmarks(id),
            strategy_used TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_processed_contents_bookmark
        ON processed_contents(bookmark_id, strategy_used, created_at DESC)
    """)

    await conn.execute("""
        CREATE TABLE IF NOT EXISTS bookmark_titles (
            bookmark_id UUID PRIMARY KEY REFERENCES bookmarks(id),
            title TEXT NOT NULL,
            source TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS bookmark_content_references (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            bookmark_id UUID NOT NULL REFERENCES bookmarks(id),
            content TEXT NOT NULL,
            strategy TEXT,
            embedding vector({dimensions}),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_content_references_bookmark
        ON bookmark_content_references(bookmark_id, strategy)
    """)

    await conn.execute("""
        CREATE TABLE IF NOT EXISTS observations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            data JSONB NOT NULL,
            type TEXT NOT NULL,
            source TEXT NOT NULL,
            tags TEXT NOT NULL DEFAULT '',
            parent_id UUID,
            ref TEXT,
            creation_date TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_observations_ref
        ON observations(ref, type)
    """)

    await conn.execute("""
        CREATE TABLE IF NOT EXISTS entities (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name TEXT NOT NULL,
            type TEXT NOT NULL,
            description TEXT,
            properties JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            deleted_at TIMESTAMPTZ
        )
    """)
    await conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_entities_name
        ON entities(name) WHERE deleted_at IS NULL
    """)

    await conn.execute("""
        CREATE TABLE IF NOT EXISTS entity_references (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            source_type TEXT NOT NULL,
            source_id TEXT NOT NULL,
            entity_id UUID NOT NULL REFERENCES entities(id),
            reference_text TEXT NOT NULL,
            position INT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_entity_references_source
        ON entity_references(source_type, source_id)
    """)

    await conn.execute("""
        CREATE TABLE IF NOT EXISTS entity_relationships (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            entity_id UUID NOT NULL REFERENCES entities(id),
            related_id TEXT NOT NULL,
            related_type TEXT NOT NULL,
            relationship_type TEXT NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS notes (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            title TEXT NOT NULL,
            slug TEXT,
            contents TEXT NOT NULL DEFAULT '',
            embedding vector({dimensions}),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            modified_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    await conn.execute("""
        CREATE TABLE IF NOT EXISTS tags (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name TEXT UNIQUE NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            modified_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS note_tags (
            note_id UUID NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
            tag_id UUID NOT NULL REFERENCES tags(id),
            PRIMARY KEY (note_id, tag_id)
        )
    """)

    await conn.execute("""
        CREATE TABLE IF NOT EXISTS configurations (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            is_secret BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    logger.info(f"Schema ensured (vector dimensions: {dimensions})")
