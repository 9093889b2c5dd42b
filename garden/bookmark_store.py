"""
Bookmark store: bookmarks and every artifact the ingestion pipeline derives
from them (HTTP responses, processed contents, titles, embedding chunks).

Reads follow latest-wins contracts: the newest HTTP response by fetch date,
the newest processed content per strategy.
"""

import logging
from typing import List, Optional

from garden.db import EMBEDDING_DIMENSIONS, Handle, vector_literal
from garden.embeddings import check_dimension
from garden.models import (
    STRATEGY_CHUNKED_READER,
    STRATEGY_QA_PASSAGE,
    STRATEGY_READER,
    STRATEGY_SUMMARY_READER,
    Bookmark,
    BookmarkDetails,
    BookmarkQuestion,
    EmbeddingChunk,
    HTTPResponseRecord,
    ProcessedContent,
    TitleFixture,
)

logger = logging.getLogger(__name__)

TITLE_RANK_SQL = """
    CASE {column}
        WHEN 'html-title' THEN 1
        WHEN 'reader-title' THEN 2
        ELSE 3
    END
"""


def _bookmark(row) -> Bookmark:
    return Bookmark(
        id=str(row["id"]),
        url=row["url"],
        creation_date=row["creation_date"],
        title=row["title"],
    )


def _response(row) -> HTTPResponseRecord:
    return HTTPResponseRecord(
        bookmark_id=str(row["bookmark_id"]),
        status_code=row["status_code"],
        headers=row["headers"] or "{}",
        content=bytes(row["content"] or b""),
        fetch_date=row["fetch_date"],
    )


def _question(row) -> BookmarkQuestion:
    return BookmarkQuestion(
        id=str(row["id"]),
        bookmark_id=str(row["bookmark_id"]),
        content=row["content"],
        strategy=row["strategy"],
    )


class BookmarkStore:
    def __init__(self, db: Handle, dimensions: int = EMBEDDING_DIMENSIONS):
        self.db = db
        self.dimensions = dimensions

    # =========================================================================
    # Bookmarks
    # =========================================================================

    async def create_bookmark(self, url: str) -> Bookmark:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO bookmarks (url)
                VALUES ($1)
                RETURNING id, url, creation_date, NULL::text AS title
                """,
                url,
            )
        return _bookmark(row)

    async def get_bookmark(self, bookmark_id: str) -> Optional[Bookmark]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT b.id, b.url, b.creation_date, t.title
                FROM bookmarks b
                LEFT JOIN bookmark_titles t ON t.bookmark_id = b.id
                WHERE b.id = $1::uuid
                """,
                bookmark_id,
            )
        return _bookmark(row) if row else None

    async def count_bookmarks(self) -> int:
        async with self.db.acquire() as conn:
            return await conn.fetchval("SELECT COUNT(*) FROM bookmarks")

    async def list_bookmarks(self, limit: int, offset: int) -> List[Bookmark]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT b.id, b.url, b.creation_date, t.title
                FROM bookmarks b
                LEFT JOIN bookmark_titles t ON t.bookmark_id = b.id
                ORDER BY b.creation_date DESC
                LIMIT $1 OFFSET $2
                """,
                limit,
                offset,
            )
        return [_bookmark(r) for r in rows]

    async def random_bookmark(self) -> Optional[Bookmark]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT b.id, b.url, b.creation_date, t.title
                FROM bookmarks b
                LEFT JOIN bookmark_titles t ON t.bookmark_id = b.id
                ORDER BY random()
                LIMIT 1
                """
            )
        return _bookmark(row) if row else None

    async def get_details(self, bookmark_id: str) -> Optional[BookmarkDetails]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT b.id, b.url, b.creation_date, t.title, t.source AS title_source,
                       hr.status_code, hr.fetch_date,
                       (SELECT s.content FROM bookmark_content_references s
                        WHERE s.bookmark_id = b.id AND s.strategy = $2
                        ORDER BY s.created_at DESC LIMIT 1) AS summary,
                       ARRAY(SELECT DISTINCT pc.strategy_used FROM processed_contents pc
                             WHERE pc.bookmark_id = b.id) AS strategies
                FROM bookmarks b
                LEFT JOIN bookmark_titles t ON t.bookmark_id = b.id
                LEFT JOIN LATERAL (
                    SELECT status_code, fetch_date FROM http_responses
                    WHERE bookmark_id = b.id
                    ORDER BY fetch_date DESC, id DESC
                    LIMIT 1
                ) hr ON TRUE
                WHERE b.id = $1::uuid
                """,
                bookmark_id,
                STRATEGY_SUMMARY_READER,
            )
        if not row:
            return None
        return BookmarkDetails(
            bookmark=_bookmark(row),
            summary=row["summary"],
            title_source=row["title_source"],
            status_code=row["status_code"],
            fetch_date=row["fetch_date"],
            strategies=sorted(row["strategies"] or []),
        )

    # =========================================================================
    # HTTP responses
    # =========================================================================

    async def insert_http_response(self, record: HTTPResponseRecord) -> HTTPResponseRecord:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO http_responses (bookmark_id, status_code, headers, content, fetch_date)
                VALUES ($1::uuid, $2, $3, $4, COALESCE($5, NOW()))
                RETURNING fetch_date
                """,
                record.bookmark_id,
                record.status_code,
                record.headers,
                record.content,
                record.fetch_date,
            )
        record.fetch_date = row["fetch_date"]
        return record

    async def latest_http_response(self, bookmark_id: str) -> Optional[HTTPResponseRecord]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT bookmark_id, status_code, headers, content, fetch_date
                FROM http_responses
                WHERE bookmark_id = $1::uuid
                ORDER BY fetch_date DESC, id DESC
                LIMIT 1
                """,
                bookmark_id,
            )
        return _response(row) if row else None

    # =========================================================================
    # Processed contents
    # =========================================================================

    async def insert_processed_content(self, bookmark_id: str, strategy: str, content: str) -> None:
        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO processed_contents (bookmark_id, strategy_used, content)
                VALUES ($1::uuid, $2, $3)
                """,
                bookmark_id,
                strategy,
                content,
            )

    async def latest_processed_content(self, bookmark_id: str, strategy: str) -> Optional[ProcessedContent]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT bookmark_id, strategy_used, content, created_at
                FROM processed_contents
                WHERE bookmark_id = $1::uuid AND strategy_used = $2
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                bookmark_id,
                strategy,
            )
        if not row:
            return None
        return ProcessedContent(
            bookmark_id=str(row["bookmark_id"]),
            strategy_used=row["strategy_used"],
            content=row["content"],
            created_at=row["created_at"],
        )

    # =========================================================================
    # Titles
    # =========================================================================

    async def title_fixture(self, bookmark_id: str) -> Optional[TitleFixture]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT b.id, b.url, t.title AS existing_title, t.source AS existing_source,
                       (SELECT pc.content FROM processed_contents pc
                        WHERE pc.bookmark_id = b.id AND pc.strategy_used = $2
                        ORDER BY pc.created_at DESC, pc.id DESC LIMIT 1) AS reader_content,
                       (SELECT hr.content FROM http_responses hr
                        WHERE hr.bookmark_id = b.id
                        ORDER BY hr.fetch_date DESC, hr.id DESC LIMIT 1) AS raw_content
                FROM bookmarks b
                LEFT JOIN bookmark_titles t ON t.bookmark_id = b.id
                WHERE b.id = $1::uuid
                """,
                bookmark_id,
                STRATEGY_READER,
            )
        if not row:
            return None
        raw = row["raw_content"]
        return TitleFixture(
            bookmark_id=str(row["id"]),
            url=row["url"],
            existing_title=row["existing_title"],
            existing_source=row["existing_source"],
            reader_content=row["reader_content"],
            raw_content=bytes(raw) if raw is not None else None,
        )

    async def record_title(self, bookmark_id: str, title: str, source: str) -> bool:
        """Store a title unless one from a more trusted source exists."""
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO bookmark_titles (bookmark_id, title, source)
                VALUES ($1::uuid, $2, $3)
                ON CONFLICT (bookmark_id) DO UPDATE
                SET title = EXCLUDED.title, source = EXCLUDED.source, created_at = NOW()
                WHERE {TITLE_RANK_SQL.format(column="bookmark_titles.source")}
                    <= {TITLE_RANK_SQL.format(column="EXCLUDED.source")}
                RETURNING bookmark_id
                """,
                bookmark_id,
                title,
                source,
            )
        return row is not None

    # =========================================================================
    # Embedding chunks
    # =========================================================================

    async def insert_chunk(self, chunk: EmbeddingChunk) -> str:
        check_dimension(chunk.embedding or [], self.dimensions)
        async with self.db.acquire() as conn:
            chunk_id = await conn.fetchval(
                """
                INSERT INTO bookmark_content_references (bookmark_id, content, strategy, embedding)
                VALUES ($1::uuid, $2, $3, $4::vector)
                RETURNING id
                """,
                chunk.bookmark_id,
                chunk.content,
                chunk.strategy,
                vector_literal(chunk.embedding or []),
            )
        chunk.id = str(chunk_id)
        return chunk.id

    async def delete_chunk(self, bookmark_id: str, chunk_id: str) -> bool:
        async with self.db.acquire() as conn:
            deleted = await conn.fetchval(
                """
                DELETE FROM bookmark_content_references
                WHERE id = $1::uuid AND bookmark_id = $2::uuid
                RETURNING id
                """,
                chunk_id,
                bookmark_id,
            )
        return deleted is not None

    async def latest_summary(self, bookmark_id: str) -> Optional[str]:
        async with self.db.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT content FROM bookmark_content_references
                WHERE bookmark_id = $1::uuid AND strategy = $2
                ORDER BY created_at DESC
                LIMIT 1
                """,
                bookmark_id,
                STRATEGY_SUMMARY_READER,
            )

    # =========================================================================
    # Questions
    # =========================================================================

    async def list_questions(self, bookmark_id: str) -> List[BookmarkQuestion]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, bookmark_id, content, strategy
                FROM bookmark_content_references
                WHERE bookmark_id = $1::uuid AND strategy = $2
                ORDER BY created_at
                """,
                bookmark_id,
                STRATEGY_QA_PASSAGE,
            )
        return [_question(r) for r in rows]

    async def get_question(self, bookmark_id: str, question_id: str) -> Optional[BookmarkQuestion]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, bookmark_id, content, strategy
                FROM bookmark_content_references
                WHERE id = $1::uuid AND bookmark_id = $2::uuid
                """,
                question_id,
                bookmark_id,
            )
        return _question(row) if row else None

    async def update_question(self, bookmark_id: str, question_id: str, content: str, vector: List[float]) -> bool:
        """Replace content and vector in one statement."""
        check_dimension(vector, self.dimensions)
        async with self.db.acquire() as conn:
            updated = await conn.fetchval(
                """
                UPDATE bookmark_content_references
                SET content = $3, embedding = $4::vector
                WHERE id = $1::uuid AND bookmark_id = $2::uuid
                RETURNING id
                """,
                question_id,
                bookmark_id,
                content,
                vector_literal(vector),
            )
        return updated is not None

    # =========================================================================
    # Missing-X queries
    # =========================================================================

    async def missing_http_responses(self, limit: int = 100) -> List[Bookmark]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT b.id, b.url, b.creation_date, t.title
                FROM bookmarks b
                LEFT JOIN bookmark_titles t ON t.bookmark_id = b.id
                WHERE NOT EXISTS (SELECT 1 FROM http_responses hr WHERE hr.bookmark_id = b.id)
                ORDER BY b.creation_date DESC
                LIMIT $1
                """,
                limit,
            )
        return [_bookmark(r) for r in rows]

    async def missing_reader_content(self, limit: int = 100) -> List[Bookmark]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT b.id, b.url, b.creation_date, t.title
                FROM bookmarks b
                LEFT JOIN bookmark_titles t ON t.bookmark_id = b.id
                WHERE EXISTS (SELECT 1 FROM http_responses hr WHERE hr.bookmark_id = b.id)
                  AND NOT EXISTS (
                      SELECT 1 FROM processed_contents pc
                      WHERE pc.bookmark_id = b.id AND pc.strategy_used = $2
                  )
                ORDER BY b.creation_date DESC
                LIMIT $1
                """,
                limit,
                STRATEGY_READER,
            )
        return [_bookmark(r) for r in rows]

    async def missing_embeddings(self, limit: int = 100) -> List[Bookmark]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT b.id, b.url, b.creation_date, t.title
                FROM bookmarks b
                LEFT JOIN bookmark_titles t ON t.bookmark_id = b.id
                WHERE EXISTS (
                      SELECT 1 FROM processed_contents pc
                      WHERE pc.bookmark_id = b.id AND pc.strategy_used = $2
                  )
                  AND NOT EXISTS (
                      SELECT 1 FROM bookmark_content_references r
                      WHERE r.bookmark_id = b.id AND r.strategy = $3
                  )
                ORDER BY b.creation_date DESC
                LIMIT $1
                """,
                limit,
                STRATEGY_READER,
                STRATEGY_CHUNKED_READER,
            )
        return [_bookmark(r) for r in rows]

    async def missing_summaries(self, limit: int = 100) -> List[Bookmark]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT b.id, b.url, b.creation_date, t.title
                FROM bookmarks b
                LEFT JOIN bookmark_titles t ON t.bookmark_id = b.id
                WHERE EXISTS (
                      SELECT 1 FROM processed_contents pc
                      WHERE pc.bookmark_id = b.id AND pc.strategy_used = $2
                  )
                  AND NOT EXISTS (
                      SELECT 1 FROM bookmark_content_references r
                      WHERE r.bookmark_id = b.id AND r.strategy = $3
                  )
                ORDER BY b.creation_date DESC
                LIMIT $1
                """,
                limit,
                STRATEGY_READER,
                STRATEGY_SUMMARY_READER,
            )
        return [_bookmark(r) for r in rows]

    async def missing_titles(self, limit: int = 100) -> List[Bookmark]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT b.id, b.url, b.creation_date, NULL::text AS title
                FROM bookmarks b
                WHERE EXISTS (SELECT 1 FROM http_responses hr WHERE hr.bookmark_id = b.id)
                  AND NOT EXISTS (SELECT 1 FROM bookmark_titles t WHERE t.bookmark_id = b.id)
                ORDER BY b.creation_date DESC
                LIMIT $1
                """,
                limit,
            )
        return [_bookmark(r) for r in rows]
