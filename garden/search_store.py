"""
Search store: unified hybrid scoring across artifact kinds and nearest
neighbour retrieval over embedding chunks.
"""

import logging
from typing import List, Optional

from garden.db import Handle
from garden.models import (
    STRATEGY_SUMMARY_READER,
    Note,
    RetrievedItem,
    SearchWeights,
    UnifiedSearchResult,
    split_question,
)

logger = logging.getLogger(__name__)

# Bookmarks are represented by their summary vector, notes by their own
# vector; entities only take part lexically and by recency. Timestamps in
# the future count as age zero.
HYBRID_SEARCH_SQL = """
    WITH candidates AS (
        SELECT 'bookmark' AS item_type,
               b.id::text AS item_id,
               COALESCE(t.title, b.url) AS item_title,
               b.creation_date AS last_activity,
               (SELECT s.embedding FROM bookmark_content_references s
                WHERE s.bookmark_id = b.id AND s.strategy = $7
                ORDER BY s.created_at DESC LIMIT 1) AS embedding
        FROM bookmarks b
        LEFT JOIN bookmark_titles t ON t.bookmark_id = b.id
        UNION ALL
        SELECT 'note', n.id::text, n.title, n.modified_at, n.embedding
        FROM notes n
        UNION ALL
        SELECT 'entity', e.id::text, e.name, e.updated_at, NULL::vector
        FROM entities e
        WHERE e.deleted_at IS NULL
    )
    SELECT item_type, item_id, item_title, last_activity,
           ( $2::float8 * CASE WHEN position(lower($1::text) IN lower(COALESCE(item_title, ''))) > 0
                               THEN 1 ELSE 0 END
           + $3::float8 * COALESCE(1 - (embedding <=> $5::vector), 0)
           + $4::float8 * (1.0 / (1.0 + GREATEST(EXTRACT(EPOCH FROM (NOW() - last_activity)) / 86400.0, 0)))
           ) AS search_score
    FROM candidates
    ORDER BY search_score DESC
    LIMIT $6
"""


class SearchStore:
    def __init__(self, db: Handle):
        self.db = db

    async def search_all(
        self,
        query: str,
        query_vector: str,
        weights: SearchWeights,
        limit: int,
    ) -> List[UnifiedSearchResult]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                HYBRID_SEARCH_SQL,
                query,
                weights.exact,
                weights.similarity,
                weights.recency,
                query_vector,
                limit,
                STRATEGY_SUMMARY_READER,
            )
        results = [
            UnifiedSearchResult(
                item_type=r["item_type"],
                item_id=r["item_id"],
                item_title=r["item_title"],
                last_activity=r["last_activity"],
                search_score=float(r["search_score"] or 0),
            )
            for r in rows
        ]
        results.sort(key=lambda r: r.search_score, reverse=True)
        return results

    async def similar_chunks(
        self,
        query_vector: str,
        limit: int,
        strategy: Optional[str] = None,
    ) -> List[RetrievedItem]:
        """Nearest chunks with their bookmark's title, URL and summary."""
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT r.id, r.bookmark_id, r.content, r.strategy,
                       1 - (r.embedding <=> $1::vector) AS similarity,
                       b.url, t.title,
                       (SELECT s.content FROM bookmark_content_references s
                        WHERE s.bookmark_id = r.bookmark_id AND s.strategy = $4
                        ORDER BY s.created_at DESC LIMIT 1) AS summary
                FROM bookmark_content_references r
                JOIN bookmarks b ON b.id = r.bookmark_id
                LEFT JOIN bookmark_titles t ON t.bookmark_id = r.bookmark_id
                WHERE r.embedding IS NOT NULL
                  AND ($3::text IS NULL OR r.strategy = $3::text)
                ORDER BY r.embedding <=> $1::vector
                LIMIT $2
                """,
                query_vector,
                limit,
                strategy,
                STRATEGY_SUMMARY_READER,
            )

        items = []
        for rank, row in enumerate(rows, start=1):
            question, answer = split_question(row["content"])
            items.append(RetrievedItem(
                id=rank,
                question=question,
                answer=answer,
                bookmark_id=str(row["bookmark_id"]),
                bookmark_title=row["title"],
                bookmark_url=row["url"],
                summary=row["summary"],
                similarity=float(row["similarity"]) if row["similarity"] is not None else 0.0,
                strategy=row["strategy"] or "",
                reference_id=str(row["id"]),
            ))
        return items

    async def similar_notes(self, query_vector: str, limit: int) -> List[dict]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, title, slug, contents, created_at, modified_at,
                       1 - (embedding <=> $1::vector) AS similarity
                FROM notes
                WHERE embedding IS NOT NULL
                ORDER BY embedding <=> $1::vector
                LIMIT $2
                """,
                query_vector,
                limit,
            )
        results = []
        for r in rows:
            note = Note(
                id=str(r["id"]),
                title=r["title"],
                slug=r["slug"],
                contents=r["contents"],
                created_at=r["created_at"],
                modified_at=r["modified_at"],
            )
            data = note.to_dict()
            data["similarity"] = float(r["similarity"]) if r["similarity"] is not None else 0.0
            results.append(data)
        return results
