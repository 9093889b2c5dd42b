"""Observation log: append-only audit and feedback records."""

import json
import logging
from typing import List, Optional

from garden.db import Handle
from garden.models import FeedbackStats, Observation

logger = logging.getLogger(__name__)


def _observation(row) -> Observation:
    data = row["data"]
    if isinstance(data, str):
        data = json.loads(data)
    return Observation(
        id=str(row["id"]),
        data=data or {},
        type=row["type"],
        source=row["source"],
        tags=row["tags"],
        parent_id=str(row["parent_id"]) if row["parent_id"] else None,
        ref=row["ref"],
        creation_date=row["creation_date"],
    )


class ObservationStore:
    def __init__(self, db: Handle):
        self.db = db

    async def insert(self, observation: Observation) -> Observation:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO observations (data, type, source, tags, parent_id, ref)
                VALUES ($1::jsonb, $2, $3, $4, $5::uuid, $6)
                RETURNING id, creation_date
                """,
                json.dumps(observation.data),
                observation.type,
                observation.source,
                observation.tags,
                observation.parent_id,
                observation.ref,
            )
        observation.id = str(row["id"])
        observation.creation_date = row["creation_date"]
        return observation

    async def list_by_ref(self, ref: str, type: Optional[str] = None, limit: int = 100) -> List[Observation]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, data, type, source, tags, parent_id, ref, creation_date
                FROM observations
                WHERE ref = $1 AND ($2::text IS NULL OR type = $2::text)
                ORDER BY creation_date DESC
                LIMIT $3
                """,
                ref,
                type,
                limit,
            )
        return [_observation(r) for r in rows]

    async def feedback_stats(self, bookmark_id: str) -> FeedbackStats:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    COUNT(*) FILTER (WHERE ',' || tags || ',' LIKE '%,upvote,%') AS upvotes,
                    COUNT(*) FILTER (WHERE ',' || tags || ',' LIKE '%,downvote,%') AS downvotes,
                    COUNT(*) FILTER (WHERE ',' || tags || ',' LIKE '%,trash,%') AS trash
                FROM observations
                WHERE type = 'qa-feedback' AND ref = $1
                """,
                bookmark_id,
            )
        if not row:
            return FeedbackStats()
        return FeedbackStats(
            upvotes=row["upvotes"] or 0,
            downvotes=row["downvotes"] or 0,
            trash=row["trash"] or 0,
        )
