"""Note store: notes and their tag bindings."""

import logging
from typing import List, Optional

from garden.db import Handle, vector_literal
from garden.embeddings import check_dimension
from garden.models import Note

logger = logging.getLogger(__name__)

NOTE_COLUMNS = "n.id, n.title, n.slug, n.contents, n.created_at, n.modified_at"


def _pattern(query: Optional[str]) -> Optional[str]:
    """Substring pattern with LIKE wildcards in the query matched literally."""
    if not query:
        return None
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _note(row, tags: Optional[List[str]] = None) -> Note:
    return Note(
        id=str(row["id"]),
        title=row["title"],
        slug=row["slug"],
        contents=row["contents"],
        created_at=row["created_at"],
        modified_at=row["modified_at"],
        tags=tags or [],
    )


class NoteStore:
    def __init__(self, db: Handle, dimensions: Optional[int] = None):
        self.db = db
        self.dimensions = dimensions

    async def create(self, title: str, slug: Optional[str], contents: str) -> Note:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO notes AS n (title, slug, contents)
                VALUES ($1, $2, $3)
                RETURNING n.id, n.title, n.slug, n.contents, n.created_at, n.modified_at
                """,
                title,
                slug,
                contents,
            )
        return _note(row)

    async def update(self, note_id: str, title: str, slug: Optional[str], contents: str) -> bool:
        async with self.db.acquire() as conn:
            updated = await conn.fetchval(
                """
                UPDATE notes SET title = $2, slug = $3, contents = $4, modified_at = NOW()
                WHERE id = $1::uuid
                RETURNING id
                """,
                note_id,
                title,
                slug,
                contents,
            )
        return updated is not None

    async def update_contents(self, note_id: str, contents: str) -> None:
        async with self.db.acquire() as conn:
            await conn.execute(
                "UPDATE notes SET contents = $2, modified_at = NOW() WHERE id = $1::uuid",
                note_id,
                contents,
            )

    async def update_embedding(self, note_id: str, vector: List[float]) -> None:
        check_dimension(vector, self.dimensions)
        async with self.db.acquire() as conn:
            await conn.execute(
                "UPDATE notes SET embedding = $2::vector WHERE id = $1::uuid",
                note_id,
                vector_literal(vector),
            )

    async def get(self, note_id: str) -> Optional[Note]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {NOTE_COLUMNS} FROM notes n WHERE n.id = $1::uuid",
                note_id,
            )
            if not row:
                return None
            tags = await conn.fetch(
                """
                SELECT t.name FROM note_tags nt
                JOIN tags t ON t.id = nt.tag_id
                WHERE nt.note_id = $1::uuid
                ORDER BY t.name
                """,
                note_id,
            )
        return _note(row, [t["name"] for t in tags])

    async def count(self, query: Optional[str] = None) -> int:
        async with self.db.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM notes
                WHERE $1::text IS NULL OR title ILIKE $1 ESCAPE '\\' OR contents ILIKE $1 ESCAPE '\\'
                """,
                _pattern(query),
            )

    async def list(self, limit: int, offset: int, query: Optional[str] = None) -> List[Note]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {NOTE_COLUMNS},
                       ARRAY(SELECT t.name FROM note_tags nt JOIN tags t ON t.id = nt.tag_id
                             WHERE nt.note_id = n.id ORDER BY t.name) AS tags
                FROM notes n
                WHERE $3::text IS NULL OR n.title ILIKE $3 ESCAPE '\\' OR n.contents ILIKE $3 ESCAPE '\\'
                ORDER BY n.modified_at DESC
                LIMIT $1 OFFSET $2
                """,
                limit,
                offset,
                _pattern(query),
            )
        return [_note(r, list(r["tags"] or [])) for r in rows]

    async def delete(self, note_id: str) -> bool:
        async with self.db.acquire() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM notes WHERE id = $1::uuid RETURNING id",
                note_id,
            )
        return deleted is not None

    # =========================================================================
    # Tags
    # =========================================================================

    async def delete_tags(self, note_id: str) -> None:
        async with self.db.acquire() as conn:
            await conn.execute("DELETE FROM note_tags WHERE note_id = $1::uuid", note_id)

    async def set_tags(self, note_id: str, names: List[str]) -> List[str]:
        """Replace the note's tag bindings, upserting tags by name."""
        cleaned = sorted({n.strip() for n in names if n and n.strip()})
        async with self.db.acquire() as conn:
            await conn.execute("DELETE FROM note_tags WHERE note_id = $1::uuid", note_id)
            for name in cleaned:
                tag_id = await conn.fetchval(
                    """
                    INSERT INTO tags (name) VALUES ($1)
                    ON CONFLICT (name) DO UPDATE SET modified_at = NOW()
                    RETURNING id
                    """,
                    name,
                )
                await conn.execute(
                    """
                    INSERT INTO note_tags (note_id, tag_id) VALUES ($1::uuid, $2)
                    ON CONFLICT DO NOTHING
                    """,
                    note_id,
                    tag_id,
                )
        return cleaned
