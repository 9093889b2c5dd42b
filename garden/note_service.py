"""
Note Service: notes with entity reference tokens, tags and a companion
entity.

Every write that rewrites reference tokens runs in one transaction: the
body update, the reference delete and the reference insert commit or roll
back together.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from garden.context import ServiceContext
from garden.db import vector_literal
from garden.entity_store import EntityStore
from garden.errors import InputError, NotFoundError
from garden.models import EntityReference, Note, ensure_uuid
from garden.note_store import NoteStore
from garden.pagination import PageParams, Paginated, paginate
from garden.references import rewrite_for_display, rewrite_for_storage
from garden.search_store import SearchStore
from garden.search_service import resolve_limit

logger = logging.getLogger(__name__)

SOURCE_TYPE = "note"
COMPANION_ENTITY_TYPE = "note"
COMPANION_RELATED_TYPE = "item"
COMPANION_RELATIONSHIP = "identity"

DEFAULT_SIMILAR_NOTES = 10


@dataclass
class FullNote:
    note: Note
    entity_id: Optional[str] = None
    display_contents: Optional[str] = None
    references: List[EntityReference] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = self.note.to_dict()
        data["entity_id"] = self.entity_id
        data["processed_contents"] = self.display_contents
        data["references"] = [r.to_dict() for r in self.references]
        return data


class NoteService:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx
        self.notes = NoteStore(ctx.db, ctx.dimensions)
        self.entities = EntityStore(ctx.db)

    async def _embed(self, title: str, contents: str) -> Optional[List[float]]:
        text = f"{title}\n{contents}".strip()
        if not text or self.ctx.vector_embedder is None:
            return None
        return await self.ctx.vector_embedder.embed(text)

    async def create_note(self, title: str, contents: str = "", tags: Optional[List[str]] = None) -> FullNote:
        title = (title or "").strip()
        if not title:
            raise InputError("title is required")
        contents = contents or ""
        vector = await self._embed(title, contents)

        async with self.ctx.db.transaction() as tx:
            notes = NoteStore(tx, self.ctx.dimensions)
            note = await notes.create(title, None, contents)
            if contents:
                stored = await rewrite_for_storage(tx, SOURCE_TYPE, note.id, contents)
                await notes.update_contents(note.id, stored)
            if vector is not None:
                await notes.update_embedding(note.id, vector)

            entities = EntityStore(tx)
            companion = await entities.create(title, COMPANION_ENTITY_TYPE)
            await entities.add_relationship(companion.id, note.id, COMPANION_RELATED_TYPE, COMPANION_RELATIONSHIP)

            if tags:
                await notes.set_tags(note.id, tags)

        logger.info(f"Created note {note.id} '{title}'")
        return await self.get_note(note.id)

    async def update_note(
        self,
        note_id: str,
        title: Optional[str] = None,
        contents: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> FullNote:
        note_id = ensure_uuid(note_id, "note id")
        existing = await self.notes.get(note_id)
        if existing is None:
            raise NotFoundError("note", note_id)

        new_title = title if title is not None else existing.title
        vector = await self._embed(new_title, contents) if contents is not None else None

        async with self.ctx.db.transaction() as tx:
            notes = NoteStore(tx, self.ctx.dimensions)
            if contents is not None:
                stored = await rewrite_for_storage(tx, SOURCE_TYPE, note_id, contents)
            else:
                stored = existing.contents
            await notes.update(note_id, new_title, existing.slug, stored)
            if vector is not None:
                await notes.update_embedding(note_id, vector)
            if tags is not None:
                await notes.set_tags(note_id, tags)

        logger.info(f"Updated note {note_id}")
        return await self.get_note(note_id)

    async def get_note(self, note_id: str, display: bool = True) -> FullNote:
        note_id = ensure_uuid(note_id, "note id")
        note = await self.notes.get(note_id)
        if note is None:
            raise NotFoundError("note", note_id)
        companion = await self.entities.find_related_entity(note_id, COMPANION_RELATED_TYPE, COMPANION_RELATIONSHIP)
        shown = await rewrite_for_display(self.ctx.db, note.contents) if display else None
        references = await self.entities.references_for_source(SOURCE_TYPE, note_id)
        return FullNote(
            note=note,
            entity_id=companion.id if companion else None,
            display_contents=shown,
            references=references,
        )

    async def list_notes(
        self,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        query: Optional[str] = None,
    ) -> Paginated[Note]:
        params = PageParams.normalize(page, page_size)
        return await paginate(
            params,
            lambda: self.notes.count(query),
            lambda limit, offset: self.notes.list(limit, offset, query),
        )

    async def delete_note(self, note_id: str) -> None:
        note_id = ensure_uuid(note_id, "note id")
        async with self.ctx.db.transaction() as tx:
            notes = NoteStore(tx, self.ctx.dimensions)
            entities = EntityStore(tx)
            await notes.delete_tags(note_id)
            await entities.delete_references(SOURCE_TYPE, note_id)
            companion = await entities.find_related_entity(note_id, COMPANION_RELATED_TYPE, COMPANION_RELATIONSHIP)
            if companion:
                await entities.soft_delete(companion.id)
                await entities.delete_relationships(companion.id)
            if not await notes.delete(note_id):
                raise NotFoundError("note", note_id)
        logger.info(f"Deleted note {note_id}")

    async def search_similar(self, query: str, limit: Optional[int] = None) -> List[dict]:
        if not query or not query.strip():
            raise InputError("query is required")
        limit = resolve_limit(limit, DEFAULT_SIMILAR_NOTES)
        vector = await self.ctx.vector_embedder.embed(query)
        return await SearchStore(self.ctx.db).similar_notes(vector_literal(vector), limit)
