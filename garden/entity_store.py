"""Entity store: entities, references from sources, and relationships."""

import json
import logging
from typing import Any, Dict, List, Optional

from garden.db import Handle
from garden.models import Entity, EntityReference

logger = logging.getLogger(__name__)

ENTITY_COLUMNS = "id, name, type, description, properties, created_at, updated_at, deleted_at"


def _entity(row) -> Entity:
    properties = row["properties"]
    if isinstance(properties, str):
        properties = json.loads(properties)
    return Entity(
        id=str(row["id"]),
        name=row["name"],
        type=row["type"],
        description=row["description"],
        properties=properties or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row["deleted_at"],
    )


def _reference(row) -> EntityReference:
    return EntityReference(
        id=str(row["id"]),
        source_type=row["source_type"],
        source_id=row["source_id"],
        entity_id=str(row["entity_id"]),
        reference_text=row["reference_text"],
        position=row["position"],
        created_at=row["created_at"],
    )


class EntityStore:
    def __init__(self, db: Handle):
        self.db = db

    async def get(self, entity_id: str) -> Optional[Entity]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {ENTITY_COLUMNS} FROM entities WHERE id = $1::uuid AND deleted_at IS NULL",
                entity_id,
            )
        return _entity(row) if row else None

    async def get_by_name(self, name: str) -> Optional[Entity]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {ENTITY_COLUMNS} FROM entities
                WHERE name = $1 AND deleted_at IS NULL
                ORDER BY created_at
                LIMIT 1
                """,
                name,
            )
        return _entity(row) if row else None

    async def create(
        self,
        name: str,
        type: str,
        description: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Entity:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO entities (name, type, description, properties)
                VALUES ($1, $2, $3, $4::jsonb)
                RETURNING {ENTITY_COLUMNS}
                """,
                name,
                type,
                description,
                json.dumps(properties or {}),
            )
        logger.info(f"Created entity '{name}' ({type})")
        return _entity(row)

    async def soft_delete(self, entity_id: str) -> bool:
        async with self.db.acquire() as conn:
            deleted = await conn.fetchval(
                """
                UPDATE entities SET deleted_at = NOW(), updated_at = NOW()
                WHERE id = $1::uuid AND deleted_at IS NULL
                RETURNING id
                """,
                entity_id,
            )
        return deleted is not None

    # =========================================================================
    # References
    # =========================================================================

    async def delete_references(self, source_type: str, source_id: str) -> None:
        async with self.db.acquire() as conn:
            await conn.execute(
                "DELETE FROM entity_references WHERE source_type = $1 AND source_id = $2",
                source_type,
                source_id,
            )

    async def insert_reference(self, reference: EntityReference) -> str:
        async with self.db.acquire() as conn:
            reference_id = await conn.fetchval(
                """
                INSERT INTO entity_references
                    (source_type, source_id, entity_id, reference_text, position)
                VALUES ($1, $2, $3::uuid, $4, $5)
                RETURNING id
                """,
                reference.source_type,
                reference.source_id,
                reference.entity_id,
                reference.reference_text,
                reference.position,
            )
        reference.id = str(reference_id)
        return reference.id

    async def references_for_source(self, source_type: str, source_id: str) -> List[EntityReference]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, source_type, source_id, entity_id, reference_text, position, created_at
                FROM entity_references
                WHERE source_type = $1 AND source_id = $2
                ORDER BY position NULLS LAST, created_at
                """,
                source_type,
                source_id,
            )
        return [_reference(r) for r in rows]

    async def references_to_entity(self, entity_id: str) -> List[EntityReference]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, source_type, source_id, entity_id, reference_text, position, created_at
                FROM entity_references
                WHERE entity_id = $1::uuid
                ORDER BY created_at DESC
                """,
                entity_id,
            )
        return [_reference(r) for r in rows]

    # =========================================================================
    # Relationships
    # =========================================================================

    async def add_relationship(
        self,
        entity_id: str,
        related_id: str,
        related_type: str,
        relationship_type: str,
    ) -> None:
        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO entity_relationships (entity_id, related_id, related_type, relationship_type)
                VALUES ($1::uuid, $2, $3, $4)
                """,
                entity_id,
                related_id,
                related_type,
                relationship_type,
            )

    async def find_related_entity(
        self,
        related_id: str,
        related_type: str,
        relationship_type: str,
    ) -> Optional[Entity]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {', '.join('e.' + c.strip() for c in ENTITY_COLUMNS.split(','))}
                FROM entity_relationships r
                JOIN entities e ON e.id = r.entity_id
                WHERE r.related_id = $1 AND r.related_type = $2 AND r.relationship_type = $3
                  AND e.deleted_at IS NULL
                LIMIT 1
                """,
                related_id,
                related_type,
                relationship_type,
            )
        return _entity(row) if row else None

    async def delete_relationships(self, entity_id: str) -> None:
        async with self.db.acquire() as conn:
            await conn.execute(
                "DELETE FROM entity_relationships WHERE entity_id = $1::uuid",
                entity_id,
            )
