"""
Entity reference tokens inside note bodies.

Two token forms are recognised:

    [[Name]]            -> stored as [[<entity-id>]]
    [[Display][Target]] -> stored as [[Display][<entity-id>]]

``Target`` is either an existing entity id or an entity name. Names are
looked up and created on demand with type ``general``. On read the stored
form is rendered as Markdown links to ``/entities/<id>``.
"""

import logging
import re
from typing import List, Optional, Tuple

from garden.db import Handle
from garden.entity_store import EntityStore
from garden.models import EntityReference, ParsedReference, is_uuid

logger = logging.getLogger(__name__)

TOKEN = re.compile(r"\[\[(.*?)(?:\]\[([^\]]+))?\]\]")

RESOLVED_ENTITY_TYPE = "general"


def parse_references(content: str) -> List[ParsedReference]:
    refs = []
    for match in TOKEN.finditer(content or ""):
        first, second = match.group(1), match.group(2)
        if second:
            refs.append(ParsedReference(original=match.group(0), entity_name=second, display_text=first))
        else:
            refs.append(ParsedReference(original=match.group(0), entity_name=first))
    return refs


async def _lookup_or_create(handle: Handle, name: str) -> Optional[str]:
    """Entity id for ``name``, creating it inside a savepoint when absent."""
    existing = await EntityStore(handle).get_by_name(name)
    if existing:
        return existing.id
    try:
        async with handle.transaction() as savepoint:
            created = await EntityStore(savepoint).create(name, RESOLVED_ENTITY_TYPE)
    except Exception as e:
        logger.warning(f"Skipping reference [[{name}]]: could not create entity: {e}")
        return None
    return created.id


async def _resolve(handle: Handle, first: str, second: Optional[str]) -> Optional[Tuple[str, str, str]]:
    """Resolve one token to (replacement, entity id, reference text)."""
    if second:
        if is_uuid(second):
            entity = await EntityStore(handle).get(second.lower())
            if entity is None:
                logger.warning(f"Skipping reference [[{first}][{second}]]: no such entity")
                return None
            entity_id = entity.id
        else:
            entity_id = await _lookup_or_create(handle, second)
            if entity_id is None:
                return None
        return f"[[{first}][{entity_id}]]", entity_id, first

    entity_id = await _lookup_or_create(handle, first)
    if entity_id is None:
        return None
    return f"[[{entity_id}]]", entity_id, first


async def rewrite_for_storage(handle: Handle, source_type: str, source_id: str, content: str) -> str:
    """
    Rewrite every token to its id form and replace the source's references.

    Must run inside the caller's transaction: the prior references are
    deleted and the new set inserted on the same handle, so a failure rolls
    back the whole rewrite together with the body update.
    """
    content = content or ""
    parts: List[str] = []
    references: List[EntityReference] = []
    length = 0
    last = 0

    for match in TOKEN.finditer(content):
        prefix = content[last:match.start()]
        parts.append(prefix)
        length += len(prefix)
        last = match.end()

        resolved = await _resolve(handle, match.group(1), match.group(2))
        if resolved is None:
            replacement = match.group(0)
        else:
            replacement, entity_id, text = resolved
            references.append(EntityReference(
                source_type=source_type,
                source_id=source_id,
                entity_id=entity_id,
                reference_text=text,
                position=length,
            ))
        parts.append(replacement)
        length += len(replacement)
    parts.append(content[last:])

    store = EntityStore(handle)
    await store.delete_references(source_type, source_id)
    for reference in references:
        await store.insert_reference(reference)

    logger.info(f"Recorded {len(references)} entity references for {source_type} {source_id}")
    return "".join(parts)


async def rewrite_for_display(handle: Handle, content: str) -> str:
    """Render stored tokens as Markdown links; unresolved tokens stay as-is."""
    content = content or ""
    store = EntityStore(handle)
    parts: List[str] = []
    last = 0

    for match in TOKEN.finditer(content):
        parts.append(content[last:match.start()])
        last = match.end()
        first, second = match.group(1), match.group(2)
        target = second if second else first

        replacement = match.group(0)
        if is_uuid(target):
            entity = await store.get(target.lower())
            if entity is not None:
                label = first if second else entity.name
                replacement = f"[{label}](/entities/{target})"
        parts.append(replacement)
    parts.append(content[last:])
    return "".join(parts)
