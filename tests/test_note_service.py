"""Tests for notes: transactional reference rewriting, companions and tags."""

import uuid
from datetime import datetime, timezone

import pytest

from garden.errors import InputError, NotFoundError
from garden.note_service import NoteService

NOTE_ID = "88888888-8888-8888-8888-888888888888"
ALICE_ID = "aaaaaaaa-0000-4000-8000-000000000001"
COMPANION_ID = "99999999-9999-4999-8999-999999999999"
NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _entity_row(entity_id, name, type="general"):
    return {
        "id": entity_id,
        "name": name,
        "type": type,
        "description": None,
        "properties": {},
        "created_at": NOW,
        "updated_at": NOW,
        "deleted_at": None,
    }


def _note_row(title="Garden log", contents=""):
    return {
        "id": NOTE_ID,
        "title": title,
        "slug": None,
        "contents": contents,
        "created_at": NOW,
        "modified_at": NOW,
    }


def _with_note_store(conn, stored):
    """Script the notes table as a single mutable row in ``stored``."""

    def create(query, args):
        stored.update(_note_row(args[0], args[2]))
        return dict(stored)

    def update_contents(query, args):
        stored["contents"] = args[1]
        return "UPDATE 1"

    def get(query, args):
        return dict(stored) if stored else None

    conn.on("INSERT INTO notes", create, method="fetchrow")
    conn.on("UPDATE notes SET contents", update_contents, method="execute")
    conn.on("FROM notes n WHERE n.id", get, method="fetchrow")
    conn.on("FROM note_tags nt", [{"name": "compost"}, {"name": "soil"}], method="fetch")


def _with_entities(conn):
    def by_name(query, args):
        return _entity_row(ALICE_ID, "Alice") if args[0] == "Alice" else None

    def by_id(query, args):
        if args[0] == ALICE_ID:
            return _entity_row(ALICE_ID, "Alice")
        return None

    conn.on("WHERE name = $1 AND deleted_at IS NULL", by_name, method="fetchrow")
    conn.on("WHERE id = $1::uuid AND deleted_at IS NULL", by_id, method="fetchrow")
    conn.on("INSERT INTO entities", lambda q, a: _entity_row(COMPANION_ID, a[0], a[1]), method="fetchrow")
    conn.on("FROM entity_relationships r", _entity_row(COMPANION_ID, "Garden log", "note"), method="fetchrow")
    conn.on("INSERT INTO entity_references", lambda q, a: uuid.uuid4(), method="fetchval")


# =============================================================================
# Create
# =============================================================================


@pytest.mark.asyncio
async def test_create_note_rewrites_references_in_one_transaction(conn, make_context, vector_backend):
    stored = {}
    _with_note_store(conn, stored)
    _with_entities(conn)
    service = NoteService(make_context())

    full = await service.create_note("Garden log", "Met [[Alice]] by the beds", tags=["soil", "compost"])

    assert conn.transactions == ["begin", "commit"]
    assert stored["contents"] == f"Met [[{ALICE_ID}]] by the beds"
    assert vector_backend.inputs == ["Garden log\nMet [[Alice]] by the beds"]
    assert len(conn.queries("UPDATE notes SET embedding")) == 1

    (_, entity_args), = conn.queries("INSERT INTO entities")
    assert entity_args[:2] == ("Garden log", "note")
    (_, rel_args), = conn.queries("INSERT INTO entity_relationships")
    assert rel_args == (COMPANION_ID, NOTE_ID, "item", "identity")

    tag_names = [args[0] for _, args in conn.queries("INSERT INTO tags")]
    assert tag_names == ["compost", "soil"]

    assert full.entity_id == COMPANION_ID
    assert full.display_contents == f"Met [Alice](/entities/{ALICE_ID}) by the beds"
    assert full.to_dict()["tags"] == ["compost", "soil"]


@pytest.mark.asyncio
async def test_reference_failure_rolls_back_note(conn, make_context):
    stored = {}
    _with_note_store(conn, stored)
    conn.on("WHERE name = $1 AND deleted_at IS NULL", _entity_row(ALICE_ID, "Alice"), method="fetchrow")
    conn.on("INSERT INTO entity_references", RuntimeError("connection lost"))
    service = NoteService(make_context())

    with pytest.raises(RuntimeError):
        await service.create_note("Garden log", "Met [[Alice]]")

    assert conn.transactions == ["begin", "rollback"]
    assert conn.queries("INSERT INTO entity_relationships") == []


@pytest.mark.asyncio
async def test_create_note_requires_title(conn, make_context):
    with pytest.raises(InputError):
        await NoteService(make_context()).create_note("  ", "body")
    assert conn.calls == []


# =============================================================================
# Update, read, delete
# =============================================================================


@pytest.mark.asyncio
async def test_update_title_only_keeps_contents(conn, make_context, vector_backend):
    stored = _note_row(contents=f"[[{ALICE_ID}]]")
    _with_note_store(conn, stored)
    _with_entities(conn)
    conn.on("UPDATE notes SET title", NOTE_ID, method="fetchval")
    service = NoteService(make_context())

    await service.update_note(NOTE_ID, title="Renamed")

    (_, args), = conn.queries("UPDATE notes SET title")
    assert args == (NOTE_ID, "Renamed", None, f"[[{ALICE_ID}]]")
    assert conn.queries("DELETE FROM entity_references") == []
    assert vector_backend.inputs == []


@pytest.mark.asyncio
async def test_update_missing_note_is_not_found(conn, make_context):
    with pytest.raises(NotFoundError):
        await NoteService(make_context()).update_note(NOTE_ID, contents="x")


@pytest.mark.asyncio
async def test_get_note_without_display(conn, make_context):
    stored = _note_row(contents=f"[[{ALICE_ID}]]")
    _with_note_store(conn, stored)
    _with_entities(conn)
    conn.on("ORDER BY position NULLS LAST", [{
        "id": uuid.uuid4(),
        "source_type": "note",
        "source_id": NOTE_ID,
        "entity_id": ALICE_ID,
        "reference_text": "Alice",
        "position": 0,
        "created_at": NOW,
    }], method="fetch")

    full = await NoteService(make_context()).get_note(NOTE_ID, display=False)

    assert full.display_contents is None
    assert full.note.contents == f"[[{ALICE_ID}]]"
    assert [r.entity_id for r in full.references] == [ALICE_ID]
    assert full.to_dict()["references"][0]["reference_text"] == "Alice"


@pytest.mark.asyncio
async def test_delete_note_removes_companion(conn, make_context):
    _with_entities(conn)
    conn.on("DELETE FROM notes", NOTE_ID, method="fetchval")
    conn.on("UPDATE entities SET deleted_at", COMPANION_ID, method="fetchval")

    await NoteService(make_context()).delete_note(NOTE_ID)

    assert conn.transactions == ["begin", "commit"]
    assert conn.queries("DELETE FROM note_tags")
    (_, ref_args), = conn.queries("DELETE FROM entity_references")
    assert ref_args == ("note", NOTE_ID)
    (_, soft_args), = conn.queries("UPDATE entities SET deleted_at")
    assert soft_args == (COMPANION_ID,)
    assert len(conn.queries("DELETE FROM entity_relationships")) == 1


@pytest.mark.asyncio
async def test_delete_missing_note_rolls_back(conn, make_context):
    with pytest.raises(NotFoundError):
        await NoteService(make_context()).delete_note(NOTE_ID)
    assert conn.transactions == ["begin", "rollback"]


# =============================================================================
# Listing and similarity
# =============================================================================


@pytest.mark.asyncio
async def test_list_notes_with_query(conn, make_context):
    conn.on("SELECT COUNT(*) FROM notes", 1, method="fetchval")
    row = dict(_note_row(), tags=["soil"])
    conn.on("FROM notes n", [row], method="fetch")

    page = await NoteService(make_context()).list_notes(page=1, page_size=5, query="garden")

    assert page.to_dict()["total_items"] == 1
    assert page.items[0].tags == ["soil"]
    (_, count_args), = conn.queries("SELECT COUNT(*) FROM notes")
    assert count_args == ("%garden%",)
    (_, list_args), = conn.queries("FROM notes n", method="fetch")
    assert list_args == (5, 0, "%garden%")


@pytest.mark.asyncio
async def test_similar_notes(conn, make_context):
    conn.on("FROM notes\n", [dict(_note_row(), similarity=0.5)], method="fetch")
    results = await NoteService(make_context()).search_similar("garden", limit=3)
    assert results[0]["similarity"] == 0.5
    assert results[0]["id"] == NOTE_ID


@pytest.mark.asyncio
async def test_similar_notes_rejects_bad_limit(conn, make_context):
    with pytest.raises(InputError):
        await NoteService(make_context()).search_similar("garden", limit=0)


@pytest.mark.asyncio
async def test_list_notes_query_matches_wildcards_literally(conn, make_context):
    conn.on("SELECT COUNT(*) FROM notes", 0, method="fetchval")

    await NoteService(make_context()).list_notes(query="50%_off")

    (query, count_args), = conn.queries("SELECT COUNT(*) FROM notes")
    assert count_args == ("%50\\%\\_off%",)
    assert "ESCAPE" in query
