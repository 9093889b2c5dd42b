"""Tests for the feedback sink."""

import json
import uuid
from datetime import datetime, timezone

import pytest

from garden.bookmark_store import BookmarkStore
from garden.errors import InputError
from garden.feedback import FeedbackRequest, FeedbackService

BOOKMARK_ID = "33333333-3333-3333-3333-333333333333"
CHUNK_ID = "44444444-4444-4444-4444-444444444444"
NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _request(**overrides):
    values = dict(
        question="What is a garden?",
        answer="A place to grow things.",
        bookmark_id=BOOKMARK_ID,
        feedback_type="trash",
        user_question="tell me about gardens",
        similarity=0.71,
        reference_id=CHUNK_ID,
        delete_ref=True,
    )
    values.update(overrides)
    return FeedbackRequest(**values)


def _stored_chunks(conn):
    """Script a tiny chunk table the delete and lookup queries share."""
    chunks = {CHUNK_ID: "What is a garden?\nA place to grow things."}

    def delete(query, args):
        return args[0] if chunks.pop(args[0], None) is not None else None

    def lookup(query, args):
        if args[0] not in chunks:
            return None
        return {"id": args[0], "bookmark_id": args[1], "content": chunks[args[0]], "strategy": "qa-v2-passage"}

    conn.on("DELETE FROM bookmark_content_references", delete, method="fetchval")
    conn.on("SELECT id, bookmark_id, content, strategy", lookup, method="fetchrow")
    return chunks


@pytest.mark.asyncio
async def test_trash_with_delete_ref_records_and_removes_chunk(conn, make_context):
    chunks = _stored_chunks(conn)
    conn.on("INSERT INTO observations", {"id": uuid.uuid4(), "creation_date": NOW})
    ctx = make_context()

    observation = await FeedbackService(ctx).record_feedback(_request())

    inserts = conn.queries("INSERT INTO observations")
    assert len(inserts) == 1
    _, args = inserts[0]
    payload = json.loads(args[0])
    assert args[1:4] == ("qa-feedback", "user-feedback", "feedback,trash")
    assert args[5] == BOOKMARK_ID
    assert payload["similarity"] == 0.71
    assert payload["feedbackType"] == "trash"
    assert payload["bookmarkId"] == BOOKMARK_ID
    assert observation.tags == "feedback,trash"
    assert observation.ref == BOOKMARK_ID

    assert chunks == {}
    assert await BookmarkStore(ctx.db).get_question(BOOKMARK_ID, CHUNK_ID) is None


@pytest.mark.asyncio
async def test_upvote_does_not_touch_chunks(conn, make_context):
    chunks = _stored_chunks(conn)
    conn.on("INSERT INTO observations", {"id": uuid.uuid4(), "creation_date": NOW})

    await FeedbackService(make_context()).record_feedback(_request(feedback_type="upvote", delete_ref=False))

    assert CHUNK_ID in chunks
    assert conn.queries("DELETE FROM bookmark_content_references") == []


@pytest.mark.asyncio
async def test_delete_ref_failure_keeps_feedback(conn, make_context):
    conn.on("INSERT INTO observations", {"id": uuid.uuid4(), "creation_date": NOW})
    conn.on("DELETE FROM bookmark_content_references", RuntimeError("deadlock detected"))

    observation = await FeedbackService(make_context()).record_feedback(_request())

    assert observation.id is not None
    assert len(conn.queries("INSERT INTO observations")) == 1


@pytest.mark.asyncio
async def test_unknown_feedback_type_is_rejected(conn, make_context):
    with pytest.raises(InputError):
        await FeedbackService(make_context()).record_feedback(_request(feedback_type="meh"))
    assert conn.calls == []


@pytest.mark.asyncio
async def test_malformed_reference_id_is_rejected(conn, make_context):
    with pytest.raises(InputError):
        await FeedbackService(make_context()).record_feedback(_request(reference_id="chunk-1"))
    assert conn.calls == []


@pytest.mark.asyncio
async def test_feedback_stats(conn, make_context):
    conn.on("FROM observations", {"upvotes": 3, "downvotes": 1, "trash": None})
    stats = await FeedbackService(make_context()).feedback_stats(BOOKMARK_ID)
    assert stats.to_dict() == {"upvotes": 3, "downvotes": 1, "trash": 0}
