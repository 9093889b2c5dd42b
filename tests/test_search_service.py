"""Tests for hybrid search and the retrieval-augmented answer pipeline."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from garden.errors import InputError
from garden.models import SearchWeights
from garden.search_service import (
    DEFAULT_PROMPT_TEMPLATE,
    PROMPT_TEMPLATE_KEY,
    SearchService,
    query_string,
    resolve_limit,
)

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)

CHUNK_ROW = {
    "id": "66666666-6666-6666-6666-666666666666",
    "bookmark_id": "77777777-7777-7777-7777-777777777777",
    "content": "Why compost?\nIt feeds the soil.",
    "strategy": "qa-v2-passage",
    "similarity": 0.82,
    "url": "https://example.com/compost",
    "title": "Composting 101",
    "summary": "All about compost.",
}


def _llm(response="<think>look at context</think>\nUse compost."):
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=response)
    return llm


# =============================================================================
# Helpers
# =============================================================================


def test_resolve_limit():
    assert resolve_limit(None, 50) == 50
    assert resolve_limit(5, 50) == 5
    with pytest.raises(InputError):
        resolve_limit(0, 50)
    with pytest.raises(InputError):
        resolve_limit(-3, 50)


def test_query_string_serializes_structured_queries():
    assert query_string("plain") == "plain"
    assert query_string({"q": "soil"}) == '{"q": "soil"}'
    assert query_string(None) == ""


# =============================================================================
# Hybrid search
# =============================================================================


@pytest.mark.asyncio
async def test_search_all_passes_weights_and_default_limit(conn, make_context):
    conn.on("WITH candidates AS", [
        {"item_type": "note", "item_id": "n1", "item_title": "Soil", "last_activity": NOW, "search_score": 7.5},
    ])
    service = SearchService(make_context())

    results = await service.search_all("soil", SearchWeights(exact=1.0, similarity=2.0, recency=3.0))

    assert [r.to_dict()["item_title"] for r in results] == ["Soil"]
    (_, args), = conn.queries("WITH candidates AS")
    assert args[0] == "soil"
    assert args[1:4] == (1.0, 2.0, 3.0)
    assert args[5] == 50


@pytest.mark.asyncio
async def test_search_all_orders_by_score(conn, make_context):
    conn.on("WITH candidates AS", [
        {"item_type": "entity", "item_id": "e1", "item_title": "Soil", "last_activity": NOW, "search_score": 1.0},
        {"item_type": "bookmark", "item_id": "b1", "item_title": "Soil food web", "last_activity": NOW, "search_score": 7.9},
        {"item_type": "note", "item_id": "n1", "item_title": "Compost log", "last_activity": NOW, "search_score": None},
        {"item_type": "note", "item_id": "n2", "item_title": "Soil notes", "last_activity": NOW, "search_score": 6.2},
    ])

    results = await SearchService(make_context()).search_all("soil")

    assert [r.item_id for r in results] == ["b1", "n2", "e1", "n1"]
    assert [r.search_score for r in results] == [7.9, 6.2, 1.0, 0.0]


@pytest.mark.asyncio
async def test_search_all_fills_unset_weights_and_limit(conn, make_context):
    service = SearchService(make_context())

    await service.search_all("soil", SearchWeights(exact=None, similarity=0.5, recency=None), limit=None)

    (query, args), = conn.queries("WITH candidates AS")
    assert args[1:4] == (5.0, 0.5, 1.0)
    assert args[5] == 50
    assert "GREATEST(" in query


@pytest.mark.asyncio
async def test_search_all_rejects_non_positive_limit(conn, make_context):
    with pytest.raises(InputError):
        await SearchService(make_context()).search_all("soil", limit=0)
    assert conn.calls == []


@pytest.mark.asyncio
async def test_search_all_requires_query(conn, make_context):
    with pytest.raises(InputError):
        await SearchService(make_context()).search_all("  ")


# =============================================================================
# Advanced search
# =============================================================================


@pytest.mark.asyncio
async def test_advanced_search_renders_retrieved_items(conn, make_context):
    conn.on("FROM bookmark_content_references r", [CHUNK_ROW])
    llm = _llm()
    service = SearchService(make_context(llm=llm))

    result = await service.advanced_search("how do I improve soil?")

    prompt = llm.generate.await_args.args[0]
    assert "Title: Composting 101\nQuestion: Why compost?\nAnswer: It feeds the soil." in prompt
    assert "Url: https://example.com/compost" in prompt
    assert "User question: how do I improve soil?" in prompt
    assert result.rendered_prompt == prompt
    assert result.thinking_process == "look at context"
    assert result.answer == "Use compost."

    body = result.to_dict()
    assert body["queryString"] == "how do I improve soil?"
    assert body["similarQuestions"][0]["bookmarkTitle"] == "Composting 101"

    (_, args), = conn.queries("FROM bookmark_content_references r")
    assert args[1:3] == (10, None)


@pytest.mark.asyncio
async def test_advanced_search_with_no_items_still_asks_llm(conn, make_context):
    llm = _llm("Nothing relevant in the bookmarks database.")
    service = SearchService(make_context(llm=llm))

    result = await service.advanced_search("anything?")

    llm.generate.assert_awaited_once()
    assert result.similar_questions == []
    assert result.answer == "Nothing relevant in the bookmarks database."
    assert result.thinking_process == ""
    assert "Context:\n\nUser question: anything?" in result.rendered_prompt


@pytest.mark.asyncio
async def test_advanced_search_uses_configured_template(conn, make_context):
    conn.on("FROM configurations", {
        "key": PROMPT_TEMPLATE_KEY,
        "value": "Q={{.UserQuestion}}{{range .RetrievedItems}} [{{.Title}}]({{.URL}}){{end}}",
        "is_secret": False,
        "updated_at": NOW,
    })
    conn.on("FROM bookmark_content_references r", [CHUNK_ROW])
    llm = _llm("ok")
    service = SearchService(make_context(llm=llm))

    result = await service.advanced_search({"question": "soil"})

    assert result.rendered_prompt == 'Q={"question": "soil"} [Composting 101](https://example.com/compost)'
    assert result.query == {"question": "soil"}


@pytest.mark.asyncio
async def test_prompt_template_falls_back_to_default(conn, make_context):
    assert await SearchService(make_context()).prompt_template() == DEFAULT_PROMPT_TEMPLATE


@pytest.mark.asyncio
async def test_advanced_search_survives_template_lookup_failure(conn, make_context):
    conn.on("FROM configurations", RuntimeError("connection reset"))
    llm = _llm("ok")
    service = SearchService(make_context(llm=llm))

    result = await service.advanced_search("anything?")

    assert result.answer == "ok"
    assert result.rendered_prompt.startswith("System: You are a helpful assistant")
    assert "User question: anything?" in result.rendered_prompt


@pytest.mark.asyncio
async def test_advanced_search_requires_query(conn, make_context):
    llm = _llm()
    with pytest.raises(InputError):
        await SearchService(make_context(llm=llm)).advanced_search("")
    llm.generate.assert_not_awaited()
