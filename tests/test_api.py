"""HTTP-level tests: routing, status mapping and JSON shapes."""

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from garden import knowledge_api
from garden.errors import BackendError

BOOKMARK_ID = "11111111-1111-1111-1111-111111111111"
NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def client():
    return TestClient(knowledge_api.app)


@pytest.fixture
def configured(make_context):
    """Wire the API services to the mock database for one test."""

    def _configure(**kwargs):
        ctx = make_context(**kwargs)
        knowledge_api.configure(ctx)
        return ctx

    yield _configure
    knowledge_api.ctx = None
    knowledge_api.bookmarks = None
    knowledge_api.search = None
    knowledge_api.feedback = None
    knowledge_api.notes = None


# =============================================================================
# Health and readiness
# =============================================================================


def test_unconfigured_routes_are_unavailable(client):
    response = client.get("/api/bookmarks")
    assert response.status_code == 503
    assert response.json() == {"detail": "Database not available"}

    health = client.get("/health")
    assert health.status_code == 503
    assert health.json()["status"] == "unhealthy"


def test_health(client, configured):
    configured()
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["embedding_dimensions"] == 3
    assert body["uptime_seconds"] >= 0


# =============================================================================
# Error mapping
# =============================================================================


def test_malformed_id_is_400(client, configured):
    configured()
    response = client.get("/api/bookmarks/not-a-uuid")
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_input"


def test_unknown_bookmark_is_404(client, configured):
    configured()
    response = client.get(f"/api/bookmarks/{BOOKMARK_ID}")
    assert response.status_code == 404
    assert response.json() == {"error": "not_found", "message": f"bookmark {BOOKMARK_ID} not found"}


def test_fetch_failure_is_500_with_stored_response(client, configured, conn):
    conn.on("WHERE b.id = $1::uuid", {"id": BOOKMARK_ID, "url": "https://down.example", "creation_date": NOW, "title": None})
    conn.on("INSERT INTO http_responses", {"fetch_date": NOW})
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(side_effect=BackendError("fetch", "connection refused"))
    configured(fetcher=fetcher)

    response = client.post(f"/api/bookmarks/{BOOKMARK_ID}/fetch")

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "fetch_failed"
    assert body["response"]["status_code"] == 500


def test_zero_search_limit_is_400(client, configured):
    configured()
    response = client.get("/api/search", params={"query": "soil", "limit": 0})
    assert response.status_code == 400


def test_zero_missing_limit_is_400(client, configured, conn):
    configured()
    response = client.get("/api/bookmarks/missing/http", params={"limit": 0})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_input"
    assert conn.calls == []


# =============================================================================
# Routes
# =============================================================================


def test_list_bookmarks_empty_page(client, configured, conn):
    conn.on("SELECT COUNT(*) FROM bookmarks", 0, method="fetchval")
    configured()
    response = client.get("/api/bookmarks", params={"page": 2, "limit": 5})
    assert response.status_code == 200
    assert response.json() == {"items": [], "total_items": 0, "page": 2, "page_size": 5, "total_pages": 0}


def test_parse_references_needs_no_database(client):
    response = client.post("/api/entities/parse-references", json={"content": "See [[Alice]]"})
    assert response.status_code == 200
    assert response.json() == [{"original": "[[Alice]]", "entityName": "Alice", "displayText": None}]


def test_feedback_route(client, configured, conn):
    conn.on("INSERT INTO observations", {"id": uuid.uuid4(), "creation_date": NOW})
    configured()
    response = client.post("/api/observations/feedback", json={
        "bookmark_id": BOOKMARK_ID,
        "feedback_type": "upvote",
        "question": "q",
        "answer": "a",
        "similarity": 0.5,
    })
    assert response.status_code == 200
    body = response.json()
    assert body["type"] == "qa-feedback"
    assert body["tags"] == "feedback,upvote"


def test_feedback_route_rejects_unknown_type(client, configured):
    configured()
    response = client.post("/api/observations/feedback", json={
        "bookmark_id": BOOKMARK_ID,
        "feedback_type": "love",
    })
    assert response.status_code == 400


def test_advanced_search_accepts_object_query(client, configured):
    llm = MagicMock()
    llm.generate = AsyncMock(return_value="<think>hmm</think>Nothing stored yet.")
    configured(llm=llm)

    response = client.post("/api/search/advanced", json={"query": {"topic": "soil"}})

    assert response.status_code == 200
    body = response.json()
    assert body["query"] == {"topic": "soil"}
    assert body["queryString"] == '{"topic": "soil"}'
    assert body["answer"] == "Nothing stored yet."
    assert body["thinkingProcess"] == "hmm"
    assert body["similarQuestions"] == []


def test_secret_configuration_is_masked(client, configured, conn):
    conn.on("INSERT INTO configurations", {
        "key": "llm.api_key",
        "value": "sk-123",
        "is_secret": True,
        "updated_at": NOW,
    })
    configured()
    response = client.put("/api/configurations/llm.api_key", json={"value": "sk-123", "is_secret": True})
    assert response.status_code == 200
    assert response.json()["value"] == "********"


def test_missing_configuration_is_404(client, configured):
    configured()
    response = client.get("/api/configurations/search.prompt.template")
    assert response.status_code == 404


def test_observations_by_ref(client, configured, conn):
    conn.on("FROM observations", [{
        "id": uuid.uuid4(),
        "data": '{"feedbackType": "trash"}',
        "type": "qa-feedback",
        "source": "user-feedback",
        "tags": "feedback,trash",
        "parent_id": None,
        "ref": BOOKMARK_ID,
        "creation_date": NOW,
    }])
    configured()

    response = client.get("/api/observations", params={"ref": BOOKMARK_ID, "type": "qa-feedback"})

    assert response.status_code == 200
    (observation,) = response.json()
    assert observation["data"] == {"feedbackType": "trash"}
    (_, args), = conn.queries("FROM observations")
    assert args == (BOOKMARK_ID, "qa-feedback", 100)


def test_observations_reject_zero_limit(client, configured):
    configured()
    response = client.get("/api/observations", params={"ref": BOOKMARK_ID, "limit": 0})
    assert response.status_code == 400
