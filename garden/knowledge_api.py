#!/usr/bin/env python3
"""
Garden Knowledge API

FastAPI server for the bookmark knowledge base: ingestion of saved URLs,
vector retrieval over derived content, retrieval-augmented answers, user
feedback and notes with entity references.

Ingestion stages (each re-runnable on its own):
1. Fetch the URL and store the raw HTTP response
2. Extract readable text (reader or lynx)
3. Embed reader content in chunks
4. Summarize and embed the summary
5. Resolve the bookmark title

Retrieval:
- Hybrid search: exact title match + vector similarity + recency
- Similar Q&A fragments by cosine distance
- Advanced search: retrieve, render the prompt template, ask the LLM
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import asyncpg
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from garden.bookmark_service import BookmarkService
from garden.config_store import ConfigStore
from garden.context import ServiceContext
from garden.db import Handle, create_pool, ensure_schema, EMBEDDING_DIMENSIONS
from garden.embeddings import EMBEDDING_BACKEND, create_embedders
from garden.entity_store import EntityStore
from garden.errors import GardenError, InputError, NotFoundError
from garden.feedback import FeedbackRequest, FeedbackService
from garden.llm import LLMClient, OLLAMA_MODEL
from garden.models import STRATEGY_QA_PASSAGE, SearchWeights, ensure_uuid
from garden.note_service import NoteService
from garden.observation_store import ObservationStore
from garden.references import parse_references
from garden.search_service import SearchService
from garden.web_fetcher import WebFetcher

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

BOOT_TIME = datetime.now(timezone.utc)

app = FastAPI(
    title="Garden Knowledge API",
    version="1.0.0",
    description="Bookmark ingestion, vector retrieval and retrieval-augmented search",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

DEFAULT_MISSING_LIMIT = 100

db_pool: Optional[asyncpg.Pool] = None
ctx: Optional[ServiceContext] = None
bookmarks: Optional[BookmarkService] = None
search: Optional[SearchService] = None
feedback: Optional[FeedbackService] = None
notes: Optional[NoteService] = None


def configure(context: ServiceContext) -> None:
    """Build the stateless services around one context."""
    global ctx, bookmarks, search, feedback, notes
    ctx = context
    bookmarks = BookmarkService(context)
    search = SearchService(context)
    feedback = FeedbackService(context)
    notes = NoteService(context)


def _ready() -> ServiceContext:
    if ctx is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return ctx


# =============================================================================
# Pydantic Models
# =============================================================================

class CreateBookmarkRequest(BaseModel):
    url: str


class SetTitleRequest(BaseModel):
    title: str
    source: str = "user"


class UpdateQuestionRequest(BaseModel):
    question: str
    answer: str = ""


class FeedbackBody(BaseModel):
    question: str = ""
    answer: str = ""
    bookmark_id: str
    reference_id: Optional[str] = None
    user_question: str = ""
    similarity: float = 0.0
    feedback_type: str
    delete_ref: bool = False


class AdvancedSearchRequest(BaseModel):
    query: Union[str, Dict[str, Any]]


class CreateNoteRequest(BaseModel):
    title: str
    contents: str = ""
    tags: List[str] = Field(default_factory=list)


class UpdateNoteRequest(BaseModel):
    title: Optional[str] = None
    contents: Optional[str] = None
    tags: Optional[List[str]] = None


class ParseReferencesRequest(BaseModel):
    content: str


class ConfigurationRequest(BaseModel):
    value: str
    is_secret: bool = False


# =============================================================================
# Lifecycle
# =============================================================================

@app.on_event("startup")
async def startup():
    """Initialize database pool, schema and backends"""
    global db_pool
    try:
        db_pool = await create_pool()
        logger.info("Connected to database")

        async with db_pool.acquire() as conn:
            await ensure_schema(conn, EMBEDDING_DIMENSIONS)

        vector_embedder, chunked_embedder = create_embedders()
        configure(ServiceContext(
            db=Handle(pool=db_pool),
            fetcher=WebFetcher(),
            vector_embedder=vector_embedder,
            chunked_embedder=chunked_embedder,
            llm=LLMClient(),
            dimensions=EMBEDDING_DIMENSIONS,
        ))
        logger.info(f"Services ready (embeddings: {EMBEDDING_BACKEND}, llm: {OLLAMA_MODEL})")
    except Exception as e:
        logger.error(f"Failed to start: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Close database connection pool"""
    global db_pool
    if db_pool:
        await db_pool.close()
        db_pool = None
        logger.info("Database pool closed")


@app.exception_handler(GardenError)
async def garden_error_handler(request: Request, exc: GardenError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    uptime = (datetime.now(timezone.utc) - BOOT_TIME).total_seconds()
    try:
        async with _ready().db.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return {
            "status": "healthy",
            "database": "connected",
            "embedding_backend": EMBEDDING_BACKEND,
            "embedding_dimensions": ctx.dimensions,
            "llm_model": OLLAMA_MODEL,
            "started_at": BOOT_TIME.isoformat(),
            "uptime_seconds": int(uptime),
        }
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": str(e), "uptime_seconds": int(uptime)},
        )


# =============================================================================
# Bookmarks
# =============================================================================

@app.get("/api/bookmarks")
async def list_bookmarks(page: int = 1, limit: int = 10):
    _ready()
    return (await bookmarks.list_bookmarks(page, limit)).to_dict()


@app.post("/api/bookmarks")
async def create_bookmark(request: CreateBookmarkRequest):
    _ready()
    return (await bookmarks.create_bookmark(request.url)).to_dict()


@app.get("/api/bookmarks/random")
async def random_bookmark():
    _ready()
    return (await bookmarks.random_bookmark()).to_dict()


@app.get("/api/bookmarks/search")
async def search_bookmarks(query: str, strategy: str = STRATEGY_QA_PASSAGE, limit: int = 10):
    """Similar Q&A fragments for a free-text query."""
    _ready()
    items = await bookmarks.search_similar(query, strategy, limit)
    return [item.to_dict() for item in items]


@app.get("/api/bookmarks/missing/http")
async def missing_http(limit: int = DEFAULT_MISSING_LIMIT):
    _ready()
    return [b.to_dict() for b in await bookmarks.missing_http_responses(limit)]


@app.get("/api/bookmarks/missing/reader")
async def missing_reader(limit: int = DEFAULT_MISSING_LIMIT):
    _ready()
    return [b.to_dict() for b in await bookmarks.missing_reader_content(limit)]


@app.get("/api/bookmarks/missing/embeddings")
async def missing_embeddings(limit: int = DEFAULT_MISSING_LIMIT):
    _ready()
    return [b.to_dict() for b in await bookmarks.missing_embeddings(limit)]


@app.get("/api/bookmarks/missing/summaries")
async def missing_summaries(limit: int = DEFAULT_MISSING_LIMIT):
    _ready()
    return [b.to_dict() for b in await bookmarks.missing_summaries(limit)]


@app.get("/api/bookmarks/missing/titles")
async def missing_titles(limit: int = DEFAULT_MISSING_LIMIT):
    _ready()
    return [b.to_dict() for b in await bookmarks.missing_titles(limit)]


@app.get("/api/bookmarks/{bookmark_id}")
async def get_bookmark(bookmark_id: str):
    _ready()
    return (await bookmarks.get_details(bookmark_id)).to_dict()


@app.get("/api/bookmarks/{bookmark_id}/questions")
async def list_questions(bookmark_id: str):
    _ready()
    return [q.to_dict() for q in await bookmarks.list_questions(bookmark_id)]


@app.put("/api/bookmarks/{bookmark_id}/questions/{question_id}")
async def update_question(bookmark_id: str, question_id: str, request: UpdateQuestionRequest):
    _ready()
    updated = await bookmarks.update_question(bookmark_id, question_id, request.question, request.answer)
    return updated.to_dict()


@app.delete("/api/bookmarks/{bookmark_id}/questions/{question_id}")
async def delete_question(bookmark_id: str, question_id: str):
    _ready()
    deleted = await bookmarks.delete_question(bookmark_id, question_id)
    return {"deleted": True, "question": deleted.to_dict()}


@app.post("/api/bookmarks/{bookmark_id}/fetch")
async def fetch_bookmark(bookmark_id: str):
    _ready()
    return (await bookmarks.fetch(bookmark_id)).to_dict()


@app.post("/api/bookmarks/{bookmark_id}/process/{strategy}")
async def process_bookmark(bookmark_id: str, strategy: str):
    _ready()
    return (await bookmarks.process(bookmark_id, strategy)).to_dict()


@app.post("/api/bookmarks/{bookmark_id}/embeddings")
async def embed_bookmark(bookmark_id: str):
    _ready()
    return (await bookmarks.embed_chunks(bookmark_id)).to_dict()


@app.post("/api/bookmarks/{bookmark_id}/summary-embedding")
async def embed_bookmark_summary(bookmark_id: str):
    _ready()
    return (await bookmarks.embed_summary(bookmark_id)).to_dict()


@app.get("/api/bookmarks/{bookmark_id}/title")
async def bookmark_title(bookmark_id: str):
    _ready()
    return (await bookmarks.resolve_title(bookmark_id)).to_dict()


@app.put("/api/bookmarks/{bookmark_id}/title")
async def set_bookmark_title(bookmark_id: str, request: SetTitleRequest):
    _ready()
    return (await bookmarks.set_title(bookmark_id, request.title, request.source)).to_dict()


@app.get("/api/bookmarks/{bookmark_id}/feedback")
async def bookmark_feedback(bookmark_id: str):
    _ready()
    return (await feedback.feedback_stats(bookmark_id)).to_dict()


# =============================================================================
# Observations and search
# =============================================================================

@app.post("/api/observations/feedback")
async def store_feedback(request: FeedbackBody):
    _ready()
    observation = await feedback.record_feedback(FeedbackRequest(
        question=request.question,
        answer=request.answer,
        bookmark_id=request.bookmark_id,
        feedback_type=request.feedback_type,
        user_question=request.user_question,
        similarity=request.similarity,
        reference_id=request.reference_id,
        delete_ref=request.delete_ref,
    ))
    return observation.to_dict()


@app.get("/api/observations")
async def list_observations(ref: str, type: Optional[str] = None, limit: int = 100):
    """Observations attached to a reference, newest first."""
    if limit <= 0:
        raise InputError("limit must be positive")
    observations = await ObservationStore(_ready().db).list_by_ref(ref, type, limit)
    return [o.to_dict() for o in observations]


@app.get("/api/search")
async def search_all(
    query: Optional[str] = None,
    q: Optional[str] = None,
    exact: Optional[float] = None,
    similarity: Optional[float] = None,
    recency: Optional[float] = None,
    limit: Optional[int] = None,
):
    """Hybrid search across bookmarks, notes and entities."""
    _ready()
    weights = SearchWeights(exact=exact, similarity=similarity, recency=recency)
    results = await search.search_all(query or q or "", weights, limit)
    return [r.to_dict() for r in results]


@app.post("/api/search/advanced")
async def advanced_search(request: AdvancedSearchRequest):
    _ready()
    return (await search.advanced_search(request.query)).to_dict()


# =============================================================================
# Notes
# =============================================================================

@app.get("/api/notes")
async def list_notes(page: int = 1, limit: int = 10, query: Optional[str] = None):
    _ready()
    return (await notes.list_notes(page, limit, query)).to_dict()


@app.post("/api/notes")
async def create_note(request: CreateNoteRequest):
    _ready()
    return (await notes.create_note(request.title, request.contents, request.tags)).to_dict()


@app.get("/api/notes/search")
async def search_notes(query: str, limit: int = 10):
    _ready()
    return await notes.search_similar(query, limit)


@app.get("/api/notes/{note_id}")
async def get_note(note_id: str):
    _ready()
    return (await notes.get_note(note_id)).to_dict()


@app.put("/api/notes/{note_id}")
async def update_note(note_id: str, request: UpdateNoteRequest):
    _ready()
    return (await notes.update_note(note_id, request.title, request.contents, request.tags)).to_dict()


@app.delete("/api/notes/{note_id}")
async def delete_note(note_id: str):
    _ready()
    await notes.delete_note(note_id)
    return {"deleted": True, "id": note_id}


# =============================================================================
# Entities and configuration
# =============================================================================

@app.post("/api/entities/parse-references")
async def parse_entity_references(request: ParseReferencesRequest):
    return [ref.to_dict() for ref in parse_references(request.content)]


@app.get("/api/entities/{entity_id}")
async def get_entity(entity_id: str):
    entity_id = ensure_uuid(entity_id, "entity id")
    entity = await EntityStore(_ready().db).get(entity_id)
    if entity is None:
        raise NotFoundError("entity", entity_id)
    return entity.to_dict()


@app.get("/api/entities/{entity_id}/references")
async def get_entity_references(entity_id: str):
    entity_id = ensure_uuid(entity_id, "entity id")
    store = EntityStore(_ready().db)
    if await store.get(entity_id) is None:
        raise NotFoundError("entity", entity_id)
    return [ref.to_dict() for ref in await store.references_to_entity(entity_id)]


@app.get("/api/configurations/{key}")
async def get_configuration(key: str):
    entry = await ConfigStore(_ready().db).get(key)
    if entry is None:
        raise NotFoundError("configuration", key)
    return entry.to_dict()


@app.put("/api/configurations/{key}")
async def set_configuration(key: str, request: ConfigurationRequest):
    entry = await ConfigStore(_ready().db).set(key, request.value, request.is_secret)
    return entry.to_dict()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("GARDEN_API_PORT", "8080"))
    uvicorn.run(app, host="0.0.0.0", port=port)
