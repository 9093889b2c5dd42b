"""
Bookmark Service: the ingestion pipeline and Q&A management.

Ingestion is five independent, re-runnable stages per bookmark:

1. fetch             -> http_responses
2. process           -> processed_contents (reader | lynx)
3. embed_chunks      -> bookmark_content_references (chunked-reader)
4. embed_summary     -> bookmark_content_references (summary-reader)
5. resolve_title     -> bookmark_titles

No stage commits on behalf of another; each reads the latest output of the
previous one. The missing-* queries expose which bookmarks still need a
stage so a batch driver can catch up.
"""

import asyncio
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from garden.bookmark_store import BookmarkStore
from garden.content_processor import (
    NOT_HTML_MESSAGE,
    PROCESSED_MESSAGE,
    is_processable,
    process_with_lynx,
    process_with_reader,
)
from garden.context import ServiceContext
from garden.db import vector_literal
from garden.embeddings import check_dimension
from garden.errors import (
    BackendError,
    EmptyResultError,
    FetchFailedError,
    InputError,
    NotFoundError,
)
from garden.llm import Summarizer
from garden.models import (
    EXTRACTION_STRATEGIES,
    STRATEGY_CHUNKED_READER,
    STRATEGY_QA_PASSAGE,
    STRATEGY_READER,
    STRATEGY_SUMMARY_READER,
    TITLE_SOURCE_HTML,
    TITLE_SOURCE_READER,
    Bookmark,
    BookmarkDetails,
    BookmarkQuestion,
    EmbeddingChunk,
    HTTPResponseRecord,
    Observation,
    RetrievedItem,
    TitleResolution,
    ensure_uuid,
    join_question,
)
from garden.observation_store import ObservationStore
from garden.pagination import PageParams, Paginated, paginate
from garden.search_service import resolve_limit
from garden.search_store import SearchStore
from garden.web_fetcher import FETCH_TIMEOUT_MS

logger = logging.getLogger(__name__)

MAX_EMBED_CHARS = 15000
MAX_CHUNKS = 20
TOO_LARGE_WARNING = "The content was too large, only the first ~10000 characters were processed"

SUMMARY_START_WORDS = 300
SUMMARY_MIN_WORDS = 200
SUMMARY_WORD_STEP = 10

DEFAULT_SIMILAR_LIMIT = 10
DEFAULT_MISSING_LIMIT = 100

HTML_TITLE = re.compile(r"<title>([^<]+)</title>", re.IGNORECASE)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def extract_reader_title(content: Optional[str]) -> Optional[str]:
    """The reader strategy writes its title as the first ``# `` line."""
    if not content or not content.startswith("# "):
        return None
    title = content.split("\n", 1)[0][2:].strip()
    return title or None


def extract_html_title(raw: Optional[bytes]) -> Optional[str]:
    if not raw:
        return None
    match = HTML_TITLE.search(raw.decode("utf-8", errors="replace"))
    if not match:
        return None
    title = html.unescape(match.group(1)).strip()
    return title or None


# =============================================================================
# Stage results
# =============================================================================

@dataclass
class FetchResult:
    bookmark_id: str
    response: HTTPResponseRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookmark_id": self.bookmark_id,
            "status_code": self.response.status_code,
            "headers": self.response.headers,
            "content_length": len(self.response.content),
            "fetch_date": self.response.fetch_date.isoformat() if self.response.fetch_date else None,
        }


@dataclass
class ProcessResult:
    bookmark_id: str
    strategy: str
    message: str
    content: Optional[str] = None
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookmark_id": self.bookmark_id,
            "strategy": self.strategy,
            "message": self.message,
            "title": self.title,
            "content": self.content,
        }


@dataclass
class EmbedChunksResult:
    bookmark_id: str
    ids: List[str] = field(default_factory=list)
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"bookmark_id": self.bookmark_id, "ids": self.ids}
        if self.warning:
            data["warning"] = self.warning
        return data


@dataclass
class SummaryEmbeddingResult:
    bookmark_id: str
    summary: str
    ids: List[str] = field(default_factory=list)
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"bookmark_id": self.bookmark_id, "ids": self.ids, "summary": self.summary}
        if self.warning:
            data["warning"] = self.warning
        return data


# =============================================================================
# Service
# =============================================================================

class BookmarkService:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx
        self.bookmarks = BookmarkStore(ctx.db, ctx.dimensions)
        self.search = SearchStore(ctx.db)
        self.observations = ObservationStore(ctx.db)
        self.summarizer = Summarizer(ctx.llm) if ctx.llm else None

    async def _require(self, bookmark_id: str) -> Bookmark:
        bookmark_id = ensure_uuid(bookmark_id, "bookmark id")
        bookmark = await self.bookmarks.get_bookmark(bookmark_id)
        if bookmark is None:
            raise NotFoundError("bookmark", bookmark_id)
        return bookmark

    async def _reader_content(self, bookmark_id: str) -> str:
        processed = await self.bookmarks.latest_processed_content(bookmark_id, STRATEGY_READER)
        if processed is None or not processed.content:
            raise NotFoundError("processed content", bookmark_id, message="no processed content found")
        return processed.content

    # =========================================================================
    # Browsing
    # =========================================================================

    async def create_bookmark(self, url: str) -> Bookmark:
        url = (url or "").strip()
        if not url:
            raise InputError("url is required")
        bookmark = await self.bookmarks.create_bookmark(url)
        logger.info(f"Created bookmark {bookmark.id} for {url}")
        return bookmark

    async def get_bookmark(self, bookmark_id: str) -> Bookmark:
        return await self._require(bookmark_id)

    async def list_bookmarks(self, page: Optional[int] = None, page_size: Optional[int] = None) -> Paginated[Bookmark]:
        params = PageParams.normalize(page, page_size)
        return await paginate(params, self.bookmarks.count_bookmarks, self.bookmarks.list_bookmarks)

    async def random_bookmark(self) -> Bookmark:
        bookmark = await self.bookmarks.random_bookmark()
        if bookmark is None:
            raise NotFoundError("bookmark", message="no bookmarks stored")
        return bookmark

    async def get_details(self, bookmark_id: str) -> BookmarkDetails:
        bookmark_id = ensure_uuid(bookmark_id, "bookmark id")
        details = await self.bookmarks.get_details(bookmark_id)
        if details is None:
            raise NotFoundError("bookmark", bookmark_id)
        details.questions = await self.bookmarks.list_questions(bookmark_id)
        return details

    async def missing_http_responses(self, limit: Optional[int] = None) -> List[Bookmark]:
        return await self.bookmarks.missing_http_responses(resolve_limit(limit, DEFAULT_MISSING_LIMIT))

    async def missing_reader_content(self, limit: Optional[int] = None) -> List[Bookmark]:
        return await self.bookmarks.missing_reader_content(resolve_limit(limit, DEFAULT_MISSING_LIMIT))

    async def missing_embeddings(self, limit: Optional[int] = None) -> List[Bookmark]:
        return await self.bookmarks.missing_embeddings(resolve_limit(limit, DEFAULT_MISSING_LIMIT))

    async def missing_summaries(self, limit: Optional[int] = None) -> List[Bookmark]:
        return await self.bookmarks.missing_summaries(resolve_limit(limit, DEFAULT_MISSING_LIMIT))

    async def missing_titles(self, limit: Optional[int] = None) -> List[Bookmark]:
        return await self.bookmarks.missing_titles(resolve_limit(limit, DEFAULT_MISSING_LIMIT))

    # =========================================================================
    # Stage 1: fetch
    # =========================================================================

    async def fetch(self, bookmark_id: str) -> FetchResult:
        """Fetch the bookmark URL; a failure still leaves a 500 record behind."""
        bookmark = await self._require(bookmark_id)
        try:
            page = await self.ctx.fetcher.fetch(bookmark.url, FETCH_TIMEOUT_MS)
        except BackendError as e:
            logger.error(f"Fetch failed for bookmark {bookmark.id} ({bookmark.url}): {e}")
            record = HTTPResponseRecord(
                bookmark_id=bookmark.id,
                status_code=500,
                headers="{}",
                content=str(e).encode("utf-8"),
                fetch_date=_now(),
            )
            await self.bookmarks.insert_http_response(record)
            raise FetchFailedError(e.detail, response=record) from e

        record = HTTPResponseRecord(
            bookmark_id=bookmark.id,
            status_code=page.status_code,
            headers=page.headers,
            content=page.content,
            fetch_date=_now(),
        )
        await self.bookmarks.insert_http_response(record)
        logger.info(f"Stored HTTP response {page.status_code} for bookmark {bookmark.id}")
        return FetchResult(bookmark_id=bookmark.id, response=record)

    # =========================================================================
    # Stage 2: process
    # =========================================================================

    async def process(self, bookmark_id: str, strategy: str) -> ProcessResult:
        if strategy not in EXTRACTION_STRATEGIES:
            raise InputError(f"unknown processing strategy: {strategy}")
        bookmark = await self._require(bookmark_id)

        response = await self.bookmarks.latest_http_response(bookmark.id)
        if response is None:
            raise NotFoundError("http response", bookmark.id, message=f"no HTTP response stored for bookmark {bookmark.id}")

        if not is_processable(response.content_type()):
            logger.info(f"Skipping {strategy} for bookmark {bookmark.id}: content type '{response.content_type()}'")
            return ProcessResult(bookmark_id=bookmark.id, strategy=strategy, message=NOT_HTML_MESSAGE)

        title = None
        if strategy == STRATEGY_READER:
            extracted = await asyncio.to_thread(process_with_reader, response.content, bookmark.url)
            content, title = extracted.content, extracted.title or None
        else:
            content = await process_with_lynx(response.content)

        await self.bookmarks.insert_processed_content(bookmark.id, strategy, content)
        logger.info(f"Processed bookmark {bookmark.id} with {strategy} ({len(content)} chars)")
        return ProcessResult(
            bookmark_id=bookmark.id,
            strategy=strategy,
            message=PROCESSED_MESSAGE,
            content=content,
            title=title,
        )

    # =========================================================================
    # Stage 3: chunk embeddings
    # =========================================================================

    async def embed_chunks(self, bookmark_id: str) -> EmbedChunksResult:
        bookmark = await self._require(bookmark_id)
        content = await self._reader_content(bookmark.id)

        embeddings = await self.ctx.chunked_embedder.embed(content[:MAX_EMBED_CHARS])
        if not embeddings:
            raise EmptyResultError("embedding: no chunks produced for reader content")

        warning = None
        if len(embeddings) >= MAX_CHUNKS:
            warning = TOO_LARGE_WARNING
            embeddings = embeddings[:MAX_CHUNKS]

        for embedding in embeddings:
            check_dimension(embedding.vector, self.ctx.dimensions)

        ids = []
        for embedding in embeddings:
            chunk = EmbeddingChunk(
                id=None,
                bookmark_id=bookmark.id,
                content=embedding.text,
                strategy=STRATEGY_CHUNKED_READER,
                embedding=embedding.vector,
            )
            ids.append(await self.bookmarks.insert_chunk(chunk))

        logger.info(f"Stored {len(ids)} {STRATEGY_CHUNKED_READER} chunks for bookmark {bookmark.id}")
        return EmbedChunksResult(bookmark_id=bookmark.id, ids=ids, warning=warning)

    # =========================================================================
    # Stage 4: summary embedding
    # =========================================================================

    async def embed_summary(self, bookmark_id: str) -> SummaryEmbeddingResult:
        """Summarize until the summary fits one chunk, then store its vector."""
        if self.summarizer is None:
            raise BackendError("summarize", "no LLM configured")
        bookmark = await self._require(bookmark_id)
        content = await self._reader_content(bookmark.id)

        word_count = SUMMARY_START_WORDS
        summary = ""
        embeddings = []
        while word_count > SUMMARY_MIN_WORDS:
            summary = await self.summarizer.summarize(content, bookmark.url, word_count)
            embeddings = await self.ctx.chunked_embedder.embed(summary)
            if len(embeddings) == 1:
                break
            logger.info(
                f"Summary for bookmark {bookmark.id} produced {len(embeddings)} chunks "
                f"at {word_count} words, retrying shorter"
            )
            word_count -= SUMMARY_WORD_STEP

        if not embeddings:
            raise EmptyResultError("summary produced no embedding chunks")

        warning = TOO_LARGE_WARNING if len(embeddings) > 1 else None
        first = embeddings[0]
        chunk_id = await self.bookmarks.insert_chunk(EmbeddingChunk(
            id=None,
            bookmark_id=bookmark.id,
            content=first.text,
            strategy=STRATEGY_SUMMARY_READER,
            embedding=first.vector,
        ))
        logger.info(f"Stored summary embedding for bookmark {bookmark.id}")
        return SummaryEmbeddingResult(bookmark_id=bookmark.id, summary=summary, ids=[chunk_id], warning=warning)

    # =========================================================================
    # Stage 5: title
    # =========================================================================

    async def resolve_title(self, bookmark_id: str) -> TitleResolution:
        bookmark_id = ensure_uuid(bookmark_id, "bookmark id")
        fixture = await self.bookmarks.title_fixture(bookmark_id)
        if fixture is None:
            raise NotFoundError("bookmark", bookmark_id)

        if fixture.existing_title:
            return TitleResolution(
                bookmark_id=bookmark_id,
                title=fixture.existing_title,
                source=fixture.existing_source,
            )

        for title, source in (
            (extract_reader_title(fixture.reader_content), TITLE_SOURCE_READER),
            (extract_html_title(fixture.raw_content), TITLE_SOURCE_HTML),
        ):
            if title:
                recorded = await self.bookmarks.record_title(bookmark_id, title, source)
                logger.info(f"Title for bookmark {bookmark_id} from {source}: {title}")
                return TitleResolution(bookmark_id=bookmark_id, title=title, source=source, recorded=recorded)

        return TitleResolution(bookmark_id=bookmark_id)

    async def set_title(self, bookmark_id: str, title: str, source: str = "user") -> TitleResolution:
        """Record an externally supplied title; it outranks derived ones."""
        title = (title or "").strip()
        if not title:
            raise InputError("title is required")
        bookmark = await self._require(bookmark_id)
        if await self.bookmarks.record_title(bookmark.id, title, source):
            return TitleResolution(bookmark_id=bookmark.id, title=title, source=source, recorded=True)
        # A more trusted title is already stored; report that one.
        fixture = await self.bookmarks.title_fixture(bookmark.id)
        return TitleResolution(
            bookmark_id=bookmark.id,
            title=fixture.existing_title if fixture else None,
            source=fixture.existing_source if fixture else None,
        )

    # =========================================================================
    # Similarity search
    # =========================================================================

    async def search_similar(
        self,
        query: str,
        strategy: Optional[str] = STRATEGY_QA_PASSAGE,
        limit: int = DEFAULT_SIMILAR_LIMIT,
    ) -> List[RetrievedItem]:
        if not query or not query.strip():
            raise InputError("query is required")
        if limit is None:
            limit = DEFAULT_SIMILAR_LIMIT
        if limit <= 0:
            raise InputError("limit must be positive")

        embeddings = await self.ctx.chunked_embedder.embed(query)
        if not embeddings:
            raise EmptyResultError("embedding: no vector produced for query")
        return await self.search.similar_chunks(vector_literal(embeddings[0].vector), limit, strategy or None)

    # =========================================================================
    # Q&A management
    # =========================================================================

    async def list_questions(self, bookmark_id: str) -> List[BookmarkQuestion]:
        bookmark = await self._require(bookmark_id)
        return await self.bookmarks.list_questions(bookmark.id)

    async def _require_question(self, bookmark: Bookmark, question_id: str) -> BookmarkQuestion:
        question_id = ensure_uuid(question_id, "question id")
        existing = await self.bookmarks.get_question(bookmark.id, question_id)
        if existing is None:
            raise NotFoundError("question", question_id)
        return existing

    async def _audit(self, observation: Observation) -> None:
        try:
            await self.observations.insert(observation)
        except Exception as e:
            logger.warning(f"Failed to record {observation.type} observation for {observation.ref}: {e}")

    async def update_question(self, bookmark_id: str, question_id: str, question: str, answer: str) -> BookmarkQuestion:
        if not question or not question.strip():
            raise InputError("question is required")
        bookmark = await self._require(bookmark_id)
        existing = await self._require_question(bookmark, question_id)

        content = join_question(question, answer or "")
        embeddings = await self.ctx.chunked_embedder.embed(content)
        if not embeddings:
            raise EmptyResultError("embedding: no vector produced for question")

        if not await self.bookmarks.update_question(bookmark.id, existing.id, content, embeddings[0].vector):
            raise NotFoundError("question", existing.id)

        summary = await self.bookmarks.latest_summary(bookmark.id)
        await self._audit(Observation(
            id=None,
            data={
                "bookmarkId": bookmark.id,
                "title": bookmark.title or "",
                "summary": summary or "",
                "previousQuestion": existing.question,
                "previousAnswer": existing.answer,
                "newQuestion": question,
                "newAnswer": answer or "",
                "timestamp": _now().isoformat(),
            },
            type="qa-edit",
            source="user-edit",
            tags="edit,question,answer",
            ref=bookmark.id,
        ))
        logger.info(f"Updated question {existing.id} of bookmark {bookmark.id}")
        return BookmarkQuestion(id=existing.id, bookmark_id=bookmark.id, content=content, strategy=existing.strategy)

    async def delete_question(self, bookmark_id: str, question_id: str) -> BookmarkQuestion:
        bookmark = await self._require(bookmark_id)
        existing = await self._require_question(bookmark, question_id)

        if not await self.bookmarks.delete_chunk(bookmark.id, existing.id):
            raise NotFoundError("question", existing.id)

        summary = await self.bookmarks.latest_summary(bookmark.id)
        await self._audit(Observation(
            id=None,
            data={
                "bookmarkId": bookmark.id,
                "title": bookmark.title or "",
                "summary": summary or "",
                "question": existing.question,
                "answer": existing.answer,
                "timestamp": _now().isoformat(),
            },
            type="qa-delete",
            source="user-delete",
            tags="delete,question,answer",
            ref=bookmark.id,
        ))
        logger.info(f"Deleted question {existing.id} of bookmark {bookmark.id}")
        return existing
