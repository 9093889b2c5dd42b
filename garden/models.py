"""
Domain records shared by the stores and services.

Rows come back from asyncpg as Records; the stores map them into these
dataclasses so services never index raw rows. ``to_dict`` produces the JSON
shapes returned by the API.
"""

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from garden.errors import InputError


# Strategy names
STRATEGY_READER = "reader"
STRATEGY_LYNX = "lynx"
STRATEGY_CHUNKED_READER = "chunked-reader"
STRATEGY_SUMMARY_READER = "summary-reader"
STRATEGY_QA_PASSAGE = "qa-v2-passage"

EXTRACTION_STRATEGIES = (STRATEGY_READER, STRATEGY_LYNX)

# Title sources, lowest trust first. Anything else is externally supplied.
TITLE_SOURCE_HTML = "html-title"
TITLE_SOURCE_READER = "reader-title"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def ensure_uuid(value: Any, name: str = "id") -> str:
    """Return the canonical string form of a UUID or raise InputError."""
    if value is None or value == "":
        raise InputError(f"{name} is required")
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        raise InputError(f"{name} is not a valid UUID: {value}")


UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def is_uuid(value: str) -> bool:
    """Strict hyphenated form, as written in reference tokens."""
    return bool(UUID_PATTERN.match(value or ""))


# =============================================================================
# Bookmarks and pipeline artifacts
# =============================================================================

@dataclass
class Bookmark:
    id: str
    url: str
    creation_date: Optional[datetime] = None
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "creation_date": _iso(self.creation_date),
        }


@dataclass
class HTTPResponseRecord:
    """One stored fetch of a bookmark URL. Headers are a JSON object string."""
    bookmark_id: str
    status_code: int
    headers: str
    content: bytes
    fetch_date: Optional[datetime] = None

    def header_map(self) -> Dict[str, Any]:
        try:
            parsed = json.loads(self.headers or "{}")
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def content_type(self) -> str:
        for name, value in self.header_map().items():
            if name.lower() == "content-type":
                if isinstance(value, list):
                    value = value[0] if value else ""
                return str(value).lower()
        return ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookmark_id": self.bookmark_id,
            "status_code": self.status_code,
            "headers": self.headers,
            "content": self.content.decode("utf-8", errors="replace"),
            "fetch_date": _iso(self.fetch_date),
        }


@dataclass
class ProcessedContent:
    bookmark_id: str
    strategy_used: str
    content: str
    created_at: Optional[datetime] = None


@dataclass
class TitleFixture:
    """Everything title resolution needs, read in one query."""
    bookmark_id: str
    url: str
    existing_title: Optional[str] = None
    existing_source: Optional[str] = None
    reader_content: Optional[str] = None
    raw_content: Optional[bytes] = None


@dataclass
class TitleResolution:
    """``title`` and ``source`` are None when nothing could be derived."""
    bookmark_id: str
    title: Optional[str] = None
    source: Optional[str] = None
    recorded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"bookmark_id": self.bookmark_id, "title": self.title}
        if self.source is not None:
            data["source"] = self.source
        data["recorded"] = self.recorded
        return data


@dataclass
class EmbeddingChunk:
    id: Optional[str]
    bookmark_id: str
    content: str
    strategy: str
    embedding: Optional[List[float]] = None
    created_at: Optional[datetime] = None


@dataclass
class BookmarkQuestion:
    """A Q&A chunk stored as ``"question?\\nanswer"``."""
    id: str
    bookmark_id: str
    content: str
    strategy: Optional[str] = None

    @property
    def question(self) -> str:
        return split_question(self.content)[0]

    @property
    def answer(self) -> str:
        return split_question(self.content)[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bookmark_id": self.bookmark_id,
            "content": self.content,
            "question": self.question,
            "answer": self.answer,
            "strategy": self.strategy,
        }


def split_question(content: Optional[str]):
    """Split on the first newline: prefix is the question, rest the answer."""
    if not content:
        return "", ""
    question, sep, answer = content.partition("\n")
    return question, answer if sep else ""


def join_question(question: str, answer: str) -> str:
    return f"{question}?\n{answer}"


@dataclass
class BookmarkDetails:
    bookmark: Bookmark
    summary: Optional[str] = None
    title_source: Optional[str] = None
    status_code: Optional[int] = None
    fetch_date: Optional[datetime] = None
    strategies: List[str] = field(default_factory=list)
    questions: List[BookmarkQuestion] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = self.bookmark.to_dict()
        data.update({
            "summary": self.summary,
            "title_source": self.title_source,
            "status_code": self.status_code,
            "fetch_date": _iso(self.fetch_date),
            "strategies": self.strategies,
            "questions": [q.to_dict() for q in self.questions],
        })
        return data


# =============================================================================
# Retrieval
# =============================================================================

DEFAULT_EXACT_WEIGHT = 5.0
DEFAULT_SIMILARITY_WEIGHT = 2.0
DEFAULT_RECENCY_WEIGHT = 1.0


@dataclass
class SearchWeights:
    """Score = exact * title match + similarity * cosine + recency * 1/(1+age days)."""
    exact: Optional[float] = DEFAULT_EXACT_WEIGHT
    similarity: Optional[float] = DEFAULT_SIMILARITY_WEIGHT
    recency: Optional[float] = DEFAULT_RECENCY_WEIGHT

    def resolved(self) -> "SearchWeights":
        """Unset weights fall back to their defaults."""
        return SearchWeights(
            exact=DEFAULT_EXACT_WEIGHT if self.exact is None else self.exact,
            similarity=DEFAULT_SIMILARITY_WEIGHT if self.similarity is None else self.similarity,
            recency=DEFAULT_RECENCY_WEIGHT if self.recency is None else self.recency,
        )


@dataclass
class UnifiedSearchResult:
    item_type: str
    item_id: str
    item_title: Optional[str]
    last_activity: Optional[datetime]
    search_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_type": self.item_type,
            "item_id": self.item_id,
            "item_title": self.item_title,
            "last_activity": _iso(self.last_activity),
            "search_score": self.search_score,
        }


@dataclass
class RetrievedItem:
    """A Q&A fragment returned by vector search. ``id`` is the 1-based rank."""
    id: int
    question: str
    answer: str
    bookmark_id: str
    bookmark_title: Optional[str]
    bookmark_url: Optional[str]
    summary: Optional[str]
    similarity: float
    strategy: str = ""
    reference_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "question": self.question,
            "answer": self.answer,
            "bookmarkId": self.bookmark_id,
            "bookmarkTitle": self.bookmark_title,
            "bookmarkUrl": self.bookmark_url,
            "title": self.bookmark_title,
            "url": self.bookmark_url,
            "summary": self.summary,
            "similarity": self.similarity,
            "strategy": self.strategy,
            "referenceId": self.reference_id,
        }


# =============================================================================
# Observations
# =============================================================================

@dataclass
class Observation:
    id: Optional[str]
    data: Dict[str, Any]
    type: str
    source: str
    tags: str
    parent_id: Optional[str] = None
    ref: Optional[str] = None
    creation_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "data": self.data,
            "type": self.type,
            "source": self.source,
            "tags": self.tags,
            "parent_id": self.parent_id,
            "ref": self.ref,
            "creation_date": _iso(self.creation_date),
        }


@dataclass
class FeedbackStats:
    upvotes: int = 0
    downvotes: int = 0
    trash: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"upvotes": self.upvotes, "downvotes": self.downvotes, "trash": self.trash}


# =============================================================================
# Entities and notes
# =============================================================================

@dataclass
class Entity:
    id: str
    name: str
    type: str
    description: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "properties": self.properties,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "deleted_at": _iso(self.deleted_at),
        }


@dataclass
class EntityReference:
    source_type: str
    source_id: str
    entity_id: str
    reference_text: str
    position: Optional[int] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "entity_id": self.entity_id,
            "reference_text": self.reference_text,
            "position": self.position,
            "created_at": _iso(self.created_at),
        }


@dataclass
class ParsedReference:
    original: str
    entity_name: str
    display_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original": self.original,
            "entityName": self.entity_name,
            "displayText": self.display_text,
        }


@dataclass
class Note:
    id: str
    title: str
    slug: Optional[str]
    contents: str
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "contents": self.contents,
            "tags": self.tags,
            "created_at": _iso(self.created_at),
            "modified_at": _iso(self.modified_at),
        }
