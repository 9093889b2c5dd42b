"""
Search Service: hybrid search and the retrieval-augmented answer pipeline.

Advanced search runs embed -> retrieve -> template -> generate -> parse.
The prompt template can be overridden through the configuration store
under ``search.prompt.template``.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from garden.config_store import ConfigStore
from garden.context import ServiceContext
from garden.db import vector_literal
from garden.errors import InputError
from garden.llm import parse_response
from garden.models import RetrievedItem, SearchWeights, UnifiedSearchResult
from garden.prompt_template import render_template
from garden.search_store import SearchStore

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 50
RAG_RETRIEVAL_LIMIT = 10

PROMPT_TEMPLATE_KEY = "search.prompt.template"

DEFAULT_PROMPT_TEMPLATE = """System: You are a helpful assistant that helps the user answering questions based on the provided context. The context is a set of questions and answers generated from the content of bookmarks of the user, including a summary of the source article.
When answering, if any article from the questions and answers is relevant, quote it with a link in markdown using the format [title](url)
If the context article is not relevant, dismiss it.
If you need to refer to "the context", mention "the bookmarks database" instead, for example: "In the bookmarks database there is an article related to..."

Context:
{{range .RetrievedItems}}Title: {{.BookmarkTitle}}
Question: {{.Question}}
Answer: {{.Answer}}
Summary: {{.Summary}}
Url: {{.BookmarkURL}}
{{end}}
User question: {{.UserQuestion}}

Please answer the user's question, and rely as much as possible on the provided context. If the context doesn't contain relevant information, say so."""


def template_item(item: RetrievedItem) -> Dict[str, Any]:
    """Field names a prompt template may reference for one retrieved item."""
    title = item.bookmark_title or ""
    url = item.bookmark_url or ""
    return {
        "ID": item.id,
        "Question": item.question,
        "Answer": item.answer,
        "BookmarkID": item.bookmark_id,
        "BookmarkTitle": title,
        "BookmarkURL": url,
        "Title": title,
        "URL": url,
        "Url": url,
        "Summary": item.summary or "",
        "Similarity": item.similarity,
        "Strategy": item.strategy,
    }


def query_string(query: Union[str, Dict[str, Any], None]) -> str:
    if query is None:
        return ""
    if isinstance(query, str):
        return query
    return json.dumps(query)


def resolve_limit(limit: Optional[int], default: int) -> int:
    if limit is None:
        return default
    if limit <= 0:
        raise InputError("limit must be positive")
    return limit


@dataclass
class AdvancedSearchResult:
    query: Any
    query_string: str
    similar_questions: List[RetrievedItem] = field(default_factory=list)
    rendered_prompt: str = ""
    thinking_process: str = ""
    full_response: str = ""
    answer: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "queryString": self.query_string,
            "similarQuestions": [q.to_dict() for q in self.similar_questions],
            "renderedPrompt": self.rendered_prompt,
            "thinkingProcess": self.thinking_process,
            "fullResponse": self.full_response,
            "answer": self.answer,
        }


class SearchService:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx
        self.store = SearchStore(ctx.db)
        self.config = ConfigStore(ctx.db)

    async def search_all(
        self,
        query: str,
        weights: Optional[SearchWeights] = None,
        limit: Optional[int] = None,
    ) -> List[UnifiedSearchResult]:
        if not query or not query.strip():
            raise InputError("query is required")
        limit = resolve_limit(limit, DEFAULT_SEARCH_LIMIT)
        weights = (weights or SearchWeights()).resolved()

        vector = await self.ctx.vector_embedder.embed(query)
        results = await self.store.search_all(query, vector_literal(vector), weights, limit)
        logger.info(f"Hybrid search '{query}' returned {len(results)} results")
        return results

    async def prompt_template(self) -> str:
        try:
            template = await self.config.get_value(PROMPT_TEMPLATE_KEY)
        except Exception as e:
            logger.warning(f"Prompt template lookup failed, using the built-in template: {e}")
            return DEFAULT_PROMPT_TEMPLATE
        return template or DEFAULT_PROMPT_TEMPLATE

    async def advanced_search(self, query: Union[str, Dict[str, Any]]) -> AdvancedSearchResult:
        text = query_string(query)
        if not text.strip():
            raise InputError("query is required")

        vector = await self.ctx.vector_embedder.embed(text)
        items = await self.store.similar_chunks(vector_literal(vector), RAG_RETRIEVAL_LIMIT)

        rendered = render_template(await self.prompt_template(), {
            "UserQuestion": text,
            "RetrievedItems": [template_item(item) for item in items],
        })

        response = await self.ctx.llm.generate(rendered)
        parsed = parse_response(response)
        logger.info(f"Advanced search answered with {len(items)} retrieved items")

        return AdvancedSearchResult(
            query=query,
            query_string=text,
            similar_questions=items,
            rendered_prompt=rendered,
            thinking_process=parsed.thinking,
            full_response=parsed.full_response,
            answer=parsed.answer,
        )
