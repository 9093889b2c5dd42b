"""ServiceContext: the stateless collaborators shared by every service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from garden.db import EMBEDDING_DIMENSIONS

if TYPE_CHECKING:
    from garden.db import Handle
    from garden.embeddings import ChunkedEmbedder, VectorEmbedder
    from garden.llm import LLMClient
    from garden.web_fetcher import WebFetcher


@dataclass
class ServiceContext:
    db: Handle
    fetcher: Optional[WebFetcher] = None
    vector_embedder: Optional[VectorEmbedder] = None
    chunked_embedder: Optional[ChunkedEmbedder] = None
    llm: Optional[LLMClient] = None
    dimensions: int = EMBEDDING_DIMENSIONS
