"""
Embedding Service

Two embedder variants sit on top of a single-vector backend:
- VectorEmbedder: text -> float32 vector
- ChunkedEmbedder: text -> [(chunk, vector)] via the SentenceChunker

Backends are Ollama (``/api/embeddings``) or OpenAI. A remote chunking
service that answers with ``[[text, [floats]], ...]`` pairs is supported
through RemoteChunkedEmbedder.
"""

import array
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import httpx

from garden.chunker import SentenceChunker
from garden.errors import BackendError, DataShapeError, EmptyResultError

logger = logging.getLogger(__name__)

# Config
EMBEDDING_BACKEND = os.getenv("EMBEDDING_BACKEND", "ollama")
OLLAMA_API_URL = os.getenv("OLLAMA_API_URL", "http://localhost:11434")
OLLAMA_EMBED_API_URL = os.getenv("OLLAMA_EMBED_API_URL", OLLAMA_API_URL)
OLLAMA_EMBED_MODEL = os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text:latest")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
EMBED_CHUNKED_URL = os.getenv("EMBED_CHUNKED_URL", "")
EMBED_TIMEOUT = float(os.getenv("EMBED_TIMEOUT", "60"))


@dataclass
class ChunkEmbedding:
    text: str
    vector: List[float]


def to_float32(values: Sequence[float]) -> List[float]:
    """Narrow to 32-bit floats."""
    return array.array("f", values).tolist()


def check_dimension(vector: Sequence[float], expected: Optional[int]) -> None:
    if expected and len(vector) != expected:
        raise DataShapeError(
            f"embedding dimension {len(vector)} does not match configured dimension {expected}"
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_chunk_pairs(payload: Any) -> List[ChunkEmbedding]:
    """Parse ``[(text, [float, ...]), ...]`` strictly.

    Every element must have exactly two members, a string followed by a list
    of numbers.
    """
    if not isinstance(payload, list):
        raise DataShapeError(f"expected a list of (text, vector) pairs, got {type(payload).__name__}")

    pairs = []
    for index, element in enumerate(payload):
        if not isinstance(element, (list, tuple)) or len(element) != 2:
            raise DataShapeError(f"element {index}: expected a 2-tuple")
        text, vector = element
        if not isinstance(text, str):
            raise DataShapeError(f"element {index}: first member must be a string")
        if not isinstance(vector, list) or not all(_is_number(v) for v in vector):
            raise DataShapeError(f"element {index}: second member must be a list of numbers")
        pairs.append(ChunkEmbedding(text=text, vector=to_float32(vector)))
    return pairs


# =============================================================================
# Backends
# =============================================================================

class OllamaEmbeddingBackend:
    """POST {base}/api/embeddings with {model, prompt}."""

    def __init__(
        self,
        base_url: str = OLLAMA_EMBED_API_URL,
        model: str = OLLAMA_EMBED_MODEL,
        timeout: float = EMBED_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return f"ollama:{self.model}"

    async def embed(self, text: str) -> List[float]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/api/embeddings",
                    json={"model": self.model, "prompt": text},
                )
            except httpx.HTTPError as e:
                raise BackendError("embedding", str(e) or e.__class__.__name__) from e

        if response.status_code != 200:
            raise BackendError(
                "embedding",
                f"status {response.status_code}: {response.text}",
                status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise DataShapeError("embedding: malformed JSON response") from e

        embedding = payload.get("embedding") if isinstance(payload, dict) else None
        if not isinstance(embedding, list):
            raise DataShapeError("embedding: response has no 'embedding' array")
        return embedding


class OpenAIEmbeddingBackend:
    """OpenAI embeddings, sync SDK call run in a worker thread."""

    def __init__(self, api_key: str = OPENAI_API_KEY, model: str = OPENAI_EMBEDDING_MODEL):
        from openai import OpenAI

        self.model = model
        self._client = OpenAI(api_key=api_key)

    @property
    def name(self) -> str:
        return f"openai:{self.model}"

    async def embed(self, text: str) -> List[float]:
        from openai import OpenAIError

        try:
            response = await asyncio.to_thread(
                self._client.embeddings.create,
                model=self.model,
                input=text,
            )
        except OpenAIError as e:
            raise BackendError("embedding", str(e)) from e
        if not response.data:
            return []
        return list(response.data[0].embedding)


# =============================================================================
# Embedders
# =============================================================================

class VectorEmbedder:
    def __init__(self, backend):
        self.backend = backend

    async def embed(self, text: str) -> List[float]:
        vector = await self.backend.embed(text)
        if not vector:
            raise EmptyResultError("embedding: backend returned zero vectors")
        return to_float32(vector)


class ChunkedEmbedder:
    """Chunk with SentenceChunker, then embed every chunk in order."""

    def __init__(self, vector_embedder: VectorEmbedder, chunker: Optional[SentenceChunker] = None):
        self.vector_embedder = vector_embedder
        self.chunker = chunker or SentenceChunker()

    async def embed(self, text: str) -> List[ChunkEmbedding]:
        results = []
        for chunk in self.chunker.chunk(text):
            vector = await self.vector_embedder.embed(chunk)
            results.append(ChunkEmbedding(text=chunk, vector=vector))
        return results


class RemoteChunkedEmbedder:
    """Chunked variant backed by a service that chunks and embeds in one call."""

    def __init__(
        self,
        url: str = EMBED_CHUNKED_URL,
        timeout: float = EMBED_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def embed(self, text: str) -> List[ChunkEmbedding]:
        if not text:
            return []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.url, json={"text": text})
            except httpx.HTTPError as e:
                raise BackendError("embedding", str(e) or e.__class__.__name__) from e

        if response.status_code != 200:
            raise BackendError(
                "embedding",
                f"status {response.status_code}: {response.text}",
                status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise DataShapeError("embedding: malformed JSON response") from e
        return parse_chunk_pairs(payload)


def create_backend(kind: str = EMBEDDING_BACKEND):
    if kind == "openai":
        if not OPENAI_API_KEY:
            raise ValueError("EMBEDDING_BACKEND=openai requires OPENAI_API_KEY")
        return OpenAIEmbeddingBackend()
    if kind == "ollama":
        return OllamaEmbeddingBackend()
    raise ValueError(f"Unknown embedding backend: {kind}")


def create_embedders(kind: str = EMBEDDING_BACKEND):
    """Build (vector, chunked) embedders from the environment."""
    backend = create_backend(kind)
    vector = VectorEmbedder(backend)
    if EMBED_CHUNKED_URL:
        chunked = RemoteChunkedEmbedder()
        logger.info(f"Embeddings: {backend.name}, chunked via {EMBED_CHUNKED_URL}")
    else:
        chunked = ChunkedEmbedder(vector)
        logger.info(f"Embeddings: {backend.name}")
    return vector, chunked
