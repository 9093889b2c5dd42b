"""Shared pytest fixtures: recording asyncpg fakes and deterministic backends."""

from __future__ import annotations

import hashlib
from typing import Any, List, Optional, Tuple

import pytest

from garden.context import ServiceContext
from garden.db import Handle
from garden.embeddings import ChunkedEmbedder, VectorEmbedder
from garden.chunker import SentenceChunker

TEST_DIMENSIONS = 3


# =============================================================================
# asyncpg fakes
# =============================================================================


class MockConnection:
    """Mock asyncpg connection with recorded SQL calls and scripted results.

    ``on(fragment, result)`` registers a result for every query containing
    ``fragment``; the first matching registration wins. ``result`` may be a
    callable taking ``(query, args)``. ``once=True`` consumes the entry.
    """

    def __init__(self):
        self._scripts: List[list] = []
        self.calls: List[Tuple[str, str, tuple]] = []
        self.transactions: List[str] = []

    def on(self, fragment: str, result: Any, method: Optional[str] = None, once: bool = False):
        self._scripts.append([fragment, method, result, once])
        return self

    def _result(self, method: str, query: str, args: tuple, default: Any):
        self.calls.append((method, query, args))
        for entry in self._scripts:
            fragment, wanted, result, once = entry
            if fragment in query and (wanted is None or wanted == method):
                if once:
                    self._scripts.remove(entry)
                if isinstance(result, Exception):
                    raise result
                return result(query, args) if callable(result) else result
        return default

    async def execute(self, query, *args):
        return self._result("execute", query, args, "OK")

    async def fetchrow(self, query, *args):
        return self._result("fetchrow", query, args, None)

    async def fetch(self, query, *args):
        return self._result("fetch", query, args, [])

    async def fetchval(self, query, *args):
        return self._result("fetchval", query, args, None)

    def transaction(self):
        return _MockTransaction(self)

    def queries(self, fragment: str, method: Optional[str] = None) -> List[Tuple[str, tuple]]:
        return [
            (q, a) for m, q, a in self.calls
            if fragment in q and (method is None or m == method)
        ]


class _MockTransaction:
    def __init__(self, conn: MockConnection):
        self._conn = conn

    async def __aenter__(self):
        self._conn.transactions.append("begin")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._conn.transactions.append("rollback" if exc_type else "commit")
        return False


class MockPool:
    """Mock asyncpg.Pool that yields a MockConnection."""

    def __init__(self, conn: MockConnection):
        self._conn = conn

    def acquire(self):
        return _MockAcquire(self._conn)


class _MockAcquire:
    def __init__(self, conn):
        self._conn = conn

    async def __aenter__(self):
        return self._conn

    async def __aexit__(self, *args):
        pass


# =============================================================================
# Backends
# =============================================================================


class FakeVectorBackend:
    """Deterministic vectors derived from a hash of the text."""

    name = "fake"

    def __init__(self, dimensions: int = TEST_DIMENSIONS):
        self.dimensions = dimensions
        self.inputs: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.inputs.append(text)
        if not text:
            return []
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [digest[i] / 255.0 for i in range(self.dimensions)]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def conn():
    return MockConnection()


@pytest.fixture
def handle(conn):
    return Handle(pool=MockPool(conn))


@pytest.fixture
def vector_backend():
    return FakeVectorBackend()


@pytest.fixture
def make_context(handle, vector_backend):
    def _make(chunk_size: int = 8000, llm=None, fetcher=None) -> ServiceContext:
        vector = VectorEmbedder(vector_backend)
        return ServiceContext(
            db=handle,
            fetcher=fetcher,
            vector_embedder=vector,
            chunked_embedder=ChunkedEmbedder(vector, SentenceChunker(chunk_size)),
            llm=llm,
            dimensions=TEST_DIMENSIONS,
        )
    return _make
