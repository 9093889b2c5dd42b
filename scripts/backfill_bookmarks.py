#!/usr/bin/env python3
"""
Catch up bookmarks that are missing ingestion stages.

Each stage walks its own missing-* query:
fetch -> process(reader) -> embed chunks -> embed summary -> resolve title.
A failure on one bookmark is logged and the batch moves on.

Usage:
    python3 scripts/backfill_bookmarks.py \
        --db-url postgresql://gardener@localhost:5432/garden --stage all --limit 50
"""

import argparse
import asyncio
import logging

from garden.backfill import STAGES, run_backfill
from garden.bookmark_service import BookmarkService
from garden.context import ServiceContext
from garden.db import DATABASE_URL, EMBEDDING_DIMENSIONS, Handle, create_pool
from garden.embeddings import create_embedders
from garden.llm import LLMClient
from garden.web_fetcher import WebFetcher


async def backfill(db_url: str, stage: str, limit: int, dry_run: bool = False):
    pool = await create_pool(db_url)
    try:
        vector_embedder, chunked_embedder = create_embedders()
        service = BookmarkService(ServiceContext(
            db=Handle(pool=pool),
            fetcher=WebFetcher(),
            vector_embedder=vector_embedder,
            chunked_embedder=chunked_embedder,
            llm=LLMClient(),
            dimensions=EMBEDDING_DIMENSIONS,
        ))
        reports = await run_backfill(service, stage, limit, dry_run)
    finally:
        await pool.close()

    for report in reports:
        print(f"{report.stage}: {report.pending} pending, {report.succeeded} ok, {report.failed} failed")


def main():
    parser = argparse.ArgumentParser(description="Backfill missing bookmark ingestion stages")
    parser.add_argument("--db-url", default=DATABASE_URL, help="PostgreSQL connection URL")
    parser.add_argument("--stage", choices=STAGES, default="all", help="Stage to catch up")
    parser.add_argument("--limit", type=int, default=50, help="Bookmarks per stage")
    parser.add_argument("--dry-run", action="store_true", help="Preview without writing")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    asyncio.run(backfill(args.db_url, args.stage, args.limit, args.dry_run))


if __name__ == "__main__":
    main()
