"""
Batch catch-up over the missing-* queries.

Each stage selects its own pending bookmarks, so a bookmark whose chunks were
embedded but whose summary or title failed is picked up again by the next run.
A failure on one bookmark is logged and the batch moves on.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Sequence

from garden.bookmark_service import BookmarkService
from garden.models import STRATEGY_READER, Bookmark

logger = logging.getLogger(__name__)

STAGE_ORDER = ("fetch", "process", "embed", "summary", "title")
STAGES = STAGE_ORDER + ("all",)


@dataclass
class StageReport:
    stage: str
    pending: int = 0
    succeeded: int = 0
    failed: int = 0


def stages_for(stage: str) -> Sequence[str]:
    if stage == "all":
        return STAGE_ORDER
    if stage not in STAGE_ORDER:
        raise ValueError(f"unknown stage: {stage}")
    return (stage,)


def _plan(service: BookmarkService) -> Dict[str, tuple]:
    async def process_reader(bookmark_id):
        return await service.process(bookmark_id, STRATEGY_READER)

    return {
        "fetch": (service.missing_http_responses, service.fetch),
        "process": (service.missing_reader_content, process_reader),
        "embed": (service.missing_embeddings, service.embed_chunks),
        "summary": (service.missing_summaries, service.embed_summary),
        "title": (service.missing_titles, service.resolve_title),
    }


async def _run(stage: str, bookmark: Bookmark, step: Callable[[str], Awaitable]) -> bool:
    try:
        await step(bookmark.id)
    except Exception:
        logger.exception(f"{stage} failed for bookmark {bookmark.id} ({bookmark.url})")
        return False
    logger.info(f"{stage} ok for bookmark {bookmark.id} ({bookmark.url})")
    return True


async def run_backfill(
    service: BookmarkService,
    stage: str = "all",
    limit: int = 50,
    dry_run: bool = False,
) -> List[StageReport]:
    plan = _plan(service)
    reports = []
    for name in stages_for(stage):
        missing, step = plan[name]
        pending = await missing(limit)
        report = StageReport(stage=name, pending=len(pending))
        reports.append(report)
        logger.info(f"{name}: {len(pending)} bookmarks pending")
        if dry_run:
            for bookmark in pending:
                logger.info(f"  would {name}: {bookmark.url}")
            continue

        for bookmark in pending:
            if await _run(name, bookmark, step):
                report.succeeded += 1
            else:
                report.failed += 1
        logger.info(f"{name}: {report.succeeded}/{report.pending} succeeded")
    return reports
