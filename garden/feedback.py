"""Feedback sink: user votes on retrieved Q&A fragments."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from garden.bookmark_store import BookmarkStore
from garden.context import ServiceContext
from garden.errors import InputError
from garden.models import FeedbackStats, Observation, ensure_uuid
from garden.observation_store import ObservationStore

logger = logging.getLogger(__name__)

FEEDBACK_TYPES = ("upvote", "downvote", "trash")


@dataclass
class FeedbackRequest:
    question: str
    answer: str
    bookmark_id: str
    feedback_type: str
    user_question: str = ""
    similarity: float = 0.0
    reference_id: Optional[str] = None
    delete_ref: bool = False


class FeedbackService:
    def __init__(self, ctx: ServiceContext):
        self.observations = ObservationStore(ctx.db)
        self.bookmarks = BookmarkStore(ctx.db, ctx.dimensions)

    async def record_feedback(self, request: FeedbackRequest) -> Observation:
        if request.feedback_type not in FEEDBACK_TYPES:
            raise InputError(f"feedback_type must be one of {', '.join(FEEDBACK_TYPES)}")
        bookmark_id = ensure_uuid(request.bookmark_id, "bookmark_id")
        reference_id = ensure_uuid(request.reference_id, "reference_id") if request.reference_id else None

        observation = await self.observations.insert(Observation(
            id=None,
            data={
                "question": request.question,
                "answer": request.answer,
                "bookmarkId": bookmark_id,
                "userQuestion": request.user_question,
                "similarity": request.similarity,
                "feedbackType": request.feedback_type,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            type="qa-feedback",
            source="user-feedback",
            tags=f"feedback,{request.feedback_type}",
            ref=bookmark_id,
        ))
        logger.info(f"Recorded {request.feedback_type} feedback for bookmark {bookmark_id}")

        if request.delete_ref and reference_id:
            try:
                deleted = await self.bookmarks.delete_chunk(bookmark_id, reference_id)
                if not deleted:
                    logger.warning(f"Content reference {reference_id} not found for bookmark {bookmark_id}")
            except Exception as e:
                logger.warning(f"Failed to delete content reference {reference_id}: {e}")

        return observation

    async def feedback_stats(self, bookmark_id: str) -> FeedbackStats:
        return await self.observations.feedback_stats(ensure_uuid(bookmark_id, "bookmark id"))
