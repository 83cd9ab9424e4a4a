"""
Comment propagation — keeps the author name/avatar copied into card comments
in line with the user record.

The account service enqueues one job per qualifying profile update; the job
payload is the user's UserSnapshot. ``CommentPropagationHandler`` is the
queue processor. It is idempotent: it overwrites fields with the snapshot's
values, so re-running a job (retry, redelivery after a crash) converges on
the same state.
"""
from __future__ import annotations

import structlog
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import TRANSIENT_ERRORS, AccountError, TransientStoreError, ValidationError
from database.store_base import BaseCommentStore
from job_queue.client import JobQueue
from job_queue.message_queue import QueueJob
from models.schemas import UserSnapshot

logger = structlog.get_logger()

UPDATE_CARDS_COMMENTS_QUEUE = "update_cards_comments"


def snapshot_from_payload(payload: dict[str, Any]) -> UserSnapshot:
    if not isinstance(payload, dict) or not payload.get("id"):
        raise ValidationError("Propagation payload is missing the user id",
                              details={"payload_keys": sorted(payload) if isinstance(payload, dict) else None})
    try:
        return UserSnapshot.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError("Propagation payload is malformed",
                              details={"errors": e.errors(include_url=False)}) from e


class CommentPropagationHandler:
    """Queue processor: apply one user snapshot to every comment the user wrote."""

    def __init__(self, comment_store: BaseCommentStore):
        self.comment_store = comment_store

    async def __call__(self, job: QueueJob) -> dict[str, Any]:
        snapshot = snapshot_from_payload(job.payload)
        logger.info("propagation_started",
                    job_id=job.job_id,
                    user_id=snapshot.id,
                    attempt=job.attempts_made + 1)
        try:
            result = await self.comment_store.update_many_comments(snapshot)
        except AccountError:
            raise
        except TRANSIENT_ERRORS as e:
            raise TransientStoreError(
                "Comment store unavailable while refreshing author info",
                details={"user_id": snapshot.id},
            ) from e
        return result.model_dump(mode="json")


# ──────────────────────────────────────────────────────────────
#  Observers — operational visibility only
# ──────────────────────────────────────────────────────────────

def log_propagation_completed(job: QueueJob, result: dict[str, Any]) -> None:
    logger.info("propagation_job_completed",
                job_id=job.job_id,
                queue=job.queue,
                user_id=job.payload.get("id"),
                attempts=job.attempts_made,
                matched=result.get("matched_count"),
                modified=result.get("modified_count"))


def log_propagation_failed(job: QueueJob, error: BaseException) -> None:
    # Terminal: nothing retries after this, the comments stay stale until fixed by hand.
    logger.error("propagation_job_failed",
                 job_id=job.job_id,
                 queue=job.queue,
                 user_id=job.payload.get("id"),
                 attempts=job.attempts_made,
                 error=str(error),
                 error_kind=getattr(getattr(error, "kind", None), "value", type(error).__name__),
                 cause=repr(error.__cause__) if error.__cause__ else None)


def register_comment_propagation(
    queue: JobQueue,
    comment_store: BaseCommentStore,
    queue_name: str = UPDATE_CARDS_COMMENTS_QUEUE,
) -> CommentPropagationHandler:
    """Wire the processor and its observers onto a queue client. Call once at startup."""
    handler = CommentPropagationHandler(comment_store)
    queue.process(queue_name, handler)
    queue.on_completed(queue_name, log_propagation_completed)
    queue.on_failed(queue_name, log_propagation_failed)
    return handler
