"""
Queue Consumer — Pulls jobs from a named queue, runs its handler, settles the attempt.

Runs as one or more async tasks inside the API process or the standalone
worker. For horizontal scaling, run several processes with the same
consumer_group; the Redis backend delivers each job to exactly one of them.

Attempt lifecycle:
  ┌──────────┐  fetch   ┌──────────┐  handler ok   ┌───────────┐
  │ waiting  │─────────▶│  active  │──────────────▶│ completed │── on_completed
  └──────────┘          └────┬─────┘               └───────────┘
        ▲                    │ handler raised
        │  backoff elapsed   ▼
  ┌─────┴──────┐  attempts < max   ┌────────┐
  │  delayed   │◀──────────────────│ settle │
  │ (promoter) │                   └───┬────┘
  └────────────┘                       │ attempts >= max
                                       ▼
                                  ┌────────┐
                                  │ failed │── on_failed
                                  └────────┘
"""
from __future__ import annotations

import asyncio
import inspect
import os
import socket
import structlog
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from job_queue.message_queue import JobStatus, MessageQueue, QueueJob

logger = structlog.get_logger()

JobHandler = Callable[[QueueJob], Awaitable[Any]]
CompletedListener = Callable[[QueueJob, Any], Any]
FailedListener = Callable[[QueueJob, BaseException], Any]


class JobEvents:
    """
    Completed/failed observers, keyed by queue name.

    Listeners are for logging and metrics only: they run after the job state
    is persisted, and an exception inside one is logged and dropped.
    """

    def __init__(self):
        self._completed: dict[str, list[CompletedListener]] = defaultdict(list)
        self._failed: dict[str, list[FailedListener]] = defaultdict(list)

    def on_completed(self, queue: str, listener: CompletedListener) -> None:
        self._completed[queue].append(listener)

    def on_failed(self, queue: str, listener: FailedListener) -> None:
        self._failed[queue].append(listener)

    async def emit_completed(self, job: QueueJob, result: Any) -> None:
        for listener in self._completed.get(job.queue, []):
            await self._call(listener, "completed", job, result)

    async def emit_failed(self, job: QueueJob, error: BaseException) -> None:
        for listener in self._failed.get(job.queue, []):
            await self._call(listener, "failed", job, error)

    @staticmethod
    async def _call(listener: Callable, event: str, job: QueueJob, arg: Any) -> None:
        try:
            outcome = listener(job, arg)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error("job_listener_error",
                         queue_event=event,
                         job_id=job.job_id,
                         listener=getattr(listener, "__name__", repr(listener)),
                         error=str(e))


class QueueWorker:
    """
    Consumes one queue and drives each job through its attempt lifecycle.

    Usage:
        worker = QueueWorker(queue, "update_cards_comments", handler, events)
        worker.start()         # spawns `concurrency` fetch loops, returns immediately
        await worker.stop()
    """

    def __init__(
        self,
        queue: MessageQueue,
        queue_name: str,
        handler: JobHandler,
        events: JobEvents,
        consumer_group: str = "taskboard-workers",
        consumer_name: str = "",
        concurrency: int = 1,
        poll_timeout: float = 1.0,
    ):
        self.queue = queue
        self.queue_name = queue_name
        self.handler = handler
        self.events = events
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.concurrency = max(concurrency, 1)
        self.poll_timeout = poll_timeout
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def consumer_names(self) -> list[str]:
        """One stable name per fetch loop, reused for every fetch that loop makes."""
        base = self.consumer_name or f"{socket.gethostname()}-{os.getpid()}"
        return [f"{base}-{i}" for i in range(self.concurrency)]

    def start(self) -> list[asyncio.Task]:
        """Start consuming in background tasks. Returns the task handles."""
        self._running = True
        for name in self.consumer_names():
            self._tasks.append(asyncio.create_task(self._run(name)))
        logger.info("queue_worker_started",
                    queue=self.queue_name,
                    group=self.consumer_group,
                    concurrency=self.concurrency)
        return list(self._tasks)

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("queue_worker_stopped", queue=self.queue_name)

    async def _run(self, consumer_name: str):
        while self._running:
            try:
                job = await self.queue.fetch(
                    self.queue_name,
                    consumer_group=self.consumer_group,
                    consumer_name=consumer_name,
                    timeout=self.poll_timeout,
                )
                if job is None:
                    continue
                await self.process_job(job, consumer_name)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_worker_error", queue=self.queue_name, error=str(e))
                await asyncio.sleep(1)

    async def process_job(self, job: QueueJob, consumer_name: str = ""):
        """Run one attempt of a delivered job and settle it."""
        job.mark_active()
        try:
            await self.queue.save_job(job)
        except asyncio.CancelledError:
            await self._release(job)
            raise
        logger.info("job_active",
                    queue=job.queue,
                    job_id=job.job_id,
                    attempt=job.attempts_made + 1,
                    max_attempts=job.max_attempts)

        try:
            result = await self._run_handler(job, consumer_name)
        except asyncio.CancelledError:
            await self._release(job)
            raise
        except Exception as e:
            await self._settle_failure(job, e)
        else:
            await self._settle_success(job, result)

    async def _run_handler(self, job: QueueJob, consumer_name: str) -> Any:
        interval = self.queue.lease_renewal_interval
        if not interval:
            return await self.handler(job.copy_for_handler())

        heartbeat = asyncio.create_task(self._renew_lease(job, consumer_name, interval))
        try:
            return await self.handler(job.copy_for_handler())
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

    async def _renew_lease(self, job: QueueJob, consumer_name: str, interval: float):
        """Keep the delivery owned by this loop until the handler returns."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.queue.renew_lease(job, self.consumer_group, consumer_name)
            except Exception as e:
                logger.warning("job_lease_renew_failed", job_id=job.job_id, error=str(e))

    async def _settle_success(self, job: QueueJob, result: Any):
        if isinstance(result, BaseModel):
            result = result.model_dump(mode="json")
        job.attempts_made += 1
        job.mark_completed(result)
        await self.queue.save_job(job)
        await self.queue.ack(job, self.consumer_group)
        logger.info("job_completed",
                    queue=job.queue,
                    job_id=job.job_id,
                    attempts=job.attempts_made)
        await self.events.emit_completed(job, result)

    async def _settle_failure(self, job: QueueJob, error: Exception):
        job.attempts_made += 1
        if job.attempts_made < job.max_attempts:
            job.schedule_retry(error)
            await self.queue.publish_delayed(job)
            await self.queue.ack(job, self.consumer_group)
            logger.warning("job_retry_scheduled",
                           queue=job.queue,
                           job_id=job.job_id,
                           attempts=job.attempts_made,
                           max_attempts=job.max_attempts,
                           scheduled_at=job.scheduled_at,
                           error=str(error),
                           error_type=type(error).__name__)
            return

        job.mark_failed(error)
        await self.queue.save_job(job)
        await self.queue.ack(job, self.consumer_group)
        logger.error("job_failed",
                     queue=job.queue,
                     job_id=job.job_id,
                     attempts=job.attempts_made,
                     error=str(error),
                     error_type=type(error).__name__)
        await self.events.emit_failed(job, error)

    async def _release(self, job: QueueJob):
        """Hand an interrupted attempt back to the queue without counting it."""
        job.status = JobStatus.WAITING
        job.scheduled_at = job.processed_at or job.scheduled_at
        await self.queue.ack(job, self.consumer_group)
        await self.queue.publish(job)
        logger.warning("job_released", queue=job.queue, job_id=job.job_id)


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically makes retry jobs whose backoff has
    elapsed deliverable again.
    """

    def __init__(self, queue: MessageQueue, interval_seconds: float = 0.5):
        self.queue = queue
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
