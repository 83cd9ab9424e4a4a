"""
JobQueue — the queue client the rest of the application talks to.

One instance is constructed at service start and injected wherever jobs are
produced or consumed; there is no module-level queue singleton.

    queue = JobQueue(create_message_queue({"backend": "redis"}))
    queue.process("update_cards_comments", handler)      # once, at startup
    queue.on_failed("update_cards_comments", log_failure)
    await queue.start()
    ...
    job = await queue.enqueue("update_cards_comments", snapshot, JobOptions(max_attempts=3))
    ...
    await queue.close()

``enqueue`` only writes the job to queue storage; it never waits for the
handler. Processing happens in QueueWorker tasks started by ``start``.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from core.exceptions import QueueRegistrationError
from job_queue.consumer import (
    CompletedListener, DelayedJobPromoter, FailedListener, JobEvents, JobHandler, QueueWorker,
)
from job_queue.message_queue import JobOptions, MessageQueue, QueueJob

logger = structlog.get_logger()


class JobQueue:

    def __init__(
        self,
        backend: MessageQueue,
        consumer_group: str = "taskboard-workers",
        consumer_name: str = "",
        concurrency: int = 1,
        promote_interval: float = 0.5,
        poll_timeout: float = 1.0,
        default_options: Optional[JobOptions] = None,
    ):
        self.backend = backend
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.concurrency = concurrency
        self.poll_timeout = poll_timeout
        self.default_options = default_options or JobOptions()
        self.events = JobEvents()
        self._handlers: dict[str, JobHandler] = {}
        self._workers: dict[str, QueueWorker] = {}
        self._promoter = DelayedJobPromoter(backend, interval_seconds=promote_interval)
        self._started = False
        self._consuming = False

    @property
    def started(self) -> bool:
        return self._started

    # ── Registration ──────────────────────────────────────────

    def process(self, queue_name: str, handler: JobHandler) -> None:
        """
        Register the single handler for ``queue_name``.

        Raises QueueRegistrationError on a second registration for the same
        queue. If the client is already consuming, the worker starts now.
        """
        if queue_name in self._handlers:
            raise QueueRegistrationError(
                f"A processor is already registered for queue '{queue_name}'",
                details={"queue": queue_name},
            )
        self._handlers[queue_name] = handler
        logger.info("queue_processor_registered", queue=queue_name)
        if self._consuming:
            self._start_worker(queue_name)

    def on_completed(self, queue_name: str, listener: CompletedListener) -> None:
        self.events.on_completed(queue_name, listener)

    def on_failed(self, queue_name: str, listener: FailedListener) -> None:
        self.events.on_failed(queue_name, listener)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self, consume: bool = True) -> None:
        """
        Connect the backend and, with ``consume``, start one worker per
        registered queue plus the delayed-job promoter. Producer-only
        processes pass ``consume=False``.
        """
        if self._started:
            return
        await self.backend.connect()
        self._started = True
        if consume:
            self._consuming = True
            for queue_name in self._handlers:
                self._start_worker(queue_name)
            self._promoter.start()
        logger.info("job_queue_started",
                    backend=self.backend.backend_name,
                    consuming=consume,
                    queues=sorted(self._handlers))

    async def close(self) -> None:
        if not self._started:
            return
        for worker in self._workers.values():
            await worker.stop()
        self._workers.clear()
        await self._promoter.stop()
        await self.backend.close()
        self._started = False
        self._consuming = False
        logger.info("job_queue_closed")

    def _start_worker(self, queue_name: str) -> None:
        worker = QueueWorker(
            self.backend,
            queue_name,
            self._handlers[queue_name],
            self.events,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
            concurrency=self.concurrency,
            poll_timeout=self.poll_timeout,
        )
        worker.start()
        self._workers[queue_name] = worker

    # ── Producing ─────────────────────────────────────────────

    async def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> QueueJob:
        """Persist a waiting job and return it without running the handler."""
        job = QueueJob.create(queue_name, payload, options or self.default_options)
        await self.backend.publish(job)
        logger.info("job_enqueued",
                    queue=queue_name,
                    job_id=job.job_id,
                    max_attempts=job.max_attempts,
                    backoff_delay_ms=job.backoff_delay_ms)
        return job

    # ── Inspection ────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        return await self.backend.get_job(job_id)

    async def queue_length(self, queue_name: str) -> int:
        return await self.backend.queue_length(queue_name)

    async def delayed_length(self) -> int:
        return await self.backend.delayed_length()
