"""
Tests for the job queue: client, worker attempt lifecycle and the in-memory backend.

Covers:
  - enqueue is fire-and-forget
  - retries up to max_attempts with backoff, then a single failed event
  - completion after a transient failure
  - one processor per queue
  - payload frozen at enqueue
  - listener errors never affect job state
  - interrupted attempts are released, not counted
  - deliveries renewed while a handler runs, one consumer name per loop
"""
import asyncio
import os
import socket
import time

import pytest
from pydantic import BaseModel

from core.exceptions import QueueRegistrationError, ValidationError
from job_queue.client import JobQueue
from job_queue.consumer import JobEvents, QueueWorker
from job_queue.message_queue import (
    BackoffType, InMemoryMessageQueue, JobOptions, JobStatus, QueueJob,
)

QUEUE = "update_cards_comments"


class Recorder:
    """Collects completed/failed events."""

    def __init__(self):
        self.completed = []
        self.failed = []

    def on_completed(self, job, result):
        self.completed.append((job, result))

    def on_failed(self, job, error):
        self.failed.append((job, error))

    def attach(self, queue: JobQueue, name: str = QUEUE):
        queue.on_completed(name, self.on_completed)
        queue.on_failed(name, self.on_failed)
        return self


# ──────────────────────────────────────────────────────────────
#  Job model
# ──────────────────────────────────────────────────────────────

class TestJobModel:
    def test_fixed_backoff(self):
        job = QueueJob.create(QUEUE, {}, JobOptions(backoff_delay_ms=1000))
        for attempts in (1, 2, 5):
            job.attempts_made = attempts
            assert job.backoff_ms() == 1000

    def test_exponential_backoff(self):
        job = QueueJob.create(QUEUE, {}, JobOptions(backoff_delay_ms=100, backoff_type="exponential"))
        delays = []
        for attempts in (1, 2, 3, 4):
            job.attempts_made = attempts
            delays.append(job.backoff_ms())
        assert delays == [100, 200, 400, 800]
        assert job.backoff_type == BackoffType.EXPONENTIAL

    def test_schedule_retry_pushes_scheduled_at(self):
        job = QueueJob.create(QUEUE, {"id": "u1"}, JobOptions(backoff_delay_ms=60000))
        job.attempts_made = 1
        job.schedule_retry(RuntimeError("boom"))
        assert job.status == JobStatus.WAITING
        assert job.failed_reason == "boom"
        assert not job.is_scheduled_now
        assert job.scheduled_ts > time.time() + 50

    @pytest.mark.parametrize("options", [
        {"max_attempts": 0},
        {"max_attempts": True},
        {"backoff_delay_ms": -1},
        {"backoff_type": "linear"},
    ])
    def test_invalid_options_rejected(self, options):
        with pytest.raises(ValidationError):
            JobOptions(**options)

    def test_payload_must_be_json_object(self):
        with pytest.raises(ValidationError):
            QueueJob.create(QUEUE, ["not", "a", "dict"], JobOptions())
        with pytest.raises(ValidationError):
            QueueJob.create(QUEUE, {"when": object()}, JobOptions())

    def test_dict_round_trip_drops_delivery_id(self):
        job = QueueJob.create(QUEUE, {"id": "u1"}, JobOptions(max_attempts=5))
        job.delivery_id = "1-0"
        data = job.to_dict()
        assert "delivery_id" not in data
        assert data["status"] == "waiting"
        restored = QueueJob.from_json(job.to_json())
        assert restored.job_id == job.job_id
        assert restored.max_attempts == 5
        assert restored.delivery_id == ""

    def test_handler_copy_is_detached(self):
        job = QueueJob.create(QUEUE, {"id": "u1", "tags": ["a"]}, JobOptions())
        copy = job.copy_for_handler()
        copy.payload["tags"].append("b")
        copy.payload["id"] = "changed"
        assert job.payload == {"id": "u1", "tags": ["a"]}


# ──────────────────────────────────────────────────────────────
#  JobQueue client + worker
# ──────────────────────────────────────────────────────────────

class TestJobQueue:
    @pytest.mark.asyncio
    async def test_enqueue_returns_before_handler_runs(self, job_queue, wait_for):
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(job):
            started.set()
            await release.wait()
            return {"ok": True}

        job_queue.process(QUEUE, handler)
        await job_queue.start()

        job = await job_queue.enqueue(QUEUE, {"id": "u1"})
        assert job.status == JobStatus.WAITING
        assert job.attempts_made == 0
        assert not started.is_set()

        await asyncio.wait_for(started.wait(), timeout=2)
        release.set()
        done = await wait_for(lambda: _status(job_queue, job.job_id, JobStatus.COMPLETED))
        assert done.return_value == {"ok": True}

    @pytest.mark.asyncio
    async def test_always_failing_job_fails_after_max_attempts(self, job_queue, wait_for):
        calls = []

        async def handler(job):
            calls.append(job.attempts_made)
            raise RuntimeError("store unavailable")

        events = Recorder().attach(job_queue)
        job_queue.process(QUEUE, handler)
        await job_queue.start()

        job = await job_queue.enqueue(QUEUE, {"id": "u1"}, JobOptions(max_attempts=3, backoff_delay_ms=10))
        failed = await wait_for(lambda: _status(job_queue, job.job_id, JobStatus.FAILED))
        await asyncio.sleep(0.1)  # nothing further may run

        assert calls == [0, 1, 2]
        assert failed.attempts_made == 3
        assert failed.failed_reason == "store unavailable"
        assert failed.finished_at
        assert len(events.failed) == 1
        assert events.completed == []
        failed_job, error = events.failed[0]
        assert failed_job.job_id == job.job_id
        assert isinstance(error, RuntimeError)

    @pytest.mark.asyncio
    async def test_single_attempt_job_fails_immediately(self, job_queue, wait_for):
        calls = []

        async def handler(job):
            calls.append(1)
            raise RuntimeError("nope")

        events = Recorder().attach(job_queue)
        job_queue.process(QUEUE, handler)
        await job_queue.start()

        job = await job_queue.enqueue(QUEUE, {"id": "u1"}, JobOptions(max_attempts=1))
        failed = await wait_for(lambda: _status(job_queue, job.job_id, JobStatus.FAILED))
        assert failed.attempts_made == 1
        assert len(calls) == 1
        assert len(events.failed) == 1

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, job_queue, wait_for):
        attempts = []

        async def handler(job):
            attempts.append(job.attempts_made)
            if len(attempts) == 1:
                raise OSError("connection reset")
            return {"modified_count": 3}

        events = Recorder().attach(job_queue)
        job_queue.process(QUEUE, handler)
        await job_queue.start()

        job = await job_queue.enqueue(QUEUE, {"id": "u1"})
        done = await wait_for(lambda: _status(job_queue, job.job_id, JobStatus.COMPLETED))
        await asyncio.sleep(0.05)

        assert attempts == [0, 1]
        assert done.attempts_made == 2
        assert done.return_value == {"modified_count": 3}
        assert len(events.completed) == 1
        assert events.completed[0][1] == {"modified_count": 3}
        assert events.failed == []

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(self, job_queue, wait_for):
        seen_at = []

        async def handler(job):
            seen_at.append(time.monotonic())
            if len(seen_at) == 1:
                raise RuntimeError("first try fails")
            return None

        job_queue.process(QUEUE, handler)
        await job_queue.start()

        job = await job_queue.enqueue(QUEUE, {"id": "u1"}, JobOptions(max_attempts=2, backoff_delay_ms=200))
        await wait_for(lambda: _status(job_queue, job.job_id, JobStatus.COMPLETED))
        assert seen_at[1] - seen_at[0] >= 0.18

    @pytest.mark.asyncio
    async def test_second_processor_rejected(self, job_queue):
        async def handler(job):
            return None

        job_queue.process(QUEUE, handler)
        with pytest.raises(QueueRegistrationError):
            job_queue.process(QUEUE, handler)
        # Another queue name is fine
        job_queue.process("other_queue", handler)

    @pytest.mark.asyncio
    async def test_processor_registered_after_start(self, job_queue, wait_for):
        await job_queue.start()
        job = await job_queue.enqueue(QUEUE, {"id": "u1"})

        async def handler(job):
            return "late"

        job_queue.process(QUEUE, handler)
        done = await wait_for(lambda: _status(job_queue, job.job_id, JobStatus.COMPLETED))
        assert done.return_value == "late"

    @pytest.mark.asyncio
    async def test_payload_frozen_at_enqueue(self, job_queue, wait_for):
        seen = []

        async def handler(job):
            seen.append(dict(job.payload))
            job.payload["display_name"] = "tampered"
            if len(seen) < 2:
                raise RuntimeError("retry me")

        job_queue.process(QUEUE, handler)
        await job_queue.start()

        payload = {"id": "u1", "display_name": "Alicia"}
        job = await job_queue.enqueue(QUEUE, payload)
        payload["display_name"] = "changed by caller"

        done = await wait_for(lambda: _status(job_queue, job.job_id, JobStatus.COMPLETED))
        assert seen == [{"id": "u1", "display_name": "Alicia"}] * 2
        assert done.payload == {"id": "u1", "display_name": "Alicia"}

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_affect_job(self, job_queue, wait_for):
        async def handler(job):
            return {"ok": True}

        def broken_listener(job, result):
            raise ValueError("listener bug")

        async_results = []

        async def async_listener(job, result):
            async_results.append(result)

        job_queue.on_completed(QUEUE, broken_listener)
        job_queue.on_completed(QUEUE, async_listener)
        job_queue.process(QUEUE, handler)
        await job_queue.start()

        job = await job_queue.enqueue(QUEUE, {"id": "u1"})
        await wait_for(lambda: async_results)
        stored = await job_queue.get_job(job.job_id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.attempts_made == 1
        assert async_results == [{"ok": True}]

    @pytest.mark.asyncio
    async def test_pydantic_result_stored_as_dict(self, job_queue, wait_for):
        class Outcome(BaseModel):
            modified_count: int

        async def handler(job):
            return Outcome(modified_count=2)

        job_queue.process(QUEUE, handler)
        await job_queue.start()
        job = await job_queue.enqueue(QUEUE, {"id": "u1"})
        done = await wait_for(lambda: _status(job_queue, job.job_id, JobStatus.COMPLETED))
        assert done.return_value == {"modified_count": 2}

    @pytest.mark.asyncio
    async def test_producer_only_does_not_consume(self, job_queue):
        calls = []

        async def handler(job):
            calls.append(job.job_id)

        job_queue.process(QUEUE, handler)
        await job_queue.start(consume=False)
        job = await job_queue.enqueue(QUEUE, {"id": "u1"})
        await asyncio.sleep(0.1)

        assert calls == []
        assert await job_queue.queue_length(QUEUE) == 1
        assert (await job_queue.get_job(job.job_id)).status == JobStatus.WAITING

    @pytest.mark.asyncio
    async def test_close_releases_interrupted_attempt(self):
        backend = InMemoryMessageQueue()
        queue = JobQueue(backend, promote_interval=0.01, poll_timeout=0.02)
        started = asyncio.Event()

        async def handler(job):
            started.set()
            await asyncio.sleep(60)

        queue.process(QUEUE, handler)
        await queue.start()
        job = await queue.enqueue(QUEUE, {"id": "u1"})
        await asyncio.wait_for(started.wait(), timeout=2)
        await queue.close()

        released = await backend.get_job(job.job_id)
        assert released.status == JobStatus.WAITING
        assert released.attempts_made == 0
        assert await backend.queue_length(QUEUE) == 1

    @pytest.mark.asyncio
    async def test_close_during_activation_releases_job(self):
        class SlowSaveBackend(InMemoryMessageQueue):
            def __init__(self):
                super().__init__()
                self.activating = asyncio.Event()

            async def save_job(self, job):
                if job.status == JobStatus.ACTIVE:
                    self.activating.set()
                    await asyncio.sleep(60)
                await super().save_job(job)

        backend = SlowSaveBackend()
        queue = JobQueue(backend, promote_interval=0.01, poll_timeout=0.02)
        calls = []

        async def handler(job):
            calls.append(job.job_id)

        queue.process(QUEUE, handler)
        await queue.start()
        job = await queue.enqueue(QUEUE, {"id": "u1"})
        await asyncio.wait_for(backend.activating.wait(), timeout=2)
        await queue.close()

        released = await backend.get_job(job.job_id)
        assert released.status == JobStatus.WAITING
        assert released.attempts_made == 0
        assert await backend.queue_length(QUEUE) == 1
        assert calls == []

    @pytest.mark.asyncio
    async def test_jobs_for_other_queues_untouched(self, job_queue):
        async def handler(job):
            return None

        job_queue.process(QUEUE, handler)
        await job_queue.start()
        other = await job_queue.enqueue("no_processor", {"id": "u1"})
        await asyncio.sleep(0.05)
        assert (await job_queue.get_job(other.job_id)).status == JobStatus.WAITING


# ──────────────────────────────────────────────────────────────
#  QueueWorker
# ──────────────────────────────────────────────────────────────

class LeasedBackend(InMemoryMessageQueue):
    """In-memory backend whose deliveries expire unless renewed."""

    lease_renewal_interval = 0.01

    def __init__(self):
        super().__init__()
        self.renewals = []

    async def renew_lease(self, job, consumer_group="default", consumer_name=""):
        self.renewals.append((job.job_id, consumer_name))


class TestQueueWorker:
    def test_consumer_names_fixed_per_loop(self):
        async def handler(job):
            return None

        named = QueueWorker(InMemoryMessageQueue(), QUEUE, handler, JobEvents(),
                            consumer_name="api-1", concurrency=3)
        assert named.consumer_names() == ["api-1-0", "api-1-1", "api-1-2"]

        unnamed = QueueWorker(InMemoryMessageQueue(), QUEUE, handler, JobEvents(), concurrency=2)
        names = unnamed.consumer_names()
        assert names == unnamed.consumer_names()
        assert names == [f"{socket.gethostname()}-{os.getpid()}-{i}" for i in range(2)]

    @pytest.mark.asyncio
    async def test_lease_renewed_while_handler_runs(self, wait_for):
        backend = LeasedBackend()
        queue = JobQueue(backend, consumer_name="worker-a", promote_interval=0.01, poll_timeout=0.02)

        async def handler(job):
            await asyncio.sleep(0.1)
            return {"ok": True}

        queue.process(QUEUE, handler)
        await queue.start()
        try:
            job = await queue.enqueue(QUEUE, {"id": "u1"})
            await wait_for(lambda: _status(queue, job.job_id, JobStatus.COMPLETED))
            renewed = len(backend.renewals)
            await asyncio.sleep(0.05)
        finally:
            await queue.close()

        assert renewed >= 3
        assert len(backend.renewals) == renewed
        assert set(backend.renewals) == {(job.job_id, "worker-a-0")}

    @pytest.mark.asyncio
    async def test_no_renewal_without_expiring_deliveries(self, job_queue, wait_for):
        renewals = []

        async def record(*args, **kwargs):
            renewals.append(args)

        job_queue.backend.renew_lease = record

        async def handler(job):
            await asyncio.sleep(0.05)

        job_queue.process(QUEUE, handler)
        await job_queue.start()
        job = await job_queue.enqueue(QUEUE, {"id": "u1"})
        await wait_for(lambda: _status(job_queue, job.job_id, JobStatus.COMPLETED))
        assert renewals == []


# ──────────────────────────────────────────────────────────────
#  In-memory backend
# ──────────────────────────────────────────────────────────────

class TestInMemoryMessageQueue:
    @pytest.mark.asyncio
    async def test_peek_keeps_order_and_items(self):
        backend = InMemoryMessageQueue()
        jobs = [QueueJob.create(QUEUE, {"n": i}, JobOptions()) for i in range(3)]
        for job in jobs:
            await backend.publish(job)
        peeked = await backend.peek(QUEUE, count=2)
        assert [j.payload["n"] for j in peeked] == [0, 1]
        assert await backend.queue_length(QUEUE) == 3
        first = await backend.fetch(QUEUE, timeout=0.1)
        assert first.payload == {"n": 0}

    @pytest.mark.asyncio
    async def test_delayed_job_promoted_only_when_due(self):
        backend = InMemoryMessageQueue()
        job = QueueJob.create(QUEUE, {"id": "u1"}, JobOptions(backoff_delay_ms=50))
        job.attempts_made = 1
        job.schedule_retry(RuntimeError("x"))
        await backend.publish_delayed(job)

        assert await backend.promote_delayed() == 0
        assert await backend.delayed_length() == 1
        await asyncio.sleep(0.08)
        assert await backend.promote_delayed() == 1
        assert await backend.queue_length(QUEUE) == 1
        assert await backend.delayed_length() == 0

    @pytest.mark.asyncio
    async def test_terminal_job_not_redelivered(self):
        backend = InMemoryMessageQueue()
        job = QueueJob.create(QUEUE, {"id": "u1"}, JobOptions())
        await backend.publish(job)
        job.mark_completed(None)
        await backend.save_job(job)
        assert await backend.fetch(QUEUE, timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_fetch_times_out_empty(self):
        backend = InMemoryMessageQueue()
        assert await backend.fetch(QUEUE, timeout=0.01) is None


async def _status(queue: JobQueue, job_id: str, status: JobStatus):
    job = await queue.get_job(job_id)
    return job if job is not None and job.status == status else None
