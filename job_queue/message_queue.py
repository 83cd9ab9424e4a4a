"""
Message Queue — Durable job storage with Redis Streams and in-memory backends.

Topology (per queue name):
  {prefix}:{queue}:stream   — ready jobs, consumed through a consumer group
  {prefix}:delayed          — retries waiting out their backoff (sorted set, score = run-at)
  {prefix}:job:{job_id}     — job state document (JSON)

Job Schema:
  {
      "job_id":           unique job identifier (assigned on enqueue),
      "queue":            queue name the job belongs to,
      "payload":          JSON document, never mutated after enqueue,
      "status":           waiting | active | completed | failed,
      "attempts_made":    attempts settled so far (failed, plus the final success),
      "max_attempts":     ceiling before the job is marked failed,
      "backoff_delay_ms": delay before a retry becomes runnable,
      "backoff_type":     fixed | exponential,
      "scheduled_at":     ISO timestamp before which the job must not run,
      "created_at":       ISO timestamp when the job was enqueued,
      "processed_at":     ISO timestamp of the latest attempt start,
      "finished_at":      ISO timestamp of completion / final failure,
      "failed_reason":    message of the latest error,
      "return_value":     handler result on completion,
  }

The backends only store and deliver jobs. Attempt accounting, retry
scheduling and completion events live in job_queue.consumer.
"""
from __future__ import annotations

import asyncio
import copy
import json
import os
import socket
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Optional

from core.exceptions import ValidationError

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


@dataclass
class JobOptions:
    """Retry policy attached to a job at enqueue time."""
    max_attempts: int = 3
    backoff_delay_ms: int = 1000
    backoff_type: BackoffType = BackoffType.FIXED

    def __post_init__(self):
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int) \
                or self.max_attempts < 1:
            raise ValidationError("max_attempts must be a positive integer",
                                  details={"max_attempts": self.max_attempts})
        if isinstance(self.backoff_delay_ms, bool) \
                or not isinstance(self.backoff_delay_ms, (int, float)) \
                or self.backoff_delay_ms < 0:
            raise ValidationError("backoff_delay_ms must be a non-negative duration",
                                  details={"backoff_delay_ms": self.backoff_delay_ms})
        try:
            self.backoff_type = BackoffType(self.backoff_type)
        except ValueError:
            raise ValidationError(f"Unknown backoff type: {self.backoff_type}") from None


@dataclass
class QueueJob:
    """A unit of work on the queue."""
    queue: str
    payload: dict[str, Any]
    job_id: str = ""
    status: JobStatus = JobStatus.WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_delay_ms: int = 1000
    backoff_type: BackoffType = BackoffType.FIXED
    scheduled_at: str = ""
    created_at: str = ""
    processed_at: str = ""
    finished_at: str = ""
    failed_reason: str = ""
    return_value: Any = None
    # Backend receipt for the current delivery (stream entry id); never persisted.
    delivery_id: str = field(default="", repr=False, compare=False)

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = _utcnow().isoformat()
        if not self.scheduled_at:
            self.scheduled_at = self.created_at
        self.status = JobStatus(self.status)
        self.backoff_type = BackoffType(self.backoff_type)

    @classmethod
    def create(cls, queue: str, payload: dict[str, Any], options: JobOptions) -> QueueJob:
        """Build a fresh waiting job, detaching the payload from the caller's object."""
        if not isinstance(payload, dict):
            raise ValidationError("Job payload must be a JSON object",
                                  details={"type": type(payload).__name__})
        try:
            frozen_payload = json.loads(json.dumps(payload))
        except (TypeError, ValueError) as e:
            raise ValidationError("Job payload must be JSON serializable") from e
        return cls(
            queue=queue,
            payload=frozen_payload,
            max_attempts=options.max_attempts,
            backoff_delay_ms=options.backoff_delay_ms,
            backoff_type=options.backoff_type,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d.pop("delivery_id")
        d["status"] = self.status.value
        d["backoff_type"] = self.backoff_type.value
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)  # copy
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        data["attempts_made"] = int(data.get("attempts_made", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @classmethod
    def from_json(cls, raw: str) -> QueueJob:
        return cls.from_dict(json.loads(raw))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def scheduled_ts(self) -> float:
        try:
            return datetime.fromisoformat(self.scheduled_at).timestamp()
        except ValueError:
            return 0.0

    @property
    def is_scheduled_now(self) -> bool:
        return time.time() >= self.scheduled_ts

    def backoff_ms(self) -> float:
        """Delay before the next attempt, given the attempts already made."""
        if self.backoff_type == BackoffType.EXPONENTIAL:
            return self.backoff_delay_ms * (2 ** max(self.attempts_made - 1, 0))
        return self.backoff_delay_ms

    def schedule_retry(self, error: BaseException) -> None:
        """Return the job to waiting, runnable after its backoff. Payload is untouched."""
        self.status = JobStatus.WAITING
        self.failed_reason = str(error) or type(error).__name__
        self.scheduled_at = (_utcnow() + timedelta(milliseconds=self.backoff_ms())).isoformat()

    def mark_active(self) -> None:
        self.status = JobStatus.ACTIVE
        self.processed_at = _utcnow().isoformat()

    def mark_completed(self, result: Any) -> None:
        self.status = JobStatus.COMPLETED
        self.return_value = result
        self.finished_at = _utcnow().isoformat()

    def mark_failed(self, error: BaseException) -> None:
        self.status = JobStatus.FAILED
        self.failed_reason = str(error) or type(error).__name__
        self.finished_at = _utcnow().isoformat()

    def copy_for_handler(self) -> QueueJob:
        """A detached copy so a handler can never alter the stored payload."""
        return copy.deepcopy(self)


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract job storage + delivery interface."""

    backend_name = "abstract"

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def publish(self, job: QueueJob):
        """Persist a job and make it immediately deliverable on job.queue."""
        ...

    @abstractmethod
    async def publish_delayed(self, job: QueueJob):
        """Persist a job that becomes deliverable at job.scheduled_at."""
        ...

    @abstractmethod
    async def fetch(
        self,
        queue: str,
        consumer_group: str = "default",
        consumer_name: str = "",
        timeout: float = 1.0,
    ) -> Optional[QueueJob]:
        """
        Wait up to ``timeout`` seconds for the next deliverable job.

        A delivered job is owned by exactly one consumer until it is acked.
        Deliveries of jobs that are already terminal are acked and skipped.
        """
        ...

    @abstractmethod
    async def ack(self, job: QueueJob, consumer_group: str = "default"):
        """Release the delivery of a job once its attempt has been settled."""
        ...

    @abstractmethod
    async def save_job(self, job: QueueJob):
        """Persist the current job state without changing deliverability."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Return the number of jobs ready to be delivered on a queue."""
        ...

    @abstractmethod
    async def delayed_length(self) -> int:
        """Return the number of jobs waiting out a backoff (all queues)."""
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        """Peek at ready jobs without consuming them."""
        ...

    @abstractmethod
    async def promote_delayed(self) -> int:
        """Make delayed jobs whose scheduled_at has arrived deliverable. Returns how many."""
        ...

    @property
    def lease_renewal_interval(self) -> Optional[float]:
        """Seconds between renew_lease calls while a handler runs; None if deliveries never expire."""
        return None

    async def renew_lease(self, job: QueueJob, consumer_group: str = "default", consumer_name: str = ""):
        """Keep the current delivery owned by this consumer while its handler runs."""
        return None


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Each queue name is a Redis Stream consumed through a consumer group,
      so several worker processes compete and each entry goes to one of them
    - Retries sit in a Sorted Set until their backoff elapses; promotion
      claims each entry with ZREM so only one process re-publishes it
    - Entries left pending by a crashed worker are reclaimed with XAUTOCLAIM
      once idle longer than ``stalled_timeout_ms`` (at-least-once delivery)
    - A live worker renews its delivery with XCLAIM JUSTID every third of
      ``stalled_timeout_ms``, so a slow handler is never reclaimed mid-run

    Consumers should pass a stable ``consumer_name`` per fetch loop; every
    distinct name becomes a permanent member of the consumer group.
    """

    backend_name = "redis"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        prefix: str = "taskboard:queue",
        stalled_timeout_ms: int = 30000,
        client=None,
    ):
        self._redis_url = redis_url
        self._prefix = prefix
        self._stalled_timeout_ms = stalled_timeout_ms
        self._redis = client
        self._groups: set[tuple[str, str]] = set()
        self._last_reclaim = 0.0
        # Fallback for callers that fetch without a name; fixed for the instance lifetime.
        self._default_consumer = f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"

    # ── Keys ──────────────────────────────────────────────────

    def _stream_key(self, queue: str) -> str:
        return f"{self._prefix}:{queue}:stream"

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    @property
    def _delayed_key(self) -> str:
        return f"{self._prefix}:delayed"

    @property
    def _client(self):
        if self._redis is None:
            raise RuntimeError("RedisMessageQueue is not connected")
        return self._redis

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _ensure_group(self, queue: str, group: str):
        """Create consumer group if it doesn't exist."""
        if (queue, group) in self._groups:
            return
        from redis.exceptions import ResponseError
        try:
            await self._client.xgroup_create(self._stream_key(queue), group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._groups.add((queue, group))

    # ── Publish ───────────────────────────────────────────────

    async def publish(self, job: QueueJob):
        pipe = self._client.pipeline()
        pipe.set(self._job_key(job.job_id), job.to_json())
        pipe.xadd(self._stream_key(job.queue), {"job_id": job.job_id})
        await pipe.execute()
        logger.debug("job_published", queue=job.queue, job_id=job.job_id)

    async def publish_delayed(self, job: QueueJob):
        pipe = self._client.pipeline()
        pipe.set(self._job_key(job.job_id), job.to_json())
        pipe.zadd(self._delayed_key, {job.job_id: job.scheduled_ts})
        await pipe.execute()
        logger.debug("delayed_job_published", job_id=job.job_id, scheduled_at=job.scheduled_at)

    async def save_job(self, job: QueueJob):
        await self._client.set(self._job_key(job.job_id), job.to_json())

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        raw = await self._client.get(self._job_key(job_id))
        return QueueJob.from_json(raw) if raw else None

    # ── Consume ───────────────────────────────────────────────

    async def fetch(
        self,
        queue: str,
        consumer_group: str = "default",
        consumer_name: str = "",
        timeout: float = 1.0,
    ) -> Optional[QueueJob]:
        consumer_name = consumer_name or self._default_consumer
        await self._ensure_group(queue, consumer_group)
        stream = self._stream_key(queue)

        entry = await self._reclaim_stalled(stream, consumer_group, consumer_name)
        if entry is None:
            messages = await self._client.xreadgroup(
                groupname=consumer_group,
                consumername=consumer_name,
                streams={stream: ">"},
                count=1,
                block=max(int(timeout * 1000), 1),
            )
            if not messages:
                return None
            _, stream_messages = messages[0]
            if not stream_messages:
                return None
            entry = stream_messages[0]

        message_id, fields = entry
        job = await self.get_job((fields or {}).get("job_id", ""))
        if job is None or job.is_terminal or (
                job.status == JobStatus.WAITING and not job.is_scheduled_now):
            # Duplicate or orphaned delivery; the job's real owner is elsewhere.
            await self._client.xack(stream, consumer_group, message_id)
            await self._client.xdel(stream, message_id)
            logger.debug("stale_delivery_skipped", queue=queue, message_id=message_id)
            return None
        job.delivery_id = message_id
        return job

    async def _reclaim_stalled(self, stream: str, group: str, consumer: str):
        """Take over one entry another consumer left pending for too long."""
        now = time.monotonic()
        if now - self._last_reclaim < self._stalled_timeout_ms / 1000:
            return None
        self._last_reclaim = now
        result = await self._client.xautoclaim(
            stream, group, consumer,
            min_idle_time=self._stalled_timeout_ms,
            start_id="0-0",
            count=1,
        )
        claimed = result[1] if result else []
        if not claimed:
            return None
        logger.warning("stalled_job_reclaimed", stream=stream, message_id=claimed[0][0])
        return claimed[0]

    @property
    def lease_renewal_interval(self) -> Optional[float]:
        return self._stalled_timeout_ms / 3000

    async def renew_lease(self, job: QueueJob, consumer_group: str = "default", consumer_name: str = ""):
        """Reset the idle time of this consumer's pending entry (XCLAIM to itself)."""
        if not job.delivery_id:
            return
        await self._client.xclaim(
            self._stream_key(job.queue),
            consumer_group,
            consumer_name or self._default_consumer,
            min_idle_time=0,
            message_ids=[job.delivery_id],
            justid=True,
        )

    async def ack(self, job: QueueJob, consumer_group: str = "default"):
        if not job.delivery_id:
            return
        stream = self._stream_key(job.queue)
        pipe = self._client.pipeline()
        pipe.xack(stream, consumer_group, job.delivery_id)
        pipe.xdel(stream, job.delivery_id)
        await pipe.execute()
        logger.debug("job_acked", job_id=job.job_id, message_id=job.delivery_id)
        job.delivery_id = ""

    # ── Inspection ────────────────────────────────────────────

    async def queue_length(self, queue: str) -> int:
        stream = self._stream_key(queue)
        total = await self._client.xlen(stream)
        pending = 0
        for group in {g for q, g in self._groups if q == queue}:
            info = await self._client.xpending(stream, group)
            pending += info.get("pending", 0) if info else 0
        return max(total - pending, 0)

    async def delayed_length(self) -> int:
        return await self._client.zcard(self._delayed_key)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        messages = await self._client.xrange(self._stream_key(queue), count=count)
        jobs = []
        for _, fields in messages:
            job = await self.get_job(fields.get("job_id", ""))
            if job:
                jobs.append(job)
        return jobs

    async def promote_delayed(self) -> int:
        """Move jobs whose scheduled_at <= now from the sorted set to their stream."""
        now = time.time()
        ready = await self._client.zrangebyscore(self._delayed_key, "-inf", now)
        promoted = 0
        for job_id in ready:
            # ZREM is the claim: only the process that removes the entry re-publishes it.
            if not await self._client.zrem(self._delayed_key, job_id):
                continue
            job = await self.get_job(job_id)
            if job is None or job.is_terminal:
                continue
            await self._client.xadd(self._stream_key(job.queue), {"job_id": job.job_id})
            promoted += 1

        if promoted:
            logger.info("delayed_jobs_promoted", count=promoted)
        return promoted


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no persistence. Job state is kept as serialized
    dicts so every fetch hands out an independent copy, as Redis would.
    """

    backend_name = "memory"

    def __init__(self):
        self._queues: dict[str, asyncio.Queue] = {}
        self._jobs: dict[str, dict[str, Any]] = {}
        self._delayed: list[tuple[float, str]] = []  # (timestamp, job_id)
        self._connected = False

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        self._connected = True
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._connected = False

    async def publish(self, job: QueueJob):
        self._jobs[job.job_id] = job.to_dict()
        self._get_queue(job.queue).put_nowait(job.job_id)
        logger.debug("job_published", queue=job.queue, job_id=job.job_id)

    async def publish_delayed(self, job: QueueJob):
        self._jobs[job.job_id] = job.to_dict()
        self._delayed.append((job.scheduled_ts, job.job_id))
        self._delayed.sort(key=lambda x: x[0])
        logger.debug("delayed_job_published", job_id=job.job_id, scheduled_at=job.scheduled_at)

    async def save_job(self, job: QueueJob):
        self._jobs[job.job_id] = job.to_dict()

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        data = self._jobs.get(job_id)
        return QueueJob.from_dict(copy.deepcopy(data)) if data else None

    async def fetch(
        self,
        queue: str,
        consumer_group: str = "default",
        consumer_name: str = "",
        timeout: float = 1.0,
    ) -> Optional[QueueJob]:
        q = self._get_queue(queue)
        try:
            job_id = await asyncio.wait_for(q.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        job = await self.get_job(job_id)
        if job is None or job.is_terminal:
            return None
        job.delivery_id = job_id
        return job

    async def ack(self, job: QueueJob, consumer_group: str = "default"):
        job.delivery_id = ""  # nothing pending to release in-process

    async def queue_length(self, queue: str) -> int:
        return self._get_queue(queue).qsize()

    async def delayed_length(self) -> int:
        return len(self._delayed)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        q = self._get_queue(queue)
        # asyncio.Queue has no peek: drain everything and re-add in order
        job_ids = []
        while not q.empty():
            job_ids.append(q.get_nowait())
        for job_id in job_ids:
            q.put_nowait(job_id)
        jobs = [await self.get_job(job_id) for job_id in job_ids[:count]]
        return [job for job in jobs if job is not None]

    async def promote_delayed(self) -> int:
        now = time.time()
        ready = [job_id for ts, job_id in self._delayed if ts <= now]
        self._delayed = [(ts, job_id) for ts, job_id in self._delayed if ts > now]

        for job_id in ready:
            data = self._jobs.get(job_id)
            if data is None:
                continue
            self._get_queue(data["queue"]).put_nowait(job_id)

        if ready:
            logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend. Returns a new instance on every call."""
    config = queue_config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        return RedisMessageQueue(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            stalled_timeout_ms=config.get("stalled_timeout_ms", 30000),
        )
    return InMemoryMessageQueue()
