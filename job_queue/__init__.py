"""
Job Queue — Durable, retryable deferred work.

Decouples slow follow-up work from the request that triggers it:
- Request handlers ENQUEUE jobs and return immediately
- QueueWorker tasks CONSUME jobs, retrying failures with backoff
- Completed/failed listeners observe outcomes for logging and metrics
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
