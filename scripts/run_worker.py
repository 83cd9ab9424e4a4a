#!/usr/bin/env python3
"""
Propagation Worker — consume queued jobs outside the API process.

Builds the same components as the API (stores, queue client, the single
processor registration) and consumes until SIGINT/SIGTERM. Run one or more
of these with ``queue.embedded_worker: false`` in the API's config.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --config config/settings.yaml
    python scripts/run_worker.py --concurrency 4 --name worker-a
"""
import argparse
import asyncio
import os
import signal
import socket
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_worker(config_path: str = None, concurrency: int = None, name: str = ""):
    from dotenv import load_dotenv
    load_dotenv()

    import structlog
    from config.logging import setup_logging
    from config.settings import load_settings
    from services.bootstrap import build_container

    settings = load_settings(config_path)
    if concurrency:
        settings.queue.concurrency = concurrency
    setup_logging(settings)
    logger = structlog.get_logger()

    container = build_container(settings)
    container.queue.consumer_name = name or f"{socket.gethostname()}-{os.getpid()}"

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows

    await container.start(consume=True)
    logger.info("worker_started",
                consumer=container.queue.consumer_name,
                queue=settings.queue.propagation_queue,
                backend=settings.queue.backend,
                concurrency=settings.queue.concurrency)
    try:
        await stop.wait()
    finally:
        await container.close()
        logger.info("worker_stopped", consumer=container.queue.consumer_name)


def main():
    parser = argparse.ArgumentParser(description="Run the comment propagation worker")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--concurrency", type=int, default=None,
                        help="Concurrent jobs per queue (overrides config)")
    parser.add_argument("--name", default="", help="Consumer name within the group")
    args = parser.parse_args()

    try:
        asyncio.run(run_worker(args.config, args.concurrency, args.name))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
