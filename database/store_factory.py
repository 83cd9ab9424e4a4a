"""
Store Factory — Create the right account and comment store backends from configuration.

Configuration in settings.yaml:
    database:
      # Store backend — where users and cards live
      #   "memory"   — In-memory dicts (development, testing)
      #   "file"     — JSON files on disk (small deployments, demos)
      store_backend: "memory"

      # For file backend: directory path
      store_file_dir: "./data"

Usage:
    from database.store_factory import create_account_store, create_comment_store
    accounts = create_account_store({"store_backend": "file", "store_file_dir": "./data"})
    comments = create_comment_store({"store_backend": "file", "store_file_dir": "./data"})

Each call returns a fresh instance; the application owns and injects them.
"""
from __future__ import annotations

import structlog

from database.store_base import BaseAccountStore, BaseCommentStore

logger = structlog.get_logger()


def create_account_store(config: dict = None) -> BaseAccountStore:
    """
    Factory: create the account store backend.

    Args:
        config: dict with keys:
            store_backend: "memory" | "file"  (default: "memory")
            store_file_dir: str (for file backend, default: "./data")
    """
    config = config or {}
    backend = config.get("store_backend", "memory")

    if backend == "file":
        from database.store_file import FileAccountStore
        data_dir = config.get("store_file_dir", "./data")
        logger.info("store_created", store="accounts", backend="file", data_dir=data_dir)
        return FileAccountStore(data_dir=data_dir)

    from database.store_memory import InMemoryAccountStore
    logger.info("store_created", store="accounts", backend="memory")
    return InMemoryAccountStore()


def create_comment_store(config: dict = None) -> BaseCommentStore:
    """Factory: create the card/comment store backend (same config keys as accounts)."""
    config = config or {}
    backend = config.get("store_backend", "memory")

    if backend == "file":
        from database.store_file import FileCommentStore
        data_dir = config.get("store_file_dir", "./data")
        logger.info("store_created", store="comments", backend="file", data_dir=data_dir)
        return FileCommentStore(data_dir=data_dir)

    from database.store_memory import InMemoryCommentStore
    logger.info("store_created", store="comments", backend="memory")
    return InMemoryCommentStore()
