"""
Database layer — Document stores for users and cards.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_account_store, create_comment_store
  accounts = create_account_store({"store_backend": "memory"})
  user = await accounts.find_one_by_any("email", "alice@example.com")
"""
from database.store_base import BaseAccountStore, BaseCommentStore
from database.store_memory import InMemoryAccountStore, InMemoryCommentStore
from database.store_file import FileAccountStore, FileCommentStore
from database.store_factory import create_account_store, create_comment_store

__all__ = [
    # Store interfaces
    "BaseAccountStore", "BaseCommentStore",
    # Store backends
    "InMemoryAccountStore", "InMemoryCommentStore",
    "FileAccountStore", "FileCommentStore",
    # Factory
    "create_account_store", "create_comment_store",
]
