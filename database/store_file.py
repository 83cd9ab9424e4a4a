"""
File-backed stores — JSON persistence across restarts.

Data layout:
  {data_dir}/
    users.json
    cards.json

Features:
  - Survives process restarts (unlike the in-memory stores)
  - No external dependencies (no database server)
  - Writes flush the changed collection to disk (tmp file + rename)
  - cards.json is re-read before each operation, so a separate worker
    process sees cards and comments the API wrote after it started
  - users.json is loaded once; only the API process writes accounts
  - No file locking (concurrent writes are last-writer-wins)

Best for: small deployments, demos, running the API and one worker locally.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryAccountStore, InMemoryCommentStore
from models.schemas import Card, Comment, CommentRef, UserRecord, UserSnapshot

logger = structlog.get_logger()


class _JsonCollection:
    """One JSON file holding a dict of id → document."""

    def __init__(self, data_dir: str, name: str):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.data_dir / f"{name}.json"
        self.name = name

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning("file_store_load_error", collection=self.name, error=str(e))
            return {}
        logger.debug("file_store_loaded", collection=self.name, records=len(data))
        return data if isinstance(data, dict) else {}

    def flush(self, data: dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(self.path)  # atomic on POSIX


class FileAccountStore(InMemoryAccountStore):
    """
    Extends InMemoryAccountStore with JSON file persistence.

    On init: loads users.json into memory and rebuilds the email index.
    On every write: flushes users.json to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._file = _JsonCollection(data_dir, "users")
        self._users = self._file.load()
        self._email_index = {
            u["email"].lower(): uid for uid, u in self._users.items() if u.get("email")
        }
        logger.info("file_account_store_initialized", data_dir=data_dir, users=len(self._users))

    async def create_new(self, user: UserRecord) -> UserRecord:
        result = await super().create_new(user)
        self._file.flush(self._users)
        return result

    async def update(self, user_id: str, fields: dict[str, Any]) -> Optional[UserRecord]:
        result = await super().update(user_id, fields)
        if result is not None:
            self._file.flush(self._users)
        return result


class FileCommentStore(InMemoryCommentStore):
    """
    Extends InMemoryCommentStore with JSON file persistence (cards.json).

    cards.json is re-read at the start of every operation, so an API process
    and a separate worker sharing the directory see each other's writes.
    There is no file locking: two processes writing at the same moment is
    last-writer-wins for the whole collection.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._file = _JsonCollection(data_dir, "cards")
        self._cards = self._file.load()
        logger.info("file_comment_store_initialized", data_dir=data_dir, cards=len(self._cards))

    def _reload(self) -> None:
        self._cards = self._file.load()

    async def create_card(self, card: Card) -> Card:
        self._reload()
        result = await super().create_card(card)
        self._file.flush(self._cards)
        return result

    async def get_card(self, card_id: str) -> Optional[Card]:
        self._reload()
        return await super().get_card(card_id)

    async def delete_card(self, card_id: str) -> bool:
        self._reload()
        deleted = await super().delete_card(card_id)
        if deleted:
            self._file.flush(self._cards)
        return deleted

    async def add_comment(self, card_id: str, comment: Comment) -> Optional[Card]:
        self._reload()
        result = await super().add_comment(card_id, comment)
        if result is not None:
            self._file.flush(self._cards)
        return result

    async def find_card_ids_commented_by(self, user_id: str) -> list[str]:
        self._reload()
        return await super().find_card_ids_commented_by(user_id)

    async def apply_author_snapshot(
        self, card_id: str, snapshot: UserSnapshot,
    ) -> Optional[tuple[list[CommentRef], int]]:
        self._reload()
        applied = await super().apply_author_snapshot(card_id, snapshot)
        if applied is not None and applied[1]:
            self._file.flush(self._cards)
        return applied
