"""
In-memory stores — Dict-backed account and card stores for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with the file-backed stores
  - Safe under asyncio (single event loop, no await inside a mutation)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from core.exceptions import ConflictError, ValidationError
from database.store_base import BaseAccountStore, BaseCommentStore
from models.schemas import Card, Comment, CommentRef, UserRecord, UserSnapshot

logger = structlog.get_logger()

# Fields the account store never lets a partial update touch.
_IMMUTABLE_USER_FIELDS = {"id", "email", "created_at"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryAccountStore(BaseAccountStore):
    """Users keyed by id, with a unique index on email."""

    def __init__(self):
        self._users: dict[str, dict] = {}            # id → user dict
        self._email_index: dict[str, str] = {}       # email → user id
        logger.info("inmemory_account_store_initialized")

    async def find_one_by_any(self, field: str, value: Any) -> Optional[UserRecord]:
        if field not in self.LOOKUP_FIELDS:
            raise ValidationError(f"Unsupported lookup field: {field}")
        if value is None:
            return None
        if field == "id":
            data = self._users.get(str(value))
        elif field == "email":
            uid = self._email_index.get(str(value).lower())
            data = self._users.get(uid) if uid else None
        else:
            data = next((u for u in self._users.values() if u.get(field) == value), None)
        return UserRecord.model_validate(data) if data else None

    async def create_new(self, user: UserRecord) -> UserRecord:
        email = user.email.lower()
        if email in self._email_index:
            raise ConflictError("Email already exist.", details={"email": user.email})
        data = user.model_dump(mode="json")
        self._users[user.id] = data
        self._email_index[email] = user.id
        return UserRecord.model_validate(data)

    async def update(self, user_id: str, fields: dict[str, Any]) -> Optional[UserRecord]:
        data = self._users.get(user_id)
        if data is None:
            return None
        changes = {k: v for k, v in fields.items() if k not in _IMMUTABLE_USER_FIELDS}
        # Round-trip through the model so enums and datetimes serialize the same way as inserts.
        merged = UserRecord.model_validate({**data, **changes, "updated_at": _utcnow()})
        self._users[user_id] = merged.model_dump(mode="json")
        return merged

    def stats(self) -> dict[str, int]:
        return {"users": len(self._users)}


class InMemoryCommentStore(BaseCommentStore):
    """Cards keyed by id; comments embedded newest first."""

    def __init__(self):
        self._cards: dict[str, dict] = {}             # id → card dict
        logger.info("inmemory_comment_store_initialized")

    # ── Cards ─────────────────────────────────────────────

    async def create_card(self, card: Card) -> Card:
        self._cards[card.id] = card.model_dump(mode="json")
        return card

    async def get_card(self, card_id: str) -> Optional[Card]:
        data = self._cards.get(card_id)
        return Card.model_validate(data) if data else None

    async def delete_card(self, card_id: str) -> bool:
        return self._cards.pop(card_id, None) is not None

    async def add_comment(self, card_id: str, comment: Comment) -> Optional[Card]:
        data = self._cards.get(card_id)
        if data is None:
            return None
        data["comments"].insert(0, comment.model_dump(mode="json"))
        data["updated_at"] = _utcnow().isoformat()
        return Card.model_validate(data)

    # ── Denormalized author refresh ───────────────────────

    async def find_card_ids_commented_by(self, user_id: str) -> list[str]:
        return [
            cid for cid, card in self._cards.items()
            if any(c.get("user_id") == user_id for c in card.get("comments") or [])
        ]

    async def apply_author_snapshot(
        self, card_id: str, snapshot: UserSnapshot,
    ) -> Optional[tuple[list[CommentRef], int]]:
        card = self._cards.get(card_id)
        if card is None:
            return None
        refs: list[CommentRef] = []
        modified = 0
        for comment in card.get("comments") or []:
            if comment.get("user_id") != snapshot.id:
                continue
            refs.append(CommentRef(card_id=card_id, comment_id=comment["id"]))
            if (comment.get("user_display_name") != snapshot.display_name
                    or comment.get("user_avatar") != snapshot.avatar):
                comment["user_display_name"] = snapshot.display_name
                comment["user_avatar"] = snapshot.avatar
                modified += 1
        if modified:
            card["updated_at"] = _utcnow().isoformat()
        return refs, modified

    def stats(self) -> dict[str, int]:
        return {
            "cards": len(self._cards),
            "comments": sum(len(c.get("comments") or []) for c in self._cards.values()),
        }
