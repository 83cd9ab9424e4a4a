"""
Abstract stores — Interfaces for the account and comment document stores.

Implementations:
  - InMemoryAccountStore / InMemoryCommentStore (dict-based, single-process, no persistence)
  - FileAccountStore / FileCommentStore         (JSON files on disk, single-process, durable)

Both stores are external collaborators of the propagation queue: the worker
only needs ``BaseCommentStore.update_many_comments``; the account service
only needs lookups, inserts and partial updates of user records.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import Card, Comment, CommentRef, CommentUpdateResult, UserRecord, UserSnapshot


class BaseAccountStore(ABC):
    """Interface that all account store backends must implement."""

    # Fields that may be used with find_one_by_any.
    LOOKUP_FIELDS = ("id", "email", "username")

    @abstractmethod
    async def find_one_by_any(self, field: str, value: Any) -> Optional[UserRecord]:
        ...

    @abstractmethod
    async def create_new(self, user: UserRecord) -> UserRecord:
        ...

    @abstractmethod
    async def update(self, user_id: str, fields: dict[str, Any]) -> Optional[UserRecord]:
        """Apply a partial update; return the updated record, or None if the user is gone."""
        ...


class BaseCommentStore(ABC):
    """
    Interface that all card/comment store backends must implement.

    ``update_many_comments`` is implemented here on top of two per-card
    primitives so every backend gets the same skip-on-vanish behaviour: a
    card deleted between the scan and its update is skipped, not an error.
    """

    # ── Cards ─────────────────────────────────────────────────

    @abstractmethod
    async def create_card(self, card: Card) -> Card:
        ...

    @abstractmethod
    async def get_card(self, card_id: str) -> Optional[Card]:
        ...

    @abstractmethod
    async def delete_card(self, card_id: str) -> bool:
        ...

    @abstractmethod
    async def add_comment(self, card_id: str, comment: Comment) -> Optional[Card]:
        """Insert a comment at the head of the card's comment list."""
        ...

    # ── Denormalized author refresh ───────────────────────────

    @abstractmethod
    async def find_card_ids_commented_by(self, user_id: str) -> list[str]:
        ...

    @abstractmethod
    async def apply_author_snapshot(
        self, card_id: str, snapshot: UserSnapshot,
    ) -> Optional[tuple[list[CommentRef], int]]:
        """
        Overwrite author display name/avatar on the card's comments by ``snapshot.id``.

        Returns (matched comment refs, number actually modified), or None when
        the card no longer exists.
        """
        ...

    async def update_many_comments(self, snapshot: UserSnapshot) -> CommentUpdateResult:
        """
        Refresh every comment authored by ``snapshot.id`` across all cards.

        Idempotent: running it again with the same snapshot leaves the store
        unchanged (``modified_count`` drops to 0). Zero matches is a no-op.
        """
        result = CommentUpdateResult()
        for card_id in await self.find_card_ids_commented_by(snapshot.id):
            applied = await self.apply_author_snapshot(card_id, snapshot)
            if applied is None:
                continue
            refs, modified = applied
            result.updated_comments.extend(refs)
            result.matched_count += len(refs)
            result.modified_count += modified
        return result
