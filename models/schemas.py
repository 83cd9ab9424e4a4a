"""
Core data models for the TaskBoard accounts service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class UserRole(str, Enum):
    CLIENT = "client"
    ADMIN = "admin"


# ──────────────────────────────────────────────────────────────
#  User — the authoritative account record
# ──────────────────────────────────────────────────────────────

PUBLIC_USER_FIELDS = ("id", "email", "username", "display_name", "avatar", "is_active", "role")


class UserRecord(BaseModel):
    """A user account as held by the account store."""
    id: str = Field(default_factory=_new_id)
    email: str
    password: str                             # password hash, never the plain text
    username: str
    display_name: str
    avatar: Optional[str] = None              # public URL of the uploaded image
    role: UserRole = UserRole.CLIENT
    is_active: bool = False
    verify_token: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    def public(self) -> dict[str, Any]:
        """Fields safe to hand back to API callers."""
        return self.model_dump(mode="json", include=set(PUBLIC_USER_FIELDS))


class UserSnapshot(BaseModel):
    """
    The denormalized slice of a user that comments carry.

    Frozen: it is the payload of a propagation job and must not change
    between enqueue and every retry of that job.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    email: str = ""
    username: str = ""
    display_name: str = ""
    avatar: Optional[str] = None

    @classmethod
    def from_record(cls, user: UserRecord) -> UserSnapshot:
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            display_name=user.display_name,
            avatar=user.avatar,
        )


# ──────────────────────────────────────────────────────────────
#  Cards & Comments — the comment store's documents
# ──────────────────────────────────────────────────────────────

class Comment(BaseModel):
    """A comment embedded in a card, with a copy of the author's profile."""
    id: str = Field(default_factory=_new_id)
    user_id: str
    user_email: str = ""
    user_display_name: str = ""
    user_avatar: Optional[str] = None
    content: str
    commented_at: datetime = Field(default_factory=_utcnow)


class Card(BaseModel):
    id: str = Field(default_factory=_new_id)
    board_id: str = ""
    column_id: str = ""
    title: str
    comments: list[Comment] = []              # newest first
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


class CommentRef(BaseModel):
    card_id: str
    comment_id: str


class CommentUpdateResult(BaseModel):
    """Outcome of refreshing one user's profile across all card comments."""
    matched_count: int = 0                    # comments authored by the user
    modified_count: int = 0                   # comments whose values actually changed
    updated_comments: list[CommentRef] = []


# ──────────────────────────────────────────────────────────────
#  Service inputs / outputs
# ──────────────────────────────────────────────────────────────

class ProfileUpdate(BaseModel):
    """Fields a user may submit to the profile update endpoint."""
    display_name: Optional[str] = None
    current_password: Optional[str] = None
    new_password: Optional[str] = None


class AvatarFile(BaseModel):
    """An uploaded image, already read into memory."""
    filename: str
    content_type: str
    data: bytes


class SignInResult(BaseModel):
    access_token: str
    refresh_token: str
    user: dict[str, Any]
