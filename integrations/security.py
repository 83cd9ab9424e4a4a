"""
Password hashing and JWT signing.

Passwords are hashed with Argon2id; tokens are HS256 JWTs carrying the
user's ``_id`` and ``email``. Access and refresh tokens use separate secrets
and lifetimes (see AuthConfig).
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any

from argon2 import PasswordHasher as Argon2Hasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from jose import ExpiredSignatureError, JWTError, jwt

from core.exceptions import AuthenticationError

logger = structlog.get_logger()


class PasswordHasher:
    """Thin wrapper over argon2-cffi with a boolean verify."""

    def __init__(self, time_cost: int = 2, memory_cost: int = 65536, parallelism: int = 1):
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (VerificationError, InvalidHashError) as e:
            logger.warning("password_verify_error", error=str(e))
            return False


class JwtProvider:
    """Issue and verify HS256 tokens."""

    def __init__(self, algorithm: str = "HS256"):
        self.algorithm = algorithm

    def generate_token(self, secret: str, ttl_seconds: int, claims: dict[str, Any]) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        }
        return jwt.encode(payload, secret, algorithm=self.algorithm)

    def verify_token(self, secret: str, token: str) -> dict[str, Any]:
        """Decode a token; raise AuthenticationError if it is expired or invalid."""
        try:
            return jwt.decode(token, secret, algorithms=[self.algorithm])
        except ExpiredSignatureError as e:
            raise AuthenticationError("Token expired.") from e
        except JWTError as e:
            raise AuthenticationError("Invalid token.") from e
