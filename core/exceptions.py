"""
Typed errors for the account service and the propagation queue.

Every error carries an ErrorKind so callers (HTTP layer, queue listeners,
logs) can branch on the kind instead of parsing messages. Wrapped causes are
chained with ``raise ... from exc`` so the original store/driver error stays
inspectable via ``__cause__``.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    AUTHENTICATION = "AUTHENTICATION_ERROR"
    TRANSIENT_STORE = "TRANSIENT_STORE_ERROR"
    QUEUE = "QUEUE_ERROR"
    INTERNAL = "INTERNAL_ERROR"


class AccountError(Exception):
    """Base error for everything raised by the service and its queue."""

    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(AccountError):
    """Input or payload is malformed, or a business rule rejected it."""

    kind = ErrorKind.VALIDATION
    status_code = 422


class NotFoundError(AccountError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ConflictError(AccountError):
    kind = ErrorKind.CONFLICT
    status_code = 409


class AuthenticationError(AccountError):
    kind = ErrorKind.AUTHENTICATION
    status_code = 401


class TransientStoreError(AccountError):
    """A store call failed in a way that may succeed on retry (timeout, lock, connection)."""

    kind = ErrorKind.TRANSIENT_STORE
    status_code = 503


class QueueRegistrationError(AccountError):
    """A processor was registered twice for the same queue on one client."""

    kind = ErrorKind.QUEUE
    status_code = 500


# Store driver exceptions worth retrying. ConnectionError is an OSError subclass;
# asyncio.TimeoutError only became one (an alias of TimeoutError) in 3.11.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (OSError, asyncio.TimeoutError)
