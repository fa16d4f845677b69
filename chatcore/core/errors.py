from __future__ import annotations

import uuid
from typing import Iterable, List, Optional


class ChatError(Exception):
    """Base class for every error the chat core reports to a caller.

    ``status_code`` mirrors HTTP semantics and is what ends up in unary
    response envelopes and in ``Error`` stream envelopes.
    """

    kind = "Internal"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", *, details: Optional[Iterable[str]] = None) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details: List[str] = list(details or [])
        if self.retryable and "retryable=true" not in self.details:
            self.details.append("retryable=true")


class Unauthenticated(ChatError):
    kind = "Unauthenticated"
    status_code = 401


class InvalidArgument(ChatError):
    kind = "InvalidArgument"
    status_code = 400


class PermissionDenied(ChatError):
    kind = "PermissionDenied"
    status_code = 403


class NotFound(ChatError):
    kind = "NotFound"
    status_code = 404


class Conflict(ChatError):
    kind = "Conflict"
    status_code = 409


class Unavailable(ChatError):
    kind = "Unavailable"
    status_code = 500
    retryable = True


class ShuttingDown(Unavailable):
    kind = "ShuttingDown"


class Internal(ChatError):
    """Unexpected invariant violation; carries a correlation id for the logs."""

    kind = "Internal"
    status_code = 500

    def __init__(self, message: str = "internal error", *, details: Optional[Iterable[str]] = None) -> None:
        self.correlation_id = uuid.uuid4().hex
        super().__init__(message, details=[*(details or []), f"correlation_id={self.correlation_id}"])


class SlowConsumer(ChatError):
    """Eviction signal for a session whose sink stayed full past the grace period."""

    kind = "SlowConsumer"
    status_code = 500


__all__ = [
    "ChatError",
    "Unauthenticated",
    "InvalidArgument",
    "PermissionDenied",
    "NotFound",
    "Conflict",
    "Unavailable",
    "ShuttingDown",
    "Internal",
    "SlowConsumer",
]
