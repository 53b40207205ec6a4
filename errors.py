"""
Application error taxonomy.

Every failure that can reach a client is an AppError subclass carrying a
stable `kind` (what went wrong) and a `category` (which family of failure it
belongs to). The HTTP layer turns these into the response envelope; nothing
else in the code base knows about status codes.
"""

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base application error."""

    category = "Internal"
    status_code = 500
    default_kind = "Internal"

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "category": self.category, "message": self.message}


class Unauthenticated(AppError):
    category = "Unauthenticated"
    status_code = 401
    default_kind = "Unauthenticated"


class InvalidToken(Unauthenticated):
    default_kind = "InvalidToken"


class ExpiredToken(Unauthenticated):
    default_kind = "ExpiredToken"


class Forbidden(AppError):
    category = "Forbidden"
    status_code = 403
    default_kind = "Forbidden"


class NotFound(AppError):
    category = "NotFound"
    status_code = 404
    default_kind = "NotFound"


class Conflict(AppError):
    # duplicates are reported as 400 on the public surface
    category = "Conflict"
    status_code = 400
    default_kind = "Conflict"


class InvalidTransition(AppError):
    """An approval transition that the account's current state does not allow."""

    category = "Conflict"
    status_code = 400
    default_kind = "InvalidTransition"


class Validation(AppError):
    category = "Validation"
    status_code = 422
    default_kind = "Validation"


class BadFile(Validation):
    status_code = 400
    default_kind = "BadFile"


class Internal(AppError):
    pass


class HashingFailed(Internal):
    default_kind = "HashingFailed"


class StorageUnavailable(Internal):
    """Store call timed out or the server could not be reached. Transient."""

    status_code = 503
    default_kind = "StorageUnavailable"


class AggregateRecomputeError(Internal):
    """A denormalized counter could not be rewritten after its source changed."""

    default_kind = "AggregateStale"

    def __init__(self, message: str, target: str, target_id: str):
        super().__init__(message)
        self.target = target
        self.target_id = target_id
