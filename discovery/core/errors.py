# discovery/core/errors.py
from __future__ import annotations
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INVALID_ARGUMENT = "InvalidArgument"
    NOT_FOUND = "NotFound"
    UNAUTHENTICATED = "Unauthenticated"
    DEADLINE_EXCEEDED = "DeadlineExceeded"
    UNAVAILABLE = "Unavailable"
    CORRUPTED_CACHE = "CorruptedCache"
    INTERNAL = "Internal"


class RecoError(Exception):
    """Base class for every error the ranking core surfaces to its callers."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str = "", *, retry_after: Optional[int] = None):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        out = {"error": self.kind.value, "message": self.message}
        if self.retry_after is not None:
            out["retry_after"] = self.retry_after
        return out


class InvalidArgument(RecoError):
    kind = ErrorKind.INVALID_ARGUMENT


class NotFound(RecoError):
    kind = ErrorKind.NOT_FOUND


class Unauthenticated(RecoError):
    kind = ErrorKind.UNAUTHENTICATED


class DeadlineExceeded(RecoError):
    kind = ErrorKind.DEADLINE_EXCEEDED


class Unavailable(RecoError):
    kind = ErrorKind.UNAVAILABLE


class CorruptedCache(RecoError):
    kind = ErrorKind.CORRUPTED_CACHE


class Internal(RecoError):
    kind = ErrorKind.INTERNAL


# HTTP status per kind, used by the API layer
HTTP_STATUS = {
    ErrorKind.INVALID_ARGUMENT: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DEADLINE_EXCEEDED: 504,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.CORRUPTED_CACHE: 500,
    ErrorKind.INTERNAL: 500,
}
