"""Error taxonomy and explicit result values for engine operations.

Stores and helpers raise ``StitchError`` subclasses; public engine
operations catch them at their boundary and return a ``Result`` so the
HTTP layer can map ``ErrorKind`` to a status code without inspecting
exception types.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    WORKER_FAILURE = "worker_failure"
    DUPLICATE_CALLBACK = "duplicate_callback"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    INVALID_STATE = "invalid_state"
    UNAUTHORIZED = "unauthorized"


class StitchError(Exception):
    """Base class for engine errors. Carries an ErrorKind."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class ValidationError(StitchError):
    """Malformed graph or request payload."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, issues: Optional[list[str]] = None):
        super().__init__(message)
        self.issues = issues or []


class NotFoundError(StitchError):
    """Unknown run, node, entity, flow or slug. Permanent; never retried."""

    kind = ErrorKind.NOT_FOUND


class ConcurrencyConflict(StitchError):
    """Optimistic update collision that outlived the retry budget."""

    kind = ErrorKind.CONCURRENCY_CONFLICT


class InvalidStateError(StitchError):
    """Requested transition is not allowed from the current state."""

    kind = ErrorKind.INVALID_STATE


class UnauthorizedError(StitchError):
    """Callback token or ingestion signature did not verify."""

    kind = ErrorKind.UNAUTHORIZED


@dataclass(frozen=True)
class Result(Generic[T]):
    """Explicit success/failure value returned by engine operations.

    ``DUPLICATE_CALLBACK`` and ``WORKER_FAILURE`` results are successful
    acknowledgements from the caller's point of view; use ``ok`` for the
    transport decision and ``error_kind`` for the detail.
    """

    ok: bool
    value: Optional[T] = None
    error_kind: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def success(cls, value: Any = None, kind: Optional[ErrorKind] = None, message: str = "") -> "Result":
        return cls(ok=True, value=value, error_kind=kind, message=message)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result":
        return cls(ok=False, error_kind=kind, message=message)

    @classmethod
    def from_error(cls, error: StitchError) -> "Result":
        return cls(ok=False, error_kind=error.kind, message=error.message)
