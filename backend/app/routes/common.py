"""Shared helpers for mapping engine Results onto HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException

from stitch.errors import ErrorKind, Result

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.CONCURRENCY_CONFLICT: 503,
    ErrorKind.WORKER_FAILURE: 502,
}


def raise_for_result(result: Result) -> None:
    """Raise HTTPException for a failed Result; no-op on success."""
    if result.ok:
        return
    status = _STATUS_BY_KIND.get(result.error_kind, 500)
    raise HTTPException(status_code=status, detail=result.message)
