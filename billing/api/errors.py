"""Translate service Results into HTTP responses."""
from typing import Any, TypeVar

from fastapi import HTTPException

from billing.services.result import ErrorKind, Result

T = TypeVar("T")

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.INVARIANT_VIOLATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.PROVIDER: 502,
    ErrorKind.REPOSITORY: 500,
}


def unwrap_or_raise(result: Result[T]) -> T:
    if result.ok:
        return result.value  # type: ignore[return-value]
    error = result.error
    detail: dict[str, Any] = {"kind": error.kind.value, "message": error.message}
    if error.details:
        detail["details"] = error.details
    raise HTTPException(status_code=STATUS_BY_KIND[error.kind], detail=detail)
