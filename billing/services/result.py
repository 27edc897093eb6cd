"""
Explicit success/error values returned by domain operations.

Expected conditions (missing payment, amount too large, provider rejection) come back as a
failed Result with an ErrorKind; exceptions are left for faults nobody anticipated.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INVARIANT_VIOLATION = "invariant_violation"
    CONFLICT = "conflict"
    PROVIDER = "provider"
    REPOSITORY = "repository"


@dataclass(frozen=True)
class ServiceError:
    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)


class ResultError(Exception):
    """Raised by Result.unwrap() on a failed result."""

    def __init__(self, error: ServiceError) -> None:
        super().__init__(f"{error.kind.value}: {error.message}")
        self.error = error


@dataclass(frozen=True)
class Result(Generic[T]):
    value: T | None = None
    error: ServiceError | None = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, **details: Any) -> "Result[T]":
        return cls(error=ServiceError(kind=kind, message=message, details=details))

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    def unwrap(self) -> T:
        if self.error is not None:
            raise ResultError(self.error)
        return self.value  # type: ignore[return-value]
