"""Tests for Result values and their HTTP mapping."""
import pytest
from fastapi import HTTPException

from billing.api.errors import STATUS_BY_KIND, unwrap_or_raise
from billing.services.result import ErrorKind, Result, ResultError


def test_success_unwraps():
    result = Result.success({"id": 1})
    assert result.ok
    assert result.kind is None
    assert result.unwrap() == {"id": 1}


def test_failure_carries_details():
    result = Result.failure(ErrorKind.CONFLICT, "busy", payment_id="p1")
    assert not result.ok
    assert result.error.details == {"payment_id": "p1"}
    with pytest.raises(ResultError) as exc:
        result.unwrap()
    assert exc.value.error.kind is ErrorKind.CONFLICT


@pytest.mark.parametrize("kind, status", [
    (ErrorKind.VALIDATION, 400),
    (ErrorKind.INVARIANT_VIOLATION, 400),
    (ErrorKind.NOT_FOUND, 404),
    (ErrorKind.CONFLICT, 409),
    (ErrorKind.PROVIDER, 502),
    (ErrorKind.REPOSITORY, 500),
])
def test_http_mapping(kind, status):
    with pytest.raises(HTTPException) as exc:
        unwrap_or_raise(Result.failure(kind, "x"))
    assert exc.value.status_code == status
    assert exc.value.detail["kind"] == kind.value


def test_every_kind_is_mapped():
    assert set(STATUS_BY_KIND) == set(ErrorKind)
