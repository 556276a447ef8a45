from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest

from clubledger_api.services.accounting.errors import (
    AccountingApiError,
    AccountingErrorKind,
    is_rate_limit_error,
    normalize_accounting_error,
    parse_retry_after,
)


def _status_error(status_code: int, *, json=None, headers=None) -> httpx.HTTPStatusError:
    request = httpx.Request("PUT", "https://api.xero.com/api.xro/2.0/Invoices")
    response = httpx.Response(status_code, json=json, headers=headers, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


def test_rate_limit_detection_covers_known_error_shapes() -> None:
    assert is_rate_limit_error(SimpleNamespace(response=SimpleNamespace(status=429))) is True
    assert is_rate_limit_error(SimpleNamespace(response={"status_code": 429})) is True
    assert is_rate_limit_error(RuntimeError("Too Many Requests")) is True
    assert is_rate_limit_error(RuntimeError("upstream said TOO MANY REQUESTS")) is True
    assert is_rate_limit_error(RuntimeError("Daily quota exceeded")) is True
    assert is_rate_limit_error(RuntimeError("network timeout")) is False


def test_rate_limit_detection_reads_xero_validation_body() -> None:
    throttled = SimpleNamespace(
        message="Validation failed",
        response=SimpleNamespace(
            status=400,
            body={"Elements": [{"ValidationErrors": [{"Message": "Rate limit exceeded for this tenant"}]}]},
        ),
    )
    rejected = SimpleNamespace(
        message="Validation failed",
        response=SimpleNamespace(
            status=400,
            body={"Elements": [{"ValidationErrors": [{"Message": "Account code '999' is not valid"}]}]},
        ),
    )

    assert is_rate_limit_error(throttled) is True
    assert is_rate_limit_error(rejected) is False


def test_normalized_errors_are_classified_by_kind() -> None:
    assert is_rate_limit_error(AccountingApiError("slow down", kind=AccountingErrorKind.RATE_LIMITED)) is True
    assert is_rate_limit_error(AccountingApiError("rate limit text", kind=AccountingErrorKind.PERMANENT)) is False


def test_normalize_http_429_carries_retry_after() -> None:
    error = normalize_accounting_error(_status_error(429, headers={"Retry-After": "3"}))

    assert error.kind is AccountingErrorKind.RATE_LIMITED
    assert error.status_code == 429
    assert error.retry_after_ms == 3000
    assert error.is_retryable is True


@pytest.mark.parametrize("status_code", [408, 500, 503])
def test_normalize_server_errors_are_transient(status_code: int) -> None:
    error = normalize_accounting_error(_status_error(status_code, json={"Message": "try later"}))

    assert error.kind is AccountingErrorKind.TRANSIENT
    assert "try later" in str(error)


def test_normalize_validation_errors_are_permanent() -> None:
    body = {"Elements": [{"ValidationErrors": [{"Message": "Account code '999' is not valid"}]}]}
    error = normalize_accounting_error(_status_error(400, json=body))

    assert error.kind is AccountingErrorKind.PERMANENT
    assert error.is_retryable is False
    assert "Account code '999' is not valid" in str(error)
    assert error.raw == body


def test_normalize_validation_rate_limit_is_rate_limited() -> None:
    body = {"Elements": [{"ValidationErrors": [{"Message": "Too many requests, slow down"}]}]}
    error = normalize_accounting_error(_status_error(400, json=body))

    assert error.kind is AccountingErrorKind.RATE_LIMITED


def test_normalize_transport_and_unknown_errors() -> None:
    request = httpx.Request("PUT", "https://api.xero.com/api.xro/2.0/Payments")
    transport = normalize_accounting_error(httpx.ConnectError("connection refused", request=request))
    assert transport.kind is AccountingErrorKind.TRANSIENT

    generic = normalize_accounting_error(RuntimeError("quota exceeded for app"))
    assert generic.kind is AccountingErrorKind.RATE_LIMITED

    existing = AccountingApiError("kept", kind=AccountingErrorKind.PERMANENT)
    assert normalize_accounting_error(existing) is existing


def test_parse_retry_after_accepts_seconds_and_http_dates() -> None:
    now = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    assert parse_retry_after("7") == 7000
    assert parse_retry_after("Fri, 01 Mar 2024 12:00:30 GMT", now=now) == 30_000
    assert parse_retry_after("Fri, 01 Mar 2024 11:59:00 GMT", now=now) == 0
    assert parse_retry_after("soon") is None
    assert parse_retry_after(None) is None
