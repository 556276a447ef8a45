"""Normalization of accounting API failures into one tagged error type."""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Mapping

import httpx

RATE_LIMIT_PHRASES: tuple[str, ...] = ("rate limit", "429", "too many requests", "quota exceeded")
_VALIDATION_RATE_LIMIT_PHRASES: tuple[str, ...] = ("rate limit", "429", "too many requests")


class AccountingErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class AccountingApiError(Exception):
    """Failure reported by (or while reaching) the accounting API."""

    def __init__(
        self,
        message: str,
        *,
        kind: AccountingErrorKind,
        status_code: int | None = None,
        retry_after_ms: int | None = None,
        raw: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms
        self.raw = raw

    @property
    def is_rate_limited(self) -> bool:
        return self.kind is AccountingErrorKind.RATE_LIMITED

    @property
    def is_retryable(self) -> bool:
        return self.kind is not AccountingErrorKind.PERMANENT


def _contains_phrase(text: str, phrases: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in phrases)


def _validation_message(body: Any) -> str | None:
    """Return the first Xero validation message from an error body, if present."""

    if not isinstance(body, Mapping):
        return None
    elements = body.get("Elements")
    if not isinstance(elements, list) or not elements:
        return None
    first = elements[0]
    if not isinstance(first, Mapping):
        return None
    errors = first.get("ValidationErrors")
    if not isinstance(errors, list) or not errors:
        return None
    message = errors[0].get("Message") if isinstance(errors[0], Mapping) else None
    return message if isinstance(message, str) else None


def _lookup(source: Any, key: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(key)
    return getattr(source, key, None)


def _response_status(error: Any) -> int | None:
    response = _lookup(error, "response")
    status = _lookup(response, "status") or _lookup(response, "status_code")
    if status is None:
        status = _lookup(error, "status_code")
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _response_body(error: Any) -> Any:
    response = _lookup(error, "response")
    body = _lookup(response, "body")
    if body is not None:
        return body
    if isinstance(response, httpx.Response):
        try:
            return response.json()
        except ValueError:
            return None
    return None


def is_rate_limit_error(error: Any) -> bool:
    """Classify an exception (normalized or raw) as an external rate-limit response."""

    if isinstance(error, AccountingApiError):
        return error.is_rate_limited

    if _response_status(error) == 429:
        return True

    message = _lookup(error, "message")
    if not isinstance(message, str) and isinstance(error, BaseException):
        message = str(error)
    if isinstance(message, str) and _contains_phrase(message, RATE_LIMIT_PHRASES):
        return True

    validation = _validation_message(_response_body(error))
    if validation and _contains_phrase(validation, _VALIDATION_RATE_LIMIT_PHRASES):
        return True

    return False


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> int | None:
    """Convert a ``Retry-After`` header (seconds or HTTP date) into milliseconds."""

    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            target = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if target.tzinfo is None:
            target = target.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        seconds = (target - current).total_seconds()
    return max(int(seconds * 1000), 0)


def normalize_accounting_error(error: BaseException) -> AccountingApiError:
    """Map any failure raised around an accounting API call onto ``AccountingApiError``."""

    if isinstance(error, AccountingApiError):
        return error

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        status = response.status_code
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        validation = _validation_message(body)
        detail = validation or (body.get("Message") if isinstance(body, Mapping) else None) or response.reason_phrase
        message = f"Xero API error {status}: {detail}"

        if status == 429 or (validation and _contains_phrase(validation, _VALIDATION_RATE_LIMIT_PHRASES)):
            return AccountingApiError(
                message,
                kind=AccountingErrorKind.RATE_LIMITED,
                status_code=status,
                retry_after_ms=parse_retry_after(response.headers.get("Retry-After")),
                raw=body,
            )
        if status == 408 or status >= 500:
            return AccountingApiError(message, kind=AccountingErrorKind.TRANSIENT, status_code=status, raw=body)
        return AccountingApiError(message, kind=AccountingErrorKind.PERMANENT, status_code=status, raw=body)

    if isinstance(error, httpx.TransportError):
        return AccountingApiError(
            f"Xero API unreachable: {error}",
            kind=AccountingErrorKind.TRANSIENT,
            raw=error,
        )

    kind = AccountingErrorKind.RATE_LIMITED if is_rate_limit_error(error) else AccountingErrorKind.TRANSIENT
    return AccountingApiError(str(error), kind=kind, status_code=_response_status(error), raw=error)


__all__ = [
    "AccountingApiError",
    "AccountingErrorKind",
    "RATE_LIMIT_PHRASES",
    "is_rate_limit_error",
    "normalize_accounting_error",
    "parse_retry_after",
]
