"""
Error classifier - maps raw transport outcomes to the ErrorKind taxonomy.

Rules are evaluated in a fixed priority order so the same outcome always
yields the same kind:

1. cancelled by caller           -> cancelled
2. no response within timeout    -> timeout
3. connection-level failure      -> network
4. 401                           -> unauthorized
5. 403                           -> forbidden
6. 404                           -> notFound
7. 400 / 422                     -> badRequest
8. 429                           -> rateLimited (Retry-After honoured)
9. 5xx                           -> serverError
10. body fails decode            -> decodeError (see classify_decode_error)
11. anything else                -> unknown
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Mapping

import httpx

from twin_client.services.errors import ErrorKind
from twin_client.services.result import Failure

_MESSAGE_FIELDS = ("detail", "error", "message")


@dataclass
class TransportOutcome:
    """Everything known about one attempt that did not succeed."""

    status_code: int | None = None
    exception: BaseException | None = None
    elapsed: float = 0.0
    timeout: float | None = None
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def has_response(self) -> bool:
        return self.status_code is not None


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    message: str


def _is_timeout_exception(exc: BaseException | None) -> bool:
    return isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError))


def _is_connection_exception(exc: BaseException | None) -> bool:
    return isinstance(
        exc,
        (httpx.NetworkError, httpx.RemoteProtocolError, httpx.ProxyError, OSError),
    )


def _body_message(body: bytes, limit: int = 200) -> str:
    """Pull a readable message out of an error body."""
    if not body:
        return ""
    try:
        data = json.loads(body)
    except ValueError:
        return body.decode("utf-8", errors="replace")[:limit]

    if isinstance(data, dict):
        for name in _MESSAGE_FIELDS:
            value = data.get(name)
            if isinstance(value, str) and value:
                return value[:limit]
    return json.dumps(data)[:limit]


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header into seconds.

    Accepts delta-seconds or an HTTP-date. Returns None when absent or
    unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds)

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def classify(outcome: TransportOutcome) -> Classification:
    """Classify a failed attempt."""
    if outcome.cancelled:
        return Classification(ErrorKind.CANCELLED, "Request cancelled")

    if not outcome.has_response:
        timed_out = _is_timeout_exception(outcome.exception) or (
            outcome.timeout is not None and outcome.elapsed >= outcome.timeout
        )
        if timed_out:
            budget = f" after {outcome.timeout}s" if outcome.timeout else ""
            return Classification(ErrorKind.TIMEOUT, f"Request timed out{budget}")

        if _is_connection_exception(outcome.exception):
            return Classification(
                ErrorKind.NETWORK,
                f"Connection failed: {type(outcome.exception).__name__}: "
                f"{outcome.exception}",
            )

        return Classification(
            ErrorKind.UNKNOWN,
            f"Request failed: {type(outcome.exception).__name__}: "
            f"{outcome.exception}",
        )

    status = outcome.status_code
    assert status is not None
    detail = _body_message(outcome.body)
    suffix = f": {detail}" if detail else ""

    if status == 401:
        kind = ErrorKind.UNAUTHORIZED
    elif status == 403:
        kind = ErrorKind.FORBIDDEN
    elif status == 404:
        kind = ErrorKind.NOT_FOUND
    elif status in (400, 422):
        kind = ErrorKind.BAD_REQUEST
    elif status == 429:
        kind = ErrorKind.RATE_LIMITED
    elif 500 <= status <= 599:
        kind = ErrorKind.SERVER_ERROR
    else:
        kind = ErrorKind.UNKNOWN

    return Classification(kind, f"HTTP {status}{suffix}")


def to_failure(outcome: TransportOutcome) -> Failure:
    """Classify an outcome and wrap it as a Failure."""
    classification = classify(outcome)
    retry_after = None
    if classification.kind is ErrorKind.RATE_LIMITED:
        retry_after = parse_retry_after(_header(outcome.headers, "retry-after"))
    return Failure.of(
        classification.kind,
        classification.message,
        status_code=outcome.status_code,
        retry_after=retry_after,
    )


def classify_decode_error(message: str, status_code: int | None = None) -> Failure:
    """Failure for a response body that does not match its entity."""
    return Failure.of(ErrorKind.DECODE_ERROR, message, status_code=status_code)


def _header(headers: Mapping[str, str], name: str) -> str | None:
    # httpx.Headers is case-insensitive, plain dicts are not
    if isinstance(headers, httpx.Headers):
        return headers.get(name)
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None
