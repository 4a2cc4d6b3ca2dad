"""
Service layer exceptions.

Failures are classified once, where the transport hands control back to the
retry loop (see classify_response / classify_exception). Everything after that
point reads the ``kind`` and ``retryable`` attributes, never message text.
"""

import asyncio
import math
from enum import Enum
from typing import Any

import httpx


class ErrorKind(str, Enum):
    """Tag carried by every classified error."""

    TRANSPORT = "transport"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    CLIENT = "client"
    RETRIES_EXHAUSTED = "retries_exhausted"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"


class ServiceError(Exception):
    """Base exception for service layer errors."""

    kind: ErrorKind | None = None
    retryable: bool = False

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        endpoint: str | None = None,
        attempts: int = 0,
        retry_after: float | None = None,
    ):
        self.service_id = service_id
        self.endpoint = endpoint
        self.attempts = attempts
        self.retry_after = retry_after
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        """Structured context for callers deciding how to surface the failure."""
        return {
            "kind": self.kind.value if self.kind else None,
            "service_id": self.service_id,
            "endpoint": self.endpoint,
            "attempts": self.attempts,
            "retry_after": self.retry_after,
            "retryable": self.retryable,
        }


class TransportError(ServiceError):
    """No response was received (connection refused, reset, aborted)."""

    kind = ErrorKind.TRANSPORT
    retryable = True


class RequestTimeoutError(TransportError):
    """Request timed out."""

    def __init__(
        self,
        service_id: str | None,
        timeout: float,
        endpoint: str | None = None,
        attempts: int = 0,
    ):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
            endpoint=endpoint,
            attempts=attempts,
        )


class ResponseError(ServiceError):
    """The vendor answered with an error status."""

    def __init__(
        self,
        status_code: int,
        response: httpx.Response | None = None,
        service_id: str | None = None,
        endpoint: str | None = None,
        attempts: int = 0,
        retry_after: float | None = None,
    ):
        self.status_code = status_code
        self.response = response
        message = f"HTTP {status_code}"
        if endpoint:
            message += f" from {endpoint}"
        body = _body_snippet(response)
        if body:
            message += f": {body}"
        super().__init__(
            message,
            service_id=service_id,
            endpoint=endpoint,
            attempts=attempts,
            retry_after=retry_after,
        )


class RateLimitError(ResponseError):
    """Rate limit exceeded (HTTP 429)."""

    kind = ErrorKind.RATE_LIMIT
    retryable = True


class ServerError(ResponseError):
    """Server-side failure; retryable when the status is a configured retry code."""

    kind = ErrorKind.SERVER

    def __init__(self, status_code: int, retryable: bool = True, **kwargs: Any):
        self.retryable = retryable
        super().__init__(status_code, **kwargs)


class ClientError(ResponseError):
    """Non-retryable 4xx; surfaced on first occurrence."""

    kind = ErrorKind.CLIENT


class RetriesExhaustedError(ServiceError):
    """The retry budget is spent; wraps the last underlying error."""

    kind = ErrorKind.RETRIES_EXHAUSTED

    def __init__(
        self,
        last_error: ServiceError,
        service_id: str | None = None,
        endpoint: str | None = None,
        attempts: int = 0,
        message: str | None = None,
    ):
        self.last_error = last_error
        super().__init__(
            message
            or f"Request to {endpoint} failed after {attempts} attempts: {last_error}",
            service_id=service_id,
            endpoint=endpoint,
            attempts=attempts,
            retry_after=last_error.retry_after,
        )


class RateLimitExceededError(RetriesExhaustedError):
    """Endpoint kept answering 429 until the retry budget ran out."""

    kind = ErrorKind.RATE_LIMIT_EXCEEDED

    def __init__(
        self,
        last_error: RateLimitError,
        service_id: str | None = None,
        endpoint: str | None = None,
        attempts: int = 0,
    ):
        super().__init__(
            last_error,
            service_id=service_id,
            endpoint=endpoint,
            attempts=attempts,
            message=f"Endpoint {endpoint} rate limited after {max(attempts - 1, 0)} retries",
        )


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
            retry_after=reset_after_seconds,
        )


class RequestCancelledError(ServiceError):
    """Caller cancelled the request or its deadline passed."""

    kind = ErrorKind.CANCELLED


def parse_retry_after(value: str | None) -> float | None:
    """
    Parse a Retry-After header given in seconds.

    HTTP-date values, negatives and garbage return None so the caller falls
    back to exponential backoff.
    """
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds


def classify_response(
    response: httpx.Response,
    retry_status_codes: frozenset[int] | set[int],
    service_id: str | None = None,
    endpoint: str | None = None,
    attempts: int = 0,
) -> ResponseError:
    """Map an error response to its taxonomy kind."""
    status = response.status_code
    common: dict[str, Any] = {
        "response": response,
        "service_id": service_id,
        "endpoint": endpoint,
        "attempts": attempts,
    }

    if status == 429:
        return RateLimitError(
            status,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
            **common,
        )
    if status in retry_status_codes:
        return ServerError(status, retryable=True, **common)
    if 400 <= status < 500:
        return ClientError(status, **common)
    return ServerError(status, retryable=False, **common)


def classify_exception(
    exc: BaseException,
    retry_status_codes: frozenset[int] | set[int],
    service_id: str | None = None,
    endpoint: str | None = None,
    attempts: int = 0,
    timeout: float | None = None,
) -> ServiceError | None:
    """
    Map a transport exception to its taxonomy kind.

    Returns None for exceptions this layer does not recognise; those
    propagate to the caller unchanged.
    """
    if isinstance(exc, ServiceError):
        # Transport already classified it; fill in what it could not know
        if exc.service_id is None:
            exc.service_id = service_id
        if exc.endpoint is None:
            exc.endpoint = endpoint
        exc.attempts = attempts
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        return classify_response(
            exc.response,
            retry_status_codes,
            service_id=service_id,
            endpoint=endpoint,
            attempts=attempts,
        )

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return RequestTimeoutError(
            service_id, timeout or 0.0, endpoint=endpoint, attempts=attempts
        )

    if isinstance(exc, (httpx.RequestError, OSError)):
        return TransportError(
            str(exc) or type(exc).__name__,
            service_id=service_id,
            endpoint=endpoint,
            attempts=attempts,
        )

    return None


def _body_snippet(response: httpx.Response | None) -> str:
    if response is None:
        return ""
    try:
        return response.text[:200]
    except httpx.ResponseNotRead:
        return ""
