"""
Service layer exceptions.

TransientIOError and its subclasses are eligible for retry; everything else
propagates on first occurrence.
"""

import socket

import httpx
from sqlalchemy.exc import DBAPIError

# Error codes surfaced in driver / network messages that mark a transient failure
TRANSIENT_ERROR_CODES = ("ECONNREFUSED", "ENOTFOUND", "ETIMEDOUT")


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class TransientIOError(ServiceError):
    """Connection refused, host not found, timeout or rate limit."""

    pass


class RequestTimeoutError(TransientIOError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class RateLimitError(TransientIOError):
    """Rate limit exceeded (HTTP 429)."""

    def __init__(self, service_id: str, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, service_id=service_id)


class PermanentError(ServiceError):
    """Validation failure, not-found, auth failure or malformed request."""

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        kind: str = "permanent",
        status_code: int | None = None,
    ):
        self.kind = kind
        self.status_code = status_code
        super().__init__(message, service_id=service_id)


class ExhaustedRetriesError(ServiceError):
    """All retry attempts failed with transient errors."""

    def __init__(self, service_id: str, last_error: BaseException, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            f"Service '{service_id}' failed after {attempts} attempts: {last_error}",
            service_id=service_id,
        )


class AcquisitionTimeoutError(ServiceError):
    """Connection pool could not supply a connection in time."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Pool '{service_id}' could not supply a connection within {timeout}s",
            service_id=service_id,
        )


class PoolClosedError(ServiceError):
    """Connection pool has been shut down."""

    pass


def is_transient_error(error: BaseException) -> bool:
    """
    Classify an exception as transient (worth retrying) or not.

    Follows SQLAlchemy's ``orig`` and the ``__cause__`` chain so that driver
    errors wrapped by the ORM or by our own exceptions are still recognised.
    """
    seen: set[int] = set()
    current: BaseException | None = error

    while current is not None and id(current) not in seen:
        seen.add(id(current))

        if isinstance(current, (PermanentError, ExhaustedRetriesError)):
            return False
        if isinstance(current, TransientIOError):
            return True
        if isinstance(current, (ConnectionRefusedError, socket.gaierror, TimeoutError)):
            return True
        if isinstance(current, (httpx.ConnectError, httpx.TimeoutException)):
            return True
        if isinstance(current, DBAPIError) and current.connection_invalidated:
            return True
        if any(code in str(current) for code in TRANSIENT_ERROR_CODES):
            return True

        current = getattr(current, "orig", None) or current.__cause__

    return False
