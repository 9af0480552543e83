"""
Service layer exceptions.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure classes surfaced by the Sankhya service layer."""

    AUTH_FAILED = "AUTH_FAILED"  # Bad credentials or unexpected login shape
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"  # 5xx or network-level
    SESSION_EXPIRED = "SESSION_EXPIRED"  # 401/403 after one token refresh
    LOCK_TIMEOUT = "LOCK_TIMEOUT"  # Renewal lock not obtained in time
    REQUEST_FAILED = "REQUEST_FAILED"  # Any other 4xx

    @property
    def is_transient(self) -> bool:
        return self in (ErrorKind.SERVICE_UNAVAILABLE, ErrorKind.LOCK_TIMEOUT)


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.REQUEST_FAILED,
        status: int | None = None,
    ):
        self.kind = kind
        self.status = status
        super().__init__(message)


class AuthError(ServiceError):
    """Token acquisition or renewal failed."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.AUTH_FAILED,
        status: int | None = None,
    ):
        super().__init__(message, kind=kind, status=status)


class LockTimeoutError(AuthError):
    """Renewal lock could not be acquired within the wait ceiling."""

    def __init__(self, waited_seconds: float):
        self.waited_seconds = waited_seconds
        super().__init__(
            f"lock timeout after {waited_seconds:.1f}s",
            kind=ErrorKind.LOCK_TIMEOUT,
        )


class RequestError(ServiceError):
    """Authenticated request to the ERP failed."""

    pass


class ServiceUnavailableError(RequestError):
    """Service is temporarily unavailable."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message, kind=ErrorKind.SERVICE_UNAVAILABLE, status=status)


class SessionExpiredError(RequestError):
    """Authorization still rejected after one token refresh."""

    def __init__(self, status: int | None = None):
        super().__init__(
            "Session expired, please try again",
            kind=ErrorKind.SESSION_EXPIRED,
            status=status,
        )


class RequestFailedError(RequestError):
    """Request rejected by the ERP, not retried."""

    def __init__(self, status: int, body: str = ""):
        self.body = body
        super().__init__(
            f"HTTP {status}: {body[:200]}",
            kind=ErrorKind.REQUEST_FAILED,
            status=status,
        )


class TokenUnavailableError(RequestError):
    """No token could be obtained for the request. Keeps the login failure's kind."""

    def __init__(self, error: AuthError):
        super().__init__(str(error), kind=error.kind, status=error.status)
