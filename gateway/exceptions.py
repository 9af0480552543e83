"""
HTTP exceptions and the mapping from service errors
"""

from fastapi import HTTPException, status

from gateway.services.errors import ErrorKind, ServiceError


class ValidationError(HTTPException):
    """Validation error exception"""

    def __init__(self, detail: str = "Validation error"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class UnauthorizedError(HTTPException):
    """Unauthorized error exception"""

    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class UpstreamError(HTTPException):
    """The ERP rejected the request"""

    def __init__(self, detail: str = "Upstream request failed"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


class UpstreamUnavailableError(HTTPException):
    """The ERP (or the token lock) is temporarily unavailable"""

    def __init__(self, detail: str = "Upstream service unavailable"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail
        )


def to_http_error(error: ServiceError) -> HTTPException:
    """Map a service error to the HTTP answer of write and admin endpoints."""
    if error.kind in (ErrorKind.SESSION_EXPIRED, ErrorKind.AUTH_FAILED):
        return UnauthorizedError(str(error))
    if error.kind.is_transient:
        return UpstreamUnavailableError(str(error))
    return UpstreamError(str(error))
