"""
Service layer infrastructure - token lifecycle and resilient calls to Sankhya.

Provides:
- CacheManager / CacheBackend: shared cache store (Redis or in-memory)
- DistributedLock: TTL-based cross-process lock on the shared cache
- TokenManager: single-flight bearer token acquisition and renewal
- RequestDeduplicator: prevents duplicate concurrent requests
- SankhyaClient: authenticated executor with retry and backoff
- ApiLogRecorder: per-attempt request log
"""

from gateway.services.errors import (
    ErrorKind,
    ServiceError,
    AuthError,
    LockTimeoutError,
    RequestError,
    ServiceUnavailableError,
    SessionExpiredError,
    RequestFailedError,
    TokenUnavailableError,
)
from gateway.services.cache import (
    CacheBackend,
    CacheManager,
    MemoryBackend,
    RedisBackend,
    create_backend,
)
from gateway.services.lock import DistributedLock
from gateway.services.token_manager import (
    Credential,
    LoginTransport,
    TokenManager,
    TokenStatus,
)
from gateway.services.deduplicator import RequestDeduplicator, request_key
from gateway.services.api_log import ApiLogEntry, ApiLogRecorder
from gateway.services.client import SankhyaClient

__all__ = [
    # Errors
    "ErrorKind",
    "ServiceError",
    "AuthError",
    "LockTimeoutError",
    "RequestError",
    "ServiceUnavailableError",
    "SessionExpiredError",
    "RequestFailedError",
    "TokenUnavailableError",
    # Cache
    "CacheBackend",
    "CacheManager",
    "MemoryBackend",
    "RedisBackend",
    "create_backend",
    # Lock and token
    "DistributedLock",
    "Credential",
    "LoginTransport",
    "TokenManager",
    "TokenStatus",
    # Deduplicator
    "RequestDeduplicator",
    "request_key",
    # Observability
    "ApiLogEntry",
    "ApiLogRecorder",
    # Client
    "SankhyaClient",
]
