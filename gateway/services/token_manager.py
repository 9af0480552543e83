"""
TokenManager - lifecycle of the shared Sankhya bearer token.

The credential lives only in the shared cache. Renewal is single-flight
twice over:
- within a process, concurrent callers share one renewal task
- across processes, renewal runs under a DistributedLock and waiters pick up
  the token written by whichever instance won
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from gateway.services.cache import CacheBackend
from gateway.services.errors import AuthError, ErrorKind, LockTimeoutError
from gateway.services.lock import DistributedLock

TOKEN_CACHE_KEY = "sankhya:token"
LOCK_KEY = "sankhya:token:lock"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def token_preview(token: str | None) -> str | None:
    return f"{token[:12]}..." if token else None


def _retrieve_failure(task: asyncio.Task) -> None:
    """Mark a renewal failure as seen even when every waiter was cancelled."""
    if not task.cancelled():
        task.exception()


class Credential(BaseModel):
    """Bearer token as persisted in the shared cache."""

    token: str
    issued_at: datetime
    expires_at: datetime

    def is_valid(self, now: datetime | None = None) -> bool:
        return bool(self.token) and (now or utcnow()) < self.expires_at


class TokenStatus(BaseModel):
    """Snapshot of the current credential for the admin panel."""

    active: bool
    token: str | None
    issued_at: datetime
    expires_at: datetime
    remaining_ms: int
    remaining_minutes: int


class LoginTransport:
    """POSTs the static Sankhya credentials to the login endpoint."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str],
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.headers = headers
        self.timeout = timeout
        self._http_client = http_client

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._http_client

    async def login(self) -> str:
        """
        Request a new bearer token.

        Raises:
            AuthError: SERVICE_UNAVAILABLE for 5xx and network failures,
                AUTH_FAILED for everything else.
        """
        client = await self._get_http_client()

        try:
            response = await client.post(
                self.url, json={}, headers=self.headers, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            kind = ErrorKind.SERVICE_UNAVAILABLE if status >= 500 else ErrorKind.AUTH_FAILED
            raise AuthError(
                f"Sankhya login failed: HTTP {status}: {e.response.text[:200]}",
                kind=kind,
                status=status,
            ) from e

        except httpx.RequestError as e:
            raise AuthError(
                f"Sankhya login failed: {e}", kind=ErrorKind.SERVICE_UNAVAILABLE
            ) from e

        except ValueError as e:
            raise AuthError("Sankhya login returned a non-JSON body") from e

        token = None
        if isinstance(data, dict):
            token = data.get("bearerToken") or data.get("token")
        if not token or not isinstance(token, str):
            raise AuthError("Sankhya login response did not contain a token")

        return token

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class TokenManager:
    """
    Hands out a valid bearer token, renewing it when needed.

    Usage:
        manager = TokenManager(backend, login=transport.login)
        token = await manager.get_token()

        # After a 401/403 from the ERP
        await manager.invalidate()
    """

    def __init__(
        self,
        backend: CacheBackend,
        login: Callable[[], Awaitable[str]],
        lifetime: timedelta = timedelta(minutes=20),
        cache_margin: timedelta = timedelta(seconds=30),
        lock_ttl: float = 30.0,
        lock_poll_interval: float = 0.5,
        lock_wait_timeout: float = 25.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        debug: bool = False,
    ):
        self.backend = backend
        self._login = login
        self.lifetime = lifetime
        self.cache_margin = cache_margin
        self.lock_ttl = lock_ttl
        self.lock_poll_interval = lock_poll_interval
        self.lock_wait_timeout = lock_wait_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._debug = debug

        # Advisory only, never consulted in place of the shared cache
        self._renewal: asyncio.Task[str] | None = None

    def _new_lock(self) -> DistributedLock:
        return DistributedLock(
            self.backend,
            LOCK_KEY,
            ttl=self.lock_ttl,
            poll_interval=self.lock_poll_interval,
            wait_timeout=self.lock_wait_timeout,
            debug=self._debug,
        )

    async def get_token(self, force_refresh: bool = False) -> str:
        """
        Return a valid bearer token.

        Raises:
            AuthError: If renewal could not complete.
        """
        if force_refresh:
            await self._delete_credential()
            logger.info("Forcing Sankhya token renewal...")
        else:
            credential = await self._read_valid()
            if credential:
                return credential.token

        if self._renewal is None:
            self._renewal = asyncio.create_task(self._renew())
            self._renewal.add_done_callback(_retrieve_failure)
        else:
            self._log("Awaiting token renewal already in progress")

        # A cancelled caller must not cancel the renewal other callers await
        return await asyncio.shield(self._renewal)

    async def invalidate(self, include_lock: bool = True) -> None:
        """
        Drop the cached credential.

        Args:
            include_lock: Also remove a renewal lock left behind. Request
                retries after a 401/403 only purge the credential.
        """
        try:
            await self.backend.delete(TOKEN_CACHE_KEY)
            if include_lock:
                await self.backend.delete(LOCK_KEY)
            logger.info("Sankhya token invalidated")
        except Exception as e:
            logger.error(f"Error invalidating Sankhya token: {e}")

    async def get_status(self) -> TokenStatus | None:
        """Describe the stored credential without renewing it."""
        credential = await self._read()
        if credential is None:
            return None

        remaining_ms = int((credential.expires_at - utcnow()).total_seconds() * 1000)
        active = remaining_ms > 0
        return TokenStatus(
            active=active,
            token=credential.token if active else None,
            issued_at=credential.issued_at,
            expires_at=credential.expires_at,
            remaining_ms=max(0, remaining_ms),
            remaining_minutes=max(0, remaining_ms // 60000),
        )

    async def _renew(self) -> str:
        """Renew with bounded retries on 5xx login failures."""
        attempt = 0
        try:
            while True:
                try:
                    return await self._renew_once()

                except LockTimeoutError:
                    raise

                except AuthError as e:
                    if e.status is not None and e.status >= 500 and attempt < self.max_retries:
                        attempt += 1
                        delay = self.retry_delay * attempt
                        logger.warning(
                            f"Sankhya login returned HTTP {e.status}, "
                            f"retrying ({attempt}/{self.max_retries}) in {delay}s"
                        )
                        await asyncio.sleep(delay)
                        continue

                    logger.error(f"Sankhya login failed: {e}")
                    await self._delete_credential()
                    raise

                except Exception as e:
                    logger.error(f"Unexpected error during Sankhya login: {e}")
                    await self._delete_credential()
                    raise AuthError(f"Sankhya login failed: {e}") from e
        finally:
            if self._renewal is asyncio.current_task():
                self._renewal = None

    async def _renew_once(self) -> str:
        """One lock-protected renewal attempt."""
        lock = self._new_lock()
        fresh: Credential | None = None

        async def renewed_elsewhere() -> bool:
            nonlocal fresh
            fresh = await self._read_valid()
            return fresh is not None

        try:
            acquired = await lock.acquire(stop_waiting=renewed_elsewhere)
        except LockTimeoutError:
            credential = await self._read_valid()
            if credential:
                return credential.token
            raise

        if not acquired:
            logger.info("Sankhya token was renewed by another instance while waiting")
            return fresh.token

        try:
            # Someone may have finished between our first read and the lock
            credential = await self._read_valid()
            if credential:
                logger.info("Valid Sankhya token found after acquiring lock")
                return credential.token

            logger.info("Requesting new Sankhya token...")
            token = await self._login()
            now = utcnow()
            credential = Credential(
                token=token, issued_at=now, expires_at=now + self.lifetime
            )
            await self._store(credential)
            logger.info(
                f"Sankhya token renewed, expires at {credential.expires_at.isoformat()} "
                f"({token_preview(token)})"
            )
            return token
        finally:
            await lock.release()

    async def _store(self, credential: Credential) -> None:
        ttl = max(self.lifetime - self.cache_margin, timedelta(seconds=1))
        try:
            await self.backend.set(
                TOKEN_CACHE_KEY, credential.model_dump(mode="json"), ttl
            )
        except Exception as e:
            logger.error(f"Failed to persist Sankhya token: {e}")

    async def _read(self) -> Credential | None:
        try:
            data = await self.backend.get(TOKEN_CACHE_KEY)
        except Exception as e:
            logger.warning(f"Could not read Sankhya token from cache: {e}")
            return None

        if not data:
            return None

        try:
            return Credential.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Discarding malformed cached token: {e}")
            return None

    async def _read_valid(self) -> Credential | None:
        credential = await self._read()
        if credential and credential.is_valid():
            return credential
        return None

    async def _delete_credential(self) -> None:
        try:
            await self.backend.delete(TOKEN_CACHE_KEY)
        except Exception as e:
            logger.warning(f"Could not delete cached Sankhya token: {e}")

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[TokenManager] {message}")
