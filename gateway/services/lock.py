"""
DistributedLock - cross-process mutual exclusion on top of the shared cache.

The lock record holds a random owner token and a TTL. Acquisition is a
bounded polling loop (poll_interval, wait_timeout); a holder that dies
without releasing is recovered by the TTL. Release only deletes the record
while it still carries this holder's token.
"""

import asyncio
import time
import uuid
from typing import Awaitable, Callable

from loguru import logger

from gateway.services.cache import CacheBackend
from gateway.services.errors import LockTimeoutError


class DistributedLock:
    """
    Lock keyed by a fixed name in the shared cache.

    Usage:
        lock = DistributedLock(backend, "sankhya:token:lock")

        if await lock.acquire():
            try:
                ...
            finally:
                await lock.release()
    """

    def __init__(
        self,
        backend: CacheBackend,
        name: str,
        ttl: float = 30.0,
        poll_interval: float = 0.5,
        wait_timeout: float = 25.0,
        debug: bool = False,
    ):
        self.backend = backend
        self.name = name
        self.ttl = ttl
        self.poll_interval = poll_interval
        self.wait_timeout = wait_timeout
        self._debug = debug
        self._owner: str | None = None

    @property
    def owner(self) -> str | None:
        return self._owner

    @property
    def is_held(self) -> bool:
        return self._owner is not None

    async def try_acquire(self) -> bool:
        """Single attempt, never waits."""
        owner = f"{time.time():.3f}-{uuid.uuid4().hex}"
        if await self.backend.set_if_absent(self.name, owner, self.ttl):
            self._owner = owner
            self._log(f"ACQUIRED: {self.name}")
            return True
        return False

    async def acquire(
        self,
        stop_waiting: Callable[[], Awaitable[bool]] | None = None,
    ) -> bool:
        """
        Poll until the lock is held.

        Args:
            stop_waiting: Checked after every poll interval; when it returns
                True the wait is abandoned.

        Returns:
            True once held, False if `stop_waiting` ended the wait.

        Raises:
            LockTimeoutError: If wait_timeout elapses first.
        """
        started = time.monotonic()

        while True:
            try:
                if await self.try_acquire():
                    return True
            except Exception as e:
                logger.error(f"Error trying to acquire lock {self.name}: {e}")

            waited = time.monotonic() - started
            if waited >= self.wait_timeout:
                logger.warning(
                    f"Could not acquire lock {self.name} within {self.wait_timeout}s"
                )
                raise LockTimeoutError(waited)

            self._log(f"WAIT: {self.name} held elsewhere, retrying")
            await asyncio.sleep(min(self.poll_interval, self.wait_timeout - waited))

            if stop_waiting is not None and await stop_waiting():
                self._log(f"ABANDON: {self.name} no longer needed")
                return False

    async def release(self) -> bool:
        """
        Release the lock if this instance still owns it.

        Returns False when the record expired or now belongs to someone else.
        """
        owner, self._owner = self._owner, None
        if owner is None:
            return False

        try:
            released = await self.backend.delete_if_equals(self.name, owner)
        except Exception as e:
            logger.error(f"Error releasing lock {self.name}: {e}")
            return False

        if released:
            self._log(f"RELEASED: {self.name}")
        else:
            logger.warning(f"Lock {self.name} expired before release")
        return released

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[DistributedLock] {message}")
