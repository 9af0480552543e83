"""Tests for TokenManager renewal and the login transport."""

import asyncio
import gc
from datetime import timedelta

import httpx
import pytest

from gateway.services.cache import MemoryBackend
from gateway.services.errors import AuthError, ErrorKind, LockTimeoutError
from gateway.services.token_manager import (
    LOCK_KEY,
    TOKEN_CACHE_KEY,
    Credential,
    LoginTransport,
    TokenManager,
    utcnow,
)


class CountingLogin:
    """Login stub that counts calls and can fail a given number of times."""

    def __init__(self, delay: float = 0.0, failures: list[AuthError] | None = None):
        self.calls = 0
        self.delay = delay
        self.failures = list(failures or [])

    async def __call__(self) -> str:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return f"token-{self.calls}"


def make_manager(backend, login, **kwargs) -> TokenManager:
    options = {
        "lock_ttl": 2.0,
        "lock_poll_interval": 0.01,
        "lock_wait_timeout": 1.0,
        "retry_delay": 0.01,
    }
    options.update(kwargs)
    return TokenManager(backend, login=login, **options)


class TestGetToken:
    async def test_first_call_logs_in_and_stores(self):
        backend = MemoryBackend()
        login = CountingLogin()
        manager = make_manager(backend, login)

        assert await manager.get_token() == "token-1"
        assert await manager.get_token() == "token-1"
        assert login.calls == 1

        stored = Credential.model_validate(await backend.get(TOKEN_CACHE_KEY))
        assert stored.token == "token-1"
        assert stored.expires_at - stored.issued_at == timedelta(minutes=20)

    async def test_concurrent_callers_share_one_login(self):
        login = CountingLogin(delay=0.05)
        manager = make_manager(MemoryBackend(), login)

        tokens = await asyncio.gather(*(manager.get_token() for _ in range(20)))

        assert login.calls == 1
        assert set(tokens) == {"token-1"}

    async def test_instances_sharing_a_store_log_in_once(self):
        backend = MemoryBackend()
        login = CountingLogin(delay=0.05)
        managers = [make_manager(backend, login) for _ in range(3)]

        tokens = await asyncio.gather(*(m.get_token() for m in managers for _ in range(5)))

        assert login.calls == 1
        assert set(tokens) == {"token-1"}

    async def test_expired_credential_is_never_returned(self):
        backend = MemoryBackend()
        past = utcnow() - timedelta(minutes=30)
        stale = Credential(token="old", issued_at=past, expires_at=past + timedelta(minutes=20))
        await backend.set(TOKEN_CACHE_KEY, stale.model_dump(mode="json"), 3600)
        manager = make_manager(backend, CountingLogin())

        assert await manager.get_token() == "token-1"

    async def test_malformed_credential_is_discarded(self):
        backend = MemoryBackend()
        await backend.set(TOKEN_CACHE_KEY, {"token": "x"}, 3600)
        manager = make_manager(backend, CountingLogin())

        assert await manager.get_token() == "token-1"

    async def test_force_refresh(self):
        login = CountingLogin()
        manager = make_manager(MemoryBackend(), login)
        await manager.get_token()

        assert await manager.get_token(force_refresh=True) == "token-2"
        assert login.calls == 2

    async def test_renewal_survives_cancelled_caller(self):
        login = CountingLogin(delay=0.05)
        manager = make_manager(MemoryBackend(), login)

        first = asyncio.create_task(manager.get_token())
        await asyncio.sleep(0.01)
        second = asyncio.create_task(manager.get_token())
        await asyncio.sleep(0)
        first.cancel()

        assert await second == "token-1"
        assert login.calls == 1


class TestRenewalFailures:
    async def test_retries_server_errors(self):
        failures = [
            AuthError("down", kind=ErrorKind.SERVICE_UNAVAILABLE, status=503),
            AuthError("down", kind=ErrorKind.SERVICE_UNAVAILABLE, status=502),
        ]
        login = CountingLogin(failures=failures)
        manager = make_manager(MemoryBackend(), login)

        assert await manager.get_token() == "token-3"
        assert login.calls == 3

    async def test_gives_up_after_max_retries(self):
        failures = [
            AuthError("down", kind=ErrorKind.SERVICE_UNAVAILABLE, status=500)
            for _ in range(4)
        ]
        backend = MemoryBackend()
        login = CountingLogin(failures=failures)
        manager = make_manager(backend, login, max_retries=3)

        with pytest.raises(AuthError) as exc_info:
            await manager.get_token()

        assert exc_info.value.kind == ErrorKind.SERVICE_UNAVAILABLE
        assert login.calls == 4
        assert await backend.get(TOKEN_CACHE_KEY) is None
        assert await backend.get(LOCK_KEY) is None

    async def test_bad_credentials_not_retried(self):
        login = CountingLogin(failures=[AuthError("denied", status=401)])
        manager = make_manager(MemoryBackend(), login)

        with pytest.raises(AuthError) as exc_info:
            await manager.get_token()

        assert exc_info.value.kind == ErrorKind.AUTH_FAILED
        assert login.calls == 1

    async def test_next_call_after_failure_renews_again(self):
        login = CountingLogin(failures=[AuthError("denied", status=401)])
        manager = make_manager(MemoryBackend(), login)

        with pytest.raises(AuthError):
            await manager.get_token()

        assert await manager.get_token() == "token-2"

    async def test_failure_without_waiters_is_retrieved(self):
        loop = asyncio.get_running_loop()
        reported = []
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(lambda loop, context: reported.append(context))
        login = CountingLogin(delay=0.02, failures=[AuthError("denied", status=401)])
        manager = make_manager(MemoryBackend(), login)

        try:
            caller = asyncio.create_task(manager.get_token())
            await asyncio.sleep(0.005)
            renewal = manager._renewal
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller

            await asyncio.wait([renewal])
            assert renewal.done() and login.calls == 1
            del renewal, caller
            gc.collect()
            await asyncio.sleep(0)
        finally:
            loop.set_exception_handler(previous_handler)

        assert not [c for c in reported if "never retrieved" in c.get("message", "")]

    async def test_lock_timeout(self):
        backend = MemoryBackend()
        await backend.set(LOCK_KEY, "someone-else", 60)
        login = CountingLogin()
        manager = make_manager(backend, login, lock_wait_timeout=0.05)

        with pytest.raises(LockTimeoutError):
            await manager.get_token()

        assert login.calls == 0

    async def test_waiter_picks_up_token_written_by_lock_holder(self):
        backend = MemoryBackend()
        await backend.set(LOCK_KEY, "someone-else", 60)
        login = CountingLogin()
        manager = make_manager(backend, login)

        async def other_instance_finishes():
            await asyncio.sleep(0.05)
            now = utcnow()
            credential = Credential(
                token="shared", issued_at=now, expires_at=now + timedelta(minutes=20)
            )
            await backend.set(TOKEN_CACHE_KEY, credential.model_dump(mode="json"), 60)

        writer = asyncio.create_task(other_instance_finishes())
        assert await manager.get_token() == "shared"
        assert login.calls == 0
        await writer


class TestInvalidateAndStatus:
    async def test_invalidate(self):
        backend = MemoryBackend()
        manager = make_manager(backend, CountingLogin())
        await manager.get_token()
        await backend.set(LOCK_KEY, "stale", 60)

        await manager.invalidate(include_lock=False)
        assert await backend.get(TOKEN_CACHE_KEY) is None
        assert await backend.get(LOCK_KEY) == "stale"

        await manager.invalidate()
        assert await backend.get(LOCK_KEY) is None

    async def test_status(self):
        manager = make_manager(MemoryBackend(), CountingLogin())
        assert await manager.get_status() is None

        await manager.get_token()
        status = await manager.get_status()

        assert status.active is True
        assert status.token == "token-1"
        assert 19 <= status.remaining_minutes <= 20


class TestLoginTransport:
    def transport(self, handler) -> LoginTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return LoginTransport(
            "https://erp.test/login", {"appkey": "k"}, http_client=client
        )

    async def test_bearer_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["appkey"] = request.headers["appkey"]
            return httpx.Response(200, json={"bearerToken": "abc"})

        assert await self.transport(handler).login() == "abc"
        assert seen["appkey"] == "k"

    async def test_token_field_fallback(self):
        transport = self.transport(lambda r: httpx.Response(200, json={"token": "xyz"}))
        assert await transport.login() == "xyz"

    async def test_missing_token(self):
        transport = self.transport(lambda r: httpx.Response(200, json={"error": "?"}))

        with pytest.raises(AuthError) as exc_info:
            await transport.login()
        assert exc_info.value.kind == ErrorKind.AUTH_FAILED

    async def test_server_error_is_unavailable(self):
        transport = self.transport(lambda r: httpx.Response(503, text="busy"))

        with pytest.raises(AuthError) as exc_info:
            await transport.login()
        assert exc_info.value.kind == ErrorKind.SERVICE_UNAVAILABLE
        assert exc_info.value.status == 503

    async def test_rejected_credentials(self):
        transport = self.transport(lambda r: httpx.Response(401, text="no"))

        with pytest.raises(AuthError) as exc_info:
            await transport.login()
        assert exc_info.value.kind == ErrorKind.AUTH_FAILED
