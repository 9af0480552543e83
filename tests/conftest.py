"""Shared fixtures."""

import pytest

from gateway.api.container import build_services
from gateway.services.cache import MemoryBackend
from gateway.settings import Settings
from tests.helpers import BASE_URL, FakeSankhya


@pytest.fixture
def settings() -> Settings:
    """Settings with fast retry and lock timings."""
    return Settings(
        sankhya_base_url=BASE_URL,
        sankhya_token="t",
        sankhya_appkey="k",
        sankhya_username="u",
        sankhya_password="p",
        request_retry_delay=0.01,
        session_retry_delay=0.01,
        login_retry_delay=0.01,
        lock_poll_interval=0.01,
        lock_wait_timeout=1.0,
        lock_ttl_seconds=2.0,
    )


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def erp() -> FakeSankhya:
    return FakeSankhya()


@pytest.fixture
async def services(settings, backend, erp):
    services = build_services(settings, backend=backend, http_client=erp.http_client())
    yield services
    await services.close()
