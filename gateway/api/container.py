"""
Wiring of the service layer and data sources for one process.
"""

from dataclasses import dataclass
from datetime import timedelta

import httpx
from loguru import logger

from gateway.datasource.operation_types import OperationTypeSource
from gateway.datasource.orders import OrderSource
from gateway.datasource.partners import PartnerSource
from gateway.datasource.products import ProductSource
from gateway.datasource.receivables import ReceivableSource
from gateway.services import (
    ApiLogRecorder,
    CacheBackend,
    CacheManager,
    LoginTransport,
    RequestDeduplicator,
    SankhyaClient,
    TokenManager,
    create_backend,
)
from gateway.settings import Settings


@dataclass
class GatewayServices:
    settings: Settings
    backend: CacheBackend
    cache: CacheManager
    recorder: ApiLogRecorder
    login: LoginTransport
    token_manager: TokenManager
    client: SankhyaClient
    partners: PartnerSource
    products: ProductSource
    operation_types: OperationTypeSource
    receivables: ReceivableSource
    orders: OrderSource

    async def close(self) -> None:
        await self.client.close()
        await self.login.close()
        await self.recorder.flush()
        await self.backend.close()
        logger.info("Gateway services closed")


def build_services(
    settings: Settings,
    backend: CacheBackend | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> GatewayServices:
    """
    Build the process-wide service graph.

    Args:
        settings: Loaded settings
        backend: Shared cache store, created from settings when omitted
        http_client: HTTP client shared by login and data calls (tests
            pass one with a mock transport)
    """
    backend = backend or create_backend(settings)
    cache = CacheManager(backend, debug=settings.debug)
    recorder = ApiLogRecorder(max_entries=settings.api_log_max_entries)

    login = LoginTransport(
        settings.login_url,
        settings.login_headers,
        timeout=settings.login_timeout,
        http_client=http_client,
    )
    token_manager = TokenManager(
        backend,
        login=login.login,
        lifetime=timedelta(seconds=settings.token_lifetime_seconds),
        cache_margin=timedelta(seconds=settings.token_cache_margin_seconds),
        lock_ttl=settings.lock_ttl_seconds,
        lock_poll_interval=settings.lock_poll_interval,
        lock_wait_timeout=settings.lock_wait_timeout,
        max_retries=settings.login_max_retries,
        retry_delay=settings.login_retry_delay,
        debug=settings.debug,
    )
    client = SankhyaClient(
        token_manager,
        settings,
        recorder=recorder,
        deduplicator=RequestDeduplicator(debug=settings.debug),
        http_client=http_client,
    )

    partners = PartnerSource(client, cache)
    return GatewayServices(
        settings=settings,
        backend=backend,
        cache=cache,
        recorder=recorder,
        login=login,
        token_manager=token_manager,
        client=client,
        partners=partners,
        products=ProductSource(client, cache),
        operation_types=OperationTypeSource(client, cache),
        receivables=ReceivableSource(client, cache, partners),
        orders=OrderSource(client, cache, partners),
    )
