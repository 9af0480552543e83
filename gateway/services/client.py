"""
SankhyaClient - authenticated async HTTP client for the Sankhya gateway.

Combines:
- TokenManager for the shared bearer token
- RequestDeduplicator for concurrent identical queries
- ApiLogRecorder for per-attempt observability

Retry policy:
- 401/403: purge the token, retry once with a fresh one
- connect/timeout failures and 5xx: linear backoff, max_retries times
- other 4xx: fail immediately
"""

import asyncio
import time
from typing import Any, Sequence

import httpx
from loguru import logger

from gateway.services.api_log import ApiLogRecorder
from gateway.services.deduplicator import RequestDeduplicator, request_key
from gateway.services.errors import (
    AuthError,
    RequestFailedError,
    ServiceUnavailableError,
    SessionExpiredError,
    TokenUnavailableError,
)
from gateway.services.token_manager import TokenManager
from gateway.settings import Settings


def build_save_values(fields: Sequence[str], values: dict[str, Any]) -> dict[str, Any]:
    """
    Positional value map for DatasetSP.save.

    Keys are the ordinal of each field in `fields`; fields absent from
    `values` (typically the primary key at ordinal 0) are left out.
    """
    return {str(i): values[name] for i, name in enumerate(fields) if name in values}


class SankhyaClient:
    """
    Executes authenticated calls against the Sankhya API.

    Usage:
        client = SankhyaClient(token_manager, settings)

        data = await client.load_records({
            "rootEntity": "Produto",
            "entity": {"fieldset": {"list": "CODPROD, DESCRPROD"}},
        })
    """

    def __init__(
        self,
        token_manager: TokenManager,
        settings: Settings,
        recorder: ApiLogRecorder | None = None,
        deduplicator: RequestDeduplicator | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.token_manager = token_manager
        self.settings = settings
        self.recorder = recorder
        self.deduplicator = deduplicator or RequestDeduplicator(debug=settings.debug)

        self.max_retries = settings.request_max_retries
        self.retry_delay = settings.request_retry_delay
        self.session_retry_delay = settings.session_retry_delay

        # HTTP client (lazy initialization)
        self._http_client = http_client

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.request_timeout),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
            )
        return self._http_client

    async def execute(
        self,
        url: str,
        method: str = "POST",
        body: Any = None,
        retry_count: int = 0,
        timeout: float | None = None,
    ) -> Any:
        """
        Make an authenticated request.

        Args:
            url: Full URL to request
            method: HTTP method
            body: JSON body (ignored for GET)
            retry_count: Attempts already made for this logical request
            timeout: Override request timeout

        Returns:
            Decoded JSON response

        Raises:
            TokenUnavailableError: If no token could be obtained
            SessionExpiredError: If still unauthorized after one refresh
            ServiceUnavailableError: If 5xx/network failures outlast the retries
            RequestFailedError: For other 4xx responses
        """
        method = method.upper()
        started = time.monotonic()
        token: str | None = None

        try:
            token = await self.token_manager.get_token()
            client = await self._get_http_client()
            response = await client.request(
                method=method,
                url=url,
                json=body if method != "GET" else None,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
                timeout=timeout or self.settings.request_timeout,
            )

        except AuthError as e:
            self._report(method, url, e.status, started, False, str(e))
            raise TokenUnavailableError(e) from e

        except (httpx.TimeoutException, httpx.ConnectError) as e:
            self._report(method, url, None, started, token is not None, repr(e))
            if retry_count < self.max_retries:
                await self._backoff(url, retry_count)
                return await self.execute(url, method, body, retry_count + 1, timeout)

            logger.error(f"Sankhya request failed: {method} {url}: {e!r}")
            if isinstance(e, httpx.TimeoutException):
                raise ServiceUnavailableError("Response time exceeded, please try again") from e
            raise ServiceUnavailableError(f"Could not reach Sankhya: {e}") from e

        except httpx.RequestError as e:
            self._report(method, url, None, started, token is not None, repr(e))
            logger.error(f"Sankhya request failed: {method} {url}: {e!r}")
            raise ServiceUnavailableError(f"Communication error with Sankhya: {e}") from e

        status = response.status_code

        if status in (401, 403):
            self._report(method, url, status, started, True, "unauthorized")
            await self.token_manager.invalidate(include_lock=False)

            if retry_count < 1:
                logger.info("Sankhya token rejected, retrying with a new token...")
                await asyncio.sleep(self.session_retry_delay)
                return await self.execute(url, method, body, retry_count + 1, timeout)

            raise SessionExpiredError(status)

        if status >= 500:
            self._report(method, url, status, started, True, self._error_body(response))
            if retry_count < self.max_retries:
                await self._backoff(url, retry_count)
                return await self.execute(url, method, body, retry_count + 1, timeout)

            logger.error(f"Sankhya request failed: {method} {url}: HTTP {status}")
            raise ServiceUnavailableError(
                "Service temporarily unavailable, please try again", status=status
            )

        if status >= 400:
            error_body = self._error_body(response)
            self._report(method, url, status, started, True, error_body)
            logger.error(f"Sankhya request rejected: {method} {url}: HTTP {status}")
            raise RequestFailedError(status, error_body)

        try:
            data = response.json()
        except ValueError as e:
            self._report(method, url, status, started, True, "invalid JSON body")
            raise RequestFailedError(status, "invalid JSON body") from e

        self._report(method, url, status, started, True)
        return data

    async def load_records(
        self, data_set: dict[str, Any], dedupe: bool = False
    ) -> dict[str, Any]:
        """
        Run CRUDServiceProvider.loadRecords.

        Args:
            data_set: The `dataSet` document (root entity, fieldset, criteria, orderBy)
            dedupe: Share one outbound call among identical concurrent queries
        """
        url = self.settings.load_records_url
        payload = {"requestBody": {"dataSet": data_set}}

        if dedupe:
            return await self.deduplicator.dedupe(
                request_key("POST", url, payload),
                lambda: self.execute(url, "POST", payload),
            )
        return await self.execute(url, "POST", payload)

    async def get_json(
        self, url: str, dedupe: bool = False, timeout: float | None = None
    ) -> Any:
        """Authenticated GET."""
        if dedupe:
            return await self.deduplicator.dedupe(
                request_key("GET", url),
                lambda: self.execute(url, "GET", timeout=timeout),
            )
        return await self.execute(url, "GET", timeout=timeout)

    async def save_record(
        self,
        entity_name: str,
        fields: Sequence[str],
        values: dict[str, Any],
        pk: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Create (no pk) or update a record through DatasetSP.save.

        Raises:
            RequestFailedError: If the ERP reports the save as failed
        """
        record: dict[str, Any] = {"values": build_save_values(fields, values)}
        if pk:
            record["pk"] = {k: str(v) for k, v in pk.items()}

        payload = {
            "serviceName": "DatasetSP.save",
            "requestBody": {
                "entityName": entity_name,
                "standAlone": False,
                "fields": list(fields),
                "records": [record],
            },
        }

        data = await self.execute(self.settings.save_url, "POST", payload)

        if isinstance(data, dict) and str(data.get("status")) == "0":
            message = data.get("statusMessage") or "save rejected"
            raise RequestFailedError(200, str(message))
        return data

    async def _backoff(self, url: str, retry_count: int) -> None:
        delay = self.retry_delay * (retry_count + 1)
        logger.warning(
            f"Retrying Sankhya request ({retry_count + 1}/{self.max_retries}) "
            f"in {delay}s: {url[:80]}"
        )
        await asyncio.sleep(delay)

    @staticmethod
    def _error_body(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:500]
        if isinstance(data, dict) and data.get("statusMessage"):
            return str(data["statusMessage"])
        return response.text[:500]

    def _report(
        self,
        method: str,
        url: str,
        status: int | None,
        started: float,
        token_used: bool,
        error: str | None = None,
    ) -> None:
        if self.recorder is None:
            return
        try:
            self.recorder.record(
                method=method,
                url=url,
                status=status,
                duration_ms=int((time.monotonic() - started) * 1000),
                token_used=token_used,
                error=error,
            )
        except Exception as e:
            logger.debug(f"API log reporting failed: {e}")

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

        await self.deduplicator.cancel_all()
        logger.debug("SankhyaClient closed")

    async def __aenter__(self) -> "SankhyaClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of the client components."""
        return {
            "deduplicator": self.deduplicator.get_stats().to_dict(),
        }
