"""
Base data source for Sankhya entities.
"""

import math
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from loguru import logger
from pydantic import BaseModel

from gateway.datasource.criteria import Criteria
from gateway.datasource.normalize import EntityPage, Record, normalize_response
from gateway.services.cache import CacheManager
from gateway.services.client import SankhyaClient
from gateway.services.errors import ServiceError

M = TypeVar("M", bound=BaseModel)


class Page(BaseModel):
    """One page of normalized records."""

    items: list[Record]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def empty(cls, page: int, page_size: int) -> "Page":
        return cls(items=[], total=0, page=page, page_size=page_size, total_pages=0)

    @classmethod
    def from_entities(cls, result: EntityPage, page: int, page_size: int) -> "Page":
        """Slice the requested page out of an unpaginated result."""
        start = (page - 1) * page_size
        items = result.records[start : start + page_size]
        total = len(result.records)
        return cls(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if page_size else 0,
        )


def with_id(records: list[Record], key_field: str) -> list[Record]:
    """Add the `_id` the front end keys rows by (key field, else row index)."""
    for index, record in enumerate(records):
        record["_id"] = str(record[key_field]) if record.get(key_field) else str(index)
    return records


class SankhyaDataSource(ABC):
    """
    Abstract base class for cache-aside Sankhya fetchers.

    All data sources should:
    - Build deterministic cache keys from every effective parameter
    - Use SankhyaClient for requests (token, retries, deduplication)
    - Return Pydantic models and cache their JSON form
    - Cache a short-lived empty result when the ERP fails, then re-raise
    """

    def __init__(self, client: SankhyaClient, cache: CacheManager):
        self.client = client
        self.cache = cache

    @property
    @abstractmethod
    def root_entity(self) -> str:
        """Sankhya entity this source reads."""
        ...

    @staticmethod
    def data_set(
        root_entity: str,
        fields: Sequence[str],
        criteria: Criteria | str | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Build a loadRecords `dataSet` document."""
        data_set: dict[str, Any] = {
            "rootEntity": root_entity,
            "includePresentationFields": "N",
            "entity": {"fieldset": {"list": ", ".join(fields)}},
        }

        if limit is None:
            data_set["offsetPage"] = None
            data_set["disableRowsLimit"] = True
        else:
            data_set["offsetPage"] = "0"
            data_set["limit"] = str(limit)

        if criteria is not None:
            expression = criteria.build() if isinstance(criteria, Criteria) else criteria
            data_set["criteria"] = {"expression": {"$": expression}}

        if order_by:
            data_set["orderBy"] = {"expression": {"$": order_by}}

        return data_set

    async def query(
        self,
        fields: Sequence[str],
        criteria: Criteria | str | None = None,
        order_by: str | None = None,
        limit: int | None = None,
        dedupe: bool = False,
        root_entity: str | None = None,
    ) -> EntityPage:
        """Run loadRecords and normalize the positional response."""
        data_set = self.data_set(
            root_entity or self.root_entity, fields, criteria, order_by, limit
        )
        response = await self.client.load_records(data_set, dedupe=dedupe)
        return normalize_response(response)

    async def cached(
        self,
        key: str,
        ttl: timedelta,
        fetch: Callable[[], Awaitable[Any]],
        empty: Any = None,
        error_ttl: timedelta | None = None,
    ) -> Any:
        """
        Cache-aside lookup.

        Args:
            key: Cache key
            ttl: Lifetime of a successful result
            fetch: Produces the fresh value on a miss
            empty: Sentinel cached for error_ttl when fetch fails
            error_ttl: Lifetime of the sentinel, None disables it

        Returns:
            The cached or freshly fetched value, in JSON form
        """
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        try:
            value = await fetch()
        except ServiceError as e:
            logger.warning(f"{self.root_entity} fetch failed for {key[:80]}: {e}")
            if error_ttl is not None and empty is not None:
                await self.cache.set(key, self._jsonable(empty), error_ttl)
            raise

        value = self._jsonable(value)
        await self.cache.set(key, value, ttl)
        return value

    async def cached_model(
        self,
        model: type[M],
        key: str,
        ttl: timedelta,
        fetch: Callable[[], Awaitable[M]],
        empty: M | None = None,
        error_ttl: timedelta | None = None,
    ) -> M:
        """cached() for a single Pydantic result."""
        data = await self.cached(key, ttl, fetch, empty=empty, error_ttl=error_ttl)
        return model.model_validate(data)

    @staticmethod
    def _jsonable(value: Any) -> Any:
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json")
        return value
