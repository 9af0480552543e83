"""
Products data source: catalogue search, stock per location and list price.
"""

from datetime import timedelta

from loguru import logger
from pydantic import BaseModel, Field

from gateway.datasource.base import Page, SankhyaDataSource, with_id
from gateway.datasource.criteria import Criteria
from gateway.datasource.normalize import Record
from gateway.services.errors import ServiceError

PRODUCT_FIELDS = [
    "CODPROD",
    "DESCRPROD",
    "ATIVO",
    "LOCAL",
    "MARCA",
    "CARACTERISTICAS",
    "UNIDADE",
    "VLRCOMERC",
]

STOCK_FIELDS = ["ESTOQUE", "CODPROD", "ATIVO", "CONTROLE", "CODLOCAL"]


class Stock(BaseModel):
    """Stock rows of one product and their summed quantity."""

    items: list[Record] = Field(default_factory=list)
    total: int = 0
    stock_total: float = 0.0


def _to_float(value: object) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


class ProductSource(SankhyaDataSource):
    """
    Product catalogue.

    Stock and price are not part of the list; they are loaded per product
    on demand, so the list carries a "0" ESTOQUE placeholder.
    """

    LIST_TTL = timedelta(hours=1)
    STOCK_TTL = timedelta(seconds=30)
    STOCK_ERROR_TTL = timedelta(seconds=15)
    PRICE_TTL = timedelta(minutes=5)
    ERROR_TTL = timedelta(minutes=1)

    @property
    def root_entity(self) -> str:
        return "Produto"

    async def list_products(
        self,
        page: int = 1,
        page_size: int = 50,
        search_name: str = "",
        search_code: str = "",
    ) -> Page:
        search_name = search_name.strip()
        search_code = search_code.strip()
        key = self.cache.generate_key(
            "products:list", page, page_size, search_name.upper(), search_code
        )

        criteria = Criteria()
        if search_code:
            criteria.eq_text("CODPROD", search_code)
        if search_name:
            criteria.contains("DESCRPROD", search_name)

        async def fetch() -> Page:
            result = await self.query(PRODUCT_FIELDS, criteria, dedupe=True)
            for product in result.records:
                product["ESTOQUE"] = "0"
                product.setdefault("VLRCOMERC", "0")
            with_id(result.records, "CODPROD")
            return Page.from_entities(result, page, page_size)

        return await self.cached_model(
            Page,
            key,
            self.LIST_TTL,
            fetch,
            empty=Page.empty(page, page_size),
            error_ttl=self.ERROR_TTL,
        )

    async def get_stock(self, cod_prod: str, local: str = "") -> Stock:
        """Stock of a product in controlled locations, optionally one location."""
        local = local.strip()
        key = self.cache.generate_key("products:stock", cod_prod, local)

        criteria = Criteria().eq("CODPROD", cod_prod)
        if local:
            criteria.eq("CODLOCAL", local)
        criteria.eq_text("CONTROLE", "E")

        async def fetch() -> Stock:
            result = await self.query(
                STOCK_FIELDS, criteria, limit=100, root_entity="Estoque"
            )
            return Stock(
                items=result.records,
                total=len(result.records),
                stock_total=sum(_to_float(r.get("ESTOQUE")) for r in result.records),
            )

        return await self.cached_model(
            Stock,
            key,
            self.STOCK_TTL,
            fetch,
            empty=Stock(),
            error_ttl=self.STOCK_ERROR_TTL,
        )

    async def get_price(self, cod_prod: str, price_table: int = 0) -> float:
        """
        List price of a product in a price table.

        Never raises; an unavailable price reads as 0 and is not cached.
        """
        key = self.cache.generate_key("products:price", cod_prod, price_table)
        cached = await self.cache.get(key)
        if cached is not None:
            return float(cached)

        url = self.client.settings.price_url(cod_prod, price_table)
        try:
            data = await self.client.get_json(
                url, dedupe=True, timeout=self.client.settings.price_timeout
            )
        except ServiceError as e:
            logger.error(f"Failed to fetch price of product {cod_prod}: {e}")
            return 0.0

        products = data.get("produtos") if isinstance(data, dict) else None
        price = _to_float(products[0].get("valor")) if products else 0.0

        await self.cache.set(key, price, self.PRICE_TTL)
        return price
