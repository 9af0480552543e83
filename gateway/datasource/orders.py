"""
Sales orders (CabecalhoNota with TIPMOV 'P'), scoped to the seller(s) the
user may see.
"""

import asyncio
from datetime import timedelta

from loguru import logger

from gateway.datasource.base import SankhyaDataSource, with_id
from gateway.datasource.criteria import Criteria
from gateway.datasource.normalize import Record
from gateway.datasource.partners import PartnerSource
from gateway.datasource.scope import SellerScope

ORDER_FIELDS = [
    "NUNOTA",
    "NUMNOTA",
    "CODPARC",
    "CODVEND",
    "CODEMP",
    "DTNEG",
    "VLRNOTA",
    "CODTIPOPER",
    "CODTIPVENDA",
    "STATUSNOTA",
]


class OrderSource(SankhyaDataSource):
    TTL = timedelta(minutes=1)
    ERROR_TTL = timedelta(seconds=30)

    def __init__(self, client, cache, partners: PartnerSource):
        super().__init__(client, cache)
        self.partners = partners

    @property
    def root_entity(self) -> str:
        return "CabecalhoNota"

    async def list_orders(
        self,
        scope: SellerScope,
        date_from: str = "",
        date_to: str = "",
        order_number: str = "",
        client_name: str = "",
    ) -> list[Record]:
        """
        Orders visible under `scope`, newest first, each with the partner's
        NOMEPARC. `client_name` filters on that resolved name.
        """
        if scope.is_empty:
            return []

        order_number = order_number.strip()
        client_name = client_name.strip()
        key = self.cache.generate_key(
            "orders:list",
            scope.cache_part(),
            date_from,
            date_to,
            order_number,
            client_name.upper(),
        )

        criteria = Criteria().eq_text("TIPMOV", "P")
        if scope.team_codes:
            criteria.is_in("CODVEND", scope.team_codes).not_null("CODVEND")
        elif scope.seller_code is not None:
            criteria.eq("CODVEND", scope.seller_code)
        if order_number:
            criteria.eq("NUNOTA", order_number)
        if date_from:
            criteria.date_from("DTNEG", date_from)
        if date_to:
            criteria.date_to("DTNEG", date_to)

        async def fetch() -> list[Record]:
            result = await self.query(ORDER_FIELDS, criteria, order_by="NUNOTA DESC")
            orders = await self._with_partner_names(result.records)
            if client_name:
                needle = client_name.upper()
                orders = [o for o in orders if needle in str(o.get("NOMEPARC", "")).upper()]
            logger.info(f"Loaded {len(orders)} orders ({criteria.build()})")
            return with_id(orders, "NUNOTA")

        return await self.cached(key, self.TTL, fetch, empty=[], error_ttl=self.ERROR_TTL)

    async def _with_partner_names(self, orders: list[Record]) -> list[Record]:
        codes = list(dict.fromkeys(str(o["CODPARC"]) for o in orders if o.get("CODPARC")))
        names = dict(
            zip(
                codes,
                await asyncio.gather(*(self.partners.get_partner_name(c) for c in codes)),
            )
        )
        for order in orders:
            code = str(order.get("CODPARC", ""))
            order["NOMEPARC"] = names.get(code) or f"Parceiro {code}"
        return orders
