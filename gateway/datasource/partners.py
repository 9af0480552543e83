"""
Partners (Parceiro) data source: client list, complement, team sellers and
the partner save path.
"""

from datetime import timedelta
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict

from gateway.datasource.base import Page, SankhyaDataSource, with_id
from gateway.datasource.criteria import Criteria
from gateway.datasource.normalize import Record
from gateway.datasource.scope import SellerScope
from gateway.services.errors import ServiceError

PARTNER_FIELDS = [
    "CODPARC",
    "NOMEPARC",
    "CGC_CPF",
    "CODCID",
    "ATIVO",
    "TIPPESSOA",
    "RAZAOSOCIAL",
    "IDENTINSCESTAD",
    "CEP",
    "CODEND",
    "NUMEND",
    "COMPLEMENTO",
    "CODBAI",
    "LATITUDE",
    "LONGITUDE",
    "CLIENTE",
    "CODVEND",
]

# Ordinal 0 is the primary key, values are keyed "1".."15"
SAVE_FIELDS = [
    "CODPARC",
    "NOMEPARC",
    "ATIVO",
    "TIPPESSOA",
    "CGC_CPF",
    "CODCID",
    "CODVEND",
    "RAZAOSOCIAL",
    "IDENTINSCESTAD",
    "CEP",
    "CODEND",
    "NUMEND",
    "COMPLEMENTO",
    "CODBAI",
    "LATITUDE",
    "LONGITUDE",
]

CACHE_NAMESPACE = "partners"


class PartnerInput(BaseModel):
    """Partner as submitted by the front end. CODPARC present means update."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    CODPARC: str | None = None
    NOMEPARC: str
    CGC_CPF: str
    CODCID: str
    ATIVO: str
    TIPPESSOA: str
    CODVEND: int | None = None
    RAZAOSOCIAL: str = ""
    IDENTINSCESTAD: str = ""
    CEP: str = ""
    CODEND: str = ""
    NUMEND: str = ""
    COMPLEMENTO: str = ""
    CODBAI: str = ""
    LATITUDE: str = ""
    LONGITUDE: str = ""

    def save_values(self) -> dict[str, Any]:
        data = self.model_dump()
        return {name: data[name] for name in SAVE_FIELDS[1:]}


class PartnerSource(SankhyaDataSource):
    """Clients visible to the current seller scope."""

    LIST_TTL = timedelta(minutes=10)
    COMPLEMENT_TTL = timedelta(minutes=10)
    TEAM_TTL = timedelta(minutes=10)
    ERROR_TTL = timedelta(minutes=1)

    @property
    def root_entity(self) -> str:
        return "Parceiro"

    async def list_partners(
        self,
        page: int = 1,
        page_size: int = 50,
        search_name: str = "",
        search_code: str = "",
        scope: SellerScope | None = None,
    ) -> Page:
        """Paginated client list, filtered by name/code and seller scope."""
        scope = scope or SellerScope()
        search_name = search_name.strip()
        search_code = search_code.strip()

        if scope.is_empty:
            return Page.empty(page, page_size)

        key = self.cache.generate_key(
            f"{CACHE_NAMESPACE}:list",
            page,
            page_size,
            search_name.upper(),
            search_code,
            scope.cache_part(),
        )

        criteria = Criteria().eq_text("CLIENTE", "S")
        if search_code:
            criteria.eq("CODPARC", search_code)
        if search_name:
            criteria.contains("NOMEPARC", search_name)
        if scope.team_codes:
            criteria.is_in("CODVEND", scope.team_codes).not_null("CODVEND")
        elif scope.seller_code is not None:
            criteria.eq("CODVEND", scope.seller_code).not_null("CODVEND")

        async def fetch() -> Page:
            logger.info(f"Fetching partners: {criteria.build()}")
            result = await self.query(PARTNER_FIELDS, criteria)
            with_id(result.records, "CODPARC")
            return Page.from_entities(result, page, page_size)

        return await self.cached_model(
            Page,
            key,
            self.LIST_TTL,
            fetch,
            empty=Page.empty(page, page_size),
            error_ttl=self.ERROR_TTL,
        )

    async def get_partner_name(self, cod_parc: str) -> str | None:
        """Display name of a single partner, None when unknown or on failure."""
        try:
            result = await self.list_partners(page=1, page_size=1, search_code=cod_parc)
        except ServiceError as e:
            logger.warning(f"Failed to resolve partner {cod_parc}: {e}")
            return None
        if not result.items:
            return None
        partner = result.items[0]
        return partner.get("NOMEPARC") or partner.get("RAZAOSOCIAL")

    async def get_complement(self, cod_parc: str) -> Record | None:
        """ComplementoParc row of a partner (suggested negotiation type)."""
        key = self.cache.generate_key(f"{CACHE_NAMESPACE}:complement", cod_parc)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        try:
            result = await self.query(
                ["CODPARC", "SUGTIPNEGSAID"],
                Criteria().eq("CODPARC", cod_parc),
                limit=1,
                root_entity="ComplementoParc",
            )
        except ServiceError as e:
            logger.error(f"Failed to fetch complement of partner {cod_parc}: {e}")
            return None

        if not result.records:
            logger.info(f"No complement found for partner {cod_parc}")
            return None

        complement = result.records[0]
        await self.cache.set(key, complement, self.COMPLEMENT_TTL)
        return complement

    async def list_team_sellers(self, manager_code: int) -> list[int]:
        """Active seller codes managed by `manager_code`."""

        async def fetch() -> list[int]:
            result = await self.query(
                ["CODVEND", "APELIDO", "CODGER", "ATIVO"],
                Criteria().eq("CODGER", manager_code).eq_text("ATIVO", "S"),
                root_entity="Vendedor",
            )
            return [int(r["CODVEND"]) for r in result.records if r.get("CODVEND")]

        return await self.cached(
            self.cache.generate_key("sellers:team", manager_code),
            self.TEAM_TTL,
            fetch,
            empty=[],
            error_ttl=self.ERROR_TTL,
        )

    async def save_partner(self, partner: PartnerInput) -> dict[str, Any]:
        """
        Create or update a partner and drop every cached partner list.

        Raises:
            ServiceError: Write failures always propagate
        """
        action = "update" if partner.CODPARC else "create"
        pk = {"CODPARC": partner.CODPARC} if partner.CODPARC else None

        try:
            response = await self.client.save_record(
                "Parceiro", SAVE_FIELDS, partner.save_values(), pk=pk
            )
        except ServiceError as e:
            logger.error(
                f"Failed to {action} partner {partner.CODPARC or partner.NOMEPARC}: {e}"
            )
            raise

        invalidated = await self.cache.invalidate(f"{CACHE_NAMESPACE}:")
        logger.info(
            f"Partner {action} succeeded, {invalidated} cached partner entries dropped"
        )
        return response
