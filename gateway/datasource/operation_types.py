"""
Operation types, negotiation types and the order-model headers that link
them.
"""

from datetime import timedelta

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from gateway.datasource.base import SankhyaDataSource
from gateway.datasource.criteria import Criteria
from gateway.datasource.normalize import Record
from gateway.services.errors import ServiceError


class ModelHeader(BaseModel):
    """
    CabecalhoNota header of an order model.

    Lookups by model fill nunota/cod_tip_venda, lookups by NUNOTA fill
    cod_tip_oper/cod_tip_venda. All None when nothing matched.
    """

    model_config = ConfigDict(populate_by_name=True)

    nunota: str | None = Field(default=None, alias="nunota")
    cod_tip_oper: str | None = Field(default=None, alias="codTipOper")
    cod_tip_venda: str | None = Field(default=None, alias="codTipVenda")


class OperationTypeSource(SankhyaDataSource):
    TYPES_TTL = timedelta(hours=1)
    HEADER_TTL = timedelta(minutes=5)
    ERROR_TTL = timedelta(minutes=1)

    @property
    def root_entity(self) -> str:
        return "TipoOperacao"

    async def list_operation_types(self) -> list[Record]:
        """Active operation types, alphabetical."""

        async def fetch() -> list[Record]:
            result = await self.query(
                ["CODTIPOPER", "DESCROPER", "ATIVO"],
                Criteria().eq_text("ATIVO", "S"),
                order_by="DESCROPER ASC",
                limit=100,
            )
            logger.info(f"Loaded {len(result.records)} operation types")
            return result.records

        return await self.cached(
            "types:operation:all",
            self.TYPES_TTL,
            fetch,
            empty=[],
            error_ttl=self.ERROR_TTL,
        )

    async def list_negotiation_types(self) -> list[Record]:
        """Active negotiation (payment) types, alphabetical."""

        async def fetch() -> list[Record]:
            result = await self.query(
                ["CODTIPVENDA", "DESCRTIPVENDA"],
                Criteria().eq_text("ATIVO", "S"),
                order_by="DESCRTIPVENDA ASC",
                limit=100,
                root_entity="TipoNegociacao",
            )
            logger.info(f"Loaded {len(result.records)} negotiation types")
            return result.records

        return await self.cached(
            "types:negotiation:all",
            self.TYPES_TTL,
            fetch,
            empty=[],
            error_ttl=self.ERROR_TTL,
        )

    async def header_by_model(self, cod_tip_oper: str) -> ModelHeader:
        """Latest model order (TIPMOV 'Z') of an operation type."""

        async def fetch() -> ModelHeader:
            result = await self.query(
                ["NUNOTA", "CODTIPOPER", "CODTIPVENDA"],
                Criteria().eq_text("TIPMOV", "Z").eq("CODTIPOPER", cod_tip_oper),
                order_by="NUNOTA DESC",
                limit=1,
                root_entity="CabecalhoNota",
            )
            if not result.records:
                logger.info(f"No model order found for operation type {cod_tip_oper}")
                return ModelHeader()
            header = result.records[0]
            return ModelHeader(
                nunota=header.get("NUNOTA"), cod_tip_venda=header.get("CODTIPVENDA")
            )

        return await self._header(
            self.cache.generate_key("types:model", cod_tip_oper), fetch
        )

    async def model_data(self, nunota: str) -> ModelHeader:
        """Operation and negotiation type of the model order `nunota`."""

        async def fetch() -> ModelHeader:
            result = await self.query(
                ["NUNOTA", "CODTIPOPER", "CODTIPVENDA"],
                Criteria().eq("NUNOTA", nunota),
                limit=1,
                root_entity="CabecalhoNota",
            )
            if not result.records:
                logger.info(f"No model order found for NUNOTA {nunota}")
                return ModelHeader()
            header = result.records[0]
            return ModelHeader(
                cod_tip_oper=header.get("CODTIPOPER"),
                cod_tip_venda=header.get("CODTIPVENDA"),
            )

        return await self._header(self.cache.generate_key("types:nunota", nunota), fetch)

    async def _header(self, key: str, fetch) -> ModelHeader:
        try:
            return await self.cached_model(ModelHeader, key, self.HEADER_TTL, fetch)
        except ServiceError as e:
            logger.error(f"Failed to load model header {key}: {e}")
            return ModelHeader()
