"""
Open receivable titles (Financeiro / TGFFIN).
"""

import asyncio
import re
from datetime import timedelta
from enum import Enum

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from gateway.datasource.base import SankhyaDataSource
from gateway.datasource.criteria import Criteria
from gateway.datasource.normalize import Record
from gateway.datasource.partners import PartnerSource

RECEIVABLE_FIELDS = [
    "NUFIN",
    "CODPARC",
    "CODEMP",
    "VLRDESDOB",
    "DTVENC",
    "DTNEG",
    "PROVISAO",
    "DHBAIXA",
    "VLRBAIXA",
    "RECDESP",
    "NOSSONUM",
    "CODCTABCOINT",
    "HISTORICO",
    "NUMNOTA",
]

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_BR_DATE = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")


class FinancialStatus(str, Enum):
    REAL = "1"
    PROVISION = "2"
    BOTH = "3"


class ReceivableFilter(BaseModel):
    company_code: str = "1"
    partner_code: str = ""
    status: FinancialStatus = FinancialStatus.BOTH
    date_from: str = ""
    date_to: str = ""

    def cache_parts(self) -> tuple[str, ...]:
        return (
            self.company_code,
            self.partner_code,
            self.status.value,
            self.date_from,
            self.date_to,
        )


class BankSlip(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    barcode: str | None = Field(default=None, alias="codigoBarras")
    our_number: str | None = Field(default=None, alias="nossoNumero")
    digitable_line: str | None = Field(default=None, alias="linhaDigitavel")
    remittance_number: str | None = Field(default=None, alias="numeroRemessa")


class Receivable(BaseModel):
    """One receivable title, in the shape the front end renders."""

    model_config = ConfigDict(populate_by_name=True)

    title_number: str = Field(alias="nroTitulo")
    partner: str = Field(alias="parceiro")
    partner_code: str = Field(alias="codParceiro")
    amount: float = Field(alias="valor")
    due_date: str = Field(alias="dataVencimento")
    negotiation_date: str = Field(alias="dataNegociacao")
    status: str
    financial_type: str = Field(alias="tipoFinanceiro")
    title_type: str = Field(alias="tipoTitulo")
    bank_account: str | None = Field(default=None, alias="contaBancaria")
    history: str | None = Field(default=None, alias="historico")
    installment: int = Field(default=1, alias="numeroParcela")
    origin: str = Field(default="TGFFIN", alias="origemFinanceiro")
    company_code: int = Field(default=1, alias="codigoEmpresa")
    nature_code: int = Field(default=0, alias="codigoNatureza")
    slip: BankSlip = Field(default_factory=BankSlip, alias="boleto")


def format_erp_date(value: str | None) -> str:
    """
    Normalize ERP dates to YYYY-MM-DD.

    Accepts "DD/MM/YYYY" and "YYYY-MM-DD hh:mm:ss"; anything else is
    returned without its time part.
    """
    if not value:
        return ""
    date = value.split(" ")[0]
    if _ISO_DATE.match(date):
        return date
    match = _BR_DATE.match(date)
    if match:
        day, month, year = match.groups()
        return f"{year}-{month}-{day}"
    return date


def _to_float(value: object) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: object, default: int) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def to_receivable(record: Record, partner_name: str | None) -> Receivable:
    cod_parc = str(record.get("CODPARC", ""))
    provision = str(record.get("PROVISAO", "")).upper() == "S"
    account = record.get("CODCTABCOINT")
    our_number = record.get("NOSSONUM")

    return Receivable(
        title_number=str(record.get("NUFIN", "")),
        partner=partner_name or f"Parceiro {cod_parc}",
        partner_code=cod_parc,
        amount=_to_float(record.get("VLRDESDOB")),
        due_date=format_erp_date(record.get("DTVENC")),
        negotiation_date=format_erp_date(record.get("DTNEG")),
        status="Baixado" if record.get("DHBAIXA") else "Aberto",
        financial_type="Provisão" if provision else "Real",
        title_type="Boleto" if our_number else "Duplicata",
        bank_account=f"Conta {account}" if account else None,
        history=record.get("HISTORICO") or None,
        company_code=_to_int(record.get("CODEMP"), 1),
        slip=BankSlip(our_number=our_number or None),
    )


class ReceivableSource(SankhyaDataSource):
    TTL = timedelta(minutes=5)
    ERROR_TTL = timedelta(minutes=1)

    def __init__(self, client, cache, partners: PartnerSource):
        super().__init__(client, cache)
        self.partners = partners

    @property
    def root_entity(self) -> str:
        return "Financeiro"

    @staticmethod
    def build_criteria(filters: ReceivableFilter) -> Criteria:
        criteria = Criteria().eq("RECDESP", 1).eq("CODEMP", filters.company_code)
        if filters.partner_code:
            criteria.eq("CODPARC", filters.partner_code)
        if filters.status == FinancialStatus.REAL:
            criteria.eq_text("PROVISAO", "N")
        elif filters.status == FinancialStatus.PROVISION:
            criteria.eq_text("PROVISAO", "S")
        criteria.is_null("DHBAIXA")
        if filters.date_from:
            criteria.date_from("DTNEG", filters.date_from)
        if filters.date_to:
            criteria.date_to("DTNEG", filters.date_to)
        return criteria

    async def list_receivables(self, filters: ReceivableFilter) -> list[Receivable]:
        """Open receivable titles matching `filters`, newest first."""
        key = self.cache.generate_key("receivables", *filters.cache_parts())
        criteria = self.build_criteria(filters)

        async def fetch() -> list[dict]:
            result = await self.query(RECEIVABLE_FIELDS, criteria, order_by="NUFIN DESC")
            names = await self._partner_names(result.records)
            receivables = [
                to_receivable(r, names.get(str(r.get("CODPARC", ""))))
                for r in result.records
            ]
            logger.info(f"Loaded {len(receivables)} receivable titles")
            return [r.model_dump(mode="json") for r in receivables]

        data = await self.cached(key, self.TTL, fetch, empty=[], error_ttl=self.ERROR_TTL)
        return [Receivable.model_validate(item) for item in data]

    async def _partner_names(self, records: list[Record]) -> dict[str, str | None]:
        codes = list(dict.fromkeys(str(r["CODPARC"]) for r in records if r.get("CODPARC")))
        names = await asyncio.gather(*(self.partners.get_partner_name(c) for c in codes))
        return dict(zip(codes, names))
