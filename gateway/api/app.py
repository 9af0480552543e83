"""FastAPI server exposing the Sankhya gateway to the front end."""

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional
from urllib.parse import unquote

from fastapi import Cookie, FastAPI, Query
from loguru import logger
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError

from gateway.api.container import GatewayServices, build_services
from gateway.datasource.base import Page
from gateway.datasource.partners import PartnerInput
from gateway.datasource.receivables import FinancialStatus, ReceivableFilter
from gateway.datasource.scope import (
    ROLE_ADMIN,
    ROLE_MANAGER,
    ROLE_SELLER,
    SellerScope,
    UserContext,
    resolve_scope,
)
from gateway.datastore.engine import close_db, get_session_factory, init_db
from gateway.datastore.repositories import ApiLogRepository
from gateway.exceptions import UnauthorizedError, ValidationError, to_http_error
from gateway.services.errors import ServiceError
from gateway.services.token_manager import token_preview
from gateway.settings import global_settings

MIN_SEARCH_LENGTH = 2


class ModelLookup(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    codTipOper: Optional[str] = None


def parse_user_cookie(raw: Optional[str]) -> Optional[UserContext]:
    """The `user` cookie is a (possibly URL-encoded) JSON object set at login."""
    if not raw:
        return None
    try:
        data = json.loads(unquote(raw))
    except ValueError as e:
        logger.warning(f"Unreadable user cookie: {e}")
        return None
    if not isinstance(data, dict):
        return None

    seller_code = data.get("codVendedor")
    try:
        seller_code = int(seller_code) if seller_code not in (None, "") else None
    except (TypeError, ValueError):
        seller_code = None

    return UserContext(
        id=data.get("id"),
        name=data.get("name"),
        role=data.get("tipo") or data.get("role"),
        seller_code=seller_code,
    )


def page_payload(key: str, page: Page) -> dict[str, Any]:
    return {
        key: page.items,
        "total": page.total,
        "page": page.page,
        "pageSize": page.page_size,
        "totalPages": page.total_pages,
    }


class GatewayServer:
    """HTTP routes over the gateway services."""

    def __init__(self, services: GatewayServices, app: FastAPI):
        self.services = services
        self.app = app

        # Register routes
        self.app.get("/health")(self.health_check)

        self.app.get("/api/sankhya/parceiros")(self.list_partners)
        self.app.get("/api/sankhya/parceiros/search")(self.search_partners)
        self.app.post("/api/sankhya/parceiros")(self.save_partner)
        self.app.get("/api/sankhya/parceiros/{cod_parc}/complemento")(
            self.partner_complement
        )

        self.app.get("/api/sankhya/produtos/search")(self.search_products)
        self.app.get("/api/sankhya/produtos/{cod_prod}/estoque")(self.product_stock)
        self.app.get("/api/sankhya/produtos/{cod_prod}/preco")(self.product_price)

        self.app.get("/api/sankhya/tipos-negociacao")(self.negotiation_types)
        self.app.post("/api/sankhya/tipos-negociacao")(self.model_by_operation)

        self.app.get("/api/sankhya/titulos-receber")(self.receivables)
        self.app.get("/api/sankhya/pedidos/listar")(self.list_orders)

        self.app.get("/api/sankhya/token")(self.token_status)
        self.app.post("/api/sankhya/token/refresh")(self.refresh_token)

        self.app.get("/api/admin/api-logs")(self.api_logs)

    async def _scope(self, user_cookie: Optional[str]) -> SellerScope:
        user = parse_user_cookie(user_cookie)
        return await resolve_scope(user, self.services.partners.list_team_sellers)

    async def health_check(self):
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": "sankhya-gateway",
            "cache": self.services.cache.get_stats().to_dict(),
            "client": self.services.client.get_health_status(),
        }

    # Partners

    async def list_partners(
        self,
        page: int = Query(1, ge=1),
        page_size: int = Query(50, ge=1, le=500, alias="pageSize"),
        search_name: str = Query("", alias="searchName"),
        search_code: str = Query("", alias="searchCode"),
        user: Optional[str] = Cookie(None),
    ):
        scope = await self._scope(user)
        try:
            result = await self.services.partners.list_partners(
                page, page_size, search_name, search_code, scope
            )
        except ServiceError as e:
            logger.warning(f"Partner list unavailable: {e}")
            result = Page.empty(page, page_size)
        return page_payload("parceiros", result)

    async def search_partners(
        self,
        q: str = "",
        limit: int = Query(50, ge=1, le=500),
        user: Optional[str] = Cookie(None),
    ):
        query = q.strip()
        if len(query) < MIN_SEARCH_LENGTH:
            return {"parceiros": [], "total": 0}

        scope = await self._scope(user)
        try:
            result = await self.services.partners.list_partners(
                1, limit, search_name=query, scope=scope
            )
        except ServiceError as e:
            logger.warning(f"Partner search unavailable: {e}")
            return {"parceiros": [], "total": 0}
        return {"parceiros": result.items, "total": result.total}

    async def save_partner(self, partner: PartnerInput):
        try:
            response = await self.services.partners.save_partner(partner)
        except ServiceError as e:
            raise to_http_error(e) from e
        return {"success": True, "data": response}

    async def partner_complement(self, cod_parc: str):
        complement = await self.services.partners.get_complement(cod_parc)
        return complement or {}

    # Products

    async def search_products(
        self,
        q: str = "",
        limit: int = Query(20, ge=1, le=500),
    ):
        query = q.strip()
        if len(query) < MIN_SEARCH_LENGTH:
            return {"produtos": [], "total": 0}

        try:
            result = await self.services.products.list_products(1, limit, search_name=query)
        except ServiceError as e:
            logger.warning(f"Product search unavailable: {e}")
            return {"produtos": [], "total": 0}
        return {"produtos": result.items, "total": result.total}

    async def product_stock(self, cod_prod: str, local: str = ""):
        try:
            stock = await self.services.products.get_stock(cod_prod, local)
            items, total, stock_total = stock.items, stock.total, stock.stock_total
        except ServiceError as e:
            logger.warning(f"Stock of product {cod_prod} unavailable: {e}")
            items, total, stock_total = [], 0, 0.0
        return {"estoques": items, "total": total, "estoqueTotal": stock_total}

    async def product_price(
        self, cod_prod: str, price_table: int = Query(0, alias="codTabPreco")
    ):
        price = await self.services.products.get_price(cod_prod, price_table)
        return {"codProd": cod_prod, "preco": price}

    # Operation and negotiation types

    async def negotiation_types(
        self,
        tipo: Optional[str] = None,
        nunota: Optional[str] = None,
    ):
        types = self.services.operation_types

        if nunota:
            header = await types.model_data(nunota)
            return header.model_dump(by_alias=True, include={"cod_tip_oper", "cod_tip_venda"})

        try:
            if tipo == "operacao":
                return {"tiposOperacao": await types.list_operation_types()}
            return {"tiposNegociacao": await types.list_negotiation_types()}
        except ServiceError as e:
            logger.warning(f"Operation/negotiation types unavailable: {e}")
            return {"tiposOperacao": []} if tipo == "operacao" else {"tiposNegociacao": []}

    async def model_by_operation(self, lookup: ModelLookup):
        if not lookup.codTipOper:
            raise ValidationError("codTipOper is required")
        header = await self.services.operation_types.header_by_model(lookup.codTipOper)
        return header.model_dump(by_alias=True, include={"nunota", "cod_tip_venda"})

    # Receivables and orders

    async def receivables(
        self,
        company_code: str = Query("1", alias="codigoEmpresa"),
        partner_code: str = Query("", alias="codigoParceiro"),
        status: str = Query("3", alias="statusFinanceiro"),
        date_from: str = Query("", alias="dataNegociacaoInicio"),
        date_to: str = Query("", alias="dataNegociacaoFinal"),
    ):
        try:
            financial_status = FinancialStatus(status)
        except ValueError:
            financial_status = FinancialStatus.BOTH

        filters = ReceivableFilter(
            company_code=company_code or "1",
            partner_code=partner_code,
            status=financial_status,
            date_from=date_from,
            date_to=date_to,
        )
        try:
            titles = await self.services.receivables.list_receivables(filters)
        except ServiceError as e:
            logger.warning(f"Receivables unavailable: {e}")
            titles = []
        return {"titulos": [t.model_dump(by_alias=True, mode="json") for t in titles]}

    async def list_orders(
        self,
        date_from: str = Query("", alias="dataInicio"),
        date_to: str = Query("", alias="dataFim"),
        order_number: str = Query("", alias="numeroPedido"),
        client_name: str = Query("", alias="nomeCliente"),
        user: Optional[str] = Cookie(None),
    ):
        current = parse_user_cookie(user)
        if current is None:
            raise UnauthorizedError("User not authenticated")

        role = current.normalized_role
        if role == ROLE_ADMIN:
            scope = SellerScope()
        elif role in (ROLE_MANAGER, ROLE_SELLER) and current.seller_code is not None:
            scope = await resolve_scope(current, self.services.partners.list_team_sellers)
        else:
            logger.info(f"User {current.id} has no order visibility")
            return []

        try:
            return await self.services.orders.list_orders(
                scope, date_from, date_to, order_number, client_name
            )
        except ServiceError as e:
            logger.warning(f"Orders unavailable: {e}")
            return []

    # Token administration

    async def token_status(self):
        status = await self.services.token_manager.get_status()
        if status is None:
            return {"active": False}
        data = status.model_dump(mode="json")
        data["token"] = token_preview(status.token)
        return data

    async def refresh_token(self):
        try:
            await self.services.token_manager.get_token(force_refresh=True)
        except ServiceError as e:
            raise to_http_error(e) from e
        return await self.token_status()

    async def api_logs(self, limit: int = Query(100, ge=1, le=1000)):
        recorder = self.services.recorder
        result: dict[str, Any] = {
            "logs": [e.model_dump(mode="json") for e in recorder.recent(limit)],
            "summary": recorder.summary(),
        }

        if self.services.settings.database_url:
            try:
                async with get_session_factory()() as session:
                    result["errors_24h"] = await ApiLogRepository(session).count_errors(24)
            except (RuntimeError, SQLAlchemyError) as e:
                logger.warning(f"Persisted API log unavailable: {e}")
        return result


def create_app(services: GatewayServices | None = None) -> FastAPI:
    """Create FastAPI app for the gateway.

    Args:
        services: Prebuilt service graph, built from global settings when omitted

    Returns:
        FastAPI app
    """
    services = services or build_services(global_settings)
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if settings.database_url:
            logger.info("Initializing database...")
            await init_db(settings.database_url)
            services.recorder.attach_database(get_session_factory())
            async with get_session_factory()() as session:
                await ApiLogRepository(session).cleanup_old_logs(
                    settings.api_log_retention_days
                )
                await session.commit()

        logger.info("Sankhya gateway started")
        try:
            yield
        finally:
            await services.close()
            if settings.database_url:
                await close_db()
            logger.info("Sankhya gateway stopped")

    app = FastAPI(title="Sankhya Gateway", lifespan=lifespan)
    GatewayServer(services, app)
    return app
