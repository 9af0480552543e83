"""
Seller visibility derived from the logged-in user.
"""

from typing import Awaitable, Callable

from loguru import logger
from pydantic import BaseModel

from gateway.services.errors import ServiceError

ROLE_SELLER = "vendedor"
ROLE_MANAGER = "gerente"
ROLE_ADMIN = "administrador"


class UserContext(BaseModel):
    """The subset of the session user the fetchers care about."""

    id: int | None = None
    name: str | None = None
    role: str | None = None
    seller_code: int | None = None

    @property
    def normalized_role(self) -> str:
        return (self.role or "").strip().lower()


class SellerScope(BaseModel):
    """
    Seller filter applied to partner and order queries.

    `team_codes == []` means a manager without a team: nothing is visible.
    No codes at all means unrestricted.
    """

    seller_code: int | None = None
    team_codes: list[int] | None = None

    @property
    def is_unrestricted(self) -> bool:
        return self.seller_code is None and self.team_codes is None

    @property
    def is_empty(self) -> bool:
        return self.team_codes is not None and not self.team_codes

    def cache_part(self) -> str:
        team = ",".join(str(c) for c in self.team_codes) if self.team_codes is not None else ""
        seller = "" if self.seller_code is None else self.seller_code
        return f"{seller}:{team}"


async def resolve_scope(
    user: UserContext | None,
    team_lookup: Callable[[int], Awaitable[list[int]]],
) -> SellerScope:
    """Sellers see their own clients, managers their team's, everyone else all."""
    if user is None or user.seller_code is None:
        return SellerScope()

    role = user.normalized_role
    if role == ROLE_SELLER:
        return SellerScope(seller_code=user.seller_code)

    if role == ROLE_MANAGER:
        try:
            team = await team_lookup(user.seller_code)
        except ServiceError as e:
            logger.error(f"Failed to load team of manager {user.seller_code}: {e}")
            team = []
        if not team:
            logger.warning(f"No sellers found for manager {user.seller_code}")
        return SellerScope(team_codes=team)

    return SellerScope()
