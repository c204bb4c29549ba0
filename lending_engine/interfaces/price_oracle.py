"""Price oracle protocol — price feed abstraction."""
from typing import Protocol

from ..models import PriceKind, TokenOraclePrice


class PriceOracle(Protocol):
    """Abstract interface for fetching asset prices by mint."""

    async def fetch_prices(
        self, mints: list[str] | None = None, kind: PriceKind = PriceKind.SPOT
    ) -> dict[str, TokenOraclePrice]: ...

    async def get_price(
        self, mint: str, kind: PriceKind = PriceKind.SPOT
    ) -> TokenOraclePrice: ...
