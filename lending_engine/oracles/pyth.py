"""Pyth Network price oracle service."""
import logging
import ssl
import time
from decimal import Decimal

import aiohttp
import certifi

from ..config import PythConfig
from ..errors import ConfigurationError
from ..models import PriceKind, TokenOraclePrice

logger = logging.getLogger(__name__)

# Hermes field holding each price kind.
_PRICE_FIELDS = {PriceKind.SPOT: "price", PriceKind.TWAP: "ema_price"}


class PythOracle:
    """Fetch token prices by mint from the Pyth Hermes API."""

    def __init__(self, config: PythConfig) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)
        self.max_age_seconds = config.max_age_seconds

    async def fetch_prices(
        self, mints: list[str] | None = None, kind: PriceKind = PriceKind.SPOT
    ) -> dict[str, TokenOraclePrice]:
        """Fetch current prices from Pyth Network.

        Args:
            mints: Optional list of mints to fetch. If None, fetches all
                   configured feeds.
            kind: Spot price or the exponentially weighted moving average.

        Mints without a configured feed are left out of the result; on HTTP
        failure the result is empty.
        """
        prices: dict[str, TokenOraclePrice] = {}

        feeds = self.price_feeds
        if mints is not None:
            feeds = {k: v for k, v in self.price_feeds.items() if k in mints}

        feed_ids = sorted(set(feeds.values()))
        if not feed_ids:
            return prices

        query_params = "&".join([f"ids[]={fid}" for fid in feed_ids])
        url = f"{self.hermes_url}?{query_params}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.error(
                            "Error fetching prices from Pyth: HTTP %s", response.status
                        )
                        return prices

                    data = await response.json()
                    parsed = data.get("parsed", [])

                    id_to_mints: dict[str, list[str]] = {}
                    for mint, feed_id in feeds.items():
                        id_to_mints.setdefault(_normalize_feed_id(feed_id), []).append(mint)

                    now = int(time.time())
                    field = _PRICE_FIELDS[kind]
                    for item in parsed:
                        feed_id = _normalize_feed_id(item.get("id", ""))
                        price_data = item.get(field, {})
                        price_raw = int(price_data.get("price", 0))
                        expo = int(price_data.get("expo", 0))
                        publish_time = int(price_data.get("publish_time", 0))

                        price = Decimal(price_raw).scaleb(expo)
                        stale = now - publish_time > self.max_age_seconds

                        for mint in id_to_mints.get(feed_id, []):
                            prices[mint] = TokenOraclePrice(mint, price, publish_time, stale)

                    logger.info("Fetched %d %s prices from Pyth Network", len(prices), kind.value)
                    for mint, token_price in sorted(prices.items()):
                        logger.debug(
                            "  %s: $%s%s", mint, token_price.price, " (stale)" if token_price.stale else ""
                        )

        except Exception as e:
            logger.error("Error fetching prices from Pyth: %s", e)

        return prices

    async def get_price(self, mint: str, kind: PriceKind = PriceKind.SPOT) -> TokenOraclePrice:
        """Price for one mint; raises ``ConfigurationError`` when it is unavailable."""
        if mint not in self.price_feeds:
            raise ConfigurationError(f"No Pyth feed configured for mint {mint}")
        prices = await self.fetch_prices([mint], kind)
        if mint not in prices:
            raise ConfigurationError(f"Pyth returned no {kind.value} price for mint {mint}")
        return prices[mint]


def _normalize_feed_id(feed_id: str) -> str:
    """Hermes answers ids without the ``0x`` prefix."""
    return feed_id.lower().removeprefix("0x")
