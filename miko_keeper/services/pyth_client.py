"""
Pyth Hermes client for the SOL/USD reference price.
"""

import time
from decimal import Decimal
from typing import Optional

import aiohttp
import structlog

from miko_keeper.core.exceptions import ExternalServiceError
from miko_keeper.services.interfaces import PriceOracle


logger = structlog.get_logger(__name__)

SOL_USD_FEED = "H6ARHf6YXhGYeQfUzQNGk6rDNnLBQKrenN712K4AQJEG"


class PythClient(PriceOracle):
    """SOL/USD price from Pyth Hermes, cached for a short window."""

    def __init__(
        self,
        endpoint: str = "https://hermes.pyth.network",
        feed_id: str = SOL_USD_FEED,
        timeout: float = 10,
        cache_duration: float = 60,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.feed_id = feed_id
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.cache_duration = cache_duration
        self._cached_price: Optional[Decimal] = None
        self._cache_timestamp = 0.0
        self.logger = logger.bind(service="pyth_client")

    async def get_reference_price(self) -> Optional[Decimal]:
        current_time = time.time()
        if self._cached_price is not None and current_time - self._cache_timestamp < self.cache_duration:
            return self._cached_price

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            url = f"{self.endpoint}/api/latest_price_feeds"
            async with session.get(url, params={"ids[]": self.feed_id}) as response:
                if response.status != 200:
                    raise ExternalServiceError(
                        f"Pyth returned {response.status}",
                        {"status": response.status, "feed": self.feed_id},
                    )
                feeds = await response.json()

        if not feeds:
            self.logger.warning("No price data received from Pyth", feed=self.feed_id)
            return None

        info = feeds[0].get("price") or {}
        price = Decimal(str(info.get("price", "0"))) * (Decimal(10) ** int(info.get("expo", 0)))
        if price <= 0:
            return None

        self._cached_price = price
        self._cache_timestamp = current_time
        self.logger.debug("Reference price updated", price=str(price), publish_time=info.get("publish_time"))
        return price
