"""
Birdeye client: holder snapshot and spot price.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from miko_keeper.core.exceptions import ExternalServiceError
from miko_keeper.services.interfaces import HolderDataProvider, HolderBalance


logger = structlog.get_logger(__name__)


class BirdeyeClient(HolderDataProvider):
    """Holder data provider backed by the Birdeye public API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://public-api.birdeye.so",
        token_decimals: int = 9,
        holder_limit: int = 1000,
        timeout: float = 10,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.token_decimals = token_decimals
        self.holder_limit = holder_limit
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self.logger = logger.bind(service="birdeye_client")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={
                    "X-API-KEY": self.api_key,
                    "x-chain": "solana",
                    "Accept": "application/json",
                },
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        async with session.get(f"{self.base_url}{path}", params=params) as response:
            if response.status != 200:
                body = await response.text()
                raise ExternalServiceError(
                    f"Birdeye {path} returned {response.status}",
                    {"status": response.status, "body": body[:200]},
                )
            payload = await response.json()

        if not payload.get("success", True):
            raise ExternalServiceError(f"Birdeye {path} reported failure", {"message": payload.get("message")})
        return payload.get("data") or {}

    def _to_base_units(self, row: Dict[str, Any]) -> Optional[int]:
        raw = row.get("amount")
        if raw is not None:
            try:
                return int(raw)
            except (TypeError, ValueError):
                pass
        ui_balance = row.get("balance", row.get("ui_amount"))
        if ui_balance is None:
            return None
        try:
            return int(Decimal(str(ui_balance)) * (Decimal(10) ** self.token_decimals))
        except InvalidOperation:
            return None

    async def get_holders(self, token_id: str) -> List[HolderBalance]:
        data = await self._get(
            "/defi/v1/holders",
            {"address": token_id, "limit": self.holder_limit, "sort_by": "balance"},
        )
        rows = data.get("holders") or data.get("items") or []

        holders = []
        for row in rows:
            owner = row.get("owner")
            balance = self._to_base_units(row)
            if not owner or balance is None:
                self.logger.warning("Skipping malformed holder row", row=row)
                continue
            holders.append(HolderBalance(address=owner, balance=balance))

        self.logger.info("Holder snapshot fetched", holders=len(holders))
        return holders

    async def get_price(self, token_id: str) -> Optional[Decimal]:
        data = await self._get("/defi/v2/price", {"address": token_id})
        value = data.get("value")
        if value is None:
            self.logger.warning("Birdeye returned no price", token=token_id)
            return None
        price = Decimal(str(value))
        return price if price > 0 else None
