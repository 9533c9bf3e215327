"""
Jupiter v6 swap venue.
"""

import base64
from typing import Awaitable, Callable

import aiohttp
import structlog

from miko_keeper.core.exceptions import SwapError
from miko_keeper.services.interfaces import SwapVenue, SwapQuote, SwapResult


logger = structlog.get_logger(__name__)


class JupiterSwapVenue(SwapVenue):
    """
    Quotes and executes swaps through the Jupiter aggregator.

    Jupiter returns an unsigned versioned transaction; ``send_transaction``
    signs it as the keeper, sends it and returns the confirmed signature.
    """

    def __init__(
        self,
        api_url: str,
        user_public_key: str,
        send_transaction: Callable[[bytes], Awaitable[str]],
        slippage_bps: int = 100,
        timeout: float = 30,
    ):
        self.api_url = api_url.rstrip("/")
        self.user_public_key = user_public_key
        self.send_transaction = send_transaction
        self.slippage_bps = slippage_bps
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger.bind(service="jupiter_swap")

    async def quote(self, input_asset: str, output_asset: str, amount: int) -> SwapQuote:
        params = {
            "inputMint": input_asset,
            "outputMint": output_asset,
            "amount": str(amount),
            "slippageBps": str(self.slippage_bps),
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(f"{self.api_url}/quote", params=params) as response:
                if response.status != 200:
                    body = await response.text()
                    raise SwapError(f"Quote failed with status {response.status}", {"body": body[:200]})
                data = await response.json()

        if "outAmount" not in data:
            raise SwapError("Quote response missing outAmount", {"error": data.get("error")})

        quote = SwapQuote(
            input_asset=input_asset,
            output_asset=output_asset,
            input_amount=int(data.get("inAmount", amount)),
            output_amount=int(data["outAmount"]),
            price_impact_pct=float(data.get("priceImpactPct") or 0),
            slippage_bps=int(data.get("slippageBps", self.slippage_bps)),
            raw=data,
        )
        self.logger.info(
            "Swap quoted",
            input_amount=quote.input_amount,
            output_amount=quote.output_amount,
            price_impact_pct=quote.price_impact_pct,
            slippage_bps=quote.slippage_bps,
        )
        return quote

    async def execute(self, quote: SwapQuote) -> SwapResult:
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": self.user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(f"{self.api_url}/swap", json=payload) as response:
                if response.status != 200:
                    body = await response.text()
                    return SwapResult(success=False, error=f"swap build failed ({response.status}): {body[:200]}")
                data = await response.json()

        encoded = data.get("swapTransaction")
        if not encoded:
            return SwapResult(success=False, error="swap response missing transaction")

        try:
            signature = await self.send_transaction(base64.b64decode(encoded))
        except Exception as e:
            self.logger.error("Swap transaction failed", error=str(e))
            return SwapResult(success=False, error=str(e))

        self.logger.info("Swap executed", signature=signature, output_amount=quote.output_amount)
        return SwapResult(success=True, output_amount=quote.output_amount, tx_id=signature)
