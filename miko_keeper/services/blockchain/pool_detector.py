"""
Raydium pool detection.

Pools holding the token must never receive rewards, and new pools can
appear between cycles, so detection runs before every plan.
"""

from dataclasses import dataclass
from typing import List, Optional, Set

import base58
import structlog
from solana.rpc.async_api import AsyncClient
from solders.pubkey import Pubkey

from miko_keeper.core.exceptions import LedgerError
from miko_keeper.services.interfaces import ExclusionSource


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PoolLayout:
    name: str
    program_id: str
    data_size: int
    mint_a_offset: int
    mint_b_offset: int
    # owner of the pool's token vaults; CLMM vaults are owned by the pool state itself
    vault_authority: Optional[str] = None


RAYDIUM_LAYOUTS = (
    PoolLayout(
        "cpmm", "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C", 680, 72, 104,
        vault_authority="GpMZbSM2GgvTKHJirzeGfMFoaZ8UR2X7F4v8vHTvxFbL",
    ),
    PoolLayout(
        "amm_v4", "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8", 1544, 400, 432,
        vault_authority="5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1",
    ),
    PoolLayout("clmm", "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK", 1008, 72, 104),
)


def pool_contains_mint(data: bytes, layout: PoolLayout, mint: str) -> bool:
    if len(data) < max(layout.mint_a_offset, layout.mint_b_offset) + 32:
        return False
    mint_bytes = base58.b58decode(mint)
    return (
        data[layout.mint_a_offset:layout.mint_a_offset + 32] == mint_bytes
        or data[layout.mint_b_offset:layout.mint_b_offset + 32] == mint_bytes
    )


class PoolDetector(ExclusionSource):
    """
    Scans Raydium CPMM, AMM v4 and CLMM pool accounts for the token mint.

    Reports the pool accounts and the owners of their token vaults.
    """

    def __init__(self, client: AsyncClient):
        self.client = client
        self.detected: Set[str] = set()
        self.logger = logger.bind(service="pool_detector")

    async def _scan(self, layout: PoolLayout, mint: str) -> List[str]:
        response = await self.client.get_program_accounts(
            Pubkey.from_string(layout.program_id),
            encoding="base64",
            filters=[layout.data_size],
        )
        return [
            str(keyed.pubkey)
            for keyed in response.value
            if pool_contains_mint(bytes(keyed.account.data), layout, mint)
        ]

    async def fetch_exclusions(self, token_id: str) -> Set[str]:
        """
        Raises:
            LedgerError: every layout scan failed
        """
        found: Set[str] = set()
        failures = 0
        for layout in RAYDIUM_LAYOUTS:
            try:
                pools = await self._scan(layout, token_id)
            except Exception as e:
                failures += 1
                self.logger.warning("Pool scan failed", layout=layout.name, error=str(e))
                continue
            for pool in pools:
                if pool not in self.detected:
                    self.logger.info("New pool detected", layout=layout.name, pool=pool)
            found.update(pools)
            # holder snapshots list the vault owner, not the pool account
            if pools and layout.vault_authority:
                found.add(layout.vault_authority)

        if failures == len(RAYDIUM_LAYOUTS):
            raise LedgerError("All pool scans failed", {"mint": token_id})

        # a pool found once stays excluded
        self.detected |= found
        return set(self.detected)
