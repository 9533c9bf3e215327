"""
Typed contracts for the keeper's external collaborators.

The orchestrator only talks to the ledger, the holder data provider, the
price oracle and the swap venue through these interfaces; adapters under
``services/blockchain`` and the HTTP clients implement them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Sequence, Set


@dataclass(frozen=True)
class WithheldAccount:
    """A token account carrying a non-zero withheld fee."""
    account: str
    amount: int


@dataclass
class BatchOutcome:
    """Result of one submitted batch (harvest or transfer)."""
    success: bool
    tx_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class Outcome:
    """Result of a single ledger write."""
    success: bool
    tx_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Transfer:
    """One reward transfer from the keeper's reward account."""
    recipient: str          # owner address
    destination: str        # receiving account (owner for native SOL, ATA otherwise)
    asset: str
    amount: int


@dataclass(frozen=True)
class HolderBalance:
    """One holder row from the holder data provider, balance in base units."""
    address: str
    balance: int


@dataclass
class SwapQuote:
    """Executable conversion offered by the swap venue."""
    input_asset: str
    output_asset: str
    input_amount: int
    output_amount: int
    price_impact_pct: float
    slippage_bps: int
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class SwapResult:
    success: bool
    output_amount: int = 0
    tx_id: Optional[str] = None
    error: Optional[str] = None


class LedgerAccessor(ABC):
    """Read/write access to the token, its mint and the vault program."""

    @property
    @abstractmethod
    def holding_account(self) -> str:
        """Program-controlled account receiving withdrawn fees."""

    @property
    @abstractmethod
    def keeper_address(self) -> str:
        """The keeper's own wallet (signer, reward source)."""

    @abstractmethod
    async def list_accounts_with_withheld_fee(self, token_id: str) -> List[WithheldAccount]:
        """Full scan of the token's accounts; unparseable accounts are skipped."""

    @abstractmethod
    async def read_mint_withheld(self, token_id: str) -> int:
        """Withheld balance currently held by the mint itself."""

    @abstractmethod
    async def harvest_batch(self, token_id: str, account_ids: Sequence[str]) -> BatchOutcome:
        """Move withheld fees of the given accounts into the mint."""

    @abstractmethod
    async def withdraw_mint_withheld(self, token_id: str) -> int:
        """Move the mint's withheld balance into the holding account."""

    @abstractmethod
    async def get_balance(self, account_id: str) -> int:
        """Token balance of an account (0 if it does not exist)."""

    @abstractmethod
    async def get_asset_balance(self, owner: str, asset: str) -> int:
        """Balance the owner holds in ``asset`` (lamports for native SOL)."""

    @abstractmethod
    async def ensure_account(self, owner: str, asset: str) -> str:
        """Return the owner's receiving account for ``asset``, creating it if missing."""

    @abstractmethod
    async def transfer_batch(self, transfers: Sequence[Transfer]) -> BatchOutcome:
        """Submit and confirm a batch of reward transfers as one transaction."""

    @abstractmethod
    async def read_current_fee_rate(self, token_id: str) -> int:
        """Transfer-fee rate (bps) currently configured on the mint."""

    @abstractmethod
    async def apply_fee_rate_update(self, token_id: str, new_rate_bps: int, finalize: bool) -> Outcome:
        """Issue the vault program's fee update."""

    @abstractmethod
    async def read_launch_timestamp(self, token_id: str) -> Optional[int]:
        """Launch time recorded in the vault state, None before launch."""

    async def read_chain_time(self) -> Optional[int]:
        """Unix time of the latest block; None when unavailable."""
        return None


class HolderDataProvider(ABC):
    """Holder snapshot and primary spot price."""

    @abstractmethod
    async def get_holders(self, token_id: str) -> List[HolderBalance]:
        pass

    @abstractmethod
    async def get_price(self, token_id: str) -> Optional[Decimal]:
        """USD price, or None when unavailable."""


class PriceOracle(ABC):
    """Secondary reference price used when the primary provider has none."""

    @abstractmethod
    async def get_reference_price(self) -> Optional[Decimal]:
        """USD price of the reference asset (SOL)."""


class SwapVenue(ABC):

    @abstractmethod
    async def quote(self, input_asset: str, output_asset: str, amount: int) -> SwapQuote:
        pass

    @abstractmethod
    async def execute(self, quote: SwapQuote) -> SwapResult:
        pass


class ExclusionSource(ABC):
    """Supplies addresses that must never receive rewards (pools, vaults)."""

    @abstractmethod
    async def fetch_exclusions(self, token_id: str) -> Set[str]:
        pass
