"""
Test the Solana ledger accessor's fee reads against a fake RPC client.
"""

import struct
from types import SimpleNamespace

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from miko_keeper.core.config import TOKEN_2022_PROGRAM, load_settings
from miko_keeper.services.blockchain.solana_ledger import SolanaLedgerAccessor
from miko_keeper.services.fees.fee_schedule import FeeScheduleEngine
from miko_keeper.services.fees.types import FeeCheckAction, FeeSchedule


LAUNCH = 1_700_000_000
MAX_FEE = 2 ** 64 - 1


def mint_account(withheld, older, newer):
    """Token-2022 mint with a TransferFeeConfig; fees are (epoch, bps) pairs."""
    config = (
        bytes(64)
        + struct.pack("<Q", withheld)
        + struct.pack("<QQH", older[0], MAX_FEE, older[1])
        + struct.pack("<QQH", newer[0], MAX_FEE, newer[1])
    )
    return bytes(82) + bytes(165 - 82) + bytes([1]) + struct.pack("<HH", 1, len(config)) + config


class FakeRpcClient:

    def __init__(self, epoch: int):
        self.epoch = epoch
        self.accounts = {}

    async def get_account_info(self, pubkey):
        data = self.accounts.get(str(pubkey))
        if data is None:
            return SimpleNamespace(value=None)
        return SimpleNamespace(value=SimpleNamespace(data=data, owner=Pubkey.from_string(TOKEN_2022_PROGRAM)))

    async def get_epoch_info(self):
        return SimpleNamespace(value=SimpleNamespace(epoch=self.epoch))

    async def close(self):
        pass


class EpochDelayedLedger(SolanaLedgerAccessor):
    """Applies fee updates the way SetTransferFee does: effective two epochs later."""

    def __init__(self, settings, client):
        super().__init__(settings, client)
        self.keypair = Keypair()
        self._vault = Keypair().pubkey()
        self.sent_fee_updates = []

    async def _send(self, instructions, label):
        (rate,) = struct.unpack_from("<H", bytes(instructions[0].data), 8)
        self.sent_fee_updates.append(rate)

        mint = self.settings.token_mint
        config = self.client.accounts[mint][170:]
        newer_epoch, _, newer_bps = struct.unpack_from("<QQH", config, 90)
        self.client.accounts[mint] = mint_account(
            struct.unpack_from("<Q", config, 64)[0],
            (newer_epoch, newer_bps),
            (self.client.epoch + 2, rate),
        )
        return f"fee-sig-{len(self.sent_fee_updates)}"


@pytest.fixture
def rpc():
    return FakeRpcClient(epoch=100)


@pytest.fixture
def solana_ledger(tmp_path, rpc):
    settings = load_settings(
        token_mint=str(Keypair().pubkey()),
        vault_program_id=str(Keypair().pubkey()),
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'unused.db'}",
    )
    rpc.accounts[settings.token_mint] = mint_account(0, (0, 3000), (0, 3000))
    return EpochDelayedLedger(settings, rpc)


@pytest.mark.asyncio
async def test_fee_rate_read_returns_rate_scheduled_for_later_epoch(solana_ledger, rpc):
    mint = solana_ledger.settings.token_mint
    rpc.accounts[mint] = mint_account(0, (90, 3000), (102, 1500))

    assert await solana_ledger.read_current_fee_rate(mint) == 1500


@pytest.mark.asyncio
async def test_one_update_per_transition_while_new_rate_is_pending(solana_ledger, store):
    await store.save_fee_schedule(FeeSchedule(launch_timestamp=LAUNCH))
    engine = FeeScheduleEngine(
        solana_ledger, store, solana_ledger.settings.token_mint, call_timeout=5, max_retries=1, retry_delay=0
    )

    actions = []
    for offset in (300, 360, 420, 480, 540):
        result = await engine.check_and_apply(now=LAUNCH + offset)
        actions.append(result.action)

    assert solana_ledger.sent_fee_updates == [1500]
    assert actions == [FeeCheckAction.UPDATED] + [FeeCheckAction.NO_CHANGE] * 4

    final = await engine.check_and_apply(now=LAUNCH + 600)
    again = await engine.check_and_apply(now=LAUNCH + 660)

    assert final.action == FeeCheckAction.FINALIZED
    assert again.action == FeeCheckAction.NO_CHANGE
    assert solana_ledger.sent_fee_updates == [1500, 500]
