"""
Test Token-2022 and vault state parsing.
"""

import struct

import base58
import pytest

from miko_keeper.services.blockchain.pool_detector import RAYDIUM_LAYOUTS, pool_contains_mint
from miko_keeper.services.blockchain.token_account_parser import (
    parse_mint_fee_config,
    parse_token_account,
    parse_vault_state,
)


MINT = bytes(range(32))
OWNER = bytes(range(32, 64))


def b58(raw: bytes) -> str:
    return base58.b58encode(raw).decode()


def tlv(ext_type: int, payload: bytes) -> bytes:
    return struct.pack("<HH", ext_type, len(payload)) + payload


def token_account(amount: int, withheld=None) -> bytes:
    base = MINT + OWNER + struct.pack("<Q", amount) + bytes(165 - 72)
    if withheld is None:
        return base
    return base + bytes([2]) + tlv(2, struct.pack("<Q", withheld))


def test_plain_token_account():
    account = parse_token_account(token_account(1234))

    assert account.mint == b58(MINT)
    assert account.owner == b58(OWNER)
    assert account.amount == 1234
    assert account.withheld_amount == 0


def test_token_account_with_withheld_fee():
    account = parse_token_account(token_account(10, withheld=777))

    assert account.withheld_amount == 777


def test_truncated_account_rejected():
    with pytest.raises(ValueError):
        parse_token_account(bytes(100))

    data = token_account(10, withheld=5)[:-4]
    with pytest.raises(ValueError):
        parse_token_account(data)


def test_mint_fee_config():
    config = (
        bytes(64)
        + struct.pack("<Q", 999)
        + struct.pack("<QQH", 10, 2 ** 64 - 1, 3000)
        + struct.pack("<QQH", 12, 2 ** 64 - 1, 1500)
    )
    data = bytes(82) + bytes(165 - 82) + bytes([1]) + tlv(1, config)

    fee = parse_mint_fee_config(data)

    assert fee.withheld_amount == 999
    assert fee.rate_for_epoch() == 1500
    assert fee.rate_for_epoch(11) == 3000
    assert fee.rate_for_epoch(12) == 1500


def test_mint_without_fee_config_rejected():
    with pytest.raises(ValueError):
        parse_mint_fee_config(bytes(82))


def test_vault_state():
    exclusion = bytes([7] * 32)
    data = (
        bytes(8)
        + bytes([1] * 32) + bytes([2] * 32) + bytes([3] * 32) + MINT
        + struct.pack("<Q", 100)
        + struct.pack("<I", 1) + exclusion
        + struct.pack("<QQQQ", 500, 10, 20, 30)
        + struct.pack("<qqq", 1, 2, 1_700_000_000)
        + bytes([1])
    )

    vault = parse_vault_state(data)

    assert vault.token_mint == b58(MINT)
    assert vault.reward_exclusions == [b58(exclusion)]
    assert vault.launch_timestamp == 1_700_000_000
    assert vault.fee_finalized is True


def test_vault_state_with_bad_exclusion_count():
    data = bytes(8 + 128 + 8) + struct.pack("<I", 50) + bytes(64)

    with pytest.raises(ValueError):
        parse_vault_state(data)


@pytest.mark.parametrize("layout", RAYDIUM_LAYOUTS, ids=lambda layout: layout.name)
def test_pool_contains_mint(layout):
    data = bytearray(layout.data_size)
    data[layout.mint_b_offset:layout.mint_b_offset + 32] = MINT

    assert pool_contains_mint(bytes(data), layout, b58(MINT)) is True
    assert pool_contains_mint(bytes(layout.data_size), layout, b58(MINT)) is False
