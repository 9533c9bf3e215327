"""
Binary parsers for Token-2022 accounts, mints and the vault state.
"""

import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import base58


TOKEN_ACCOUNT_BASE_SIZE = 165
MINT_BASE_SIZE = 82
ACCOUNT_TYPE_OFFSET = 165
TLV_START = 166

ACCOUNT_TYPE_MINT = 1
ACCOUNT_TYPE_ACCOUNT = 2

EXT_TRANSFER_FEE_CONFIG = 1
EXT_TRANSFER_FEE_AMOUNT = 2

TRANSFER_FEE_CONFIG_SIZE = 108


@dataclass
class TokenAccountData:
    mint: str
    owner: str
    amount: int
    withheld_amount: int = 0


@dataclass
class TransferFee:
    epoch: int
    maximum_fee: int
    basis_points: int


@dataclass
class MintFeeConfig:
    withheld_amount: int
    older_fee: TransferFee
    newer_fee: TransferFee

    def rate_for_epoch(self, epoch: Optional[int] = None) -> int:
        """Fee bps in effect; the newer fee when no epoch is given."""
        if epoch is None or epoch >= self.newer_fee.epoch:
            return self.newer_fee.basis_points
        return self.older_fee.basis_points


@dataclass
class VaultStateData:
    authority: str
    keeper_authority: str
    owner_wallet: str
    token_mint: str
    min_hold_amount: int
    reward_exclusions: List[str] = field(default_factory=list)
    harvest_threshold: int = 0
    total_fees_harvested: int = 0
    total_rewards_distributed: int = 0
    pending_withheld: int = 0
    last_harvest_time: int = 0
    last_distribution_time: int = 0
    launch_timestamp: int = 0
    fee_finalized: Optional[bool] = None


def _pubkey(data: bytes, offset: int) -> str:
    return base58.b58encode(data[offset:offset + 32]).decode()


def _u64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", data, offset)[0]


def parse_extensions(data: bytes, expected_account_type: int) -> Dict[int, bytes]:
    """
    Read the TLV extension area that follows the 165-byte base.

    Raises:
        ValueError: wrong account type byte or a truncated entry
    """
    if len(data) <= ACCOUNT_TYPE_OFFSET:
        return {}
    if data[ACCOUNT_TYPE_OFFSET] != expected_account_type:
        raise ValueError(f"Unexpected account type {data[ACCOUNT_TYPE_OFFSET]}")

    extensions = {}
    offset = TLV_START
    while offset + 4 <= len(data):
        ext_type, length = struct.unpack_from("<HH", data, offset)
        offset += 4
        if ext_type == 0 and length == 0:
            break  # zero padding
        if offset + length > len(data):
            raise ValueError(f"Truncated extension {ext_type}")
        extensions[ext_type] = bytes(data[offset:offset + length])
        offset += length
    return extensions


def parse_token_account(data: bytes) -> TokenAccountData:
    """
    Parse a Token-2022 token account including its withheld fee.

    Raises:
        ValueError: data is not a token account
    """
    if len(data) < TOKEN_ACCOUNT_BASE_SIZE:
        raise ValueError(f"Token account too short: {len(data)} bytes")

    account = TokenAccountData(
        mint=_pubkey(data, 0),
        owner=_pubkey(data, 32),
        amount=_u64(data, 64),
    )

    extensions = parse_extensions(data, ACCOUNT_TYPE_ACCOUNT)
    fee_amount = extensions.get(EXT_TRANSFER_FEE_AMOUNT)
    if fee_amount is not None:
        if len(fee_amount) < 8:
            raise ValueError("TransferFeeAmount extension too short")
        account.withheld_amount = _u64(fee_amount, 0)
    return account


def parse_mint_fee_config(data: bytes) -> MintFeeConfig:
    """
    Parse the TransferFeeConfig extension of a Token-2022 mint.

    Raises:
        ValueError: the mint has no transfer fee config
    """
    if len(data) < MINT_BASE_SIZE:
        raise ValueError(f"Mint account too short: {len(data)} bytes")

    config = parse_extensions(data, ACCOUNT_TYPE_MINT).get(EXT_TRANSFER_FEE_CONFIG)
    if config is None or len(config) < TRANSFER_FEE_CONFIG_SIZE:
        raise ValueError("Mint has no TransferFeeConfig extension")

    # authority (32) + withdraw authority (32) precede the withheld amount
    withheld = _u64(config, 64)
    older = TransferFee(*struct.unpack_from("<QQH", config, 72))
    newer = TransferFee(*struct.unpack_from("<QQH", config, 90))
    return MintFeeConfig(withheld_amount=withheld, older_fee=older, newer_fee=newer)


def parse_vault_state(data: bytes) -> VaultStateData:
    """
    Parse the vault program's state account (8-byte discriminator first).

    Raises:
        ValueError: data is truncated
    """
    if len(data) < 8 + 128 + 8 + 4:
        raise ValueError(f"Vault state too short: {len(data)} bytes")

    try:
        offset = 8
        authority = _pubkey(data, offset)
        keeper_authority = _pubkey(data, offset + 32)
        owner_wallet = _pubkey(data, offset + 64)
        token_mint = _pubkey(data, offset + 96)
        offset += 128

        min_hold_amount = _u64(data, offset)
        offset += 8

        (count,) = struct.unpack_from("<I", data, offset)
        offset += 4
        if offset + 32 * count > len(data):
            raise ValueError(f"Vault state truncated in exclusion list ({count} entries)")
        exclusions = [_pubkey(data, offset + 32 * i) for i in range(count)]
        offset += 32 * count

        harvest_threshold, total_harvested, total_distributed, pending_withheld = struct.unpack_from(
            "<QQQQ", data, offset
        )
        offset += 32
        last_harvest_time, last_distribution_time, launch_timestamp = struct.unpack_from("<qqq", data, offset)
        offset += 24
    except struct.error as e:
        raise ValueError(f"Vault state truncated: {e}")

    fee_finalized = bool(data[offset]) if len(data) > offset else None

    return VaultStateData(
        authority=authority,
        keeper_authority=keeper_authority,
        owner_wallet=owner_wallet,
        token_mint=token_mint,
        min_hold_amount=min_hold_amount,
        reward_exclusions=exclusions,
        harvest_threshold=harvest_threshold,
        total_fees_harvested=total_harvested,
        total_rewards_distributed=total_distributed,
        pending_withheld=pending_withheld,
        last_harvest_time=last_harvest_time,
        last_distribution_time=last_distribution_time,
        launch_timestamp=launch_timestamp,
        fee_finalized=fee_finalized,
    )
