"""
Solana adapter for the ledger accessor.

Reads Token-2022 accounts and the vault state over RPC and sends the vault
program's harvest, withdraw and fee-update instructions as versioned
transactions signed by the keeper.
"""

import hashlib
import struct
from typing import Dict, List, Optional, Sequence, Set

import structlog
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.types import MemcmpOpts, TxOpts
from solders.instruction import Instruction, AccountMeta
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID, TransferParams, transfer
from solders.transaction import VersionedTransaction

from miko_keeper.core.config import KeeperSettings, NATIVE_SOL_MINT, TOKEN_2022_PROGRAM
from miko_keeper.core.exceptions import ConfigurationError, LedgerError, TransactionFailedError
from miko_keeper.services.interfaces import (
    BatchOutcome,
    ExclusionSource,
    LedgerAccessor,
    Outcome,
    Transfer,
    WithheldAccount,
)
from .token_account_parser import (
    parse_mint_fee_config,
    parse_token_account,
    parse_vault_state,
    VaultStateData,
)


logger = structlog.get_logger(__name__)

ASSOCIATED_TOKEN_PROGRAM = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
VAULT_SEED = b"vault"
MAX_HARVEST_ACCOUNTS = 20
MAX_MULTIPLE_ACCOUNTS = 100

SPL_TRANSFER_CHECKED = 12
ATA_CREATE_IDEMPOTENT = 1


def anchor_discriminator(name: str) -> bytes:
    """Anchor instruction discriminator: first 8 bytes of sha256("global:<name>")."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def get_associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM),
    )
    return address


def create_ata_idempotent_instruction(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program: Pubkey,
) -> Instruction:
    ata = get_associated_token_address(owner, mint, token_program)
    return Instruction(
        program_id=Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM),
        accounts=[
            AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
            AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
            AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=token_program, is_signer=False, is_writable=False),
        ],
        data=bytes([ATA_CREATE_IDEMPOTENT]),
    )


def transfer_checked_instruction(
    source: Pubkey,
    mint: Pubkey,
    destination: Pubkey,
    owner: Pubkey,
    amount: int,
    decimals: int,
    token_program: Pubkey,
) -> Instruction:
    return Instruction(
        program_id=token_program,
        accounts=[
            AccountMeta(pubkey=source, is_signer=False, is_writable=True),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
            AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
        ],
        data=struct.pack("<BQB", SPL_TRANSFER_CHECKED, amount, decimals),
    )


class SolanaLedgerAccessor(LedgerAccessor):
    """
    Ledger accessor backed by a Solana RPC node.

    The holding account is the keeper's Token-2022 associated account for the
    mint; the vault withdraws into it and swaps spend from it.
    """

    def __init__(self, settings: KeeperSettings, client: Optional[AsyncClient] = None):
        self.settings = settings
        self.client = client
        self.keypair: Optional[Keypair] = None
        self.commitment = Commitment(settings.solana_commitment)

        self.token_program = Pubkey.from_string(TOKEN_2022_PROGRAM)
        self._mint_programs: Dict[str, Pubkey] = {}
        self._vault: Optional[Pubkey] = None
        self._holding: Optional[Pubkey] = None
        self.logger = logger.bind(service="solana_ledger")

    async def initialize(self) -> None:
        """Load the keeper keypair and open the RPC client."""
        if not self.settings.keeper_private_key:
            raise ConfigurationError("Keeper private key not configured")
        if not self.settings.token_mint or not self.settings.vault_program_id:
            raise ConfigurationError("token_mint and vault_program_id are required")

        try:
            self.keypair = Keypair.from_base58_string(self.settings.keeper_private_key)
        except Exception as e:
            raise ConfigurationError(f"Invalid keeper private key: {e}")

        if self.client is None:
            self.client = AsyncClient(
                self.settings.solana_rpc_url,
                commitment=self.commitment,
                timeout=self.settings.call_timeout_seconds,
            )

        mint = Pubkey.from_string(self.settings.token_mint)
        self._vault, _ = Pubkey.find_program_address(
            [VAULT_SEED, bytes(mint)],
            Pubkey.from_string(self.settings.vault_program_id),
        )
        self._holding = get_associated_token_address(self.keypair.pubkey(), mint, self.token_program)

        self.logger.info(
            "Solana ledger initialized",
            keeper=str(self.keypair.pubkey()),
            vault=str(self._vault),
            holding_account=str(self._holding),
        )

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()

    @property
    def keeper_address(self) -> str:
        return str(self.keypair.pubkey())

    @property
    def holding_account(self) -> str:
        return str(self._holding)

    @property
    def vault_address(self) -> str:
        return str(self._vault)

    # Transactions

    async def _send(self, instructions: List[Instruction], label: str) -> str:
        """
        Compile, sign, send and confirm a transaction.

        Raises:
            TransactionFailedError: the transaction was rejected or errored on chain
            LedgerError: the RPC call itself failed
        """
        try:
            blockhash_resp = await self.client.get_latest_blockhash()
            message = MessageV0.try_compile(
                payer=self.keypair.pubkey(),
                instructions=instructions,
                address_lookup_table_accounts=[],
                recent_blockhash=blockhash_resp.value.blockhash,
            )
            transaction = VersionedTransaction(message, [self.keypair])
            response = await self.client.send_transaction(
                transaction,
                opts=TxOpts(skip_preflight=False, preflight_commitment=self.commitment),
            )
        except Exception as e:
            raise LedgerError(f"Failed to send {label}: {e}", {"operation": label})

        return await self._confirm(response.value, label)

    async def _confirm(self, signature: Signature, label: str) -> str:
        try:
            confirmation = await self.client.confirm_transaction(signature, commitment=self.commitment)
        except Exception as e:
            raise LedgerError(f"Failed to confirm {label}: {e}", {"signature": str(signature)})

        status = confirmation.value[0] if confirmation.value else None
        if status is None or status.err is not None:
            raise TransactionFailedError(str(signature), str(status.err if status else "not confirmed"))

        self.logger.debug("Transaction confirmed", operation=label, signature=str(signature))
        return str(signature)

    async def sign_and_send_serialized(self, raw_transaction: bytes, label: str = "swap") -> str:
        """Sign a venue-built versioned transaction as the keeper, send and confirm it."""
        unsigned = VersionedTransaction.from_bytes(raw_transaction)
        signed = VersionedTransaction(unsigned.message, [self.keypair])
        try:
            response = await self.client.send_raw_transaction(
                bytes(signed),
                opts=TxOpts(skip_preflight=False, preflight_commitment=self.commitment),
            )
        except Exception as e:
            raise LedgerError(f"Failed to send {label}: {e}", {"operation": label})
        return await self._confirm(response.value, label)

    def _vault_instruction(self, name: str, accounts: List[AccountMeta], args: bytes = b"") -> Instruction:
        return Instruction(
            program_id=Pubkey.from_string(self.settings.vault_program_id),
            accounts=accounts,
            data=anchor_discriminator(name) + args,
        )

    # Reads

    async def _account_data(self, address: str) -> Optional[bytes]:
        response = await self.client.get_account_info(Pubkey.from_string(address))
        if response.value is None:
            return None
        return bytes(response.value.data)

    async def _mint_program(self, asset: str) -> Pubkey:
        if asset not in self._mint_programs:
            response = await self.client.get_account_info(Pubkey.from_string(asset))
            if response.value is None:
                raise LedgerError(f"Mint {asset} not found", {"mint": asset})
            self._mint_programs[asset] = response.value.owner
        return self._mint_programs[asset]

    async def list_accounts_with_withheld_fee(self, token_id: str) -> List[WithheldAccount]:
        response = await self.client.get_program_accounts(
            self.token_program,
            encoding="base64",
            filters=[MemcmpOpts(offset=0, bytes=token_id)],
        )

        accounts = []
        unparseable = 0
        for keyed in response.value:
            try:
                parsed = parse_token_account(bytes(keyed.account.data))
            except ValueError as e:
                unparseable += 1
                self.logger.debug("Skipping unparseable account", account=str(keyed.pubkey), error=str(e))
                continue
            if parsed.mint == token_id and parsed.withheld_amount > 0:
                accounts.append(WithheldAccount(account=str(keyed.pubkey), amount=parsed.withheld_amount))

        self.logger.info(
            "Token accounts scanned",
            scanned=len(response.value),
            with_withheld=len(accounts),
            unparseable=unparseable,
        )
        return accounts

    async def read_mint_withheld(self, token_id: str) -> int:
        data = await self._account_data(token_id)
        if data is None:
            raise LedgerError(f"Mint {token_id} not found", {"mint": token_id})
        return parse_mint_fee_config(data).withheld_amount

    async def get_balance(self, account_id: str) -> int:
        data = await self._account_data(account_id)
        if data is None:
            return 0
        return parse_token_account(data).amount

    async def get_native_balance(self, address: str) -> int:
        response = await self.client.get_balance(Pubkey.from_string(address))
        return response.value

    async def get_asset_balance(self, owner: str, asset: str) -> int:
        if asset == NATIVE_SOL_MINT:
            return await self.get_native_balance(owner)
        program = await self._mint_program(asset)
        ata = get_associated_token_address(Pubkey.from_string(owner), Pubkey.from_string(asset), program)
        return await self.get_balance(str(ata))

    async def read_current_fee_rate(self, token_id: str) -> int:
        """
        The most recently set fee rate.

        SetTransferFee schedules the new rate two epochs ahead, so the newer
        fee is read regardless of the current epoch.
        """
        data = await self._account_data(token_id)
        if data is None:
            raise LedgerError(f"Mint {token_id} not found", {"mint": token_id})
        return parse_mint_fee_config(data).rate_for_epoch()

    async def read_vault_state(self) -> VaultStateData:
        data = await self._account_data(self.vault_address)
        if data is None:
            raise LedgerError("Vault state account not found", {"vault": self.vault_address})
        return parse_vault_state(data)

    async def read_launch_timestamp(self, token_id: str) -> Optional[int]:
        state = await self.read_vault_state()
        return state.launch_timestamp if state.launch_timestamp > 0 else None

    async def read_reward_exclusions(self) -> List[str]:
        state = await self.read_vault_state()
        return state.reward_exclusions

    async def find_executable_accounts(self, addresses: Sequence[str]) -> Set[str]:
        """Addresses among ``addresses`` that are executable program accounts."""
        executable: Set[str] = set()
        for start in range(0, len(addresses), MAX_MULTIPLE_ACCOUNTS):
            chunk = list(addresses[start:start + MAX_MULTIPLE_ACCOUNTS])
            response = await self.client.get_multiple_accounts([Pubkey.from_string(a) for a in chunk])
            for address, account in zip(chunk, response.value):
                if account is not None and account.executable:
                    executable.add(address)
        return executable

    async def read_chain_time(self) -> Optional[int]:
        slot = await self.client.get_slot()
        block_time = await self.client.get_block_time(slot.value)
        return block_time.value

    # Writes

    async def harvest_batch(self, token_id: str, account_ids: Sequence[str]) -> BatchOutcome:
        if not account_ids or len(account_ids) > MAX_HARVEST_ACCOUNTS:
            raise ValueError(f"Harvest batch must hold 1-{MAX_HARVEST_ACCOUNTS} accounts, got {len(account_ids)}")

        pubkeys = [Pubkey.from_string(account) for account in account_ids]
        args = struct.pack("<I", len(pubkeys)) + b"".join(bytes(key) for key in pubkeys)
        accounts = [
            AccountMeta(pubkey=self._vault, is_signer=False, is_writable=True),
            AccountMeta(pubkey=self.keypair.pubkey(), is_signer=True, is_writable=False),
            AccountMeta(pubkey=Pubkey.from_string(token_id), is_signer=False, is_writable=True),
            AccountMeta(pubkey=self.token_program, is_signer=False, is_writable=False),
        ] + [AccountMeta(pubkey=key, is_signer=False, is_writable=True) for key in pubkeys]

        try:
            signature = await self._send([self._vault_instruction("harvest_fees", accounts, args)], "harvest_fees")
        except TransactionFailedError as e:
            return BatchOutcome(success=False, tx_id=e.details.get("signature"), error=e.message)
        return BatchOutcome(success=True, tx_id=signature)

    async def withdraw_mint_withheld(self, token_id: str) -> int:
        mint = Pubkey.from_string(token_id)
        withheld = await self.read_mint_withheld(token_id)
        if withheld == 0:
            self.logger.debug("Mint holds no withheld fees")
            return 0

        instructions = [
            create_ata_idempotent_instruction(self.keypair.pubkey(), self.keypair.pubkey(), mint, self.token_program),
            self._vault_instruction("withdraw_fees_from_mint", [
                AccountMeta(pubkey=self._vault, is_signer=False, is_writable=True),
                AccountMeta(pubkey=self.keypair.pubkey(), is_signer=True, is_writable=False),
                AccountMeta(pubkey=mint, is_signer=False, is_writable=True),
                AccountMeta(pubkey=self._holding, is_signer=False, is_writable=True),
                AccountMeta(pubkey=self.token_program, is_signer=False, is_writable=False),
            ]),
        ]
        signature = await self._send(instructions, "withdraw_fees_from_mint")
        self.logger.info("Withdrew mint withheld fees", amount=withheld, signature=signature)
        return withheld

    async def ensure_account(self, owner: str, asset: str) -> str:
        if asset == NATIVE_SOL_MINT:
            return owner

        program = await self._mint_program(asset)
        owner_key = Pubkey.from_string(owner)
        mint = Pubkey.from_string(asset)
        ata = get_associated_token_address(owner_key, mint, program)

        if await self._account_data(str(ata)) is None:
            await self._send(
                [create_ata_idempotent_instruction(self.keypair.pubkey(), owner_key, mint, program)],
                "create_associated_account",
            )
            self.logger.info("Created receiving account", owner=owner, account=str(ata))
        return str(ata)

    async def transfer_batch(self, transfers: Sequence[Transfer]) -> BatchOutcome:
        instructions = []
        for item in transfers:
            if item.asset == NATIVE_SOL_MINT:
                instructions.append(transfer(TransferParams(
                    from_pubkey=self.keypair.pubkey(),
                    to_pubkey=Pubkey.from_string(item.destination),
                    lamports=item.amount,
                )))
            else:
                program = await self._mint_program(item.asset)
                mint = Pubkey.from_string(item.asset)
                instructions.append(transfer_checked_instruction(
                    source=get_associated_token_address(self.keypair.pubkey(), mint, program),
                    mint=mint,
                    destination=Pubkey.from_string(item.destination),
                    owner=self.keypair.pubkey(),
                    amount=item.amount,
                    decimals=self.settings.reward_decimals,
                    token_program=program,
                ))

        try:
            signature = await self._send(instructions, "reward_transfer")
        except TransactionFailedError as e:
            return BatchOutcome(success=False, tx_id=e.details.get("signature"), error=e.message)
        return BatchOutcome(success=True, tx_id=signature)

    async def apply_fee_rate_update(self, token_id: str, new_rate_bps: int, finalize: bool) -> Outcome:
        # the vault program locks the fee itself once the final tier is set
        instruction = self._vault_instruction(
            "update_transfer_fee",
            [
                AccountMeta(pubkey=self._vault, is_signer=False, is_writable=True),
                AccountMeta(pubkey=self.keypair.pubkey(), is_signer=True, is_writable=False),
                AccountMeta(pubkey=Pubkey.from_string(token_id), is_signer=False, is_writable=True),
                AccountMeta(pubkey=self.token_program, is_signer=False, is_writable=False),
            ],
            struct.pack("<H", new_rate_bps),
        )
        try:
            signature = await self._send([instruction], "update_transfer_fee")
        except TransactionFailedError as e:
            return Outcome(success=False, tx_id=e.details.get("signature"), error=e.message)

        self.logger.info("Transfer fee updated", rate_bps=new_rate_bps, finalize=finalize, signature=signature)
        return Outcome(success=True, tx_id=signature)


class VaultExclusionSource(ExclusionSource):
    """Reward exclusions recorded in the vault state plus the vault itself."""

    def __init__(self, ledger: SolanaLedgerAccessor):
        self.ledger = ledger

    async def fetch_exclusions(self, token_id: str) -> Set[str]:
        exclusions = set(await self.ledger.read_reward_exclusions())
        exclusions.add(self.ledger.vault_address)
        return exclusions
