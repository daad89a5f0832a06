from __future__ import annotations

"""
Transaction assembly for every gateway action.

Each transaction is laid out as:

1. a compute-unit price instruction (priority fee from the key oracle)
2. the program instruction for the action
3. for node initialization and host updates, an SPL transfer of the network
   fee from the user to the foundation treasury

The fee payer is always the requesting wallet. When the admin key is one of
the required signers it partially signs right away; the user's slot stays
empty until the wallet signs.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Sequence

from solders.compute_budget import set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from spl.token.instructions import TransferParams, transfer

from ..errors import ACCOUNTS_PREPARATION_FAILED, AuthorizationError, GatewayError
from ..settings import NodeDefaultsConf
from ..solana_rpc import SolanaRpc
from .accounts import AccountDeriver, ClaimAccounts, NodeAccounts, derive_associated_token_account
from .constants import TOKEN_PROGRAM_ID
from .keys import KeyResolver, to_token_amount
from .ledger import ClaimerType
from .programs import ProgramClientRegistry, ProgramKind, account_map, nfnode_type_value
from .tx_codec import encode_transaction, signer_keys

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuiltTransaction:
    transaction: Transaction
    blockhash: Hash
    last_valid_block_height: int
    admin_signed: bool

    @property
    def serialized(self) -> str:
        return encode_transaction(self.transaction)


def sign_as_admin(tx: Transaction, admin: Keypair) -> bool:
    """Partially sign ``tx`` in place if the admin key is a required signer."""
    if admin.pubkey() not in signer_keys(tx.message):
        return False
    # keep the existing blockhash: changing it would void the user's signature
    tx.partial_sign([admin], tx.message.recent_blockhash)
    return True


class TransactionBuilder:
    def __init__(
        self,
        *,
        rpc: SolanaRpc,
        registry: ProgramClientRegistry,
        keys: KeyResolver,
        admin: Keypair,
        node_defaults: NodeDefaultsConf,
        token_decimals: int = 6,
    ):
        self._rpc = rpc
        self._registry = registry
        self._keys = keys
        self._admin = admin
        self._node_defaults = node_defaults
        self._decimals = token_decimals

    @property
    def admin_pubkey(self) -> Pubkey:
        return self._admin.pubkey()

    @asynccontextmanager
    async def _preparing(self, action: str) -> AsyncIterator[None]:
        try:
            yield
        except GatewayError:
            raise
        except Exception as e:
            log.warning("preparing accounts for %s failed: %s", action, e)
            raise AuthorizationError(ACCOUNTS_PREPARATION_FAILED, f"could not prepare accounts for {action}") from e

    async def _assemble(
        self, payer: Pubkey, instructions: Sequence[Instruction], *, sign: bool = True
    ) -> BuiltTransaction:
        micro_lamports = await self._keys.priority_fee_micro_lamports()
        blockhash, last_valid = await self._rpc.latest_blockhash()
        message = Message.new_with_blockhash(
            [set_compute_unit_price(micro_lamports), *instructions], payer, blockhash
        )
        tx = Transaction.new_unsigned(message)
        signed = sign_as_admin(tx, self._admin) if sign else False
        return BuiltTransaction(
            transaction=tx, blockhash=blockhash, last_valid_block_height=last_valid, admin_signed=signed
        )

    async def _network_fee_transfer(self, user: Pubkey) -> Instruction:
        mint = await self._keys.reward_token_mint()
        treasury = await self._keys.foundation_wallet()
        amount = await self._keys.network_fee_amount()
        return transfer(
            TransferParams(
                program_id=TOKEN_PROGRAM_ID,
                source=AccountDeriver.user_token_account(user, mint),
                dest=derive_associated_token_account(treasury, mint),
                owner=user,
                amount=amount,
            )
        )

    # ------------------------------------------------------------------
    # Reward system
    # ------------------------------------------------------------------

    async def claim_rewards(
        self,
        user: Pubkey,
        nft_mint: Pubkey,
        amount: float,
        nonce: int,
        claimer_type: ClaimerType,
        *,
        sign: bool = True,
    ) -> BuiltTransaction:
        client = await self._registry.get_instance(ProgramKind.REWARD_SYSTEM)
        async with self._preparing("claim-rewards"):
            mint = await self._keys.reward_token_mint()
            accounts = ClaimAccounts.derive(
                client.deriver, admin=self.admin_pubkey, user=user, nft_mint=nft_mint, token_mint=mint
            )
            name = "owner_claim_rewards" if ClaimerType(claimer_type) is ClaimerType.OWNER else "others_claim_rewards"
            ix = client.instruction(
                name,
                {"reward_amount": to_token_amount(amount, self._decimals), "nonce": int(nonce)},
                account_map(accounts),
            )
            return await self._assemble(user, [ix], sign=sign)

    async def initialize_nfnode(
        self,
        user: Pubkey,
        nft_mint: Pubkey,
        nfnode_type: str,
        *,
        host: Optional[Pubkey] = None,
        manufacturer: Optional[Pubkey] = None,
        host_share: int = 0,
        sign: bool = True,
    ) -> BuiltTransaction:
        client = await self._registry.get_instance(ProgramKind.REWARD_SYSTEM)
        async with self._preparing("initialize-nfnode"):
            deriver = client.deriver
            ix = client.instruction(
                "initialize_nfnode",
                {"host_share": int(host_share), "nfnode_type": nfnode_type_value(nfnode_type)},
                {
                    "user_admin": self.admin_pubkey,
                    "user": user,
                    "host": host if host is not None else Pubkey.from_string(self._node_defaults.host_address),
                    "manufacturer": (
                        manufacturer
                        if manufacturer is not None
                        else Pubkey.from_string(self._node_defaults.manufacturer_address)
                    ),
                    "nft_mint_address": nft_mint,
                    "user_nft_token_account": deriver.user_nft_token_account(user, nft_mint),
                    "nfnode_entry": deriver.nfnode_entry(nft_mint),
                    "admin_account": deriver.admin_account(),
                },
            )
            fee = await self._network_fee_transfer(user)
            return await self._assemble(user, [ix, fee], sign=sign)

    async def add_host(
        self, user: Pubkey, nft_mint: Pubkey, host: Pubkey, host_share: int, *, sign: bool = True
    ) -> BuiltTransaction:
        client = await self._registry.get_instance(ProgramKind.REWARD_SYSTEM)
        async with self._preparing("add-host"):
            deriver = client.deriver
            ix = client.instruction(
                "update_nfnode",
                {"host_share": int(host_share)},
                {
                    "user_admin": self.admin_pubkey,
                    "user": user,
                    "host": host,
                    "nft_mint_address": nft_mint,
                    "user_nft_token_account": deriver.user_nft_token_account(user, nft_mint),
                    "nfnode_entry": deriver.nfnode_entry(nft_mint),
                    "admin_account": deriver.admin_account(),
                },
            )
            fee = await self._network_fee_transfer(user)
            return await self._assemble(user, [ix, fee], sign=sign)

    async def nfnode_initialized(self, nft_mint: Pubkey) -> bool:
        client = await self._registry.get_instance(ProgramKind.REWARD_SYSTEM)
        async with self._preparing("nfnode lookup"):
            return await self._rpc.account_exists(client.deriver.nfnode_entry(nft_mint))

    async def deposit(self, user: Pubkey, nft_mint: Pubkey, *, sign: bool = True) -> BuiltTransaction:
        return await self._node_instruction(ProgramKind.REWARD_SYSTEM, "deposit_tokens", user, nft_mint, {}, sign)

    async def withdraw_tokens(self, user: Pubkey, nft_mint: Pubkey, *, sign: bool = True) -> BuiltTransaction:
        return await self._node_instruction(ProgramKind.REWARD_SYSTEM, "withdraw_tokens", user, nft_mint, {}, sign)

    # ------------------------------------------------------------------
    # Stake
    # ------------------------------------------------------------------

    async def initialize_stake(
        self, user: Pubkey, nft_mint: Pubkey, amount: float, *, sign: bool = True
    ) -> BuiltTransaction:
        args = {"deposit_amount": to_token_amount(amount, self._decimals)}
        return await self._node_instruction(ProgramKind.STAKE, "initialize_nfnode", user, nft_mint, args, sign)

    async def stake(self, user: Pubkey, nft_mint: Pubkey, amount: float, *, sign: bool = True) -> BuiltTransaction:
        args = {"deposit_amount": to_token_amount(amount, self._decimals)}
        return await self._node_instruction(ProgramKind.STAKE, "deposit_tokens", user, nft_mint, args, sign)

    async def withdraw(self, user: Pubkey, nft_mint: Pubkey, *, sign: bool = True) -> BuiltTransaction:
        return await self._node_instruction(ProgramKind.STAKE, "withdraw_tokens", user, nft_mint, {}, sign)

    async def _node_instruction(
        self, kind: ProgramKind, name: str, user: Pubkey, nft_mint: Pubkey, args: dict, sign: bool
    ) -> BuiltTransaction:
        client = await self._registry.get_instance(kind)
        async with self._preparing(f"{kind.value}.{name}"):
            mint = await self._keys.reward_token_mint()
            accounts = NodeAccounts.derive(client.deriver, user=user, nft_mint=nft_mint, token_mint=mint)
            ix = client.instruction(name, args, account_map(accounts, user_admin=self.admin_pubkey))
            return await self._assemble(user, [ix], sign=sign)

    # ------------------------------------------------------------------
    # Airdrops
    # ------------------------------------------------------------------

    async def claim_lost_tokens(
        self, user: Pubkey, amount: float, nonce: int, *, sign: bool = True
    ) -> BuiltTransaction:
        client = await self._registry.get_instance(ProgramKind.AIRDROPS)
        async with self._preparing("claim-lost-tokens"):
            deriver = client.deriver
            mint = await self._keys.reward_token_mint()
            ix = client.instruction(
                "claim_tokens",
                {"amount": to_token_amount(amount, self._decimals), "nonce": int(nonce)},
                {
                    "user_admin": self.admin_pubkey,
                    "user": user,
                    "claim_entry": deriver.claim_entry(user),
                    "token_mint": mint,
                    "token_storage_authority": deriver.token_storage_authority(),
                    "token_storage_account": deriver.token_storage_account(mint),
                    "user_token_account": deriver.user_token_account(user, mint),
                    "admin_account": deriver.admin_account(),
                },
            )
            return await self._assemble(user, [ix], sign=sign)
