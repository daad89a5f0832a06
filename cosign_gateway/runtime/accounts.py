from __future__ import annotations

"""
Deterministic account derivation.

All program-owned accounts are PDAs of the owning program id and a fixed
seed prefix, optionally followed by wallet or mint bytes. Token accounts are
associated token accounts: classic SPL for the reward token, Token-2022 for
node NFTs. Nothing here performs I/O.
"""

from dataclasses import dataclass
from typing import Optional

from solders.pubkey import Pubkey

from .constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

TOKEN_STORAGE_SEED = b"token_storage"
ADMIN_ACCOUNT_SEED = b"admin_account"
REWARD_ENTRY_SEED = b"reward_entry"
NFNODE_ENTRY_SEED = b"nfnode_entry"
CLAIM_ENTRY_SEED = b"claim_entry"


def derive_associated_token_account(
    owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID
) -> Pubkey:
    """ATA address; ``owner`` may be off-curve (a PDA)."""
    addr, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )
    return addr


class AccountDeriver:
    """PDA derivation bound to one program id."""

    def __init__(self, program_id: Pubkey):
        self.program_id = program_id

    def _pda(self, *seeds: bytes) -> Pubkey:
        addr, _ = Pubkey.find_program_address(list(seeds), self.program_id)
        return addr

    def token_storage_authority(self, nft_mint: Optional[Pubkey] = None) -> Pubkey:
        # global vault, or the per-node vault used by init/stake flows
        if nft_mint is None:
            return self._pda(TOKEN_STORAGE_SEED)
        return self._pda(TOKEN_STORAGE_SEED, bytes(nft_mint))

    def token_storage_account(self, token_mint: Pubkey, nft_mint: Optional[Pubkey] = None) -> Pubkey:
        return derive_associated_token_account(self.token_storage_authority(nft_mint), token_mint)

    def admin_account(self) -> Pubkey:
        return self._pda(ADMIN_ACCOUNT_SEED)

    def reward_entry(self, user: Pubkey, nft_mint: Pubkey) -> Pubkey:
        return self._pda(REWARD_ENTRY_SEED, bytes(user), bytes(nft_mint))

    def nfnode_entry(self, nft_mint: Pubkey) -> Pubkey:
        return self._pda(NFNODE_ENTRY_SEED, bytes(nft_mint))

    def claim_entry(self, user: Pubkey) -> Pubkey:
        return self._pda(CLAIM_ENTRY_SEED, bytes(user))

    @staticmethod
    def user_token_account(owner: Pubkey, token_mint: Pubkey) -> Pubkey:
        return derive_associated_token_account(owner, token_mint, TOKEN_PROGRAM_ID)

    @staticmethod
    def user_nft_token_account(owner: Pubkey, nft_mint: Pubkey) -> Pubkey:
        return derive_associated_token_account(owner, nft_mint, TOKEN_2022_PROGRAM_ID)


@dataclass(frozen=True)
class ClaimAccounts:
    """Accounts of a reward claim, in the order the program declares them."""

    user_admin: Pubkey
    user: Pubkey
    nft_mint_address: Pubkey
    reward_entry: Pubkey
    nfnode_entry: Pubkey
    token_mint: Pubkey
    token_storage_authority: Pubkey
    token_storage_account: Pubkey
    user_token_account: Pubkey
    user_nft_token_account: Pubkey
    admin_account: Pubkey

    @classmethod
    def derive(
        cls,
        deriver: AccountDeriver,
        *,
        admin: Pubkey,
        user: Pubkey,
        nft_mint: Pubkey,
        token_mint: Pubkey,
    ) -> "ClaimAccounts":
        return cls(
            user_admin=admin,
            user=user,
            nft_mint_address=nft_mint,
            reward_entry=deriver.reward_entry(user, nft_mint),
            nfnode_entry=deriver.nfnode_entry(nft_mint),
            token_mint=token_mint,
            token_storage_authority=deriver.token_storage_authority(),
            token_storage_account=deriver.token_storage_account(token_mint),
            user_token_account=deriver.user_token_account(user, token_mint),
            user_nft_token_account=deriver.user_nft_token_account(user, nft_mint),
            admin_account=deriver.admin_account(),
        )


@dataclass(frozen=True)
class NodeAccounts:
    """Accounts shared by node init, stake, deposit and withdraw."""

    user: Pubkey
    nft_mint_address: Pubkey
    user_nft_token_account: Pubkey
    nfnode_entry: Pubkey
    token_mint: Pubkey
    token_storage_authority: Pubkey
    token_storage_account: Pubkey
    user_token_account: Pubkey
    admin_account: Pubkey

    @classmethod
    def derive(
        cls, deriver: AccountDeriver, *, user: Pubkey, nft_mint: Pubkey, token_mint: Pubkey
    ) -> "NodeAccounts":
        return cls(
            user=user,
            nft_mint_address=nft_mint,
            user_nft_token_account=deriver.user_nft_token_account(user, nft_mint),
            nfnode_entry=deriver.nfnode_entry(nft_mint),
            token_mint=token_mint,
            token_storage_authority=deriver.token_storage_authority(nft_mint),
            token_storage_account=deriver.token_storage_account(token_mint, nft_mint),
            user_token_account=deriver.user_token_account(user, token_mint),
            admin_account=deriver.admin_account(),
        )
