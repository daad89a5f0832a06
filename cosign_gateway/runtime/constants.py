"""Well-known program ids and on-chain constants."""

from typing import Final

from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

SYSTEM_PROGRAM_ID: Final[Pubkey] = Pubkey.from_string("11111111111111111111111111111111")
COMPUTE_BUDGET_PROGRAM_ID: Final[Pubkey] = Pubkey.from_string("ComputeBudget111111111111111111111111111111")
MEMO_PROGRAM_ID: Final[Pubkey] = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")

TOKEN_PROGRAM_IDS: Final = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

LAMPORTS_PER_SOL: Final[int] = 1_000_000_000
MICRO_LAMPORTS_PER_LAMPORT: Final[int] = 1_000_000

# Account sizes used for rent estimates
TOKEN_ACCOUNT_SIZE: Final[int] = 165
CLAIM_ENTRY_SIZE: Final[int] = 8 + 8 + 8  # discriminator + last nonce + total claimed
REWARD_ENTRY_SIZE: Final[int] = 8 + 8 + 8
NFNODE_ENTRY_SIZE: Final[int] = 165

__all__ = [
    "ASSOCIATED_TOKEN_PROGRAM_ID",
    "CLAIM_ENTRY_SIZE",
    "COMPUTE_BUDGET_PROGRAM_ID",
    "LAMPORTS_PER_SOL",
    "MEMO_PROGRAM_ID",
    "MICRO_LAMPORTS_PER_LAMPORT",
    "NFNODE_ENTRY_SIZE",
    "REWARD_ENTRY_SIZE",
    "SYSTEM_PROGRAM_ID",
    "TOKEN_2022_PROGRAM_ID",
    "TOKEN_ACCOUNT_SIZE",
    "TOKEN_PROGRAM_ID",
    "TOKEN_PROGRAM_IDS",
]
