from __future__ import annotations

"""
Wire codec and canonical hashing for legacy Solana transactions.

The canonical form of a transaction keeps what the service decided when it
built it and discards what a wallet may legitimately change before handing
it back:

- compute-budget instructions and instructions of wallet-injected programs
  are removed
- every signature slot is reset to the default (all-zero) signature

The canonical message is recompiled from the remaining instructions in their
original order, so adding or dropping a compute-budget instruction or a
signature never changes the hash, while any other instruction change does.
"""

import hashlib
from typing import Iterable, List

from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from ..crypto_utils import b64decode, b64encode
from ..errors import HASH_MISMATCH, TRANSACTION_INVALID, IntegrityError, ValidationError
from .constants import COMPUTE_BUDGET_PROGRAM_ID


def decode_transaction(serialized: str) -> Transaction:
    try:
        return Transaction.from_bytes(b64decode(serialized))
    except Exception as e:
        raise ValidationError(TRANSACTION_INVALID, f"could not decode transaction: {e}") from e


def encode_transaction(tx: Transaction) -> str:
    return b64encode(bytes(tx))


def signer_keys(message: Message) -> List[Pubkey]:
    return list(message.account_keys[: message.header.num_required_signatures])


def _is_writable(message: Message, index: int) -> bool:
    header = message.header
    n_keys = len(message.account_keys)
    n_signed = header.num_required_signatures
    if index < n_signed:
        return index < n_signed - header.num_readonly_signed_accounts
    return index < n_keys - header.num_readonly_unsigned_accounts


def decompile_instructions(message: Message) -> List[Instruction]:
    """Rebuild full Instructions from a compiled message."""
    keys = message.account_keys
    n_signed = message.header.num_required_signatures
    out: List[Instruction] = []
    for ci in message.instructions:
        metas = [
            AccountMeta(pubkey=keys[i], is_signer=i < n_signed, is_writable=_is_writable(message, i))
            for i in bytes(ci.accounts)
        ]
        out.append(Instruction(keys[ci.program_id_index], bytes(ci.data), metas))
    return out


class IntegrityHasher:
    def __init__(self, excluded_program_ids: Iterable[Pubkey] = ()):
        self._excluded = frozenset([COMPUTE_BUDGET_PROGRAM_ID, *excluded_program_ids])

    @property
    def excluded_program_ids(self) -> frozenset:
        return self._excluded

    def kept_instructions(self, tx: Transaction) -> List[Instruction]:
        return [ix for ix in decompile_instructions(tx.message) if ix.program_id not in self._excluded]

    def canonicalize(self, tx: Transaction) -> Transaction:
        message = tx.message
        fee_payer = message.account_keys[0]
        canonical = Message.new_with_blockhash(self.kept_instructions(tx), fee_payer, message.recent_blockhash)
        # new_unsigned fills every slot with the default signature
        return Transaction.new_unsigned(canonical)

    def hash(self, tx: Transaction) -> str:
        canonical = self.canonicalize(tx)
        return hashlib.sha256(bytes(canonical)).hexdigest()

    def verify(self, tx: Transaction, expected_hash: str) -> str:
        actual = self.hash(tx)
        if actual != expected_hash:
            raise IntegrityError(HASH_MISMATCH, "transaction does not match the one issued for this nonce")
        return actual
