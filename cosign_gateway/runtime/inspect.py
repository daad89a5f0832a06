from __future__ import annotations

"""
Instruction classification and the node-initialization screen.

Node initialization has no stored hash to compare against, so the co-sign
step screens it instead. Two checks apply:

- shape: besides compute-budget instructions, wallet-injected programs and
  token-program instructions, the transaction may carry exactly one
  reward-program ``initialize_nfnode`` whose derived accounts belong to the
  fee payer. Anything else is an unexpected instruction.
- funds: a token instruction that moves, delegates, re-assigns or closes a
  token account under the authority of the fee payer or the admin must
  target the foundation treasury or an account the initialization itself
  derives. A token instruction that cannot be decoded counts as a drain.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from .accounts import AccountDeriver
from .constants import TOKEN_PROGRAM_IDS
from .programs import REWARD_SYSTEM_INSTRUCTIONS, ProgramKind, instruction_name
from .tx_codec import decompile_instructions, signer_keys

log = logging.getLogger(__name__)

# SPL token instruction tags, shared by Token and Token-2022
TRANSFER = 3
APPROVE = 4
SET_AUTHORITY = 6
CLOSE_ACCOUNT = 9
TRANSFER_CHECKED = 12
APPROVE_CHECKED = 13

# tag -> (minimum data length, target account index, authority account index).
# The token program ignores trailing data, so lengths are lower bounds.
_FUND_MOVES = {
    TRANSFER: (9, 1, 2),
    APPROVE: (9, 1, 2),
    CLOSE_ACCOUNT: (1, 1, 2),
    TRANSFER_CHECKED: (10, 2, 3),
    APPROVE_CHECKED: (10, 2, 3),
}

_INIT_ACCOUNTS = [a.name for a in REWARD_SYSTEM_INSTRUCTIONS["initialize_nfnode"].accounts]
# chosen by the caller, not derived; never trusted as a transfer target
_CALLER_CHOSEN = frozenset({"host", "manufacturer"})


@dataclass(frozen=True)
class ClassifiedInstruction:
    index: int
    instruction: Instruction
    program: Optional[ProgramKind] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class TokenMovement:
    index: int
    tag: int
    target: Optional[Pubkey]
    authority: Optional[Pubkey]
    malformed: bool = False


def token_movement(ix: Instruction, index: int = 0) -> Optional[TokenMovement]:
    """Decode a token instruction that can hand funds to someone else."""
    if ix.program_id not in TOKEN_PROGRAM_IDS or not ix.data:
        return None
    data = bytes(ix.data)
    accounts = [meta.pubkey for meta in ix.accounts]
    tag = data[0]

    if tag == SET_AUTHORITY:
        # tag, authority type, COption<Pubkey>
        if len(data) < 3 or len(accounts) < 2 or data[2] not in (0, 1) or (data[2] == 1 and len(data) < 35):
            return TokenMovement(index, tag, None, None, malformed=True)
        target = Pubkey.from_bytes(data[3:35]) if data[2] == 1 else None
        return TokenMovement(index, tag, target, accounts[1])

    layout = _FUND_MOVES.get(tag)
    if layout is None:
        return None
    min_len, target_at, authority_at = layout
    if len(data) < min_len or len(accounts) <= authority_at:
        return TokenMovement(index, tag, None, None, malformed=True)
    return TokenMovement(index, tag, accounts[target_at], accounts[authority_at])


class TransactionInspector:
    def __init__(
        self,
        program_ids: Mapping[ProgramKind, Pubkey],
        treasury_destinations: Iterable[Pubkey] = (),
        *,
        cosigner: Optional[Pubkey] = None,
        ignored_program_ids: Iterable[Pubkey] = (),
    ):
        self._by_id: Dict[Pubkey, ProgramKind] = {pid: ProgramKind(kind) for kind, pid in program_ids.items()}
        self._reward_program = program_ids.get(ProgramKind.REWARD_SYSTEM)
        self._treasury: Set[Pubkey] = set(treasury_destinations)
        self._cosigner = cosigner
        self._ignored: FrozenSet[Pubkey] = frozenset(ignored_program_ids)

    def classify(self, tx: Transaction) -> List[ClassifiedInstruction]:
        out: List[ClassifiedInstruction] = []
        for i, ix in enumerate(decompile_instructions(tx.message)):
            kind = self._by_id.get(ix.program_id)
            name = instruction_name(kind, ix.data) if kind is not None else None
            out.append(ClassifiedInstruction(index=i, instruction=ix, program=kind, name=name))
        return out

    @staticmethod
    def _is_init(c: ClassifiedInstruction) -> bool:
        return c.program is ProgramKind.REWARD_SYSTEM and c.name == "initialize_nfnode"

    def is_node_initialization(self, tx: Transaction) -> bool:
        return any(self._is_init(c) for c in self.classify(tx))

    # ------------------------------------------------------------------
    # Shape
    # ------------------------------------------------------------------

    def _init_accounts(self, ix: Instruction) -> Dict[str, Pubkey]:
        return dict(zip(_INIT_ACCOUNTS, (meta.pubkey for meta in ix.accounts)))

    def _init_is_derived(self, ix: Instruction, fee_payer: Pubkey) -> bool:
        accounts = self._init_accounts(ix)
        if len(accounts) < len(_INIT_ACCOUNTS) or self._reward_program is None:
            return False
        deriver = AccountDeriver(self._reward_program)
        nft_mint = accounts["nft_mint_address"]
        expected = {
            "user": fee_payer,
            "user_nft_token_account": deriver.user_nft_token_account(fee_payer, nft_mint),
            "nfnode_entry": deriver.nfnode_entry(nft_mint),
            "admin_account": deriver.admin_account(),
        }
        if self._cosigner is not None:
            expected["user_admin"] = self._cosigner
        return all(accounts[name] == key for name, key in expected.items())

    def unexpected_instructions(self, tx: Transaction) -> List[ClassifiedInstruction]:
        """Instructions a node initialization may not carry."""
        fee_payer = tx.message.account_keys[0]
        seen_init = False
        out: List[ClassifiedInstruction] = []
        for c in self.classify(tx):
            program_id = c.instruction.program_id
            if program_id in self._ignored or program_id in TOKEN_PROGRAM_IDS:
                continue
            if self._is_init(c) and not seen_init and self._init_is_derived(c.instruction, fee_payer):
                seen_init = True
                continue
            out.append(c)
        if not seen_init:
            log.warning("node initialization without a valid initialize_nfnode instruction")
        for c in out:
            log.warning("unexpected instruction %d in node initialization: %s %s", c.index, c.program, c.name)
        return out

    # ------------------------------------------------------------------
    # Funds
    # ------------------------------------------------------------------

    def _covered(self, instructions: List[Instruction]) -> Set[Pubkey]:
        covered: Set[Pubkey] = set()
        for ix in instructions:
            if ix.program_id != self._reward_program:
                continue
            if instruction_name(ProgramKind.REWARD_SYSTEM, ix.data) == "initialize_nfnode":
                covered.update(key for name, key in self._init_accounts(ix).items() if name not in _CALLER_CHOSEN)
            else:
                covered.update(meta.pubkey for meta in ix.accounts)
        return covered

    def has_suspicious_transfers(self, tx: Transaction) -> bool:
        message = tx.message
        fee_payer = message.account_keys[0]
        authorities = {fee_payer}
        if self._cosigner is not None and self._cosigner in signer_keys(message):
            authorities.add(self._cosigner)

        instructions = decompile_instructions(message)
        covered = self._covered(instructions)

        for i, ix in enumerate(instructions):
            move = token_movement(ix, i)
            if move is None:
                continue
            if move.malformed:
                log.warning("undecodable token instruction %d (tag %d)", i, move.tag)
                return True
            if move.authority not in authorities or move.target is None:
                continue
            if move.target in self._treasury or move.target in covered:
                continue
            log.warning("suspicious token instruction %d (tag %d): %s -> %s", i, move.tag, move.authority, move.target)
            return True
        return False
