from __future__ import annotations

"""
Named runtime configuration.

Operators can override program ids, the reward mint, fee amounts and the
treasury wallet at runtime by writing rows into the ``keys`` table; any
name without a row falls back to the static settings. ``KeyResolver`` is
also the priority-fee oracle used by the transaction builder.
"""

import asyncio
import logging
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from solders.pubkey import Pubkey

from ..settings import Settings
from ..storage.sqlite_store import SqliteStore
from .constants import LAMPORTS_PER_SOL, MICRO_LAMPORTS_PER_LAMPORT

log = logging.getLogger(__name__)

REWARD_SYSTEM_PROGRAM_ID = "REWARD_SYSTEM_PROGRAM_ID"
AIRDROPS_PROGRAM_ID = "AIRDROPS_PROGRAM_ID"
STAKE_PROGRAM_ID = "STAKE_PROGRAM_ID"
REWARD_TOKEN_MINT = "REWARD_TOKEN_MINT"
FOUNDATION_WALLET_ADDRESS = "FOUNDATION_WALLET_ADDRESS"
PRIORITY_FEE_SOL = "SOLANA_PRIORITY_FEE_TO_CLAIM"
NETWORK_FEE_TOKENS = "NETWORK_FEE_TRANSACTION"
MINIMUM_REMAINING_SOL = "MINIMUM_REMAINING_SOLANA_BALANCE"


class KeyStore(SqliteStore):
    def get(self, name: str) -> Optional[str]:
        with self._session() as conn:
            row = conn.execute("SELECT value FROM keys WHERE name=?", (name,)).fetchone()
            return str(row["value"]) if row else None

    def set(self, name: str, value: str) -> None:
        with self._session() as conn:
            conn.execute(
                "INSERT INTO keys(name, value) VALUES (?, ?) "
                "ON CONFLICT(name) DO UPDATE SET value=excluded.value",
                (name, str(value)),
            )

    def delete(self, name: str) -> None:
        with self._session() as conn:
            conn.execute("DELETE FROM keys WHERE name=?", (name,))


def to_token_amount(amount: float, decimals: int = 6) -> int:
    """Convert a UI amount to base units, rounding half up."""
    scaled = Decimal(str(amount)).scaleb(decimals)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def sol_to_micro_lamports(fee_sol: float) -> int:
    """Compute-unit price for a priority fee expressed in SOL (floored)."""
    return int(math.floor(Decimal(str(fee_sol)) * MICRO_LAMPORTS_PER_LAMPORT))


class KeyResolver:
    """Typed accessors over KeyStore with settings fallbacks."""

    def __init__(self, store: KeyStore, settings: Settings):
        self._store = store
        self._settings = settings

    async def _lookup(self, name: str) -> Optional[str]:
        return await asyncio.to_thread(self._store.get, name)

    async def _pubkey(self, name: str, fallback: Optional[str]) -> Pubkey:
        value = await self._lookup(name) or fallback
        if not value:
            raise ValueError(f"{name} is not configured")
        return Pubkey.from_string(value)

    async def _number(self, name: str, fallback: float) -> float:
        value = await self._lookup(name)
        if value is None:
            return float(fallback)
        try:
            return float(value)
        except ValueError:
            log.warning("ignoring non-numeric key %s=%r", name, value)
            return float(fallback)

    async def program_ids(self) -> Dict[str, Pubkey]:
        progs = self._settings.programs
        return {
            "reward_system": await self._pubkey(REWARD_SYSTEM_PROGRAM_ID, progs.reward_system),
            "airdrops": await self._pubkey(AIRDROPS_PROGRAM_ID, progs.airdrops),
            "stake": await self._pubkey(STAKE_PROGRAM_ID, progs.stake),
        }

    async def program_id(self, kind: str) -> Pubkey:
        return (await self.program_ids())[kind]

    async def reward_token_mint(self) -> Pubkey:
        return await self._pubkey(REWARD_TOKEN_MINT, self._settings.tokens.reward_mint)

    async def foundation_wallet(self) -> Pubkey:
        return await self._pubkey(FOUNDATION_WALLET_ADDRESS, self._settings.fees.foundation_wallet)

    async def priority_fee_micro_lamports(self) -> int:
        fee_sol = await self._number(PRIORITY_FEE_SOL, self._settings.fees.priority_fee_sol)
        return sol_to_micro_lamports(fee_sol)

    async def network_fee_amount(self) -> int:
        tokens = await self._number(NETWORK_FEE_TOKENS, self._settings.fees.network_fee_tokens)
        return to_token_amount(tokens, self._settings.tokens.decimals)

    async def minimum_remaining_lamports(self) -> int:
        sol = await self._number(MINIMUM_REMAINING_SOL, self._settings.fees.minimum_remaining_sol)
        return int(Decimal(str(sol)) * LAMPORTS_PER_SOL)
