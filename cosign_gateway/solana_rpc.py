from __future__ import annotations

"""
Thin non-blocking facade over ``solana.rpc.async_api.AsyncClient``.

Every method is a coroutine that unwraps the RPC response into plain values.
The underlying client is recreated once it is older than ``max_age_sec``, or
on ``reset()`` when a caller suspects the connection is unhealthy.
"""

import logging
import time
from typing import Callable, Optional, Tuple

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed, Finalized
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

log = logging.getLogger(__name__)


class SolanaRpc:
    def __init__(
        self,
        endpoint: str,
        *,
        commitment: Commitment = Confirmed,
        max_age_sec: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._endpoint = endpoint
        self._commitment = commitment
        self._max_age = float(max_age_sec)
        self._clock = clock
        self._client: Optional[AsyncClient] = None
        self._created_at = 0.0

    async def client(self) -> AsyncClient:
        now = self._clock()
        if self._client is not None and now - self._created_at > self._max_age:
            log.info("renewing solana rpc connection (age %.0fs)", now - self._created_at)
            await self._close_client()
        if self._client is None:
            self._client = AsyncClient(self._endpoint, commitment=self._commitment)
            self._created_at = now
        return self._client

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.close()
        except Exception:
            log.warning("closing stale rpc client failed", exc_info=True)

    async def reset(self) -> None:
        await self._close_client()

    async def close(self) -> None:
        await self._close_client()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def latest_blockhash(self) -> Tuple[Hash, int]:
        resp = await (await self.client()).get_latest_blockhash(self._commitment)
        return resp.value.blockhash, int(resp.value.last_valid_block_height)

    async def block_height(self, commitment: Commitment = Finalized) -> int:
        resp = await (await self.client()).get_block_height(commitment)
        return int(resp.value)

    async def is_blockhash_valid(self, blockhash: Hash) -> bool:
        resp = await (await self.client()).is_blockhash_valid(blockhash, Finalized)
        return bool(resp.value)

    async def get_balance(self, pubkey: Pubkey) -> int:
        resp = await (await self.client()).get_balance(pubkey)
        return int(resp.value)

    async def get_account_data(self, pubkey: Pubkey) -> Optional[bytes]:
        resp = await (await self.client()).get_account_info(pubkey)
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    async def account_exists(self, pubkey: Pubkey) -> bool:
        return (await self.get_account_data(pubkey)) is not None

    async def token_account_balance(self, pubkey: Pubkey) -> int:
        """Raw token amount held by a token account; 0 when it does not exist."""
        if not await self.account_exists(pubkey):
            return 0
        resp = await (await self.client()).get_token_account_balance(pubkey)
        return int(resp.value.amount)

    async def fee_for_message(self, message: Message) -> int:
        resp = await (await self.client()).get_fee_for_message(message)
        return int(resp.value or 0)

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        resp = await (await self.client()).get_minimum_balance_for_rent_exemption(size)
        return int(resp.value)

    async def simulate(self, tx: Transaction) -> Optional[str]:
        """Simulate without signature checks; returns the error string, if any."""
        resp = await (await self.client()).simulate_transaction(tx, sig_verify=False)
        err = resp.value.err
        if err is not None:
            log.debug("simulation logs: %s", resp.value.logs)
            return str(err)
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send_raw_transaction(self, raw: bytes) -> Signature:
        opts = TxOpts(skip_confirmation=True, skip_preflight=True, preflight_commitment=Confirmed)
        resp = await (await self.client()).send_raw_transaction(raw, opts=opts)
        return resp.value

    async def confirm_transaction(
        self, signature: Signature, *, last_valid_block_height: Optional[int] = None
    ) -> Optional[str]:
        """Wait for ``confirmed``; returns an error description or None on success."""
        resp = await (await self.client()).confirm_transaction(
            signature, Confirmed, last_valid_block_height=last_valid_block_height
        )
        statuses = resp.value
        status = statuses[0] if statuses else None
        if status is None:
            return "transaction status unavailable"
        if status.err is not None:
            return str(status.err)
        return None
