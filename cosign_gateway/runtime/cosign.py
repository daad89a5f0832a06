from __future__ import annotations

"""
Co-sign and broadcast.

Takes the transaction a user hands back (already signed by their wallet),
decides whether the admin may countersign it, then broadcasts it and
records the outcome in the authorization ledger.

Order of checks:

1. decode and classify the instructions
2. node initialization has no stored hash, so it is screened instead: it
   may carry only its own derived initialize_nfnode plus token and
   compute-budget instructions, and no token instruction may hand the
   payer's funds to an outside account. Every other flow must match the
   hash recorded for its nonce
3. blockhash liveness (never refreshed, the user's signature covers it)
4. admin partial signature, raw send without preflight, confirmation
5. ledger transition to authorized or unauthorized
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from solders.keypair import Keypair
from solders.transaction import Transaction

from ..errors import (
    BLOCKHASH_EXPIRED,
    BROADCAST_FAILED,
    HASH_MISMATCH,
    NONCE_NOT_FOUND,
    SUCCESS,
    SUSPICIOUS_TRANSFER,
    UNEXPECTED_INSTRUCTION,
    AuthorizationError,
    GatewayError,
    IntegrityError,
    LedgerUpdateError,
    NetworkError,
    require,
)
from ..solana_rpc import SolanaRpc
from .inspect import TransactionInspector
from .ledger import AuthorizationLedger, AuthorizationRecord, AuthorizationStatus
from .tx_builder import sign_as_admin
from .tx_codec import IntegrityHasher, decode_transaction

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoSignResult:
    is_valid: bool
    message: str
    code: str
    signature: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"isValid": self.is_valid, "message": self.message, "code": self.code}
        if self.signature is not None:
            out["signature"] = self.signature
        return out


class CoSignBroadcaster:
    def __init__(
        self,
        *,
        rpc: SolanaRpc,
        ledger: AuthorizationLedger,
        hasher: IntegrityHasher,
        admin: Keypair,
        inspector_factory: Callable[[], Awaitable[TransactionInspector]],
        on_rpc_failure: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._rpc = rpc
        self._ledger = ledger
        self._hasher = hasher
        self._admin = admin
        self._inspector_factory = inspector_factory
        self._on_rpc_failure = on_rpc_failure

    async def sign_and_send(self, serialized: str, nonce: Optional[int]) -> CoSignResult:
        try:
            signature = await self._sign_and_send(serialized, nonce)
        except GatewayError as e:
            log.warning("co-sign rejected (nonce=%s, code=%s): %s", nonce, e.code, e.message)
            return CoSignResult(is_valid=False, message=e.message, code=e.code)
        return CoSignResult(is_valid=True, message="Transaction sent", code=SUCCESS, signature=signature)

    async def _sign_and_send(self, serialized: str, nonce: Optional[int]) -> str:
        tx = decode_transaction(serialized)
        inspector = await self._inspector_factory()

        record: Optional[AuthorizationRecord] = None
        if inspector.is_node_initialization(tx):
            if inspector.unexpected_instructions(tx):
                raise IntegrityError(UNEXPECTED_INSTRUCTION, "node initialization carries instructions it may not")
            if inspector.has_suspicious_transfers(tx):
                raise IntegrityError(SUSPICIOUS_TRANSFER, "transaction moves user funds to an unexpected account")
        else:
            require(nonce is not None, AuthorizationError, NONCE_NOT_FOUND, "nonce is required for this transaction")
            record = await self._ledger.check_pending(nonce)
            require(
                record.expected_hash is not None,
                IntegrityError,
                HASH_MISMATCH,
                f"nonce {nonce} has no issued transaction to compare against",
            )
            self._hasher.verify(tx, record.expected_hash)

        await self._check_liveness(tx, record)

        sign_as_admin(tx, self._admin)
        try:
            signature = await self._rpc.send_raw_transaction(bytes(tx))
            error = await self._rpc.confirm_transaction(
                signature,
                last_valid_block_height=record.last_valid_block_height if record is not None else None,
            )
        except Exception as e:
            log.warning("broadcast failed for nonce %s", nonce, exc_info=True)
            await self._recover()
            await self._settle(record, AuthorizationStatus.UNAUTHORIZED)
            raise NetworkError(BROADCAST_FAILED, f"broadcast failed: {e}") from e

        if error is not None:
            await self._settle(record, AuthorizationStatus.UNAUTHORIZED)
            raise NetworkError(BROADCAST_FAILED, f"transaction failed: {error}")

        await self._settle(record, AuthorizationStatus.AUTHORIZED)
        log.info("co-signed and confirmed %s (nonce=%s)", signature, nonce)
        return str(signature)

    async def _check_liveness(self, tx: Transaction, record: Optional[AuthorizationRecord]) -> None:
        try:
            if record is not None and record.last_valid_block_height is not None:
                height = await self._rpc.block_height()
                expired = height > record.last_valid_block_height
            else:
                expired = not await self._rpc.is_blockhash_valid(tx.message.recent_blockhash)
        except Exception as e:
            log.warning("blockhash liveness check failed", exc_info=True)
            await self._recover()
            raise NetworkError(BROADCAST_FAILED, f"could not check blockhash: {e}") from e
        if expired:
            raise NetworkError(BLOCKHASH_EXPIRED, "blockhash expired, request a new transaction")

    async def _settle(self, record: Optional[AuthorizationRecord], status: AuthorizationStatus) -> None:
        # node initialization has no ledger record
        if record is None:
            return
        try:
            ok = await self._ledger.transition(record.id, status)
        except Exception as e:
            log.exception("ledger update to %s failed for nonce %s", status.value, record.id)
            raise LedgerUpdateError(f"could not record {status.value} for nonce {record.id}") from e
        if not ok:
            raise LedgerUpdateError(f"nonce {record.id} is no longer pending; could not record {status.value}")

    async def _recover(self) -> None:
        if self._on_rpc_failure is None:
            return
        try:
            await self._on_rpc_failure()
        except Exception:
            log.warning("rpc recovery hook failed", exc_info=True)
