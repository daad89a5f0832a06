from __future__ import annotations

"""
Authorization ledger.

One record per issued nonce. A record starts in
``requesting_admin_authorization`` and moves exactly once to one of the
terminal states:

    requesting_admin_authorization -> request_authorized_by_admin
    requesting_admin_authorization -> request_unauthorized_by_admin
    requesting_admin_authorization -> request_expired

Transitions are a single conditional UPDATE guarded on the initial state,
so concurrent callers for the same nonce are linearized by sqlite and a
terminal record can never move again. Expiry is evaluated lazily when a
record is verified, not by a background job.

The blocking sqlite bodies are plain methods; the coroutine wrappers run
them on a worker thread so the event loop is never blocked.
"""

import asyncio
import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import (
    MINER_MISMATCH,
    NONCE_DUPLICATE,
    NONCE_EXPIRED,
    NONCE_NOT_FOUND,
    REWARDS_MISMATCH,
    REWARDS_NOT_READY,
    SUCCESS,
    AuthorizationError,
)
from ..storage.sqlite_store import SqliteStore

log = logging.getLogger(__name__)


class AuthorizationStatus(str, Enum):
    REQUESTING = "requesting_admin_authorization"
    AUTHORIZED = "request_authorized_by_admin"
    UNAUTHORIZED = "request_unauthorized_by_admin"
    EXPIRED = "request_expired"


TERMINAL_STATUSES = frozenset(
    {AuthorizationStatus.AUTHORIZED, AuthorizationStatus.UNAUTHORIZED, AuthorizationStatus.EXPIRED}
)


class ActionType(str, Enum):
    CLAIM_REWARDS = "claim-rewards"
    INITIALIZE_NFNODE = "initialize-nfnode"
    STAKE = "stake"
    WITHDRAW = "withdraw"
    DEPOSIT = "deposit"
    UPDATE_CONTRACT = "update-contract"
    ADD_HOST = "add-host"
    CLAIM_W_CREDITS = "claim-w-credits"


class ClaimerType(str, Enum):
    OWNER = "owner"
    OTHER = "other"


REWARD_READY_STATUS = "ready-for-claim"
PAYMENT_PENDING = "pending"


@dataclass(frozen=True)
class AuthorizationRecord:
    id: int
    wallet: str
    action: ActionType
    status: AuthorizationStatus
    created_at: float
    expected_hash: Optional[str] = None
    linked_reward_ids: Tuple[int, ...] = ()
    message_signature: Optional[str] = None
    last_valid_block_height: Optional[int] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: float, window: float) -> bool:
        return now > self.created_at + window

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nonce": self.id,
            "wallet": self.wallet,
            "action": self.action.value,
            "status": self.status.value,
            "createdAt": self.created_at,
            "expectedHash": self.expected_hash,
            "linkedRewardIds": list(self.linked_reward_ids),
            "lastValidBlockHeight": self.last_valid_block_height,
            "context": dict(self.context),
        }


@dataclass(frozen=True)
class VerifyResult:
    is_valid_status: bool
    code: str
    record: Optional[AuthorizationRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"isValidStatus": self.is_valid_status, "code": self.code}


class AuthorizationLedger(SqliteStore):
    def __init__(
        self,
        db_path: str,
        *,
        expiration_window: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(db_path)
        self.expiration_window = float(expiration_window)
        self._clock = clock

    # ------------------------------------------------------------------
    # Sync bodies
    # ------------------------------------------------------------------

    def _row_to_record(self, conn: sqlite3.Connection, row: sqlite3.Row) -> AuthorizationRecord:
        links = conn.execute(
            "SELECT reward_id FROM authorization_reward_links WHERE record_id=? ORDER BY reward_id",
            (row["id"],),
        ).fetchall()
        return AuthorizationRecord(
            id=int(row["id"]),
            wallet=row["wallet"],
            action=ActionType(row["action"]),
            status=AuthorizationStatus(row["status"]),
            created_at=float(row["created_at"]),
            expected_hash=row["expected_hash"],
            linked_reward_ids=tuple(int(r["reward_id"]) for r in links),
            message_signature=row["message_signature"],
            last_valid_block_height=row["last_valid_block_height"],
            context=json.loads(row["context"]) if row["context"] else {},
        )

    def create_sync(
        self,
        nonce: int,
        wallet: str,
        action: ActionType,
        *,
        expected_hash: Optional[str] = None,
        linked_reward_ids: Iterable[int] = (),
        message_signature: Optional[str] = None,
        last_valid_block_height: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuthorizationRecord:
        now = self._clock()
        reward_ids = sorted({int(r) for r in linked_reward_ids})
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO authorization_records(id, wallet, action, status, expected_hash, "
                    "message_signature, last_valid_block_height, context, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        int(nonce),
                        str(wallet),
                        ActionType(action).value,
                        AuthorizationStatus.REQUESTING.value,
                        expected_hash,
                        message_signature,
                        last_valid_block_height,
                        json.dumps(context or {}, sort_keys=True),
                        now,
                        now,
                    ),
                )
                conn.executemany(
                    "INSERT INTO authorization_reward_links(record_id, reward_id) VALUES (?, ?)",
                    [(int(nonce), r) for r in reward_ids],
                )
        except sqlite3.IntegrityError as e:
            raise AuthorizationError(NONCE_DUPLICATE, f"nonce {nonce} already issued") from e

        return AuthorizationRecord(
            id=int(nonce),
            wallet=str(wallet),
            action=ActionType(action),
            status=AuthorizationStatus.REQUESTING,
            created_at=now,
            expected_hash=expected_hash,
            linked_reward_ids=tuple(reward_ids),
            message_signature=message_signature,
            last_valid_block_height=last_valid_block_height,
            context=dict(context or {}),
        )

    def get_sync(self, nonce: int) -> Optional[AuthorizationRecord]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM authorization_records WHERE id=?", (int(nonce),)).fetchone()
            return self._row_to_record(conn, row) if row else None

    def attach_hash_sync(self, nonce: int, expected_hash: str, last_valid_block_height: Optional[int] = None) -> bool:
        with self._session() as conn:
            cur = conn.execute(
                "UPDATE authorization_records SET expected_hash=?, "
                "last_valid_block_height=COALESCE(?, last_valid_block_height), updated_at=? "
                "WHERE id=? AND expected_hash IS NULL AND status=?",
                (
                    expected_hash,
                    last_valid_block_height,
                    self._clock(),
                    int(nonce),
                    AuthorizationStatus.REQUESTING.value,
                ),
            )
            return cur.rowcount == 1

    def transition_sync(self, nonce: int, new_status: AuthorizationStatus) -> bool:
        new_status = AuthorizationStatus(new_status)
        if new_status not in TERMINAL_STATUSES:
            raise ValueError(f"cannot transition to non-terminal status {new_status.value}")

        with self._session() as conn:
            cur = conn.execute(
                "UPDATE authorization_records SET status=?, updated_at=? WHERE id=? AND status=?",
                (new_status.value, self._clock(), int(nonce), AuthorizationStatus.REQUESTING.value),
            )
            if cur.rowcount == 1:
                return True
            row = conn.execute("SELECT status FROM authorization_records WHERE id=?", (int(nonce),)).fetchone()
            # re-applying the same terminal status is a no-op success
            return row is not None and row["status"] == new_status.value

    def reward_readiness_sync(self, reward_ids: Sequence[int], miner_id: int, claimer_type: ClaimerType) -> str:
        """Return SUCCESS, MINER_MISMATCH or REWARDS_NOT_READY."""
        ids = sorted({int(r) for r in reward_ids})
        if not ids:
            return REWARDS_NOT_READY
        payment_col = (
            "owner_payment_status" if ClaimerType(claimer_type) is ClaimerType.OWNER else "host_payment_status"
        )
        placeholders = ",".join("?" for _ in ids)
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT e.id AS id, e.status AS status, l.{payment_col} AS payment "
                "FROM reward_epochs e JOIN reward_epoch_node_links l ON l.reward_epoch_id = e.id "
                f"WHERE l.nfnode_id=? AND e.id IN ({placeholders})",
                (int(miner_id), *ids),
            ).fetchall()

        if {int(r["id"]) for r in rows} != set(ids):
            return MINER_MISMATCH
        if any(r["status"] != REWARD_READY_STATUS or r["payment"] != PAYMENT_PENDING for r in rows):
            return REWARDS_NOT_READY
        return SUCCESS

    def seed_reward_epoch_sync(
        self,
        epoch_id: int,
        *,
        status: str = REWARD_READY_STATUS,
        links: Iterable[Tuple[int, str, str]] = (),
    ) -> None:
        """Upsert one reward epoch and its (nfnode_id, owner_status, host_status) links."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO reward_epochs(id, status) VALUES (?, ?) "
                "ON CONFLICT(id) DO UPDATE SET status=excluded.status",
                (int(epoch_id), status),
            )
            conn.executemany(
                "INSERT INTO reward_epoch_node_links(reward_epoch_id, nfnode_id, owner_payment_status, "
                "host_payment_status) VALUES (?, ?, ?, ?) ON CONFLICT(reward_epoch_id, nfnode_id) DO UPDATE SET "
                "owner_payment_status=excluded.owner_payment_status, host_payment_status=excluded.host_payment_status",
                [(int(epoch_id), int(n), o, h) for n, o, h in links],
            )

    def list_by_wallet_sync(self, wallet: str, limit: int = 50) -> List[AuthorizationRecord]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM authorization_records WHERE wallet=? ORDER BY created_at DESC LIMIT ?",
                (str(wallet), int(limit)),
            ).fetchall()
            return [self._row_to_record(conn, r) for r in rows]

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def create(self, nonce: int, wallet: str, action: ActionType, **kwargs: Any) -> AuthorizationRecord:
        return await asyncio.to_thread(self.create_sync, nonce, wallet, action, **kwargs)

    async def get(self, nonce: int) -> Optional[AuthorizationRecord]:
        return await asyncio.to_thread(self.get_sync, nonce)

    async def attach_hash(self, nonce: int, expected_hash: str, last_valid_block_height: Optional[int] = None) -> bool:
        return await asyncio.to_thread(self.attach_hash_sync, nonce, expected_hash, last_valid_block_height)

    async def transition(self, nonce: int, new_status: AuthorizationStatus) -> bool:
        return await asyncio.to_thread(self.transition_sync, nonce, new_status)

    async def rewards_ready(self, reward_ids: Sequence[int], miner_id: int, claimer_type: ClaimerType) -> str:
        return await asyncio.to_thread(self.reward_readiness_sync, reward_ids, miner_id, claimer_type)

    async def list_by_wallet(self, wallet: str, limit: int = 50) -> List[AuthorizationRecord]:
        return await asyncio.to_thread(self.list_by_wallet_sync, wallet, limit)

    async def _expire(self, record: AuthorizationRecord) -> None:
        if not await self.transition(record.id, AuthorizationStatus.EXPIRED):
            log.warning("nonce %s expired but could not be marked expired", record.id)

    async def check_pending(self, nonce: int) -> AuthorizationRecord:
        """Return the record if it is awaiting authorization and still fresh."""
        record = await self.get(nonce)
        if record is None or record.status is not AuthorizationStatus.REQUESTING:
            raise AuthorizationError(NONCE_NOT_FOUND, f"no pending authorization for nonce {nonce}")
        if record.is_expired(self._clock(), self.expiration_window):
            await self._expire(record)
            raise AuthorizationError(NONCE_EXPIRED, f"authorization for nonce {nonce} expired")
        return record

    async def verify(
        self,
        nonce: int,
        signature: str,
        reward_ids: Sequence[int],
        miner_id: int,
        claimer_type: ClaimerType,
    ) -> VerifyResult:
        try:
            record = await self.check_pending(nonce)
        except AuthorizationError as e:
            return VerifyResult(False, e.code)

        if record.message_signature is not None and record.message_signature != signature:
            return VerifyResult(False, NONCE_NOT_FOUND)

        if not set(int(r) for r in reward_ids) <= set(record.linked_reward_ids):
            return VerifyResult(False, REWARDS_MISMATCH, record)

        code = await self.rewards_ready(reward_ids, miner_id, claimer_type)
        if code != SUCCESS:
            return VerifyResult(False, code, record)
        return VerifyResult(True, SUCCESS, record)
