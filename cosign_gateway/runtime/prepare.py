from __future__ import annotations

"""
Prepare flows: turn an authenticated action message into a transaction the
user's wallet can sign.

Hash-verified flows record the canonical hash of the issued transaction
under a nonce, so the co-sign step can recognise it later. Node
initialization records nothing and is screened heuristically at co-sign
time instead.

Claim nonces are either issued here (wall-clock milliseconds) or supplied by
an upstream issuer that created the record beforehand; in the second case
the record has no hash yet and the hash is attached once the transaction is
built.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from solders.pubkey import Pubkey

from ..errors import (
    NONCE_DUPLICATE,
    PAYLOAD_INVALID,
    SUCCESS,
    UNKNOWN_ERROR,
    AuthorizationError,
    GatewayError,
    ValidationError,
)
from .ledger import ActionType, AuthorizationLedger
from .messages import (
    AddHostPayload,
    AuthenticatedMessage,
    ClaimRewardsPayload,
    ClaimWCreditsPayload,
    InitializeNfnodePayload,
    MessageAuthenticator,
    MessageKind,
    NodePayload,
    UpdateRewardContractPayload,
)
from .tx_builder import BuiltTransaction, TransactionBuilder
from .tx_codec import IntegrityHasher

log = logging.getLogger(__name__)

Response = Dict[str, Any]


def _ok(built: Optional[BuiltTransaction], **extra: Any) -> Response:
    out: Response = {"error": False, "code": SUCCESS, "serializedTx": built.serialized if built else None}
    out.update(extra)
    return out


class RequestTransactionService:
    def __init__(
        self,
        *,
        authenticator: MessageAuthenticator,
        ledger: AuthorizationLedger,
        builder: TransactionBuilder,
        hasher: IntegrityHasher,
        lost_tokens_amount: float = 5000.0,
        clock: Callable[[], float] = time.time,
    ):
        self._authenticator = authenticator
        self._ledger = ledger
        self._builder = builder
        self._hasher = hasher
        self._lost_tokens_amount = lost_tokens_amount
        self._clock = clock
        self._handlers: Dict[MessageKind, Callable[..., Awaitable[Response]]] = {
            MessageKind.CLAIM_REWARDS: self.claim_rewards,
            MessageKind.CLAIM_DEPIN_STAKER_REWARDS: self.claim_depin_staker_rewards,
            MessageKind.INITIALIZE_NFNODE: self.initialize_nfnode,
            MessageKind.INITIALIZE_STAKE: self.initialize_stake,
            MessageKind.STAKE: self.stake,
            MessageKind.WITHDRAW: self.withdraw,
            MessageKind.DEPOSIT: self.deposit,
            MessageKind.ADD_HOST: self.add_host,
            MessageKind.UPDATE_REWARD_CONTRACT: self.update_reward_contract,
            MessageKind.WITHDRAW_TOKENS: self.withdraw_tokens,
            MessageKind.CLAIM_W_CREDITS: self.claim_w_credits,
        }

    def new_nonce(self) -> int:
        return int(self._clock() * 1000)

    async def request(
        self,
        action: str,
        signature: str,
        *,
        include_admin_authorization: bool = True,
        include_init_tx: bool = False,
    ) -> Response:
        """Authenticate ``signature`` as an ``action`` message and run its prepare flow."""
        try:
            try:
                kind = MessageKind(action)
            except ValueError:
                raise ValidationError(PAYLOAD_INVALID, f"unknown action {action!r}") from None
            message = self._authenticator.authenticate(signature, kind)
            return await self._handlers[kind](
                message, sign=include_admin_authorization, include_init_tx=include_init_tx
            )
        except GatewayError as e:
            log.info("prepare %s rejected: %s (%s)", action, e.code, e.message)
            return {**e.to_dict(), "serializedTx": None}
        except Exception:
            log.exception("prepare %s failed", action)
            return {"error": True, "code": UNKNOWN_ERROR, "message": "unexpected error", "serializedTx": None}

    # ------------------------------------------------------------------
    # Ledger helpers
    # ------------------------------------------------------------------

    async def _record(
        self,
        nonce: int,
        message: AuthenticatedMessage,
        action: ActionType,
        built: BuiltTransaction,
        **kwargs: Any,
    ) -> None:
        await self._ledger.create(
            nonce,
            message.payload.wallet_address,
            action,
            expected_hash=self._hasher.hash(built.transaction),
            message_signature=message.signature,
            last_valid_block_height=built.last_valid_block_height,
            **kwargs,
        )

    async def _issue(self, message: AuthenticatedMessage, action: ActionType, build, **context: Any) -> Response:
        built = await build()
        nonce = self.new_nonce()
        await self._record(nonce, message, action, built, context=context or None)
        return _ok(built, nonce=nonce)

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def _claim(self, message: AuthenticatedMessage, sign: bool) -> Response:
        p: ClaimRewardsPayload = message.payload

        if p.nonce is not None:
            result = await self._ledger.verify(p.nonce, message.signature, p.reward_ids, p.miner_id, p.claimer_type)
            if not result.is_valid_status:
                raise AuthorizationError(result.code, f"nonce {p.nonce} cannot be used for this claim")
            built = await self._builder.claim_rewards(
                p.wallet, p.nft_mint, p.amount_to_claim, p.nonce, p.claimer_type, sign=sign
            )
            attached = await self._ledger.attach_hash(
                p.nonce, self._hasher.hash(built.transaction), built.last_valid_block_height
            )
            if not attached:
                raise AuthorizationError(NONCE_DUPLICATE, f"a transaction was already issued for nonce {p.nonce}")
            return _ok(built, nonce=p.nonce)

        code = await self._ledger.rewards_ready(p.reward_ids, p.miner_id, p.claimer_type)
        if code != SUCCESS:
            raise AuthorizationError(code, "rewards are not claimable")
        nonce = self.new_nonce()
        built = await self._builder.claim_rewards(
            p.wallet, p.nft_mint, p.amount_to_claim, nonce, p.claimer_type, sign=sign
        )
        await self._record(
            nonce,
            message,
            ActionType.CLAIM_REWARDS,
            built,
            linked_reward_ids=p.reward_ids,
            context={"minerId": p.miner_id, "claimerType": p.claimer_type.value},
        )
        return _ok(built, nonce=nonce)

    async def claim_rewards(self, message: AuthenticatedMessage, *, sign: bool = True, **_: Any) -> Response:
        return await self._claim(message, sign)

    async def claim_depin_staker_rewards(
        self, message: AuthenticatedMessage, *, sign: bool = True, include_init_tx: bool = False, **_: Any
    ) -> Response:
        p = message.payload
        init_tx: Optional[BuiltTransaction] = None
        if include_init_tx and not await self._builder.nfnode_initialized(p.nft_mint):
            init_tx = await self._builder.initialize_nfnode(p.wallet, p.nft_mint, p.nfnode_type, sign=sign)

        out = await self._claim(message, sign)
        out["serializedInitTx"] = init_tx.serialized if init_tx else None
        return out

    # ------------------------------------------------------------------
    # Node lifecycle
    # ------------------------------------------------------------------

    async def initialize_nfnode(self, message: AuthenticatedMessage, *, sign: bool = True, **_: Any) -> Response:
        p: InitializeNfnodePayload = message.payload
        built = await self._builder.initialize_nfnode(
            p.wallet,
            p.nft_mint,
            p.nfnode_type,
            host=Pubkey.from_string(p.host_address) if p.host_address else None,
            manufacturer=Pubkey.from_string(p.manufacturer_address) if p.manufacturer_address else None,
            sign=sign,
        )
        return _ok(built)

    async def add_host(self, message: AuthenticatedMessage, *, sign: bool = True, **_: Any) -> Response:
        p: AddHostPayload = message.payload
        return await self._issue(
            message,
            ActionType.ADD_HOST,
            lambda: self._builder.add_host(
                p.wallet, p.nft_mint, Pubkey.from_string(p.host_address), p.host_share, sign=sign
            ),
            hostAddress=p.host_address,
            hostShare=p.host_share,
        )

    async def deposit(self, message: AuthenticatedMessage, *, sign: bool = True, **_: Any) -> Response:
        p: NodePayload = message.payload
        return await self._issue(
            message, ActionType.DEPOSIT, lambda: self._builder.deposit(p.wallet, p.nft_mint, sign=sign)
        )

    async def withdraw_tokens(self, message: AuthenticatedMessage, *, sign: bool = True, **_: Any) -> Response:
        p: NodePayload = message.payload
        return await self._issue(
            message,
            ActionType.WITHDRAW,
            lambda: self._builder.withdraw_tokens(p.wallet, p.nft_mint, sign=sign),
            program="reward_system",
        )

    async def update_reward_contract(self, message: AuthenticatedMessage, *, sign: bool = True, **_: Any) -> Response:
        p: UpdateRewardContractPayload = message.payload
        init_tx = await self._builder.initialize_nfnode(p.wallet, p.nft_mint, p.nfnode_type, sign=sign)
        if not p.claim_lost_tokens:
            return _ok(None, serializedInitTx=init_tx.serialized)

        nonce = self.new_nonce()
        built = await self._builder.claim_lost_tokens(p.wallet, self._lost_tokens_amount, nonce, sign=sign)
        await self._record(
            nonce, message, ActionType.UPDATE_CONTRACT, built, context={"lostTokens": self._lost_tokens_amount}
        )
        return _ok(built, nonce=nonce, serializedInitTx=init_tx.serialized)

    # ------------------------------------------------------------------
    # Stake
    # ------------------------------------------------------------------

    async def initialize_stake(self, message: AuthenticatedMessage, *, sign: bool = True, **_: Any) -> Response:
        p = message.payload
        return await self._issue(
            message,
            ActionType.STAKE,
            lambda: self._builder.initialize_stake(p.wallet, p.nft_mint, p.amount, sign=sign),
            step="initialize",
            amount=p.amount,
        )

    async def stake(self, message: AuthenticatedMessage, *, sign: bool = True, **_: Any) -> Response:
        p = message.payload
        return await self._issue(
            message,
            ActionType.STAKE,
            lambda: self._builder.stake(p.wallet, p.nft_mint, p.amount, sign=sign),
            amount=p.amount,
        )

    async def withdraw(self, message: AuthenticatedMessage, *, sign: bool = True, **_: Any) -> Response:
        p: NodePayload = message.payload
        return await self._issue(
            message, ActionType.WITHDRAW, lambda: self._builder.withdraw(p.wallet, p.nft_mint, sign=sign)
        )

    # ------------------------------------------------------------------
    # Airdrops
    # ------------------------------------------------------------------

    async def claim_w_credits(self, message: AuthenticatedMessage, *, sign: bool = True, **_: Any) -> Response:
        """Claim airdropped tokens bought with credits; the ledger nonce doubles as the on-chain claim nonce."""
        p: ClaimWCreditsPayload = message.payload
        nonce = self.new_nonce()
        built = await self._builder.claim_lost_tokens(p.wallet, p.amount_to_claim, nonce, sign=sign)
        await self._record(
            nonce, message, ActionType.CLAIM_W_CREDITS, built, context={"amountToClaim": p.amount_to_claim}
        )
        return _ok(built, nonce=nonce)
