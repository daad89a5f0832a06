from __future__ import annotations

"""
Authenticated action messages.

Clients obtain an action message from the back office as a serialized
transaction that is never broadcast. Its first instruction is a
transfer-style instruction signed by the message authority; the data of the
remaining instructions, concatenated, is a UTF-8 JSON payload.

The payload is a tagged union: the caller states which ``MessageKind`` it
expects and the matching pydantic model validates it. The kind is never
inferred from the payload's shape.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaError
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from ..crypto_utils import verify_ed25519
from ..errors import PAYLOAD_INVALID, SIGNATURE_INVALID, ValidationError, require
from .ledger import ClaimerType
from .tx_codec import decode_transaction, signer_keys

log = logging.getLogger(__name__)


class MessageKind(str, Enum):
    CLAIM_REWARDS = "claim-rewards"
    INITIALIZE_NFNODE = "initialize-nfnode"
    INITIALIZE_STAKE = "initialize-stake"
    ADD_HOST = "add-host"
    WITHDRAW = "withdraw"
    DEPOSIT = "deposit"
    STAKE = "stake"
    UPDATE_REWARD_CONTRACT = "update-reward-contract"
    CLAIM_DEPIN_STAKER_REWARDS = "claim-depin-staker-rewards"
    WITHDRAW_TOKENS = "withdraw-tokens"
    CLAIM_W_CREDITS = "claim-w-credits"


NfNodeTypeName = Literal["don", "byod", "wayruHotspot"]


def _check_pubkey(v: str) -> str:
    try:
        Pubkey.from_string(v)
    except Exception as e:
        raise ValueError(f"not a valid public key: {v!r}") from e
    return v


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------


class ActionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    wallet_address: str = Field(..., alias="walletAddress")

    @field_validator("wallet_address")
    @classmethod
    def _wallet(cls, v: str) -> str:
        return _check_pubkey(v)

    @property
    def wallet(self) -> Pubkey:
        return Pubkey.from_string(self.wallet_address)


class NodePayload(ActionPayload):
    solana_asset_id: str = Field(..., alias="solanaAssetId")

    @field_validator("solana_asset_id")
    @classmethod
    def _asset(cls, v: str) -> str:
        return _check_pubkey(v)

    @property
    def nft_mint(self) -> Pubkey:
        return Pubkey.from_string(self.solana_asset_id)


class ClaimRewardsPayload(NodePayload):
    miner_id: int = Field(..., alias="minerId", ge=0)
    reward_ids: List[int] = Field(..., alias="rewardIds", min_length=1)
    claimer_type: ClaimerType = Field(..., alias="claimerType")
    amount_to_claim: float = Field(..., alias="amountToClaim", gt=0)
    nonce: Optional[int] = Field(default=None, ge=0)


class ClaimDepinStakerRewardsPayload(ClaimRewardsPayload):
    nfnode_type: NfNodeTypeName = Field(default="don", alias="nfnodeType")


class InitializeNfnodePayload(NodePayload):
    nfnode_type: NfNodeTypeName = Field(..., alias="nfnodeType")
    host_address: Optional[str] = Field(default=None, alias="hostAddress")
    manufacturer_address: Optional[str] = Field(default=None, alias="manufacturerAddress")
    nonce: Optional[int] = Field(default=None, ge=0)

    @field_validator("host_address", "manufacturer_address")
    @classmethod
    def _optional_keys(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _check_pubkey(v)


class InitializeStakePayload(NodePayload):
    amount: float = Field(..., gt=0)


class StakePayload(NodePayload):
    amount: float = Field(..., gt=0)


class WithdrawPayload(NodePayload):
    pass


class DepositPayload(NodePayload):
    pass


class WithdrawTokensPayload(NodePayload):
    pass


class ClaimWCreditsPayload(ActionPayload):
    amount_to_claim: float = Field(..., alias="amountToClaim", gt=0)


class AddHostPayload(NodePayload):
    host_address: str = Field(..., alias="hostAddress")
    host_share: int = Field(..., alias="hostShare", ge=0, le=100)

    @field_validator("host_address")
    @classmethod
    def _host(cls, v: str) -> str:
        return _check_pubkey(v)


class UpdateRewardContractPayload(NodePayload):
    nfnode_type: NfNodeTypeName = Field(default="don", alias="nfnodeType")
    claim_lost_tokens: bool = Field(default=False, alias="claimLostTokens")


PAYLOAD_MODELS: Dict[MessageKind, Type[ActionPayload]] = {
    MessageKind.CLAIM_REWARDS: ClaimRewardsPayload,
    MessageKind.INITIALIZE_NFNODE: InitializeNfnodePayload,
    MessageKind.INITIALIZE_STAKE: InitializeStakePayload,
    MessageKind.ADD_HOST: AddHostPayload,
    MessageKind.WITHDRAW: WithdrawPayload,
    MessageKind.DEPOSIT: DepositPayload,
    MessageKind.STAKE: StakePayload,
    MessageKind.UPDATE_REWARD_CONTRACT: UpdateRewardContractPayload,
    MessageKind.CLAIM_DEPIN_STAKER_REWARDS: ClaimDepinStakerRewardsPayload,
    MessageKind.WITHDRAW_TOKENS: WithdrawTokensPayload,
    MessageKind.CLAIM_W_CREDITS: ClaimWCreditsPayload,
}


@dataclass(frozen=True)
class AuthenticatedMessage:
    kind: MessageKind
    payload: Any
    signature: str


# ---------------------------------------------------------------------------
# Authenticator
# ---------------------------------------------------------------------------


class MessageAuthenticator:
    def __init__(self, authority: Pubkey):
        self.authority = authority

    def verify_signature(self, tx: Transaction) -> Signature:
        message = tx.message
        signers = signer_keys(message)
        require(
            self.authority in signers and bool(message.instructions),
            ValidationError,
            SIGNATURE_INVALID,
            "message is not signed by the message authority",
        )

        first = message.instructions[0]
        authority_index = signers.index(self.authority)
        require(
            authority_index in bytes(first.accounts),
            ValidationError,
            SIGNATURE_INVALID,
            "authority does not sign the leading instruction",
        )

        signature = tx.signatures[authority_index]
        if signature == Signature.default():
            raise ValidationError(SIGNATURE_INVALID, "authority signature is missing")
        if not verify_ed25519(bytes(self.authority), bytes(signature), bytes(message)):
            raise ValidationError(SIGNATURE_INVALID, "authority signature does not verify")
        return signature

    @staticmethod
    def extract_payload(tx: Transaction) -> Dict[str, Any]:
        chunks = [bytes(ix.data) for ix in tx.message.instructions[1:]]
        if not chunks:
            raise ValidationError(PAYLOAD_INVALID, "message carries no payload")
        try:
            data = json.loads(b"".join(chunks).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(PAYLOAD_INVALID, f"payload is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(PAYLOAD_INVALID, "payload must be a JSON object")
        return data

    def authenticate(self, serialized: str, kind: MessageKind) -> AuthenticatedMessage:
        kind = MessageKind(kind)
        try:
            tx = decode_transaction(serialized)
        except ValidationError as e:
            raise ValidationError(SIGNATURE_INVALID, e.message) from e

        signature = self.verify_signature(tx)
        data = self.extract_payload(tx)
        try:
            payload = PAYLOAD_MODELS[kind].model_validate(data)
        except SchemaError as e:
            log.info("rejected %s payload: %s", kind.value, e.errors(include_url=False))
            raise ValidationError(PAYLOAD_INVALID, f"invalid {kind.value} payload") from e
        return AuthenticatedMessage(kind=kind, payload=payload, signature=str(signature))
