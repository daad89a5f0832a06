import json

import pytest
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from cosign_gateway.crypto_utils import b64encode
from cosign_gateway.errors import PAYLOAD_INVALID, SIGNATURE_INVALID, ValidationError
from cosign_gateway.runtime.constants import MEMO_PROGRAM_ID
from cosign_gateway.runtime.ledger import ClaimerType
from cosign_gateway.runtime.messages import (
    ClaimRewardsPayload,
    MessageAuthenticator,
    MessageKind,
    StakePayload,
)
from cosign_gateway.runtime.tx_codec import decode_transaction

from conftest import BLOCKHASH, make_message


@pytest.fixture
def claim_payload(user, nft_mint):
    return {
        "walletAddress": str(user.pubkey()),
        "solanaAssetId": str(nft_mint),
        "minerId": 42,
        "rewardIds": [1, 2],
        "claimerType": "owner",
        "amountToClaim": 12.5,
    }


def test_authenticates_claim(authority, claim_payload, user):
    auth = MessageAuthenticator(authority.pubkey())
    msg = auth.authenticate(make_message(authority, claim_payload), MessageKind.CLAIM_REWARDS)
    assert msg.kind is MessageKind.CLAIM_REWARDS
    assert isinstance(msg.payload, ClaimRewardsPayload)
    assert msg.payload.wallet == user.pubkey()
    assert msg.payload.claimer_type is ClaimerType.OWNER
    assert msg.payload.reward_ids == [1, 2]
    assert msg.payload.nonce is None


def test_payload_split_across_many_instructions(authority, claim_payload):
    auth = MessageAuthenticator(authority.pubkey())
    msg = auth.authenticate(make_message(authority, claim_payload, chunk=7), "claim-rewards")
    assert msg.payload.miner_id == 42


def test_rejects_other_signer(authority, claim_payload):
    auth = MessageAuthenticator(authority.pubkey())
    forged = make_message(Keypair.from_seed(bytes([6] * 32)), claim_payload)
    with pytest.raises(ValidationError) as e:
        auth.authenticate(forged, MessageKind.CLAIM_REWARDS)
    assert e.value.code == SIGNATURE_INVALID


def test_rejects_missing_signature(authority, claim_payload):
    raw = json.dumps(claim_payload).encode()
    ixs = [
        transfer(TransferParams(from_pubkey=authority.pubkey(), to_pubkey=authority.pubkey(), lamports=0)),
        Instruction(MEMO_PROGRAM_ID, raw, []),
    ]
    unsigned = Transaction.new_unsigned(Message.new_with_blockhash(ixs, authority.pubkey(), BLOCKHASH))
    with pytest.raises(ValidationError) as e:
        MessageAuthenticator(authority.pubkey()).authenticate(b64encode(bytes(unsigned)), MessageKind.CLAIM_REWARDS)
    assert e.value.code == SIGNATURE_INVALID


def test_rejects_tampered_payload(authority, claim_payload):
    serialized = make_message(authority, claim_payload)
    tx = decode_transaction(serialized)
    other = dict(claim_payload, amountToClaim=9999)
    ixs = [
        transfer(TransferParams(from_pubkey=authority.pubkey(), to_pubkey=authority.pubkey(), lamports=0)),
        Instruction(MEMO_PROGRAM_ID, json.dumps(other).encode(), []),
    ]
    swapped = Transaction.populate(Message.new_with_blockhash(ixs, authority.pubkey(), BLOCKHASH), tx.signatures)
    with pytest.raises(ValidationError) as e:
        MessageAuthenticator(authority.pubkey()).authenticate(b64encode(bytes(swapped)), MessageKind.CLAIM_REWARDS)
    assert e.value.code == SIGNATURE_INVALID


def test_rejects_garbage_as_signature_invalid(authority):
    with pytest.raises(ValidationError) as e:
        MessageAuthenticator(authority.pubkey()).authenticate("###", MessageKind.STAKE)
    assert e.value.code == SIGNATURE_INVALID


@pytest.mark.parametrize(
    "mutate",
    [
        lambda p: p.pop("rewardIds"),
        lambda p: p.update(rewardIds=[]),
        lambda p: p.update(claimerType="admin"),
        lambda p: p.update(amountToClaim=0),
        lambda p: p.update(walletAddress="not-a-key"),
    ],
)
def test_rejects_invalid_claim_payload(authority, claim_payload, mutate):
    mutate(claim_payload)
    with pytest.raises(ValidationError) as e:
        MessageAuthenticator(authority.pubkey()).authenticate(
            make_message(authority, claim_payload), MessageKind.CLAIM_REWARDS
        )
    assert e.value.code == PAYLOAD_INVALID


def test_kind_is_explicit_not_inferred(authority, claim_payload):
    # a valid claim payload is not a valid stake payload
    with pytest.raises(ValidationError) as e:
        MessageAuthenticator(authority.pubkey()).authenticate(make_message(authority, claim_payload), MessageKind.STAKE)
    assert e.value.code == PAYLOAD_INVALID

    stake = {k: claim_payload[k] for k in ("walletAddress", "solanaAssetId")}
    stake["amount"] = 3
    msg = MessageAuthenticator(authority.pubkey()).authenticate(make_message(authority, stake), MessageKind.STAKE)
    assert isinstance(msg.payload, StakePayload)


def test_non_json_payload(authority):
    ixs = [
        transfer(TransferParams(from_pubkey=authority.pubkey(), to_pubkey=authority.pubkey(), lamports=0)),
        Instruction(MEMO_PROGRAM_ID, b"\xff\xfe not json", []),
    ]
    msg = Message.new_with_blockhash(ixs, authority.pubkey(), BLOCKHASH)
    serialized = b64encode(bytes(Transaction([authority], msg, BLOCKHASH)))
    with pytest.raises(ValidationError) as e:
        MessageAuthenticator(authority.pubkey()).authenticate(serialized, MessageKind.DEPOSIT)
    assert e.value.code == PAYLOAD_INVALID
