import pytest
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from cosign_gateway.errors import HASH_MISMATCH, TRANSACTION_INVALID, IntegrityError, ValidationError
from cosign_gateway.runtime.constants import MEMO_PROGRAM_ID
from cosign_gateway.runtime.tx_codec import (
    IntegrityHasher,
    decode_transaction,
    decompile_instructions,
    encode_transaction,
)

from conftest import BLOCKHASH

INJECTED = Pubkey.from_string("L2TExMFKdjpN9kozasaurPirfHy9P8sbXoAN1qA3S95")


def _body(payer, to, lamports=1_000):
    return [
        transfer(TransferParams(from_pubkey=payer, to_pubkey=to, lamports=lamports)),
        Instruction(MEMO_PROGRAM_ID, b"stake", [AccountMeta(payer, True, False)]),
    ]


def _tx(ixs, payer):
    return Transaction.new_unsigned(Message.new_with_blockhash(ixs, payer, BLOCKHASH))


@pytest.fixture
def hasher():
    return IntegrityHasher([INJECTED])


@pytest.fixture
def dest():
    return Keypair.from_seed(bytes([8] * 32)).pubkey()


def test_hash_ignores_compute_budget(hasher, user, dest):
    payer = user.pubkey()
    plain = _tx(_body(payer, dest), payer)
    priced = _tx([set_compute_unit_price(1_000), *_body(payer, dest)], payer)
    limited = _tx([set_compute_unit_limit(200_000), set_compute_unit_price(7), *_body(payer, dest)], payer)
    assert hasher.hash(plain) == hasher.hash(priced) == hasher.hash(limited)


def test_hash_ignores_signatures(hasher, user, dest):
    payer = user.pubkey()
    unsigned = _tx(_body(payer, dest), payer)
    signed = Transaction([user], Message.new_with_blockhash(_body(payer, dest), payer, BLOCKHASH), BLOCKHASH)
    assert hasher.hash(unsigned) == hasher.hash(signed)


def test_hash_ignores_wallet_injected_program(hasher, user, dest):
    payer = user.pubkey()
    guard = Instruction(INJECTED, b"\x01\x02", [AccountMeta(dest, False, False)])
    assert hasher.hash(_tx(_body(payer, dest), payer)) == hasher.hash(_tx([*_body(payer, dest), guard], payer))


def test_hash_changes_with_instruction_content(hasher, user, dest):
    payer = user.pubkey()
    assert hasher.hash(_tx(_body(payer, dest, 1_000), payer)) != hasher.hash(_tx(_body(payer, dest, 1_001), payer))


def test_hash_changes_with_extra_instruction(hasher, user, dest):
    payer = user.pubkey()
    extra = transfer(TransferParams(from_pubkey=payer, to_pubkey=Keypair().pubkey(), lamports=1))
    assert hasher.hash(_tx(_body(payer, dest), payer)) != hasher.hash(_tx([*_body(payer, dest), extra], payer))


def test_injected_program_is_not_ignored_by_default(user, dest):
    payer = user.pubkey()
    guard = Instruction(INJECTED, b"\x01", [])
    plain = IntegrityHasher()
    assert plain.hash(_tx(_body(payer, dest), payer)) != plain.hash(_tx([*_body(payer, dest), guard], payer))


def test_verify_raises_on_mismatch(hasher, user, dest):
    payer = user.pubkey()
    expected = hasher.hash(_tx(_body(payer, dest), payer))
    assert hasher.verify(_tx([set_compute_unit_price(5), *_body(payer, dest)], payer), expected) == expected
    with pytest.raises(IntegrityError) as e:
        hasher.verify(_tx(_body(payer, dest, 2), payer), expected)
    assert e.value.code == HASH_MISMATCH


def test_decompile_preserves_order_and_flags(user, dest):
    payer = user.pubkey()
    ixs = decompile_instructions(_tx(_body(payer, dest), payer).message)
    assert [ix.program_id for ix in ixs] == [_body(payer, dest)[0].program_id, MEMO_PROGRAM_ID]
    metas = ixs[0].accounts
    assert metas[0].pubkey == payer and metas[0].is_signer and metas[0].is_writable
    assert metas[1].pubkey == dest and not metas[1].is_signer and metas[1].is_writable


def test_codec_roundtrip_and_rejects_garbage(user, dest):
    payer = user.pubkey()
    tx = _tx(_body(payer, dest), payer)
    assert decode_transaction(encode_transaction(tx)) == tx
    for bad in ("not base64!!", "aGVsbG8="):
        with pytest.raises(ValidationError) as e:
            decode_transaction(bad)
        assert e.value.code == TRANSACTION_INVALID
