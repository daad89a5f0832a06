import json

import pytest
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from cosign_gateway.context import build_context
from cosign_gateway.crypto_utils import b64encode
from cosign_gateway.runtime.constants import MEMO_PROGRAM_ID
from cosign_gateway.runtime.programs import PROGRAM_INSTRUCTIONS
from cosign_gateway.runtime.tx_codec import decode_transaction, encode_transaction
from cosign_gateway.settings import Settings

BLOCKHASH = Hash(bytes([7] * 32))
LAST_VALID_BLOCK_HEIGHT = 1_000
START = 1_717_245_000.0


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeRpc:
    """In-memory stand-in for SolanaRpc with scriptable answers."""

    def __init__(self):
        self.blockhash = BLOCKHASH
        self.last_valid_block_height = LAST_VALID_BLOCK_HEIGHT
        self.height = 900
        self.blockhash_valid = True
        self.balances = {}
        self.default_balance = 10_000_000_000
        self.accounts = {}
        self.token_balances = {}
        self.default_token_balance = 10**15
        self.fee = 5_000
        self.sim_error = None
        self.send_error = None
        self.confirm_error = None
        self.sent = []
        self.simulated = 0
        self.resets = 0
        self.closed = False

    async def latest_blockhash(self):
        return self.blockhash, self.last_valid_block_height

    async def block_height(self, commitment=None):
        return self.height

    async def is_blockhash_valid(self, blockhash):
        return self.blockhash_valid

    async def get_balance(self, pubkey):
        return self.balances.get(pubkey, self.default_balance)

    async def get_account_data(self, pubkey):
        return self.accounts.get(pubkey)

    async def account_exists(self, pubkey):
        return pubkey in self.accounts

    async def token_account_balance(self, pubkey):
        return self.token_balances.get(pubkey, self.default_token_balance)

    async def fee_for_message(self, message):
        return self.fee

    async def minimum_balance_for_rent_exemption(self, size):
        return (128 + size) * 6_960

    async def simulate(self, tx):
        self.simulated += 1
        return self.sim_error

    async def send_raw_transaction(self, raw):
        if self.send_error is not None:
            raise self.send_error
        tx = Transaction.from_bytes(raw)
        self.sent.append(tx)
        return tx.signatures[0]

    async def confirm_transaction(self, signature, *, last_valid_block_height=None):
        return self.confirm_error

    async def reset(self):
        self.resets += 1

    async def close(self):
        self.closed = True


def full_idl():
    names = {name for table in PROGRAM_INSTRUCTIONS.values() for name in table}
    return {"version": "0.1.0", "instructions": [{"name": n} for n in sorted(names)]}


async def fake_idl_loader(rpc, program_id):
    return full_idl()


def make_message(authority, payload, *, chunk=48, blockhash=BLOCKHASH):
    """Base64 action message: a zero transfer signed by ``authority`` plus memo chunks of JSON."""
    raw = json.dumps(payload).encode()
    ixs = [transfer(TransferParams(from_pubkey=authority.pubkey(), to_pubkey=authority.pubkey(), lamports=0))]
    ixs += [Instruction(MEMO_PROGRAM_ID, raw[i:i + chunk], []) for i in range(0, len(raw), chunk)]
    msg = Message.new_with_blockhash(ixs, authority.pubkey(), blockhash)
    return b64encode(bytes(Transaction([authority], msg, blockhash)))


def user_sign(serialized, user):
    """What the wallet does: decode, add the user's signature, re-encode."""
    tx = decode_transaction(serialized)
    tx.partial_sign([user], tx.message.recent_blockhash)
    return encode_transaction(tx)


@pytest.fixture
def admin():
    return Keypair.from_seed(bytes([1] * 32))


@pytest.fixture
def authority():
    return Keypair.from_seed(bytes([2] * 32))


@pytest.fixture
def user():
    return Keypair.from_seed(bytes([3] * 32))


@pytest.fixture
def treasury():
    return Keypair.from_seed(bytes([4] * 32)).pubkey()


@pytest.fixture
def nft_mint():
    return Keypair.from_seed(bytes([5] * 32)).pubkey()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rpc():
    return FakeRpc()


@pytest.fixture
def settings(tmp_path, authority, treasury):
    return Settings(
        env="test",
        admin={"message_authority": str(authority.pubkey())},
        fees={"foundation_wallet": str(treasury)},
        ledger={"sqlite_path": str(tmp_path / "cosign.db")},
        socket={"secret": "test-socket-secret"},
    ).finalize()


@pytest.fixture
def ctx(settings, rpc, admin, clock):
    return build_context(settings, rpc=rpc, admin=admin, idl_loader=fake_idl_loader, clock=clock)

