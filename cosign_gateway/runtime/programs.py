from __future__ import annotations

"""
Typed clients for the reward-system, stake and airdrops programs.

Instruction data is the Anchor layout: an 8-byte discriminator
``sha256("global:<name>")[:8]`` followed by the borsh-encoded arguments.
Account metas follow each program's declared order.

``ProgramClientRegistry`` builds one ``ProgramClient`` per program on first
use and caches it for the life of the process. Concurrent first callers
share a single in-flight build future; a failed build leaves nothing cached
so the next call retries. ``cleanup()`` drops cached clients after a
suspected connection fault.
"""

import asyncio
import hashlib
import json
import logging
import struct
import zlib
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from borsh_construct import U64, CStruct
from borsh_construct import Enum as BorshEnum
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from ..errors import ProgramInitError
from ..solana_rpc import SolanaRpc
from .accounts import AccountDeriver
from .constants import ASSOCIATED_TOKEN_PROGRAM_ID, SYSTEM_PROGRAM_ID, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from .keys import KeyResolver

log = logging.getLogger(__name__)


class ProgramKind(str, Enum):
    REWARD_SYSTEM = "reward_system"
    AIRDROPS = "airdrops"
    STAKE = "stake"


def sighash(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


# ---------------------------------------------------------------------------
# Instruction layouts
# ---------------------------------------------------------------------------

NFNODE_TYPE = BorshEnum("don", "byod", "wayruHotspot", enum_name="NfNodeType")

NO_ARGS = CStruct()
CLAIM_ARGS = CStruct("reward_amount" / U64, "nonce" / U64)
AIRDROP_CLAIM_ARGS = CStruct("amount" / U64, "nonce" / U64)
INIT_NFNODE_ARGS = CStruct("host_share" / U64, "nfnode_type" / NFNODE_TYPE)
HOST_SHARE_ARGS = CStruct("host_share" / U64)
DEPOSIT_AMOUNT_ARGS = CStruct("deposit_amount" / U64)


@dataclass(frozen=True)
class AccountSpec:
    name: str
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True)
class InstructionSpec:
    name: str
    args: Any
    accounts: Tuple[AccountSpec, ...]

    @property
    def discriminator(self) -> bytes:
        return sighash(self.name)


def _acc(name: str, flags: str = "") -> AccountSpec:
    return AccountSpec(name, is_signer="s" in flags, is_writable="w" in flags)


_PROGRAM_ACCOUNTS = (
    _acc("token_program_2022"),
    _acc("token_program"),
    _acc("associated_token_program"),
    _acc("system_program"),
)

_NODE_ACCOUNTS = (
    _acc("user_admin", "sw"),
    _acc("user", "sw"),
    _acc("token_mint"),
    _acc("nft_mint_address"),
    _acc("user_nft_token_account"),
    _acc("nfnode_entry", "w"),
    _acc("admin_account"),
    _acc("token_storage_authority", "w"),
    _acc("token_storage_account", "w"),
    _acc("user_token_account", "w"),
) + _PROGRAM_ACCOUNTS

_CLAIM_HEAD = (
    _acc("user_admin", "sw"),
    _acc("user", "sw"),
    _acc("nft_mint_address"),
    _acc("reward_entry", "w"),
    _acc("nfnode_entry", "w"),
    _acc("token_mint"),
    _acc("token_storage_authority", "w"),
    _acc("token_storage_account", "w"),
    _acc("user_token_account", "w"),
)

REWARD_SYSTEM_INSTRUCTIONS: Dict[str, InstructionSpec] = {
    spec.name: spec
    for spec in (
        InstructionSpec(
            "initialize_nfnode",
            INIT_NFNODE_ARGS,
            (
                _acc("user_admin", "sw"),
                _acc("user", "sw"),
                _acc("host"),
                _acc("manufacturer"),
                _acc("nft_mint_address"),
                _acc("user_nft_token_account"),
                _acc("nfnode_entry", "w"),
                _acc("admin_account"),
                _acc("token_program_2022"),
                _acc("associated_token_program"),
                _acc("system_program"),
            ),
        ),
        InstructionSpec(
            "owner_claim_rewards",
            CLAIM_ARGS,
            _CLAIM_HEAD + (_acc("user_nft_token_account"), _acc("admin_account")) + _PROGRAM_ACCOUNTS,
        ),
        InstructionSpec(
            "others_claim_rewards",
            CLAIM_ARGS,
            _CLAIM_HEAD + (_acc("admin_account"),) + _PROGRAM_ACCOUNTS[1:],
        ),
        InstructionSpec(
            "update_nfnode",
            HOST_SHARE_ARGS,
            (
                _acc("user_admin", "sw"),
                _acc("user", "sw"),
                _acc("host"),
                _acc("nft_mint_address"),
                _acc("user_nft_token_account"),
                _acc("nfnode_entry", "w"),
                _acc("admin_account"),
                _acc("token_program_2022"),
                _acc("system_program"),
            ),
        ),
        InstructionSpec("deposit_tokens", NO_ARGS, _NODE_ACCOUNTS),
        InstructionSpec("withdraw_tokens", NO_ARGS, _NODE_ACCOUNTS),
    )
}

STAKE_INSTRUCTIONS: Dict[str, InstructionSpec] = {
    spec.name: spec
    for spec in (
        InstructionSpec("initialize_nfnode", DEPOSIT_AMOUNT_ARGS, _NODE_ACCOUNTS),
        InstructionSpec("deposit_tokens", DEPOSIT_AMOUNT_ARGS, _NODE_ACCOUNTS),
        InstructionSpec("withdraw_tokens", NO_ARGS, _NODE_ACCOUNTS),
    )
}

AIRDROPS_INSTRUCTIONS: Dict[str, InstructionSpec] = {
    spec.name: spec
    for spec in (
        InstructionSpec(
            "claim_tokens",
            AIRDROP_CLAIM_ARGS,
            (
                _acc("user_admin", "sw"),
                _acc("user", "sw"),
                _acc("claim_entry", "w"),
                _acc("token_mint"),
                _acc("token_storage_authority", "w"),
                _acc("token_storage_account", "w"),
                _acc("user_token_account", "w"),
                _acc("admin_account"),
                _acc("token_program"),
                _acc("associated_token_program"),
                _acc("system_program"),
            ),
        ),
    )
}

PROGRAM_INSTRUCTIONS: Dict[ProgramKind, Dict[str, InstructionSpec]] = {
    ProgramKind.REWARD_SYSTEM: REWARD_SYSTEM_INSTRUCTIONS,
    ProgramKind.STAKE: STAKE_INSTRUCTIONS,
    ProgramKind.AIRDROPS: AIRDROPS_INSTRUCTIONS,
}

_DEFAULT_ACCOUNTS: Dict[str, Pubkey] = {
    "token_program": TOKEN_PROGRAM_ID,
    "token_program_2022": TOKEN_2022_PROGRAM_ID,
    "associated_token_program": ASSOCIATED_TOKEN_PROGRAM_ID,
    "system_program": SYSTEM_PROGRAM_ID,
}


def account_map(*groups: Any, **extra: Pubkey) -> Dict[str, Pubkey]:
    """Merge dataclass account groups and keyword accounts into one name map."""
    out: Dict[str, Pubkey] = {}
    for group in groups:
        out.update({f.name: getattr(group, f.name) for f in fields(group)})
    out.update(extra)
    return out


def instruction_name(kind: ProgramKind, data: bytes) -> Optional[str]:
    """Name of the instruction whose discriminator prefixes ``data``."""
    head = bytes(data[:8])
    for name, spec in PROGRAM_INSTRUCTIONS[kind].items():
        if spec.discriminator == head:
            return name
    return None


def nfnode_type_value(name: str) -> Any:
    try:
        return getattr(NFNODE_TYPE.enum, name)()
    except AttributeError:
        raise ValueError(f"unknown nfnode type: {name}") from None


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Provider:
    """RPC connection bound to the admin wallet."""

    rpc: SolanaRpc
    wallet: Keypair


@dataclass(frozen=True)
class ProgramClient:
    kind: ProgramKind
    program_id: Pubkey
    provider: Provider
    idl: Optional[Dict[str, Any]] = None

    @property
    def deriver(self) -> AccountDeriver:
        return AccountDeriver(self.program_id)

    def spec(self, name: str) -> InstructionSpec:
        try:
            return PROGRAM_INSTRUCTIONS[self.kind][name]
        except KeyError:
            raise ValueError(f"{self.kind.value} has no instruction {name!r}") from None

    def instruction(self, name: str, args: Mapping[str, Any], accounts: Mapping[str, Pubkey]) -> Instruction:
        spec = self.spec(name)
        data = spec.discriminator + spec.args.build(dict(args))
        metas = []
        for acc in spec.accounts:
            pubkey = accounts.get(acc.name)
            if pubkey is None:
                pubkey = _DEFAULT_ACCOUNTS.get(acc.name)
            if pubkey is None:
                raise ValueError(f"{self.kind.value}.{name}: missing account {acc.name}")
            metas.append(AccountMeta(pubkey=pubkey, is_signer=acc.is_signer, is_writable=acc.is_writable))
        return Instruction(self.program_id, data, metas)


# ---------------------------------------------------------------------------
# Interface description (Anchor IDL account)
# ---------------------------------------------------------------------------

IDL_SEED = "anchor:idl"
# discriminator (8) + authority (32) + data length (4)
_IDL_HEADER = 8 + 32 + 4


def idl_address(program_id: Pubkey) -> Pubkey:
    base, _ = Pubkey.find_program_address([], program_id)
    return Pubkey.create_with_seed(base, IDL_SEED, program_id)


def parse_idl_account(data: bytes) -> Dict[str, Any]:
    if len(data) < _IDL_HEADER:
        raise ValueError("idl account too short")
    (length,) = struct.unpack_from("<I", data, 8 + 32)
    payload = zlib.decompress(bytes(data[_IDL_HEADER:_IDL_HEADER + length]))
    return json.loads(payload)


async def fetch_idl(rpc: SolanaRpc, program_id: Pubkey) -> Optional[Dict[str, Any]]:
    data = await rpc.get_account_data(idl_address(program_id))
    if data is None:
        return None
    return parse_idl_account(data)


def _normalize(name: str) -> str:
    return name.replace("_", "").lower()


def validate_idl(kind: ProgramKind, idl: Mapping[str, Any]) -> None:
    """Every instruction we encode must be declared by the deployed program."""
    declared = {_normalize(str(ix.get("name", ""))) for ix in idl.get("instructions") or []}
    missing = [n for n in PROGRAM_INSTRUCTIONS[kind] if _normalize(n) not in declared]
    if missing:
        raise ProgramInitError(f"{kind.value} idl does not declare: {', '.join(sorted(missing))}")


IdlLoader = Callable[[SolanaRpc, Pubkey], Awaitable[Optional[Dict[str, Any]]]]


class ProgramClientRegistry:
    def __init__(
        self,
        *,
        rpc: SolanaRpc,
        admin: Keypair,
        keys: KeyResolver,
        production: bool = False,
        idl_loader: IdlLoader = fetch_idl,
    ):
        self._rpc = rpc
        self._admin = admin
        self._keys = keys
        self._production = production
        self._idl_loader = idl_loader
        self._handles: Dict[ProgramKind, ProgramClient] = {}
        self._pending: Dict[ProgramKind, "asyncio.Future[ProgramClient]"] = {}

    async def get_instance(self, kind: ProgramKind) -> ProgramClient:
        kind = ProgramKind(kind)
        handle = self._handles.get(kind)
        if handle is not None:
            return handle

        pending = self._pending.get(kind)
        if pending is not None:
            return await asyncio.shield(pending)

        fut: "asyncio.Future[ProgramClient]" = asyncio.get_running_loop().create_future()
        self._pending[kind] = fut
        try:
            handle = await self._build(kind)
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            err = e if isinstance(e, ProgramInitError) else ProgramInitError(f"{kind.value}: {e}")
            log.warning("program client %s failed to initialize: %s", kind.value, e)
            fut.set_exception(err)
            fut.exception()  # waiters re-raise it; mark retrieved
            if err is e:
                raise
            raise err from e
        else:
            self._handles[kind] = handle
            fut.set_result(handle)
            return handle
        finally:
            self._pending.pop(kind, None)

    async def _build(self, kind: ProgramKind) -> ProgramClient:
        program_id = await self._keys.program_id(kind.value)
        provider = Provider(rpc=self._rpc, wallet=self._admin)
        if self._production:
            log.info("attaching %s client at %s", kind.value, program_id)
            return ProgramClient(kind=kind, program_id=program_id, provider=provider)

        idl = await self._idl_loader(self._rpc, program_id)
        if idl is None:
            raise ProgramInitError(f"{kind.value}: no idl published for {program_id}")
        validate_idl(kind, idl)
        log.info("initialized %s client at %s", kind.value, program_id)
        return ProgramClient(kind=kind, program_id=program_id, provider=provider, idl=idl)

    def cached(self, kind: ProgramKind) -> Optional[ProgramClient]:
        return self._handles.get(ProgramKind(kind))

    def cleanup(self, kind: Optional[ProgramKind] = None) -> None:
        if kind is None:
            self._handles.clear()
        else:
            self._handles.pop(ProgramKind(kind), None)
