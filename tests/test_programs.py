import asyncio
import hashlib

import pytest
from solders.pubkey import Pubkey

from cosign_gateway.errors import PROGRAM_NOT_INITIALIZED, ProgramInitError
from cosign_gateway.runtime.keys import KeyResolver, KeyStore
from cosign_gateway.runtime.programs import (
    ProgramClientRegistry,
    ProgramKind,
    instruction_name,
    sighash,
    validate_idl,
)
from cosign_gateway.settings import ProgramsConf

from conftest import full_idl


class CountingLoader:
    def __init__(self, answers=None):
        self.calls = 0
        self.answers = list(answers or [])

    async def __call__(self, rpc, program_id):
        self.calls += 1
        await asyncio.sleep(0)
        if self.answers:
            answer = self.answers.pop(0)
            if isinstance(answer, Exception):
                raise answer
            return answer
        return full_idl()


@pytest.fixture
def keys(settings):
    return KeyResolver(KeyStore(str(settings.SQLITE_PATH)), settings)


def _registry(rpc, admin, keys, loader, production=False):
    return ProgramClientRegistry(rpc=rpc, admin=admin, keys=keys, production=production, idl_loader=loader)


@pytest.mark.asyncio
async def test_concurrent_first_use_builds_once(rpc, admin, keys):
    loader = CountingLoader()
    registry = _registry(rpc, admin, keys, loader)
    handles = await asyncio.gather(*[registry.get_instance(ProgramKind.REWARD_SYSTEM) for _ in range(5)])
    assert loader.calls == 1
    assert all(h is handles[0] for h in handles)
    assert handles[0].program_id == Pubkey.from_string(ProgramsConf().reward_system)
    assert registry.cached(ProgramKind.REWARD_SYSTEM) is handles[0]


@pytest.mark.asyncio
async def test_failed_build_is_retried(rpc, admin, keys):
    loader = CountingLoader([None, RuntimeError("rpc down")])
    registry = _registry(rpc, admin, keys, loader)
    with pytest.raises(ProgramInitError) as e:
        await registry.get_instance(ProgramKind.STAKE)
    assert e.value.code == PROGRAM_NOT_INITIALIZED
    with pytest.raises(ProgramInitError):
        await registry.get_instance(ProgramKind.STAKE)
    assert registry.cached(ProgramKind.STAKE) is None

    handle = await registry.get_instance(ProgramKind.STAKE)
    assert handle.idl is not None
    assert loader.calls == 3


@pytest.mark.asyncio
async def test_cleanup_forces_rebuild(rpc, admin, keys):
    loader = CountingLoader()
    registry = _registry(rpc, admin, keys, loader)
    first = await registry.get_instance(ProgramKind.AIRDROPS)
    registry.cleanup()
    assert registry.cached(ProgramKind.AIRDROPS) is None
    second = await registry.get_instance(ProgramKind.AIRDROPS)
    assert first is not second and loader.calls == 2


@pytest.mark.asyncio
async def test_production_skips_idl(rpc, admin, keys):
    loader = CountingLoader()
    registry = _registry(rpc, admin, keys, loader, production=True)
    handle = await registry.get_instance("reward_system")
    assert handle.idl is None and loader.calls == 0


@pytest.mark.asyncio
async def test_runtime_key_overrides_program_id(rpc, admin, keys, settings):
    other = Pubkey.from_string("11111111111111111111111111111112")
    KeyStore(str(settings.SQLITE_PATH)).set("STAKE_PROGRAM_ID", str(other))
    registry = _registry(rpc, admin, keys, CountingLoader())
    assert (await registry.get_instance(ProgramKind.STAKE)).program_id == other


def test_idl_must_declare_every_instruction():
    camel = {"instructions": [{"name": n} for n in ("initializeNfnode", "depositTokens", "withdrawTokens")]}
    validate_idl(ProgramKind.STAKE, camel)
    with pytest.raises(ProgramInitError):
        validate_idl(ProgramKind.REWARD_SYSTEM, {"instructions": [{"name": "initializeNfnode"}]})


def test_sighash_and_instruction_name(admin):
    assert sighash("claim_tokens") == hashlib.sha256(b"global:claim_tokens").digest()[:8]
    assert instruction_name(ProgramKind.AIRDROPS, sighash("claim_tokens") + b"\x00" * 16) == "claim_tokens"
    assert instruction_name(ProgramKind.AIRDROPS, b"\x00" * 8) is None


@pytest.mark.asyncio
async def test_instruction_encodes_args_and_accounts(rpc, admin, keys, user, nft_mint):
    client = await _registry(rpc, admin, keys, CountingLoader()).get_instance(ProgramKind.REWARD_SYSTEM)
    ix = client.instruction(
        "update_nfnode",
        {"host_share": 30},
        {
            "user_admin": admin.pubkey(),
            "user": user.pubkey(),
            "host": nft_mint,
            "nft_mint_address": nft_mint,
            "user_nft_token_account": nft_mint,
            "nfnode_entry": nft_mint,
            "admin_account": nft_mint,
        },
    )
    assert bytes(ix.data) == sighash("update_nfnode") + (30).to_bytes(8, "little")
    assert ix.accounts[0].pubkey == admin.pubkey() and ix.accounts[0].is_signer
    assert ix.accounts[-1].pubkey == Pubkey.from_string("11111111111111111111111111111111")

    with pytest.raises(ValueError):
        client.instruction("update_nfnode", {"host_share": 30}, {"user": user.pubkey()})
    with pytest.raises(ValueError):
        client.instruction("claim_tokens", {}, {})
