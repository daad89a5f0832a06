from __future__ import annotations

"""
Process-wide service graph.

``build_context`` wires every component from a Settings object once at
startup; the API layer reads the result from ``app.state``. The admin
keypair is a field of the frozen context and is never exposed through a
module global.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from solana.rpc.commitment import Commitment
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .crypto_utils import load_admin_keypair
from .runtime.accounts import derive_associated_token_account
from .runtime.cosign import CoSignBroadcaster
from .runtime.inspect import TransactionInspector
from .runtime.keys import KeyResolver, KeyStore
from .runtime.ledger import AuthorizationLedger
from .runtime.messages import MessageAuthenticator
from .runtime.prepare import RequestTransactionService
from .runtime.programs import IdlLoader, ProgramClientRegistry, fetch_idl
from .runtime.simulate import SimulationService
from .runtime.simulation_cache import SimulationCache
from .runtime.tx_builder import TransactionBuilder
from .runtime.tx_codec import IntegrityHasher
from .settings import Settings
from .solana_rpc import SolanaRpc

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayContext:
    settings: Settings
    admin: Keypair = field(repr=False)
    rpc: SolanaRpc
    ledger: AuthorizationLedger
    keys: KeyResolver
    registry: ProgramClientRegistry
    hasher: IntegrityHasher
    builder: TransactionBuilder
    authenticator: MessageAuthenticator
    broadcaster: CoSignBroadcaster
    prepare: RequestTransactionService
    cache: SimulationCache
    simulation: SimulationService


def build_context(
    settings: Settings,
    *,
    rpc: Optional[SolanaRpc] = None,
    admin: Optional[Keypair] = None,
    idl_loader: IdlLoader = fetch_idl,
    clock: Callable[[], float] = time.time,
) -> GatewayContext:
    admin = admin or load_admin_keypair(settings.admin.private_key or "")
    rpc = rpc or SolanaRpc(
        settings.solana.endpoint(),
        commitment=Commitment(settings.solana.commitment),
        max_age_sec=settings.solana.connection_max_age_sec,
    )

    db_path = str(settings.SQLITE_PATH)
    ledger = AuthorizationLedger(db_path, expiration_window=settings.ledger.expiration_window_sec, clock=clock)
    keys = KeyResolver(KeyStore(db_path), settings)
    registry = ProgramClientRegistry(
        rpc=rpc, admin=admin, keys=keys, production=settings.is_production, idl_loader=idl_loader
    )
    hasher = IntegrityHasher(Pubkey.from_string(p) for p in settings.integrity.injected_program_ids)
    builder = TransactionBuilder(
        rpc=rpc,
        registry=registry,
        keys=keys,
        admin=admin,
        node_defaults=settings.node_defaults,
        token_decimals=settings.tokens.decimals,
    )

    authority = (
        Pubkey.from_string(settings.admin.message_authority) if settings.admin.message_authority else admin.pubkey()
    )
    authenticator = MessageAuthenticator(authority)

    async def inspector_factory() -> TransactionInspector:
        program_ids = await keys.program_ids()
        treasury = await keys.foundation_wallet()
        mint = await keys.reward_token_mint()
        return TransactionInspector(
            program_ids,
            treasury_destinations=(treasury, derive_associated_token_account(treasury, mint)),
            cosigner=admin.pubkey(),
            ignored_program_ids=hasher.excluded_program_ids,
        )

    async def on_rpc_failure() -> None:
        registry.cleanup()
        await rpc.reset()

    broadcaster = CoSignBroadcaster(
        rpc=rpc,
        ledger=ledger,
        hasher=hasher,
        admin=admin,
        inspector_factory=inspector_factory,
        on_rpc_failure=on_rpc_failure,
    )
    prepare = RequestTransactionService(
        authenticator=authenticator,
        ledger=ledger,
        builder=builder,
        hasher=hasher,
        lost_tokens_amount=settings.fees.lost_tokens_amount,
        clock=clock,
    )
    cache = SimulationCache(settings.cache.simulation_ttl_sec)
    simulation = SimulationService(
        rpc=rpc,
        builder=builder,
        keys=keys,
        cache=cache,
        lost_tokens_amount=settings.fees.lost_tokens_amount,
        token_decimals=settings.tokens.decimals,
    )

    log.info("gateway context ready (env=%s, admin=%s, authority=%s)", settings.env, admin.pubkey(), authority)
    return GatewayContext(
        settings=settings,
        admin=admin,
        rpc=rpc,
        ledger=ledger,
        keys=keys,
        registry=registry,
        hasher=hasher,
        builder=builder,
        authenticator=authenticator,
        broadcaster=broadcaster,
        prepare=prepare,
        cache=cache,
        simulation=simulation,
    )


async def shutdown(ctx: GatewayContext) -> None:
    await ctx.cache.destroy()
    ctx.registry.cleanup()
    await ctx.rpc.close()
