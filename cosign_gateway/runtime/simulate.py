from __future__ import annotations

"""
Fee and balance simulation for user-paid flows.

Each estimate builds the same transaction the prepare flow would build
(without the admin signature), asks the cluster for the message fee, adds
rent for accounts the transaction would create and the minimum balance a
wallet must keep, and compares the total with the wallet balance. Results
are cached per parameter set.
"""

import logging
from typing import Any, Dict

from solders.pubkey import Pubkey

from ..errors import (
    INSUFFICIENT_BALANCE,
    PROGRAM_INSUFFICIENT_TOKENS,
    SIMULATION_FAILED,
    SUCCESS,
    UNKNOWN_ERROR,
    GatewayError,
)
from ..solana_rpc import SolanaRpc
from .accounts import AccountDeriver
from .constants import CLAIM_ENTRY_SIZE, LAMPORTS_PER_SOL, NFNODE_ENTRY_SIZE, REWARD_ENTRY_SIZE, TOKEN_ACCOUNT_SIZE
from .keys import KeyResolver, to_token_amount
from .ledger import ClaimerType
from .programs import ProgramKind
from .simulation_cache import SimulationCache
from .tx_builder import BuiltTransaction, TransactionBuilder

log = logging.getLogger(__name__)


def _sol(lamports: int) -> float:
    return round(lamports / LAMPORTS_PER_SOL, 9)


class SimulationService:
    def __init__(
        self,
        *,
        rpc: SolanaRpc,
        builder: TransactionBuilder,
        keys: KeyResolver,
        cache: SimulationCache,
        lost_tokens_amount: float = 5000.0,
        token_decimals: int = 6,
    ):
        self._rpc = rpc
        self._builder = builder
        self._keys = keys
        self._cache = cache
        self._lost_tokens_amount = lost_tokens_amount
        self._decimals = token_decimals

    async def _token_account_rent(self, account: Pubkey) -> int:
        if await self._rpc.account_exists(account):
            return 0
        return await self._rpc.minimum_balance_for_rent_exemption(TOKEN_ACCOUNT_SIZE)

    async def _user_token_account_rent(self, user: Pubkey) -> int:
        mint = await self._keys.reward_token_mint()
        return await self._token_account_rent(AccountDeriver.user_token_account(user, mint))

    async def _claim_entry_breakdown(self, user: Pubkey) -> Dict[str, int]:
        return {
            "claimEntryRent": await self._rpc.minimum_balance_for_rent_exemption(CLAIM_ENTRY_SIZE),
            "userTokenAccountRent": await self._user_token_account_rent(user),
        }

    async def _estimate(self, user: Pubkey, built: BuiltTransaction, breakdown: Dict[str, int]) -> Dict[str, Any]:
        fee = await self._rpc.fee_for_message(built.transaction.message)
        minimum = await self._keys.minimum_remaining_lamports()
        balance = await self._rpc.get_balance(user)
        required = fee + sum(breakdown.values()) + minimum
        has_enough = balance >= required

        result: Dict[str, Any] = {
            "success": has_enough,
            "code": SUCCESS if has_enough else INSUFFICIENT_BALANCE,
            "feeInLamports": fee,
            "feeInSol": _sol(required),
            "details": {
                "hasEnoughBalance": has_enough,
                "userBalance": _sol(balance),
                "requiredBalance": _sol(required),
                "minimumRequired": _sol(minimum),
                "breakdown": {"transactionFee": _sol(fee), **{k: _sol(v) for k, v in breakdown.items()}},
            },
        }
        if not has_enough:
            result["error"] = f"User must have at least {_sol(minimum)} SOL left after the transaction."
            return result

        sim_error = await self._rpc.simulate(built.transaction)
        if sim_error is not None:
            result.update(success=False, code=SIMULATION_FAILED, error=sim_error)
        return result

    async def _guarded(self, params: Dict[str, Any], compute) -> Dict[str, Any]:
        async def run() -> Dict[str, Any]:
            try:
                return await compute()
            except GatewayError as e:
                return {"success": False, "code": e.code, "error": e.message, "feeInLamports": 0, "feeInSol": 0}
            except Exception as e:
                log.exception("simulation %s failed", params.get("type"))
                return {"success": False, "code": UNKNOWN_ERROR, "error": str(e), "feeInLamports": 0, "feeInSol": 0}

        return await self._cache.get_or_execute(params, run)

    # ------------------------------------------------------------------
    # Public estimates
    # ------------------------------------------------------------------

    async def simulate_initialize_nfnode(self, wallet: str, nft_mint: str, nfnode_type: str) -> Dict[str, Any]:
        params = {"type": "initialize_nfnode", "walletAddress": wallet, "nftMint": nft_mint, "nfnodeType": nfnode_type}

        async def compute() -> Dict[str, Any]:
            user = Pubkey.from_string(wallet)
            built = await self._builder.initialize_nfnode(
                user, Pubkey.from_string(nft_mint), nfnode_type, sign=False
            )
            return await self._estimate(user, built, {})

        return await self._guarded(params, compute)

    async def simulate_claim_lost_tokens(self, wallet: str) -> Dict[str, Any]:
        params = {"type": "claim_lost_tokens", "walletAddress": wallet}

        async def compute() -> Dict[str, Any]:
            user = Pubkey.from_string(wallet)
            # nonce 0 only sizes the transaction; it is never issued
            built = await self._builder.claim_lost_tokens(user, self._lost_tokens_amount, 0, sign=False)
            return await self._estimate(user, built, await self._claim_entry_breakdown(user))

        return await self._guarded(params, compute)

    async def simulate_update_contract(self, wallet: str, nft_mint: str, nfnode_type: str) -> Dict[str, Any]:
        params = {"type": "update_contract", "walletAddress": wallet, "nftMint": nft_mint, "nfnodeType": nfnode_type}

        async def compute() -> Dict[str, Any]:
            claim = await self.simulate_claim_lost_tokens(wallet)
            init = await self.simulate_initialize_nfnode(wallet, nft_mint, nfnode_type)
            balance = await self._rpc.get_balance(Pubkey.from_string(wallet))
            required = sum(float((r.get("details") or {}).get("requiredBalance", 0)) for r in (claim, init))
            has_enough = _sol(balance) >= round(required, 9)

            # each part may pass alone while both together do not fit the balance
            if not claim.get("success"):
                code, error = claim["code"], claim.get("error")
            elif not init.get("success"):
                code, error = init["code"], init.get("error")
            elif not has_enough:
                code, error = INSUFFICIENT_BALANCE, f"Both transactions together need {round(required, 9)} SOL."
            else:
                code, error = SUCCESS, None

            out: Dict[str, Any] = {
                "success": code == SUCCESS,
                "code": code,
                "feeInLamports": int(claim.get("feeInLamports", 0)) + int(init.get("feeInLamports", 0)),
                "feeInSol": float(claim.get("feeInSol", 0)) + float(init.get("feeInSol", 0)),
                "details": {
                    "hasEnoughBalance": has_enough,
                    "userBalance": _sol(balance),
                    "requiredBalance": round(required, 9),
                },
            }
            if error is not None:
                out["error"] = error
            return out

        return await self._guarded(params, compute)

    # ------------------------------------------------------------------
    # Stake and rewards
    # ------------------------------------------------------------------

    async def simulate_initialize_stake(self, wallet: str, nft_mint: str, amount: float) -> Dict[str, Any]:
        params = {"type": "initialize_stake", "walletAddress": wallet, "nftMint": nft_mint, "amount": amount}

        async def compute() -> Dict[str, Any]:
            user, mint = Pubkey.from_string(wallet), Pubkey.from_string(nft_mint)
            built = await self._builder.initialize_stake(user, mint, amount, sign=False)
            stake = AccountDeriver(await self._keys.program_id(ProgramKind.STAKE.value))
            storage = stake.token_storage_account(await self._keys.reward_token_mint(), mint)
            breakdown = {
                "nfnodeEntryRent": await self._rpc.minimum_balance_for_rent_exemption(NFNODE_ENTRY_SIZE),
                "userTokenAccountRent": await self._user_token_account_rent(user),
                "tokenStorageAccountRent": await self._token_account_rent(storage),
            }
            return await self._estimate(user, built, breakdown)

        return await self._guarded(params, compute)

    async def simulate_stake(self, wallet: str, nft_mint: str, amount: float) -> Dict[str, Any]:
        params = {"type": "stake-deposit", "walletAddress": wallet, "nftMint": nft_mint, "amount": amount}

        async def compute() -> Dict[str, Any]:
            user = Pubkey.from_string(wallet)
            built = await self._builder.stake(user, Pubkey.from_string(nft_mint), amount, sign=False)
            return await self._estimate(user, built, await self._claim_entry_breakdown(user))

        return await self._guarded(params, compute)

    async def simulate_unstake(self, wallet: str, nft_mint: str) -> Dict[str, Any]:
        params = {"type": "unstake-deposit", "walletAddress": wallet, "nftMint": nft_mint}

        async def compute() -> Dict[str, Any]:
            user = Pubkey.from_string(wallet)
            built = await self._builder.withdraw(user, Pubkey.from_string(nft_mint), sign=False)
            return await self._estimate(user, built, await self._claim_entry_breakdown(user))

        return await self._guarded(params, compute)

    async def simulate_claim_reward(
        self, wallet: str, amount: float, nft_mint: str, claimer_type: str
    ) -> Dict[str, Any]:
        params = {
            "type": "claim_reward",
            "walletAddress": wallet,
            "amountToClaim": amount,
            "nftMint": nft_mint,
            "claimerType": claimer_type,
        }

        async def compute() -> Dict[str, Any]:
            user = Pubkey.from_string(wallet)
            # nonce 0 only sizes the transaction; it is never issued
            built = await self._builder.claim_rewards(
                user, Pubkey.from_string(nft_mint), amount, 0, ClaimerType(claimer_type), sign=False
            )
            reward = AccountDeriver(await self._keys.program_id(ProgramKind.REWARD_SYSTEM.value))
            storage = reward.token_storage_account(await self._keys.reward_token_mint())
            held = await self._rpc.token_account_balance(storage)
            wanted = to_token_amount(amount, self._decimals)
            if held < wanted:
                log.warning("reward storage %s holds %d, claim of %d cannot be paid", storage, held, wanted)
                return {
                    "success": False,
                    "code": PROGRAM_INSUFFICIENT_TOKENS,
                    "error": "Program does not have enough reward tokens to pay the claim.",
                    "feeInLamports": 0,
                    "feeInSol": 0,
                    "details": {"programTokenBalance": held, "amountToClaim": wanted},
                }
            breakdown = {
                "rewardEntryRent": await self._rpc.minimum_balance_for_rent_exemption(REWARD_ENTRY_SIZE),
                "userTokenAccountRent": await self._user_token_account_rent(user),
            }
            return await self._estimate(user, built, breakdown)

        return await self._guarded(params, compute)
