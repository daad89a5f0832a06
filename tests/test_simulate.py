import pytest

from cosign_gateway.errors import (
    INSUFFICIENT_BALANCE,
    PROGRAM_INSUFFICIENT_TOKENS,
    SIMULATION_FAILED,
    SUCCESS,
    UNKNOWN_ERROR,
)
from cosign_gateway.runtime.accounts import AccountDeriver
from cosign_gateway.runtime.constants import CLAIM_ENTRY_SIZE, NFNODE_ENTRY_SIZE, REWARD_ENTRY_SIZE, TOKEN_ACCOUNT_SIZE


def _rent(size):
    return (128 + size) * 6_960


@pytest.fixture
def wallet(user):
    return str(user.pubkey())


@pytest.mark.asyncio
async def test_initialize_nfnode_with_enough_balance(ctx, rpc, wallet, nft_mint):
    res = await ctx.simulation.simulate_initialize_nfnode(wallet, str(nft_mint), "don")
    assert res["success"] and res["code"] == SUCCESS
    assert res["feeInLamports"] == rpc.fee
    details = res["details"]
    assert details["hasEnoughBalance"]
    assert details["minimumRequired"] == ctx.settings.fees.minimum_remaining_sol
    assert details["requiredBalance"] == round((rpc.fee + 5_000_000) / 1e9, 9)
    assert rpc.simulated == 1


@pytest.mark.asyncio
async def test_insufficient_balance_skips_simulation(ctx, rpc, user, wallet, nft_mint):
    rpc.balances[user.pubkey()] = 1_000_000
    res = await ctx.simulation.simulate_initialize_nfnode(wallet, str(nft_mint), "don")
    assert not res["success"] and res["code"] == INSUFFICIENT_BALANCE
    assert not res["details"]["hasEnoughBalance"]
    assert "SOL left" in res["error"]
    assert rpc.simulated == 0


@pytest.mark.asyncio
async def test_simulation_error_is_reported(ctx, rpc, wallet, nft_mint):
    rpc.sim_error = "custom program error: 0x1771"
    res = await ctx.simulation.simulate_initialize_nfnode(wallet, str(nft_mint), "byod")
    assert res["code"] == SIMULATION_FAILED and res["error"] == rpc.sim_error


@pytest.mark.asyncio
async def test_results_are_cached_per_parameters(ctx, rpc, wallet, nft_mint):
    first = await ctx.simulation.simulate_initialize_nfnode(wallet, str(nft_mint), "don")
    rpc.fee = 9_999
    assert await ctx.simulation.simulate_initialize_nfnode(wallet, str(nft_mint), "don") == first
    assert rpc.simulated == 1

    other = await ctx.simulation.simulate_initialize_nfnode(wallet, str(nft_mint), "byod")
    assert other["feeInLamports"] == 9_999 and rpc.simulated == 2


@pytest.mark.asyncio
async def test_claim_lost_tokens_counts_rent(ctx, rpc, user, wallet):
    res = await ctx.simulation.simulate_claim_lost_tokens(wallet)
    breakdown = res["details"]["breakdown"]
    assert breakdown["claimEntryRent"] == round(_rent(CLAIM_ENTRY_SIZE) / 1e9, 9)
    assert breakdown["userTokenAccountRent"] == round(_rent(TOKEN_ACCOUNT_SIZE) / 1e9, 9)
    assert breakdown["transactionFee"] == round(rpc.fee / 1e9, 9)


@pytest.mark.asyncio
async def test_existing_token_account_needs_no_rent(ctx, rpc, user, wallet):
    mint = await ctx.keys.reward_token_mint()
    rpc.accounts[AccountDeriver.user_token_account(user.pubkey(), mint)] = b"\x00"
    res = await ctx.simulation.simulate_claim_lost_tokens(wallet)
    assert res["details"]["breakdown"]["userTokenAccountRent"] == 0


@pytest.mark.asyncio
async def test_update_contract_combines_both(ctx, rpc, wallet, nft_mint):
    res = await ctx.simulation.simulate_update_contract(wallet, str(nft_mint), "don")
    assert res["success"] and res["code"] == SUCCESS
    assert res["feeInLamports"] == 2 * rpc.fee
    assert res["details"]["hasEnoughBalance"]


@pytest.mark.asyncio
async def test_update_contract_reports_first_failure(ctx, rpc, user, wallet, nft_mint):
    rpc.balances[user.pubkey()] = 5_010_000
    res = await ctx.simulation.simulate_update_contract(wallet, str(nft_mint), "don")
    assert not res["success"]
    assert res["code"] == INSUFFICIENT_BALANCE


@pytest.mark.asyncio
async def test_unexpected_error_is_unknown(ctx, wallet):
    res = await ctx.simulation.simulate_initialize_nfnode(wallet, "not-a-mint", "don")
    assert not res["success"] and res["code"] == UNKNOWN_ERROR


@pytest.mark.asyncio
async def test_update_contract_fails_when_only_the_sum_is_unaffordable(ctx, rpc, user, wallet, nft_mint):
    claim_needs = rpc.fee + _rent(CLAIM_ENTRY_SIZE) + _rent(TOKEN_ACCOUNT_SIZE) + 5_000_000
    init_needs = rpc.fee + 5_000_000
    rpc.balances[user.pubkey()] = claim_needs + init_needs - 1

    res = await ctx.simulation.simulate_update_contract(wallet, str(nft_mint), "don")
    assert not res["success"]
    assert res["code"] == INSUFFICIENT_BALANCE
    assert not res["details"]["hasEnoughBalance"]
    assert res["error"]


# ---------------------------------------------------------------------------
# Stake and rewards
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initialize_stake_counts_node_and_storage_rent(ctx, rpc, wallet, nft_mint):
    res = await ctx.simulation.simulate_initialize_stake(wallet, str(nft_mint), 100)
    assert res["success"] and res["code"] == SUCCESS
    breakdown = res["details"]["breakdown"]
    assert breakdown["nfnodeEntryRent"] == round(_rent(NFNODE_ENTRY_SIZE) / 1e9, 9)
    assert breakdown["tokenStorageAccountRent"] == round(_rent(TOKEN_ACCOUNT_SIZE) / 1e9, 9)


@pytest.mark.asyncio
async def test_existing_stake_storage_needs_no_rent(ctx, rpc, wallet, nft_mint):
    stake = AccountDeriver(await ctx.keys.program_id("stake"))
    storage = stake.token_storage_account(await ctx.keys.reward_token_mint(), nft_mint)
    rpc.accounts[storage] = b"\x00"
    res = await ctx.simulation.simulate_initialize_stake(wallet, str(nft_mint), 100)
    assert res["details"]["breakdown"]["tokenStorageAccountRent"] == 0


@pytest.mark.asyncio
async def test_stake_and_unstake_are_estimated(ctx, rpc, user, wallet, nft_mint):
    staked = await ctx.simulation.simulate_stake(wallet, str(nft_mint), 50)
    unstaked = await ctx.simulation.simulate_unstake(wallet, str(nft_mint))
    for res in (staked, unstaked):
        assert res["success"] and res["code"] == SUCCESS
        assert res["details"]["breakdown"]["claimEntryRent"] == round(_rent(CLAIM_ENTRY_SIZE) / 1e9, 9)
    assert rpc.simulated == 2

    rpc.balances[user.pubkey()] = 1
    res = await ctx.simulation.simulate_stake(wallet, str(nft_mint), 75)
    assert res["code"] == INSUFFICIENT_BALANCE


@pytest.mark.asyncio
async def test_claim_reward_counts_reward_entry_rent(ctx, rpc, wallet, nft_mint):
    res = await ctx.simulation.simulate_claim_reward(wallet, 10, str(nft_mint), "owner")
    assert res["success"] and res["code"] == SUCCESS
    assert res["details"]["breakdown"]["rewardEntryRent"] == round(_rent(REWARD_ENTRY_SIZE) / 1e9, 9)


@pytest.mark.asyncio
async def test_claim_reward_needs_tokens_in_program_storage(ctx, rpc, wallet, nft_mint):
    reward = AccountDeriver(await ctx.keys.program_id("reward_system"))
    storage = reward.token_storage_account(await ctx.keys.reward_token_mint())
    rpc.token_balances[storage] = 9_999_999

    res = await ctx.simulation.simulate_claim_reward(wallet, 10, str(nft_mint), "other")
    assert not res["success"] and res["code"] == PROGRAM_INSUFFICIENT_TOKENS
    assert res["details"] == {"programTokenBalance": 9_999_999, "amountToClaim": 10_000_000}
    assert rpc.simulated == 0
