from __future__ import annotations

"""
Fee and balance estimates for user-paid flows. Results are cached for the
configured simulation TTL, keyed on the request parameters.
"""

from typing import Any, Dict, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ..context import GatewayContext
from ..runtime.messages import NfNodeTypeName
from .deps import get_context

router = APIRouter(prefix="/simulate", tags=["simulate"])


class WalletBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wallet_address: str = Field(..., alias="walletAddress")


class NodeBody(WalletBody):
    nft_mint_address: str = Field(..., alias="nftMintAddress")
    nfnode_type: NfNodeTypeName = Field(default="don", alias="nfnodeType")


@router.post("/initialize-nfnode")
async def simulate_initialize_nfnode(body: NodeBody, ctx: GatewayContext = Depends(get_context)) -> Dict[str, Any]:
    return await ctx.simulation.simulate_initialize_nfnode(
        body.wallet_address, body.nft_mint_address, body.nfnode_type
    )


@router.post("/claim-lost-tokens")
async def simulate_claim_lost_tokens(body: WalletBody, ctx: GatewayContext = Depends(get_context)) -> Dict[str, Any]:
    return await ctx.simulation.simulate_claim_lost_tokens(body.wallet_address)


@router.post("/update-contract")
async def simulate_update_contract(body: NodeBody, ctx: GatewayContext = Depends(get_context)) -> Dict[str, Any]:
    return await ctx.simulation.simulate_update_contract(
        body.wallet_address, body.nft_mint_address, body.nfnode_type
    )


class StakeBody(WalletBody):
    nft_mint_address: str = Field(..., alias="nftMintAddress")
    amount: float = Field(..., gt=0)


class UnstakeBody(WalletBody):
    nft_mint_address: str = Field(..., alias="nftMintAddress")


class ClaimRewardBody(WalletBody):
    nft_mint_address: str = Field(..., alias="nftMintAddress")
    amount_to_claim: float = Field(..., gt=0, alias="amountToClaim")
    claimer_type: Literal["owner", "other"] = Field(default="owner", alias="claimerType")


@router.post("/initialize-stake")
async def simulate_initialize_stake(body: StakeBody, ctx: GatewayContext = Depends(get_context)) -> Dict[str, Any]:
    return await ctx.simulation.simulate_initialize_stake(body.wallet_address, body.nft_mint_address, body.amount)


@router.post("/stake")
async def simulate_stake(body: StakeBody, ctx: GatewayContext = Depends(get_context)) -> Dict[str, Any]:
    return await ctx.simulation.simulate_stake(body.wallet_address, body.nft_mint_address, body.amount)


@router.post("/unstake")
async def simulate_unstake(body: UnstakeBody, ctx: GatewayContext = Depends(get_context)) -> Dict[str, Any]:
    return await ctx.simulation.simulate_unstake(body.wallet_address, body.nft_mint_address)


@router.post("/claim-reward")
async def simulate_claim_reward(body: ClaimRewardBody, ctx: GatewayContext = Depends(get_context)) -> Dict[str, Any]:
    return await ctx.simulation.simulate_claim_reward(
        body.wallet_address, body.amount_to_claim, body.nft_mint_address, body.claimer_type
    )
