from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from ..context import GatewayContext
from .deps import get_context

router = APIRouter(prefix="/transactions", tags=["transactions"])


class SignAndSendBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    serialized_transaction: str = Field(..., alias="serializedTransaction", min_length=1)
    nonce: Optional[int] = Field(default=None, ge=0)


@router.post("/sign-and-send")
async def sign_and_send(body: SignAndSendBody, ctx: GatewayContext = Depends(get_context)) -> Dict[str, Any]:
    """Verify a user-signed transaction, countersign it and broadcast it."""
    result = await ctx.broadcaster.sign_and_send(body.serialized_transaction, body.nonce)
    return result.to_dict()


@router.get("/authorizations/{wallet}")
async def list_authorizations(
    wallet: str, limit: int = Query(default=50, ge=1, le=500), ctx: GatewayContext = Depends(get_context)
) -> Dict[str, Any]:
    """Most recent authorization records for a wallet, newest first."""
    records = await ctx.ledger.list_by_wallet(wallet, limit)
    return {"wallet": wallet, "records": [r.to_dict() for r in records]}
