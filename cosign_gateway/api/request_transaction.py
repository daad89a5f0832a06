from __future__ import annotations

"""
Prepare endpoints.

POST /request-transaction/{action} takes a base64 action message signed by
the message authority and returns the transaction the user's wallet should
sign, plus the nonce to send back at co-sign time. Rejections come back as
``{error: true, code, message}`` with status 200.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ..context import GatewayContext
from .deps import get_context

router = APIRouter(prefix="/request-transaction", tags=["request-transaction"])


class RequestTransactionBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    signature: str = Field(..., description="base64 serialized action message")
    include_admin_authorization: bool = Field(default=True, alias="includeAdminAuthorization")
    include_init_tx: bool = Field(default=False, alias="includeInitTx")


@router.post("/{action}")
async def request_transaction(
    action: str,
    body: RequestTransactionBody,
    ctx: GatewayContext = Depends(get_context),
) -> Dict[str, Any]:
    return await ctx.prepare.request(
        action,
        body.signature,
        include_admin_authorization=body.include_admin_authorization,
        include_init_tx=body.include_init_tx,
    )
