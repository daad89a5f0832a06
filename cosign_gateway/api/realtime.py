from __future__ import annotations

"""
Realtime staking channel.

WebSocket at /ws/solana-sign. The handshake carries an HS256 token in the
``auth`` query parameter; connections without a valid token are closed with
code 4001 before being accepted.

Frames are JSON ``{"event": str, "data": {...}}`` in both directions.

- ``get-tx-to-claim`` {signature, includeInitTx}
    -> ``get-tx-to-claim:response`` {error, code, serializedTx, serializedInitTx, nonce}
    -> ``get-tx-to-claim:error`` {error, code, message}
- ``sign-and-send`` {nonce, serializedTransaction}
    -> ``sign-and-send:response`` {success, requestId, message}
    -> ``sign-and-send:status`` {requestId, status: pending}
    -> ``sign-and-send:status`` {requestId, status: confirmed|failed, signature|error}

A broadcast that has started keeps running if the socket goes away; its
outcome is still written to the ledger, only the status frame is lost.
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from ..context import GatewayContext
from ..errors import PAYLOAD_INVALID, UNKNOWN_ERROR
from ..runtime.messages import MessageKind
from ..security.tokens import resolve_secret, verify_socket_token

log = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

TOKEN_EXPIRED = "token-expired"
AUTH_REQUIRED_CLOSE_CODE = 4001

# keeps in-flight broadcasts referenced until they finish
_background: Set[asyncio.Task] = set()


class GetTxToClaim(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    signature: str = Field(..., min_length=1)
    include_init_tx: bool = Field(default=False, alias="includeInitTx")


class SignAndSend(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    serialized_transaction: str = Field(..., alias="serializedTransaction", min_length=1)
    nonce: int = Field(..., ge=0)


def authenticate(ctx: GatewayContext, token: Optional[str]) -> Optional[Dict[str, Any]]:
    if not token:
        return None
    conf = ctx.settings.socket
    secret = resolve_secret(conf.secret, ctx.settings.is_production)
    return verify_socket_token(token, secret, issuer=conf.issuer, audience=conf.audience)


def _error(code: str, message: str, **extra: Any) -> Dict[str, Any]:
    return {"error": True, "code": code, "message": message, **extra}


async def _emit(ws: WebSocket, event: str, data: Dict[str, Any]) -> bool:
    try:
        await ws.send_json({"event": event, "data": data})
    except (WebSocketDisconnect, RuntimeError):
        log.info("socket gone; dropped %s", event)
        return False
    return True


async def _get_tx_to_claim(ws: WebSocket, ctx: GatewayContext, data: Dict[str, Any]) -> None:
    try:
        req = GetTxToClaim.model_validate(data)
    except SchemaError:
        await _emit(ws, "get-tx-to-claim:error", _error(PAYLOAD_INVALID, "signature is required"))
        return

    result = await ctx.prepare.request(
        MessageKind.CLAIM_DEPIN_STAKER_REWARDS.value,
        req.signature,
        include_admin_authorization=False,
        include_init_tx=req.include_init_tx,
    )
    if result.get("error"):
        await _emit(
            ws,
            "get-tx-to-claim:error",
            _error(result.get("code") or UNKNOWN_ERROR, "Failed to create transaction"),
        )
        return
    await _emit(
        ws,
        "get-tx-to-claim:response",
        {
            "error": False,
            "code": result.get("code"),
            "serializedTx": result.get("serializedTx"),
            "serializedInitTx": result.get("serializedInitTx"),
            "nonce": result.get("nonce"),
        },
    )


async def _broadcast(ws: WebSocket, ctx: GatewayContext, request_id: str, req: SignAndSend) -> None:
    try:
        result = await ctx.broadcaster.sign_and_send(req.serialized_transaction, req.nonce)
    except Exception as e:
        log.exception("sign-and-send %s failed", request_id)
        status = {"requestId": request_id, "status": "failed", "error": str(e) or UNKNOWN_ERROR}
    else:
        if result.is_valid and result.signature:
            status = {"requestId": request_id, "status": "confirmed", "signature": result.signature}
        else:
            status = {"requestId": request_id, "status": "failed", "error": result.message, "code": result.code}
    await _emit(ws, "sign-and-send:status", status)


async def _sign_and_send(ws: WebSocket, ctx: GatewayContext, data: Dict[str, Any]) -> None:
    request_id = str(uuid.uuid4())
    try:
        req = SignAndSend.model_validate(data)
    except SchemaError:
        await _emit(
            ws,
            "sign-and-send:error",
            _error(PAYLOAD_INVALID, "nonce and serializedTransaction are required", requestId=request_id),
        )
        return

    await _emit(
        ws,
        "sign-and-send:response",
        {"success": True, "requestId": request_id, "message": "Transaction received, processing..."},
    )
    await _emit(ws, "sign-and-send:status", {"requestId": request_id, "status": "pending"})

    task = asyncio.create_task(_broadcast(ws, ctx, request_id, req))
    _background.add(task)
    task.add_done_callback(_background.discard)


_HANDLERS = {
    "get-tx-to-claim": _get_tx_to_claim,
    "sign-and-send": _sign_and_send,
}


@router.websocket("/ws/solana-sign")
async def solana_sign(websocket: WebSocket) -> None:
    ctx: GatewayContext = websocket.app.state.context
    claims = authenticate(ctx, websocket.query_params.get("auth"))
    if claims is None:
        await websocket.close(code=AUTH_REQUIRED_CLOSE_CODE, reason="Authentication required")
        return

    await websocket.accept()
    wallet = claims["walletAddress"]
    expires_at = float(claims.get("exp", 0))
    log.info("socket connected for %s", wallet)

    try:
        while True:
            try:
                frame = json.loads(await websocket.receive_text())
            except json.JSONDecodeError:
                await _emit(websocket, "error", _error(PAYLOAD_INVALID, "frames must be JSON"))
                continue
            event = frame.get("event") if isinstance(frame, dict) else None
            data = frame.get("data") if isinstance(frame, dict) else None

            if time.time() >= expires_at:
                await _emit(
                    websocket,
                    f"{event}:error",
                    _error(TOKEN_EXPIRED, "Authentication token has expired. Please reconnect."),
                )
                await websocket.close(code=AUTH_REQUIRED_CLOSE_CODE, reason="token has expired")
                return

            handler = _HANDLERS.get(event)
            if handler is None:
                await _emit(websocket, "error", _error(PAYLOAD_INVALID, f"unknown event {event!r}"))
                continue
            await handler(websocket, ctx, data if isinstance(data, dict) else {})
    except WebSocketDisconnect:
        log.info("socket disconnected for %s", wallet)
