from __future__ import annotations

"""
Health endpoint.

GET /health reports process liveness plus a cheap view of the runtime:
which program clients are initialized and how many simulations are cached.
It performs no network calls.
"""

import time
from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..context import GatewayContext
from ..runtime.programs import ProgramKind
from .deps import get_context

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    ok: bool = True
    ts: float = Field(..., description="Server timestamp.")
    env: str
    admin: str = Field(..., description="Admin public key.")
    programs: Dict[str, bool] = Field(..., description="Program client initialized, per program.")
    cached_simulations: int = 0


@router.get("/health", response_model=HealthResponse)
def health(ctx: GatewayContext = Depends(get_context)) -> HealthResponse:
    return HealthResponse(
        ts=time.time(),
        env=ctx.settings.env,
        admin=str(ctx.admin.pubkey()),
        programs={kind.value: ctx.registry.cached(kind) is not None for kind in ProgramKind},
        cached_simulations=len(ctx.cache),
    )
