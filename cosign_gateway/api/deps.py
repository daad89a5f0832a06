from __future__ import annotations

from fastapi import Request

from ..context import GatewayContext


def get_context(request: Request) -> GatewayContext:
    return request.app.state.context
