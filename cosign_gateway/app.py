"""
cosign_gateway/app.py
---------------------
FastAPI application factory. Run with:

    uvicorn cosign_gateway.app:app

The service graph is built in the lifespan hook; importing this module reads
settings but does not load the admin key or open any connection.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import health, realtime, request_transaction, simulate, transactions
from .context import GatewayContext, build_context, shutdown
from .settings import Settings, get_settings

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def create_app(settings: Optional[Settings] = None, context: Optional[GatewayContext] = None) -> FastAPI:
    settings = settings or (context.settings if context is not None else get_settings())
    logging.basicConfig(level=settings.logging.level, format=LOG_FORMAT)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        ctx = context or build_context(settings)
        app.state.context = ctx
        ctx.cache.start()
        log.info("cosign gateway started (env=%s)", settings.env)
        try:
            yield
        finally:
            await shutdown(ctx)
            log.info("cosign gateway stopped")

    app = FastAPI(title="Co-sign Gateway", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(request_transaction.router)
    app.include_router(transactions.router)
    app.include_router(simulate.router)
    app.include_router(realtime.router)
    return app


app = create_app()
