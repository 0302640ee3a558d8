from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from . import set_gateway
from .api.fastapi_router import router as rest_router
from .api.websocket import router as ws_router
from .config import GatewayConfig
from .gateway import SessionGateway

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[GatewayConfig] = None,
    *,
    gateway: Optional[SessionGateway] = None,
) -> FastAPI:
    """Build the FastAPI app. The gateway is started and stopped with it."""
    gateway = gateway or SessionGateway(config or GatewayConfig.load())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        set_gateway(gateway)
        await gateway.start()
        logger.info(
            "Gateway ready (shell=%s, grace=%.0fs, idle timeout=%.0fs)",
            gateway.config.shell_kind.value, gateway.config.grace_period, gateway.config.idle_timeout,
        )
        try:
            yield
        finally:
            await gateway.shutdown()
            set_gateway(None)

    app = FastAPI(title="Terminal Gateway", lifespan=lifespan)
    app.state.gateway = gateway
    app.include_router(rest_router)
    app.include_router(ws_router)
    return app
