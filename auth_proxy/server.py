import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from auth_proxy.app_proxy import (
    CredentialInjectionHooks,
    ForwardHooks,
    RequestForwarder,
    UpgradeForwarder,
    create_backend_client,
    create_proxy_router,
    create_websocket_router,
)
from auth_proxy.config import ProxyConfig, load_config
from auth_proxy.login import CredentialBridge, create_login_router
from auth_proxy.routes import router as health_router
from auth_proxy.telemetry import configure_tracing, instrument_app

logger = logging.getLogger("uvicorn.error")


def create_app(
    config: ProxyConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    hooks: Optional[ForwardHooks] = None,
) -> FastAPI:
    """
    Assemble the proxy application for one deployment configuration.

    Args:
        config: Deployment configuration shared by every component
        transport: Optional httpx transport for all backend HTTP calls
        hooks: Forward hooks; defaults to cookie-to-bearer credential injection
    """
    hooks = hooks or CredentialInjectionHooks(config)
    bridge = CredentialBridge(config, transport=transport)
    forwarder = RequestForwarder(
        config, hooks, create_backend_client(config, transport=transport)
    )
    upgrade_forwarder = UpgradeForwarder(config, hooks)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await forwarder.aclose()

    app = FastAPI(title="Planka Auth Proxy", lifespan=lifespan)
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    instrument_app(app, config)

    # Order matters: the catch-all proxy routes must come last.
    app.include_router(health_router)
    app.include_router(create_login_router(bridge))
    app.include_router(create_websocket_router(upgrade_forwarder))
    app.include_router(create_proxy_router(forwarder))
    return app


def build_app() -> FastAPI:
    """Entry point for ``uvicorn --factory auth_proxy.server:build_app``."""
    config = load_config()
    config.log_summary()
    configure_tracing(config)
    return create_app(config)
