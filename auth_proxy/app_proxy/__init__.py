from .hooks import (
    CredentialInjectionHooks,
    ForwardHooks,
    ProxiedRequest,
    ProxiedUpgrade,
)
from .route import RequestForwarder, create_backend_client, create_proxy_router
from .websocket import UpgradeForwarder, create_websocket_router

__all__ = [
    "CredentialInjectionHooks",
    "ForwardHooks",
    "ProxiedRequest",
    "ProxiedUpgrade",
    "RequestForwarder",
    "UpgradeForwarder",
    "create_backend_client",
    "create_proxy_router",
    "create_websocket_router",
]
