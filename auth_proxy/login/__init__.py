from .credential_bridge import COMPLETE_LOGIN_PATH, LOGIN_PATH, CredentialBridge
from .errors import (
    BackendTimeout,
    BackendUnreachable,
    LoginRejected,
    MissingIdentity,
    ProxyError,
    ProxyTransportError,
    TokenMissing,
)
from .routes import create_login_router

__all__ = [
    "COMPLETE_LOGIN_PATH",
    "LOGIN_PATH",
    "BackendTimeout",
    "BackendUnreachable",
    "CredentialBridge",
    "LoginRejected",
    "MissingIdentity",
    "ProxyError",
    "ProxyTransportError",
    "TokenMissing",
    "create_login_router",
]
