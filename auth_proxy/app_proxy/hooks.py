"""
Hooks the forwarders call around every relayed request.

The forwarders own the transport; hooks decide what credentials and origin
the backend sees and how failures are reported to the client.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Union

import httpx
from fastapi.responses import PlainTextResponse, Response

from auth_proxy.config import ProxyConfig
from auth_proxy.login.errors import (
    BackendTimeout,
    BackendUnreachable,
    ProxyError,
    ProxyTransportError,
)
from auth_proxy.login.session import bearer_authorization
from auth_proxy.utils import cookie_names
from auth_proxy.utils.exception_logging import (
    find_exception_in_exception_groups,
    log_exception_with_details,
)

logger = logging.getLogger("uvicorn.error")


@dataclass
class ProxiedRequest:
    """An inbound HTTP request on its way to the backend."""

    method: str
    target_url: str
    headers: Dict[str, str]
    cookies: Mapping[str, str]
    body: bytes = b""


@dataclass
class ProxiedUpgrade:
    """An inbound WebSocket handshake on its way to the backend."""

    target_url: str
    headers: Dict[str, str]
    cookies: Mapping[str, str]
    origin: Optional[str] = None
    subprotocols: List[str] = field(default_factory=list)


ForwardContext = Union[ProxiedRequest, ProxiedUpgrade]


class ForwardHooks:
    """Pass-through hooks. Subclasses override what they need."""

    def before_forward_http(self, request: ProxiedRequest) -> ProxiedRequest:
        return request

    def before_forward_upgrade(self, upgrade: ProxiedUpgrade) -> ProxiedUpgrade:
        return upgrade

    def on_forward_error(
        self, error: Exception, context: ForwardContext
    ) -> Optional[Response]:
        """
        Report a failed forward.

        Returns the response to send for HTTP requests. WebSocket handshakes
        cannot carry a body, so for those the return value is ignored and the
        client socket is closed.
        """
        proxy_error = classify_transport_error(error)
        return PlainTextResponse(
            f"Proxy error: {proxy_error.message}", status_code=proxy_error.status_code
        )


def classify_transport_error(error: Exception) -> ProxyError:
    """Map a client-library failure onto the proxy's error taxonomy."""
    if isinstance(error, ProxyError):
        return error
    if find_exception_in_exception_groups(
        error, (httpx.TimeoutException, TimeoutError)
    ) is not None:
        return BackendTimeout("backend did not respond in time")
    if find_exception_in_exception_groups(
        error, (httpx.ConnectError, ConnectionRefusedError)
    ) is not None:
        return BackendUnreachable("cannot connect to backend")
    return ProxyTransportError(f"{type(error).__name__} while relaying to backend")


class CredentialInjectionHooks(ForwardHooks):
    """
    Derive backend credentials from the proxy-issued cookies.

    HTTP requests get ``Authorization: Bearer <accessToken>`` whenever the
    cookie jar holds a token. WebSocket handshakes keep their Cookie header and
    get the deployment's Origin, which the backend checks against its own
    public address.
    """

    def __init__(self, config: ProxyConfig):
        self.config = config

    def before_forward_http(self, request: ProxiedRequest) -> ProxiedRequest:
        authorization = bearer_authorization(request.cookies)
        if authorization:
            request.headers["authorization"] = authorization
        return request

    def before_forward_upgrade(self, upgrade: ProxiedUpgrade) -> ProxiedUpgrade:
        cookie = upgrade.headers.get("cookie")
        if cookie:
            logger.debug(f"[WebSocket] Forwarding cookies: {cookie_names(cookie)}")
        upgrade.origin = self.config.websocket_origin
        logger.debug(f"[WebSocket] Setting origin header to: {upgrade.origin}")
        return upgrade

    def on_forward_error(
        self, error: Exception, context: ForwardContext
    ) -> Optional[Response]:
        if isinstance(context, ProxiedUpgrade):
            log_exception_with_details(
                logger, f"[WebSocket] {context.target_url}", error, logging.WARNING
            )
            return None
        logger.error(
            f"[Proxy] {context.method} {context.target_url} failed: "
            f"{type(error).__name__}: {error}"
        )
        return super().on_forward_error(error, context)
