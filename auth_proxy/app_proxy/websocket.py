"""
WebSocket pass-through to the backend.

The client handshake is only accepted once the backend handshake succeeded,
so a refused backend shows up to the client as a refused handshake. After
that, messages flow both ways untouched until either side goes away, at which
point both connections are closed.
"""

import logging
from typing import Dict

import anyio
from fastapi import APIRouter, WebSocket
from opentelemetry import trace
from starlette.websockets import WebSocketState
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from auth_proxy.app_proxy.hooks import ForwardHooks, ProxiedUpgrade
from auth_proxy.app_proxy.route import (
    HOP_BY_HOP_HEADERS,
    get_target_url,
    raw_path,
)
from auth_proxy.config import ProxyConfig

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Set by the WebSocket client library or by the hooks
WS_HEADERS_TO_DROP = HOP_BY_HOP_HEADERS | {
    "host",
    "origin",
    "content-length",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
}

# Close codes that must never appear in a close frame (RFC 6455 7.4.1)
_RESERVED_CLOSE_CODES = {1004, 1005, 1006, 1015}

HANDSHAKE_TIMEOUT_SECONDS = 10.0


def prepare_ws_headers(websocket: WebSocket) -> Dict[str, str]:
    """Headers for the backend handshake; Cookie is kept verbatim."""
    headers = {}
    for name, value in websocket.headers.items():
        name_lower = name.lower()
        if name_lower not in WS_HEADERS_TO_DROP:
            headers[name_lower] = value

    client_ip = websocket.client.host if websocket.client else "unknown"
    existing_xff = headers.get("x-forwarded-for", "")
    headers["x-forwarded-for"] = f"{existing_xff}, {client_ip}".strip(", ")
    headers["x-forwarded-host"] = websocket.headers.get("host", "")
    headers["x-forwarded-proto"] = "https" if websocket.url.scheme == "wss" else "http"
    headers["x-real-ip"] = client_ip
    return headers


def _client_close_code(backend: ClientConnection) -> int:
    code = backend.close_code
    if code is None or code in _RESERVED_CLOSE_CODES:
        return 1000
    return code


async def _client_to_backend(websocket: WebSocket, backend: ClientConnection) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        if message.get("text") is not None:
            await backend.send(message["text"])
        elif message.get("bytes") is not None:
            await backend.send(message["bytes"])


async def _backend_to_client(backend: ClientConnection, websocket: WebSocket) -> None:
    async for message in backend:
        if isinstance(message, str):
            await websocket.send_text(message)
        else:
            await websocket.send_bytes(message)


async def splice(websocket: WebSocket, backend: ClientConnection) -> bool:
    """
    Relay messages in both directions until one side stops.

    Returns True when the client went away first, False when the backend did.
    Whichever direction finishes first cancels the other. Errors other than
    the backend closing propagate as an exception group.
    """
    client_left = False

    async with anyio.create_task_group() as tg:

        async def upstream() -> None:
            nonlocal client_left
            try:
                await _client_to_backend(websocket, backend)
                client_left = True
            except ConnectionClosed:
                pass
            tg.cancel_scope.cancel()

        async def downstream() -> None:
            try:
                await _backend_to_client(backend, websocket)
            except ConnectionClosed:
                pass
            tg.cancel_scope.cancel()

        tg.start_soon(upstream)
        tg.start_soon(downstream)

    return client_left


async def close_client(websocket: WebSocket, code: int) -> None:
    """Close the client side unless it is already gone."""
    if (
        websocket.application_state == WebSocketState.DISCONNECTED
        or websocket.client_state == WebSocketState.DISCONNECTED
    ):
        return
    try:
        await websocket.close(code=code)
    except RuntimeError as e:
        # Lost the race against the client's own close.
        logger.debug(f"[WebSocket] Client already closed: {e}")


class UpgradeForwarder:
    """Relays WebSocket connections to the backend through the forward hooks."""

    def __init__(
        self,
        config: ProxyConfig,
        hooks: ForwardHooks,
        handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS,
    ):
        self.config = config
        self.hooks = hooks
        self.handshake_timeout = handshake_timeout

    def build_upgrade(self, websocket: WebSocket) -> ProxiedUpgrade:
        upgrade = ProxiedUpgrade(
            target_url=get_target_url(
                self.config.backend_ws_url, raw_path(websocket), websocket.url.query
            ),
            headers=prepare_ws_headers(websocket),
            cookies=websocket.cookies,
            origin=websocket.headers.get("origin"),
            subprotocols=list(websocket.scope.get("subprotocols") or []),
        )
        return self.hooks.before_forward_upgrade(upgrade)

    async def _open_backend(self, upgrade: ProxiedUpgrade) -> ClientConnection:
        return await connect(
            upgrade.target_url,
            additional_headers=upgrade.headers,
            origin=upgrade.origin,
            subprotocols=upgrade.subprotocols or None,
            open_timeout=self.handshake_timeout,
            max_size=None,
        )

    async def forward(self, websocket: WebSocket) -> None:
        logger.info(f"[WebSocket] Upgrade request: {websocket.url.path}")
        upgrade = self.build_upgrade(websocket)

        with tracer.start_as_current_span("proxy_websocket") as span:
            span.set_attribute("proxy.target_url", upgrade.target_url)
            if upgrade.origin:
                span.set_attribute("proxy.origin", upgrade.origin)

            try:
                backend = await self._open_backend(upgrade)
            except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as e:
                span.set_attribute("proxy.error", type(e).__name__)
                self.hooks.on_forward_error(e, upgrade)
                # Closing before accept rejects the client handshake.
                await websocket.close(code=1011)
                return

            client_left = False
            try:
                await websocket.accept(subprotocol=backend.subprotocol)
                client_left = await splice(websocket, backend)
            except Exception as e:
                span.set_attribute("proxy.error", type(e).__name__)
                self.hooks.on_forward_error(e, upgrade)
                await close_client(websocket, 1011)
            else:
                if not client_left:
                    await close_client(websocket, _client_close_code(backend))
            finally:
                await backend.close()
                logger.info(f"[WebSocket] Connection closed: {websocket.url.path}")


def create_websocket_router(forwarder: UpgradeForwarder) -> APIRouter:
    router = APIRouter()

    @router.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        await forwarder.forward(websocket)

    return router
