import logging
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import AsyncIterator, Dict, Optional

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask
from starlette.requests import HTTPConnection

from auth_proxy.app_proxy.hooks import ForwardHooks, ProxiedRequest
from auth_proxy.config import ProxyConfig

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "TRACE"]

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Recomputed by the HTTP client for the outbound request
REQUEST_HEADERS_TO_DROP = HOP_BY_HOP_HEADERS | {"host", "content-length"}


def get_target_url(backend_url: str, path: str, query: str) -> str:
    """Construct the backend URL for an inbound path and query string."""
    if not path.startswith("/"):
        path = "/" + path
    target = f"{backend_url}{path}"
    if query:
        target = f"{target}?{query}"
    return target


def raw_path(connection: HTTPConnection) -> str:
    """Path as the client sent it, percent-escapes intact."""
    raw = connection.scope.get("raw_path")
    if raw:
        return raw.split(b"?", 1)[0].decode("latin-1")
    return connection.url.path


def prepare_headers(request: Request) -> Dict[str, str]:
    """
    Prepare headers for forwarding to the backend.

    Drops hop-by-hop headers and the inbound Host (the client library sets the
    backend's own host), keeps Cookie untouched, and adds X-Forwarded-*.
    """
    headers = {}

    for name, value in request.headers.items():
        name_lower = name.lower()
        if name_lower not in REQUEST_HEADERS_TO_DROP:
            headers[name_lower] = value

    client_ip = request.client.host if request.client else "unknown"
    existing_xff = headers.get("x-forwarded-for", "")
    headers["x-forwarded-for"] = f"{existing_xff}, {client_ip}".strip(", ")
    headers["x-forwarded-host"] = request.headers.get("host", "")
    headers["x-forwarded-proto"] = request.url.scheme
    headers["x-real-ip"] = client_ip

    return headers


def create_backend_client(
    config: ProxyConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> httpx.AsyncClient:
    """
    Shared client (and connection pool) for all forwarded requests.

    Its cookie jar refuses every cookie: one pool serves every user, so a
    Set-Cookie meant for one browser must never ride along on another
    user's request.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.proxy_timeout_seconds, connect=10.0),
        follow_redirects=False,
        verify=config.backend_verify_tls,
        # Only compress when the client asked for it; bodies are relayed raw.
        headers={"accept-encoding": "identity"},
        cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
        transport=transport,
    )


async def relay_body(upstream: httpx.Response) -> AsyncIterator[bytes]:
    """
    Stream the backend body as received, still content-encoded.

    The upstream response is closed when the stream ends or is cancelled
    because the client went away.
    """
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        logger.error(
            f"[Proxy] Backend stream for {upstream.request.url} broke: "
            f"{type(e).__name__}: {e}"
        )
        raise
    finally:
        await upstream.aclose()


class RequestForwarder:
    """Relays ordinary HTTP requests to the backend through the forward hooks."""

    def __init__(
        self, config: ProxyConfig, hooks: ForwardHooks, client: httpx.AsyncClient
    ):
        self.config = config
        self.hooks = hooks
        self.client = client

    async def forward(self, request: Request) -> Response:
        with tracer.start_as_current_span("proxy_request") as span:
            proxied = ProxiedRequest(
                method=request.method,
                target_url=get_target_url(
                    self.config.backend_url, raw_path(request), request.url.query
                ),
                headers=prepare_headers(request),
                cookies=request.cookies,
                body=await request.body(),
            )
            proxied = self.hooks.before_forward_http(proxied)

            span.set_attribute("proxy.target_url", proxied.target_url)
            span.set_attribute("proxy.method", proxied.method)
            span.set_attribute("proxy.bearer", "authorization" in proxied.headers)
            logger.debug(
                f"[Proxy] {proxied.method} {request.url.path} -> {proxied.target_url}"
            )

            outbound = self.client.build_request(
                proxied.method,
                proxied.target_url,
                headers=proxied.headers,
                content=proxied.body,
            )
            try:
                upstream = await self.client.send(outbound, stream=True)
            except httpx.HTTPError as e:
                span.set_attribute("proxy.error", type(e).__name__)
                response = self.hooks.on_forward_error(e, proxied)
                if response is None:
                    response = PlainTextResponse("Proxy error", status_code=500)
                return response

            span.set_attribute("proxy.status_code", upstream.status_code)

            response = StreamingResponse(
                relay_body(upstream),
                status_code=upstream.status_code,
                background=BackgroundTask(upstream.aclose),
            )
            # multi_items keeps every Set-Cookie header instead of the last one
            for name, value in upstream.headers.multi_items():
                if name.lower() not in HOP_BY_HOP_HEADERS:
                    response.headers.append(name, value)
            return response

    async def aclose(self) -> None:
        await self.client.aclose()


def create_proxy_router(forwarder: RequestForwarder) -> APIRouter:
    """Catch-all router; include it after every route the proxy serves itself."""
    router = APIRouter()

    @router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy_all(request: Request, path: str):
        """Catch-all route that proxies all requests to the backend."""
        return await forwarder.forward(request)

    return router
