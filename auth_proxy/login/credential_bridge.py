"""
Credential bridge between a browser and the Planka login endpoint.

Planka hands out its bearer token in the JSON body of ``POST /api/access-tokens``
instead of a cookie the browser could keep. The bridge performs that login on
behalf of an identity, then re-issues the token (and every cookie Planka set)
as cookies on the proxy's own origin so later requests and WebSocket
handshakes can be authorized from the cookie jar alone.
"""

import html
import json
import logging
import socket
from typing import List, Optional
from urllib.parse import quote, urlencode

import httpx
from fastapi.responses import HTMLResponse
from opentelemetry import trace

from auth_proxy.config import ProxyConfig
from auth_proxy.login.errors import (
    BackendTimeout,
    BackendUnreachable,
    LoginRejected,
    MissingIdentity,
    ProxyTransportError,
    TokenMissing,
)
from auth_proxy.login.session import (
    ACCESS_TOKEN_COOKIE,
    ACCESS_TOKEN_VERSION,
    ACCESS_TOKEN_VERSION_COOKIE,
)
from auth_proxy.utils import token_fingerprint
from auth_proxy.utils.exception_logging import format_exception_message
from auth_proxy.utils.traced_requests import traced_request

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

LOGIN_PATH = "/planka-login"
COMPLETE_LOGIN_PATH = "/proxy-auth-login"

COMPLETE_PAGE = """<html>
  <head><title>Authentication Complete</title></head>
  <body>
    <h2>Authentication set up successfully!</h2>
    <p>All cookies configured. Redirecting to Planka...</p>
    <script>
      setTimeout(function () {{
        window.location.href = {target_js};
      }}, {delay_ms});
    </script>
    <p><a href="{target_href}">Click here if you are not redirected automatically</a></p>
  </body>
</html>
"""


def _connect_error_code(exc: BaseException) -> str:
    """Classify a connect failure the way the socket layer reports it."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return "ENOTFOUND"
        if isinstance(current, ConnectionRefusedError):
            return "ECONNREFUSED"
        current = current.__cause__ or current.__context__
    message = str(exc).lower()
    if "name or service not known" in message or "nodename nor servname" in message:
        return "ENOTFOUND"
    if "connection refused" in message:
        return "ECONNREFUSED"
    return "ECONNECT"


def _extract_token(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    token = data.get("item")
    if isinstance(token, str) and token:
        return token
    return None


def complete_login_location(token: str, identity: str) -> str:
    """Relative URL of the completion endpoint carrying token and identity."""
    query = urlencode({"token": token, "email": identity}, quote_via=quote)
    return f"{COMPLETE_LOGIN_PATH}?{query}"


class CredentialBridge:
    """Logs identities into the backend and turns the result into cookies."""

    def __init__(
        self,
        config: ProxyConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.login_timeout_seconds),
            follow_redirects=False,
            verify=self.config.backend_verify_tls,
            transport=self.transport,
        )

    async def _post_login(self, identity: str) -> httpx.Response:
        """Send one login call to the backend, translating transport failures."""
        payload = {
            "emailOrUsername": identity,
            "password": self.config.default_password,
        }
        try:
            async with self._client() as client:
                return await client.post(self.config.login_url, json=payload)
        except httpx.TimeoutException as e:
            logger.error(f"[Login] Login call to {self.config.login_url} timed out: {e}")
            raise BackendTimeout(
                f"No answer from {self.config.backend_url} within "
                f"{self.config.login_timeout_seconds:g}s"
            )
        except httpx.ConnectError as e:
            code = _connect_error_code(e)
            if code == "ENOTFOUND":
                logger.error(f"[Login] DNS resolution failed for {self.config.backend_url}")
                raise BackendUnreachable(
                    f"DNS resolution failed for: {self.config.backend_url}", code=code
                )
            if code == "ECONNREFUSED":
                logger.error(f"[Login] Connection refused by {self.config.backend_url}")
                raise BackendUnreachable(
                    f"Connection refused to: {self.config.backend_url}", code=code
                )
            logger.error(
                f"[Login] Could not connect to {self.config.backend_url}: "
                f"{format_exception_message(e)}"
            )
            raise BackendUnreachable(
                f"Cannot connect to: {self.config.backend_url}", code=code
            )
        except httpx.HTTPError as e:
            logger.error(f"[Login] Login request failed: {format_exception_message(e)}")
            raise ProxyTransportError(type(e).__name__)

    async def initiate_login(self, identity: Optional[str]) -> str:
        """
        Log ``identity`` into the backend and return where to send the browser.

        Returns:
            The relative completion URL carrying the token and identity.

        Raises:
            MissingIdentity: no identity given
            LoginRejected: the backend answered with a non-2xx status
            TokenMissing: the backend answered 2xx without a token
            BackendUnreachable, BackendTimeout, ProxyTransportError: transport failures
        """
        if not identity:
            raise MissingIdentity()

        with traced_request(
            tracer,
            operation="planka_login",
            identity=identity,
            start_message=f"[Login] Attempting login for: {identity} via {self.config.login_url}",
        ) as span:
            response = await self._post_login(identity)
            span.set_attribute("login.status_code", response.status_code)
            logger.info(f"[Login] Login response status: {response.status_code}")

            if not response.is_success:
                logger.error(
                    f"[Login] Login failed for {identity} with status {response.status_code}"
                )
                raise LoginRejected(
                    response.status_code,
                    response.content,
                    response.headers.get("content-type"),
                )

            token = _extract_token(response)
            if token is None:
                logger.error(f"[Login] No token received in login response for {identity}")
                raise TokenMissing("The login response did not contain a token")

            logger.info(
                f"[Login] Login successful for {identity}, token {token_fingerprint(token)}"
            )
            logger.debug(
                "[Login] Cookies from Planka: "
                f"{[c.split('=', 1)[0] for c in response.headers.get_list('set-cookie')]}"
            )
            return complete_login_location(token, identity)

    async def harvest_cookies(self, identity: str) -> List[str]:
        """
        Repeat the login call and return every raw Set-Cookie header it produced.

        Failures are logged and yield an empty list: the bearer token is
        already known, backend cookies are best effort.
        """
        try:
            response = await self._post_login(identity)
        except (BackendUnreachable, BackendTimeout, ProxyTransportError) as e:
            logger.warning(f"[Login] Could not harvest Planka cookies: {e.message}")
            return []

        set_cookies = response.headers.get_list("set-cookie")
        if not response.is_success:
            logger.warning(
                f"[Login] Cookie harvest for {identity} answered {response.status_code}"
            )
        logger.info(f"[Login] Harvested {len(set_cookies)} cookies from Planka")
        return set_cookies

    def _complete_page(self) -> str:
        target = self.config.post_login_redirect
        return COMPLETE_PAGE.format(
            # Escape "</" so the target cannot close the script element.
            target_js=json.dumps(target).replace("</", "<\\/"),
            target_href=html.escape(target, quote=True),
            delay_ms=self.config.redirect_delay_ms,
        )

    async def complete_login(self, token: str, identity: str) -> HTMLResponse:
        """
        Build the response that installs the session cookies in the browser.

        Every backend cookie is forwarded verbatim, then the proxy's own
        ``accessToken`` and ``accessTokenVersion`` cookies are added.
        """
        with traced_request(
            tracer,
            operation="planka_login_complete",
            identity=identity,
            start_message=(
                f"[Login] Setting up complete authentication for {identity} "
                f"with token {token}"
            ),
            secret=token,
        ) as span:
            backend_cookies = await self.harvest_cookies(identity)
            span.set_attribute("login.backend_cookie_count", len(backend_cookies))

        response = HTMLResponse(self._complete_page())
        for raw_cookie in backend_cookies:
            response.headers.append("set-cookie", raw_cookie)

        for name, value in (
            (ACCESS_TOKEN_COOKIE, token),
            (ACCESS_TOKEN_VERSION_COOKIE, ACCESS_TOKEN_VERSION),
        ):
            response.set_cookie(
                name,
                value,
                path="/",
                httponly=False,
                secure=self.config.cookie_secure,
                samesite="lax",
            )
        return response
