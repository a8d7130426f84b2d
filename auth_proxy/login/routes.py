import logging
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import (
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
)

from auth_proxy.login.credential_bridge import (
    COMPLETE_LOGIN_PATH,
    LOGIN_PATH,
    CredentialBridge,
)
from auth_proxy.login.errors import LoginRejected, ProxyError
from auth_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

# Everything except GET; the login paths must never fall through to the proxy.
REJECTED_METHODS = ["POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "TRACE"]


def create_login_router(bridge: CredentialBridge) -> APIRouter:
    """
    Create the router for the two login endpoints.

    - GET /planka-login?email=... starts the login and redirects to completion
    - GET /proxy-auth-login?token=...&email=... sets the cookies
    """
    router = APIRouter(tags=["login"])

    @router.get(LOGIN_PATH)
    async def planka_login(
        email: Optional[str] = Query(None),
        email_or_username: Optional[str] = Query(None, alias="emailOrUsername"),
    ):
        identity = email or email_or_username
        try:
            location = await bridge.initiate_login(identity)
        except LoginRejected as e:
            # Backend semantics are not ours to interpret: relay them as-is.
            return Response(
                content=e.body, status_code=e.status_code, media_type=e.content_type
            )
        except ProxyError as e:
            logger.warning(f"[Login] {e.error}: {e.message}")
            return JSONResponse(status_code=e.status_code, content=e.to_dict())
        except Exception as e:
            log_exception_with_details(logger, "[Login]", e)
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error during login"},
            )
        return RedirectResponse(location, status_code=302)

    @router.get(COMPLETE_LOGIN_PATH)
    async def proxy_auth_login(
        token: Optional[str] = Query(None),
        email: Optional[str] = Query(None),
    ):
        if not token or not email:
            return RedirectResponse("/", status_code=302)
        return await bridge.complete_login(token, email)

    @router.api_route(LOGIN_PATH, methods=REJECTED_METHODS, include_in_schema=False)
    @router.api_route(
        COMPLETE_LOGIN_PATH, methods=REJECTED_METHODS, include_in_schema=False
    )
    async def login_method_not_allowed():
        return PlainTextResponse(
            "Method Not Allowed", status_code=405, headers={"Allow": "GET"}
        )

    return router
