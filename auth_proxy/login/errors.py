"""Errors raised by the credential bridge and the forwarders.

Each error carries the HTTP status the proxy answers with, so the routes can
turn any of them into a response without knowing which one it is.
"""

from typing import Any, Dict, Optional


class ProxyError(Exception):
    """Base class for errors the proxy reports to its callers."""

    status_code = 500
    error = "Proxy error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "details": self.message}


class MissingIdentity(ProxyError):
    """The login trigger was called without an email or username."""

    status_code = 400
    error = "Missing email"

    def __init__(self, message: str = "Missing email"):
        super().__init__(message)


class BackendUnreachable(ProxyError):
    """DNS failure or refused connection while contacting the backend."""

    status_code = 503
    error = "Cannot reach Planka server"

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.code:
            payload["code"] = self.code
        return payload


class BackendTimeout(ProxyError):
    """The backend did not answer within the configured bound."""

    status_code = 504
    error = "Planka server timed out"


class LoginRejected(ProxyError):
    """
    The backend answered the login call with a non-2xx status.

    The backend's status, body and content type are passed through untouched.
    """

    error = "Login failed"

    def __init__(self, status_code: int, body: bytes, content_type: Optional[str]):
        self.body = body
        self.content_type = content_type
        super().__init__(f"Backend rejected login with status {status_code}", status_code)


class TokenMissing(ProxyError):
    """The backend accepted the login but its response carried no token."""

    status_code = 401
    error = "Login failed - no token received"


class ProxyTransportError(ProxyError):
    """Any other failure while relaying to the backend."""

    status_code = 500
    error = "Internal server error during login"
