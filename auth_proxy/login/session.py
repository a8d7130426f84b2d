"""
Stateless session helpers.

The proxy keeps no session table: everything needed to authorize a request
travels in the client's cookie jar and is re-derived on every request.
"""

from typing import Mapping, Optional

ACCESS_TOKEN_COOKIE = "accessToken"
ACCESS_TOKEN_VERSION_COOKIE = "accessTokenVersion"
ACCESS_TOKEN_VERSION = "1"


def access_token_from_cookies(cookies: Mapping[str, str]) -> Optional[str]:
    """Return the proxy-issued bearer token, or None when absent or empty."""
    token = cookies.get(ACCESS_TOKEN_COOKIE)
    return token or None


def bearer_authorization(cookies: Mapping[str, str]) -> Optional[str]:
    """Authorization header value derived from the client's cookies."""
    token = access_token_from_cookies(cookies)
    if token is None:
        return None
    return f"Bearer {token}"
