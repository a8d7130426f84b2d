import hashlib
from typing import Optional


def mask_token(text: str, token: Optional[str]) -> str:
    return text.replace(token, f"{token[:4]}****") if token else text


def token_fingerprint(token: Optional[str]) -> str:
    """Provide a stable, low-leak token identifier for logs."""
    if not token:
        return "<empty>"
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]
    return f"len={len(token)} sha256={digest} head={token[:6]}"


def cookie_names(cookie_header: Optional[str]) -> list:
    """Names of the cookies in a Cookie header, never their values."""
    if not cookie_header:
        return []
    return [
        part.split("=", 1)[0].strip()
        for part in cookie_header.split(";")
        if "=" in part
    ]
