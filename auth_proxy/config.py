import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger("uvicorn.error")

DEFAULT_BACKEND_URL = "http://localhost:4000"
DEFAULT_USER_PASSWORD = "P@55w0rd"
DEFAULT_CORS_ALLOWED_ORIGINS = (
    "http://localhost:3000",
    "https://localhost:3000",
    "http://127.0.0.1:3000",
    "https://127.0.0.1:3000",
)

_TRUTHY = {"1", "true", "yes", "on"}
_FALSEY = {"0", "false", "no", "off"}


class ConfigurationError(Exception):
    """Raised when the environment does not describe a usable deployment."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def _parse_bool(name: str, raw: Optional[str], default: Optional[bool] = None) -> bool:
    value = (raw or "").strip().lower()
    if not value:
        if default is None:
            raise ConfigurationError(
                f"{name} must be set to true or false for this deployment"
            )
        return default
    if value in _TRUTHY:
        return True
    if value in _FALSEY:
        return False
    raise ConfigurationError(f"{name} has an invalid boolean value: {raw!r}")


def _parse_int(name: str, raw: Optional[str], default: int) -> int:
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _parse_float(name: str, raw: Optional[str], default: float) -> float:
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value


def _parse_csv(raw: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def origin_of(url: str) -> str:
    """Return scheme://host[:port] for a URL."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ConfigurationError(f"Not an absolute URL: {url!r}")
    return f"{parsed.scheme}://{parsed.netloc}"


@dataclass(frozen=True)
class ProxyConfig:
    """Deployment configuration, built once at startup and shared read-only.

    Attributes:
        backend_url: Base URL of the proxied Planka instance
        default_password: Shared password used for every proxied login
        cookie_secure: Whether cookies issued by the proxy carry the Secure flag
        websocket_origin: Origin header sent on WebSocket handshakes to the backend
        post_login_redirect: Where the browser goes once cookies are set
    """

    backend_url: str = DEFAULT_BACKEND_URL
    default_password: str = DEFAULT_USER_PASSWORD
    cookie_secure: bool = False
    websocket_origin: str = ""
    host: str = "0.0.0.0"
    port: int = 3001
    cors_allowed_origins: Tuple[str, ...] = DEFAULT_CORS_ALLOWED_ORIGINS
    post_login_redirect: str = "/"
    redirect_delay_ms: int = 2000
    login_timeout_seconds: float = 10.0
    proxy_timeout_seconds: float = 300.0
    backend_verify_tls: bool = False
    metrics_path: str = "/proxy-metrics"
    service_name: str = "planka-auth-proxy"
    otlp_endpoint: Optional[str] = None
    otlp_headers: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        backend_url = self.backend_url.rstrip("/")
        # Validates the URL as a side effect.
        backend_origin = origin_of(backend_url)
        object.__setattr__(self, "backend_url", backend_url)
        if not self.websocket_origin:
            object.__setattr__(self, "websocket_origin", backend_origin)
        if not self.metrics_path.startswith("/"):
            raise ConfigurationError(
                f"METRICS_PATH must start with '/', got {self.metrics_path!r}"
            )

    @property
    def login_url(self) -> str:
        return f"{self.backend_url}/api/access-tokens"

    @property
    def backend_ws_url(self) -> str:
        """Backend base URL with the scheme switched to ws/wss."""
        if self.backend_url.startswith("https://"):
            return "wss://" + self.backend_url[len("https://"):]
        return "ws://" + self.backend_url[len("http://"):]

    @property
    def uses_default_password(self) -> bool:
        return self.default_password == DEFAULT_USER_PASSWORD

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ProxyConfig":
        """Create configuration from environment variables."""
        env = os.environ if env is None else env
        return cls(
            backend_url=env.get("PLANKA_URL") or DEFAULT_BACKEND_URL,
            default_password=env.get("PLANKA_DEFAULT_USER_PASSWORD")
            or DEFAULT_USER_PASSWORD,
            cookie_secure=_parse_bool("COOKIE_SECURE", env.get("COOKIE_SECURE")),
            websocket_origin=(env.get("WEBSOCKET_ORIGIN") or "").rstrip("/"),
            host=env.get("PROXY_HOST") or "0.0.0.0",
            port=_parse_int("PROXY_PORT", env.get("PROXY_PORT"), 3001),
            cors_allowed_origins=_parse_csv(
                env.get("CORS_ALLOWED_ORIGINS"), DEFAULT_CORS_ALLOWED_ORIGINS
            ),
            post_login_redirect=env.get("POST_LOGIN_REDIRECT") or "/",
            redirect_delay_ms=_parse_int(
                "LOGIN_REDIRECT_DELAY_MS", env.get("LOGIN_REDIRECT_DELAY_MS"), 2000
            ),
            login_timeout_seconds=_parse_float(
                "LOGIN_TIMEOUT_SECONDS", env.get("LOGIN_TIMEOUT_SECONDS"), 10.0
            ),
            proxy_timeout_seconds=_parse_float(
                "PROXY_TIMEOUT", env.get("PROXY_TIMEOUT"), 300.0
            ),
            backend_verify_tls=_parse_bool(
                "BACKEND_VERIFY_TLS", env.get("BACKEND_VERIFY_TLS"), False
            ),
            metrics_path=env.get("METRICS_PATH") or "/proxy-metrics",
            service_name=env.get("SERVICE_NAME") or "planka-auth-proxy",
            otlp_endpoint=env.get("OTLP_ENDPOINT") or None,
            otlp_headers=_parse_csv(env.get("OTLP_HEADERS"), ()),
        )

    def log_summary(self) -> None:
        logger.info("[Config] Proxy configuration")
        logger.info(f"[Config] Backend URL: {self.backend_url}")
        logger.info(
            f"[Config] Default password: set ({len(self.default_password)} chars, "
            f"built-in default: {self.uses_default_password})"
        )
        logger.info(f"[Config] Listening on {self.host}:{self.port}")
        logger.info(f"[Config] WebSocket origin: {self.websocket_origin}")
        logger.info(f"[Config] Secure cookies: {self.cookie_secure}")
        logger.info(f"[Config] CORS origins: {', '.join(self.cors_allowed_origins)}")
        if self.uses_default_password:
            logger.warning(
                "[Config] Using the built-in default password. "
                "Make sure it matches the Planka setup!"
            )
        if "planka" not in self.backend_url:
            logger.warning(
                f"[Config] PLANKA_URL {self.backend_url} does not mention planka, "
                "check it points at the right container"
            )


def load_config() -> ProxyConfig:
    """Load .env files, then build the configuration from the environment."""
    load_dotenv(".env")
    load_dotenv(".env.local")
    return ProxyConfig.from_env()
