import pytest

from auth_proxy.config import ProxyConfig
from auth_proxy.utils_tests.backend_stub import (
    BackendStub,
    FakeConnector,
)

TEST_BACKEND_URL = "http://planka:1337"
TEST_WEBSOCKET_ORIGIN = "https://planka.example.com"


@pytest.fixture
def proxy_config():
    return ProxyConfig(
        backend_url=TEST_BACKEND_URL,
        default_password="s3cret-pass",
        cookie_secure=False,
        websocket_origin=TEST_WEBSOCKET_ORIGIN,
        redirect_delay_ms=1500,
    )


@pytest.fixture
def backend():
    """Recording Planka stand-in; set ``backend.handler`` to script answers."""
    return BackendStub()


@pytest.fixture
def fake_connector(monkeypatch):
    """Replace the WebSocket client connect() with a recording echo backend."""
    connector = FakeConnector()
    monkeypatch.setattr("auth_proxy.app_proxy.websocket.connect", connector)
    return connector
