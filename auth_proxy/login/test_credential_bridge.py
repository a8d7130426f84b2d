import json
import socket
import ssl

import httpx
import pytest

from auth_proxy.config import ProxyConfig
from auth_proxy.login.credential_bridge import (
    CredentialBridge,
    complete_login_location,
)
from auth_proxy.login.errors import (
    BackendTimeout,
    BackendUnreachable,
    LoginRejected,
    MissingIdentity,
    ProxyTransportError,
    TokenMissing,
)
from auth_proxy.utils_tests.backend_stub import BackendStub, login_response


def _bridge(config, backend):
    return CredentialBridge(config, transport=backend.transport)


def _set_cookie_headers(response):
    return response.headers.getlist("set-cookie")


class TestInitiateLogin:
    @pytest.mark.asyncio
    async def test_successful_login_redirects_to_completion(self, proxy_config):
        backend = BackendStub(lambda request: login_response("tok123"))

        location = await _bridge(proxy_config, backend).initiate_login(
            "alice@example.com"
        )

        assert location == "/proxy-auth-login?token=tok123&email=alice%40example.com"

    @pytest.mark.asyncio
    async def test_exactly_one_login_call_with_shared_password(self, proxy_config):
        backend = BackendStub(lambda request: login_response())

        await _bridge(proxy_config, backend).initiate_login("bob")

        assert len(backend.requests) == 1
        request = backend.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://planka:1337/api/access-tokens"
        assert backend.login_payloads() == [
            {"emailOrUsername": "bob", "password": "s3cret-pass"}
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("identity", [None, ""])
    async def test_missing_identity_never_reaches_backend(self, proxy_config, identity):
        backend = BackendStub(lambda request: login_response())

        with pytest.raises(MissingIdentity) as exc_info:
            await _bridge(proxy_config, backend).initiate_login(identity)

        assert exc_info.value.status_code == 400
        assert backend.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403, 500, 503])
    async def test_backend_rejection_is_passed_through(self, proxy_config, status):
        backend = BackendStub(
            lambda request: httpx.Response(status, json={"code": "E_REJECTED"})
        )

        with pytest.raises(LoginRejected) as exc_info:
            await _bridge(proxy_config, backend).initiate_login("alice@example.com")

        assert exc_info.value.status_code == status
        assert json.loads(exc_info.value.body) == {"code": "E_REJECTED"}
        assert exc_info.value.content_type == "application/json"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body", [{}, {"item": ""}, {"item": None}, {"item": 42}, ["tok123"]]
    )
    async def test_success_without_token_is_token_missing(self, proxy_config, body):
        backend = BackendStub(lambda request: httpx.Response(200, json=body))

        with pytest.raises(TokenMissing) as exc_info:
            await _bridge(proxy_config, backend).initiate_login("alice@example.com")

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_non_json_success_is_token_missing(self, proxy_config):
        backend = BackendStub(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(TokenMissing):
            await _bridge(proxy_config, backend).initiate_login("alice@example.com")

    @pytest.mark.asyncio
    async def test_refused_connection(self, proxy_config):
        def refuse(request):
            raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

        with pytest.raises(BackendUnreachable) as exc_info:
            await _bridge(proxy_config, BackendStub(refuse)).initiate_login("alice")

        assert exc_info.value.status_code == 503
        assert exc_info.value.code == "ECONNREFUSED"
        assert exc_info.value.to_dict() == {
            "error": "Cannot reach Planka server",
            "details": "Connection refused to: http://planka:1337",
            "code": "ECONNREFUSED",
        }

    @pytest.mark.asyncio
    async def test_dns_failure(self, proxy_config):
        def unresolvable(request):
            raise httpx.ConnectError(
                "[Errno -2] Name or service not known", request=request
            ) from socket.gaierror(-2, "Name or service not known")

        with pytest.raises(BackendUnreachable) as exc_info:
            await _bridge(proxy_config, BackendStub(unresolvable)).initiate_login("alice")

        assert exc_info.value.code == "ENOTFOUND"
        assert "DNS resolution failed" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_refused_socket_in_cause_chain(self, proxy_config):
        def refuse(request):
            raise httpx.ConnectError(
                "All connection attempts failed", request=request
            ) from ConnectionRefusedError(111, "refused")

        with pytest.raises(BackendUnreachable) as exc_info:
            await _bridge(proxy_config, BackendStub(refuse)).initiate_login("alice")

        assert exc_info.value.code == "ECONNREFUSED"

    @pytest.mark.asyncio
    async def test_tls_failure_is_not_reported_as_refused(self, proxy_config):
        def bad_certificate(request):
            raise httpx.ConnectError(
                "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed",
                request=request,
            ) from ssl.SSLCertVerificationError("certificate verify failed")

        with pytest.raises(BackendUnreachable) as exc_info:
            await _bridge(proxy_config, BackendStub(bad_certificate)).initiate_login(
                "alice"
            )

        assert exc_info.value.status_code == 503
        assert exc_info.value.code == "ECONNECT"
        assert exc_info.value.message == "Cannot connect to: http://planka:1337"

    @pytest.mark.asyncio
    async def test_timeout(self, proxy_config):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(BackendTimeout) as exc_info:
            await _bridge(proxy_config, BackendStub(slow)).initiate_login("alice")

        assert exc_info.value.status_code == 504

    @pytest.mark.asyncio
    async def test_other_transport_failure(self, proxy_config):
        def broken(request):
            raise httpx.RemoteProtocolError("peer closed connection", request=request)

        with pytest.raises(ProxyTransportError) as exc_info:
            await _bridge(proxy_config, BackendStub(broken)).initiate_login("alice")

        assert exc_info.value.status_code == 500


def test_completion_location_escapes_token_and_identity():
    assert (
        complete_login_location("a+b/c=", "first last@example.com")
        == "/proxy-auth-login?token=a%2Bb%2Fc%3D&email=first%20last%40example.com"
    )


class TestCompleteLogin:
    @pytest.mark.asyncio
    async def test_sets_token_and_version_cookies(self, proxy_config):
        backend = BackendStub(lambda request: login_response("fresh"))

        response = await _bridge(proxy_config, backend).complete_login(
            "tok123", "alice@example.com"
        )

        cookies = _set_cookie_headers(response)
        assert response.status_code == 200
        assert any(c.startswith("accessToken=tok123;") for c in cookies)
        assert any(c.startswith("accessTokenVersion=1;") for c in cookies)
        for cookie in cookies:
            assert "HttpOnly" not in cookie
            assert "Secure" not in cookie
            assert "Path=/" in cookie
            assert "SameSite=lax" in cookie

    @pytest.mark.asyncio
    async def test_forwards_backend_cookies_verbatim(self, proxy_config):
        planka_cookies = [
            "accessToken=backend; Path=/; HttpOnly",
            "httpOnlyToken=xyz; Path=/; HttpOnly; SameSite=Strict",
        ]
        backend = BackendStub(lambda request: login_response(set_cookies=planka_cookies))

        response = await _bridge(proxy_config, backend).complete_login(
            "tok123", "alice@example.com"
        )

        cookies = _set_cookie_headers(response)
        assert cookies[:2] == planka_cookies
        # The proxy's own token cookie comes last and wins in the browser.
        assert cookies[2].startswith("accessToken=tok123;")
        assert backend.login_payloads() == [
            {"emailOrUsername": "alice@example.com", "password": "s3cret-pass"}
        ]

    @pytest.mark.asyncio
    async def test_cookies_set_even_when_backend_is_down(self, proxy_config):
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        response = await _bridge(proxy_config, BackendStub(refuse)).complete_login(
            "tok123", "alice@example.com"
        )

        cookies = _set_cookie_headers(response)
        assert response.status_code == 200
        assert [c.split("=", 1)[0] for c in cookies] == [
            "accessToken",
            "accessTokenVersion",
        ]

    @pytest.mark.asyncio
    async def test_rejected_harvest_still_sets_cookies(self, proxy_config):
        backend = BackendStub(
            lambda request: httpx.Response(
                401, headers=[("set-cookie", "planka=1; Path=/")]
            )
        )

        response = await _bridge(proxy_config, backend).complete_login("tok123", "bob")

        cookies = _set_cookie_headers(response)
        assert cookies[0] == "planka=1; Path=/"
        assert any(c.startswith("accessToken=tok123;") for c in cookies)

    @pytest.mark.asyncio
    async def test_secure_flag_follows_configuration(self):
        config = ProxyConfig(backend_url="http://planka:1337", cookie_secure=True)
        backend = BackendStub(lambda request: login_response())

        response = await CredentialBridge(
            config, transport=backend.transport
        ).complete_login("tok123", "bob")

        for cookie in _set_cookie_headers(response):
            assert "Secure" in cookie

    @pytest.mark.asyncio
    async def test_page_redirects_after_delay(self, proxy_config):
        backend = BackendStub(lambda request: login_response())

        response = await _bridge(proxy_config, backend).complete_login("tok123", "bob")

        page = response.body.decode()
        assert "Authentication Complete" in page
        assert "window.location.href = \"/\"" in page
        assert "}, 1500);" in page
        assert '<a href="/">' in page

    @pytest.mark.asyncio
    async def test_redirect_target_cannot_break_out_of_script(self):
        config = ProxyConfig(
            backend_url="http://planka:1337",
            post_login_redirect='/x"</script><script>alert(1)</script>',
        )
        backend = BackendStub(lambda request: login_response())

        response = await CredentialBridge(
            config, transport=backend.transport
        ).complete_login("tok123", "bob")

        page = response.body.decode()
        assert "</script><script>alert(1)" not in page
        assert page.count("</script>") == 1
