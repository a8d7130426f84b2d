import asyncio
import json
from typing import Callable, List, Optional

import httpx

_CLOSED = object()


class ChunkedBody(httpx.AsyncByteStream):
    """Response body delivered in chunks, the way a socket-backed response arrives."""

    def __init__(self, content: bytes, chunk_size: int = 64 * 1024):
        self.content = content
        self.chunk_size = chunk_size

    async def __aiter__(self):
        for start in range(0, len(self.content), self.chunk_size):
            yield self.content[start : start + self.chunk_size]


def as_streamed(response: httpx.Response) -> httpx.Response:
    """Rebuild an already-read response so its body is still unread on arrival."""
    return httpx.Response(
        response.status_code,
        headers=response.headers.multi_items(),
        stream=ChunkedBody(response.content),
    )


class BackendStub:
    """Stands in for Planka behind an httpx.MockTransport and records every call."""

    def __init__(self, handler: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.requests: List[httpx.Request] = []
        self.handler = handler or (lambda request: httpx.Response(200, text="ok"))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return as_streamed(self.handler(request))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def login_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/access-tokens"]

    def login_payloads(self) -> List[dict]:
        return [json.loads(r.content) for r in self.login_requests]


def login_response(token: Optional[str] = "tok123", set_cookies=(), status_code=200):
    """A Planka access-token response, optionally with Set-Cookie headers."""
    headers = [("set-cookie", cookie) for cookie in set_cookies]
    body = {"item": token} if token is not None else {}
    return httpx.Response(status_code, json=body, headers=headers)


class FakeBackendConnection:
    """
    Echoing WebSocket backend.

    Sending "bye" makes the backend close the connection with code 4000.
    """

    def __init__(self, subprotocol: Optional[str] = None, greeting: Optional[str] = None):
        self.subprotocol = subprotocol
        self.close_code: Optional[int] = None
        self.sent: list = []
        self.closed = False
        self._greeting = greeting
        self._queue: Optional[asyncio.Queue] = None

    def _inbox(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
            if self._greeting is not None:
                self._queue.put_nowait(self._greeting)
        return self._queue

    async def send(self, message) -> None:
        self.sent.append(message)
        if message == "bye":
            self.close_code = 4000
            self._inbox().put_nowait(_CLOSED)
            return
        self._inbox().put_nowait(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        if self.close_code is None:
            self.close_code = code
        self._inbox().put_nowait(_CLOSED)

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        inbox = self._inbox()
        while True:
            message = await inbox.get()
            if message is _CLOSED:
                return
            yield message


class FakeConnector:
    """Replacement for websockets' connect() that records the handshake it was asked for."""

    def __init__(
        self,
        connection: Optional[FakeBackendConnection] = None,
        error: Optional[BaseException] = None,
    ):
        self.connection = connection or FakeBackendConnection()
        self.error = error
        self.calls: list = []

    async def __call__(self, uri: str, **kwargs):
        self.calls.append((uri, kwargs))
        if self.error is not None:
            raise self.error
        return self.connection
