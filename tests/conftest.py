"""Pytest configuration for all tests."""

import asyncio
import itertools
import json
from typing import Any, Callable

import pytest

from deribit_ws.wire import WireError, WireRequest, WireResponse

Handler = Callable[[dict[str, Any]], Any]


class VenueError(Exception):
    """Raised by a handler to answer with a JSON-RPC error."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class FakeVenueTransport:
    """In-memory stand-in for the venue's WebSocket endpoint.

    Every frame the client sends is decoded and kept in ``sent``. When a
    handler is registered for the method its return value is queued as the
    response; a ``VenueError`` becomes an error response. Requests with no
    handler stay unanswered until the test feeds a frame.
    """

    def __init__(self) -> None:
        self.inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.sent: list[WireRequest] = []
        self.handlers: dict[str, Handler] = {}
        self.closed = False

    def on(self, method: str, handler: Handler) -> None:
        self.handlers[method] = handler

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("Transport closed")
        request = WireRequest.from_json(json.loads(message))
        self.sent.append(request)
        handler = self.handlers.get(request.method)
        if handler is None:
            return
        try:
            result = handler(request.params)
        except VenueError as e:
            self.respond_error(request.id, e.code, e.message, e.data)
        else:
            self.respond(request.id, result)

    async def receive(self) -> str:
        frame = await self.inbox.get()
        if frame is None:
            self.closed = True
            raise ConnectionError("Transport closed")
        return frame

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(None)

    def feed(self, frame: dict[str, Any] | str) -> None:
        """Queue a raw inbound frame."""
        self.inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def respond(self, request_id: int, result: Any) -> None:
        self.feed(WireResponse(request_id, result=result, has_result=True).to_json())

    def respond_error(self, request_id: int, code: int, message: str, data: Any = None) -> None:
        self.feed(WireResponse(request_id, error=WireError(code, message, data)).to_json())

    def notify(self, channel: str, data: Any) -> None:
        self.feed({
            "jsonrpc": "2.0",
            "method": "subscription",
            "params": {"channel": channel, "data": data},
        })

    def drop(self) -> None:
        """Simulate the venue closing the socket."""
        self.inbox.put_nowait(None)

    def methods(self) -> list[str]:
        return [request.method for request in self.sent]

    def requests_for(self, method: str) -> list[WireRequest]:
        return [request for request in self.sent if request.method == method]

    async def wait_sent(self, count: int, timeout: float = 2.0) -> None:
        """Wait until at least ``count`` frames were sent."""
        async def poll() -> None:
            while len(self.sent) < count:
                await asyncio.sleep(0)
        await asyncio.wait_for(poll(), timeout=timeout)


def auth_result(
    access_token: str,
    refresh_token: str,
    expires_in: int = 900,
    scope: str = "connection,session:default,account:read,trade:read_write",
) -> dict[str, Any]:
    """A ``public/auth`` result as the venue returns it."""
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expires_in": expires_in,
        "scope": scope,
        "token_type": "bearer",
        "enabled_features": [],
    }


class TokenIssuer:
    """Auth handler that mints a fresh token pair on every call."""

    def __init__(self, expires_in: int = 900, scope: str | None = None) -> None:
        self.expires_in = expires_in
        self.scope = scope
        self.calls: list[dict[str, Any]] = []
        self._counter = itertools.count(1)

    def __call__(self, params: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(params)
        n = next(self._counter)
        result = auth_result(f"access-{n}", f"refresh-{n}", self.expires_in)
        if self.scope is not None:
            result["scope"] = self.scope
        return result


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(rounds: int = 10) -> None:
    """Let the read loop drain already-queued frames."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def venue() -> FakeVenueTransport:
    return FakeVenueTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
