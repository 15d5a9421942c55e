"""WebSocket transport and the serialized frame writer.

``RpcTransport`` is the minimal interface the connection needs: send one
text frame, receive one text frame, close. ``WebSocketClientTransport``
implements it on top of aiohttp; tests substitute in-memory transports.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Protocol

import aiohttp

from deribit_ws.error import TransportError

if TYPE_CHECKING:
    from aiohttp import ClientWebSocketResponse

    from deribit_ws.wire import WireRequest

logger = logging.getLogger(__name__)


class RpcTransport(Protocol):
    """Interface for a full-duplex text message stream."""

    async def send(self, message: str) -> None:
        """Send one frame to the peer."""
        ...

    async def receive(self) -> str:
        """Receive one frame from the peer. Raises ConnectionError on close."""
        ...

    async def close(self) -> None:
        """Close the stream."""
        ...


class WebSocketClientTransport:
    """aiohttp WebSocket client transport.

    When created through ``connect`` the transport owns its
    ``aiohttp.ClientSession`` and closes it together with the socket.
    """

    def __init__(
        self,
        ws: ClientWebSocketResponse,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._ws = ws
        self._http_session = http_session
        self._closed = False

    @classmethod
    async def connect(
        cls,
        url: str,
        *,
        heartbeat: float | None = None,
        timeout: float = 15.0,
    ) -> WebSocketClientTransport:
        """Open a WebSocket connection to ``url``.

        Raises:
            TransportError: The handshake failed or timed out
        """
        http_session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(
                http_session.ws_connect(url, heartbeat=heartbeat),
                timeout=timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await http_session.close()
            raise TransportError(f"Failed to connect to {url}: {e}") from e
        logger.info("Connected to %s", url)
        return cls(ws, http_session)

    @property
    def closed(self) -> bool:
        return self._closed or self._ws.closed

    async def send(self, message: str) -> None:
        """Send a message to the server."""
        if self.closed:
            raise ConnectionError("WebSocket is closed")
        await self._ws.send_str(message)

    async def receive(self) -> str:
        """Receive a message from the server."""
        if self._closed:
            raise ConnectionError("WebSocket is closed")

        msg = await self._ws.receive()

        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        elif msg.type == aiohttp.WSMsgType.BINARY:
            # Invalid UTF-8 is left for parse_frame to reject
            return msg.data.decode("utf-8", errors="replace")
        elif msg.type in (
            aiohttp.WSMsgType.CLOSE,
            aiohttp.WSMsgType.CLOSING,
            aiohttp.WSMsgType.CLOSED,
        ):
            self._closed = True
            raise ConnectionError("WebSocket closed")
        elif msg.type == aiohttp.WSMsgType.ERROR:
            self._closed = True
            raise ConnectionError(f"WebSocket error: {self._ws.exception()}")
        else:
            raise ConnectionError(f"Unexpected message type: {msg.type}")

    async def close(self) -> None:
        """Close the socket and the owned HTTP session."""
        self._closed = True
        if not self._ws.closed:
            await self._ws.close()
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None


class FrameWriter:
    """Serializes writes to a transport so frames never interleave.

    The envelope is encoded before the lock is taken; only the physical
    write happens under it.
    """

    def __init__(self, transport: RpcTransport) -> None:
        self._transport = transport
        self._lock = asyncio.Lock()
        self._closed_reason: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._closed_reason is not None

    def mark_closed(self, reason: BaseException) -> None:
        """Refuse all later writes with ``reason``."""
        if self._closed_reason is None:
            self._closed_reason = reason

    async def send(self, request: WireRequest) -> None:
        """Write one request envelope.

        Raises:
            TransportError: The writer is closed or the write failed
        """
        if self._closed_reason is not None:
            raise TransportError(f"Connection is closed: {self._closed_reason}")
        frame = request.serialize()
        async with self._lock:
            if self._closed_reason is not None:
                raise TransportError(f"Connection is closed: {self._closed_reason}")
            try:
                await self._transport.send(frame)
            except TransportError:
                raise
            except (ConnectionError, aiohttp.ClientError, RuntimeError) as e:
                raise TransportError(f"Failed to send {request.method}: {e}") from e
        logger.debug("Sent %s with id %d", request.method, request.id)
