"""One WebSocket connection: reader loop, writer and unauthenticated calls.

A ``Connection`` owns the transport, a ``FrameWriter`` and a ``Dispatcher``.
It runs a single read loop task that:

1. Receives frames strictly in arrival order
2. Parses each one as a response or a notification
3. Hands it to the dispatcher, which completes the waiting caller or feeds
   the channel's sink

A malformed frame is logged and skipped; it never stops the loop. When the
stream closes the loop exits for good, every pending call fails with
``TransportError`` and every later send is refused.

Sessions derived from one another all share a single ``Connection``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any, Self

from deribit_ws.config import ClientConfig
from deribit_ws.dispatcher import Dispatcher, Subscription
from deribit_ws.error import ProtocolError, RequestTimeoutError, TransportError
from deribit_ws.params import ChannelsParams, MethodParams, to_params
from deribit_ws.transport import FrameWriter, RpcTransport, WebSocketClientTransport
from deribit_ws.wire import UNCORRELATED_ID, WireRequest, WireResponse, parse_frame

logger = logging.getLogger(__name__)

Params = Mapping[str, Any] | MethodParams | None


class Connection:
    """Request/response correlation and notification fan-out over one socket.

    Example:
        ```python
        async with await Connection.connect() as conn:
            instruments = await conn.call(
                "public/get_instruments", {"currency": "BTC", "kind": "future"}
            )
        ```
    """

    def __init__(
        self,
        transport: RpcTransport,
        config: ClientConfig | None = None,
    ) -> None:
        """Wrap an already-open transport. Call ``start()`` to begin reading.

        Args:
            transport: The message transport
            config: Optional connection configuration
        """
        self.transport = transport
        self.config = config or ClientConfig()
        self.dispatcher = Dispatcher()
        self.writer = FrameWriter(transport)
        self._read_loop_task: asyncio.Task[None] | None = None
        self._closed_reason: TransportError | None = None

    @classmethod
    async def connect(
        cls,
        url: str | None = None,
        config: ClientConfig | None = None,
    ) -> Connection:
        """Open a WebSocket to ``url`` (default: ``config.url``) and start reading."""
        config = config or ClientConfig()
        if url is not None:
            config = config.model_copy(update={"url": url})
        transport = await WebSocketClientTransport.connect(
            config.url,
            heartbeat=config.heartbeat,
            timeout=config.connect_timeout,
        )
        connection = cls(transport, config)
        connection.start()
        return connection

    async def __aenter__(self) -> Self:
        self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the read loop. Does nothing if it already ran."""
        if self._read_loop_task is None:
            self._read_loop_task = asyncio.create_task(self._read_loop())

    @property
    def closed(self) -> bool:
        return self._closed_reason is not None

    async def wait_closed(self) -> None:
        """Wait until the read loop has exited."""
        if self._read_loop_task is not None:
            await asyncio.wait({self._read_loop_task})

    async def close(self) -> None:
        """Close the connection. Pending calls fail with ``TransportError``."""
        self._shutdown(TransportError("Connection closed by client"))
        if self._read_loop_task is not None and not self._read_loop_task.done():
            self._read_loop_task.cancel()
            try:
                await self._read_loop_task
            except asyncio.CancelledError:
                pass
        await self.transport.close()

    def get_stats(self) -> dict[str, int]:
        """Get statistics about the connection.

        Returns:
            Dict with 'pending' and 'subscriptions' counts
        """
        return {
            "pending": self.dispatcher.pending_count,
            "subscriptions": len(self.dispatcher.channels),
        }

    def _shutdown(self, reason: TransportError) -> None:
        if self._closed_reason is not None:
            return
        self._closed_reason = reason
        self.writer.mark_closed(reason)
        failed = self.dispatcher.abandon(reason)
        if failed:
            logger.info("Connection closed with %d pending requests: %s", failed, reason)
        else:
            logger.info("Connection closed: %s", reason)

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    async def _read_loop(self) -> None:
        """Main frame processing loop.

        Each frame is handled inline, before the next receive, so arrival
        order is preserved.
        """
        reason = TransportError("Connection closed")
        try:
            while True:
                try:
                    frame = await self.transport.receive()
                except ConnectionError as e:
                    reason = TransportError(f"Connection closed: {e}")
                    break
                except Exception as e:
                    logger.exception("Error in read loop")
                    reason = TransportError(f"Read failed: {e}")
                    break
                self._handle_frame(frame)
        finally:
            self._shutdown(reason)

    def _handle_frame(self, frame: str) -> None:
        try:
            envelope = parse_frame(frame)
        except ProtocolError as e:
            self._handle_protocol_error(frame, e)
            return

        if isinstance(envelope, WireResponse):
            logger.debug("Received response for id %d", envelope.id)
            self.dispatcher.resolve(envelope)
        else:
            self.dispatcher.dispatch_notification(envelope)

    def _handle_protocol_error(self, frame: str, error: ProtocolError) -> None:
        logger.warning("Dropping malformed frame: %s", error)
        if error.request_id is not None:
            self.dispatcher.reject(error.request_id, error)
        hook = self.config.on_protocol_error
        if hook is not None:
            try:
                hook(frame, error)
            except Exception:
                logger.exception("on_protocol_error hook raised")

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    async def send(
        self,
        method: str,
        params: Params = None,
        request_id: int = UNCORRELATED_ID,
    ) -> None:
        """Send a request without waiting for, or expecting, a reply.

        No pending entry is created, so any reply to ``request_id`` is
        dropped by the dispatcher.
        """
        await self.writer.send(WireRequest(request_id, method, to_params(params)))

    async def request(
        self,
        method: str,
        params: Params = None,
        *,
        timeout: float | None = None,
    ) -> WireResponse:
        """Send a request and wait for its response envelope.

        Args:
            method: The API method, e.g. ``"public/get_instruments"``
            params: Method parameters
            timeout: Seconds to wait; defaults to ``config.request_timeout``

        Raises:
            TransportError: The connection is, or becomes, closed
            RequestTimeoutError: No response within ``timeout``
            ProtocolError: The matching response frame was malformed
        """
        if self._closed_reason is not None:
            raise TransportError(f"Connection is closed: {self._closed_reason}")

        request_params = to_params(params)
        reply: asyncio.Future[WireResponse] = asyncio.get_running_loop().create_future()
        request_id = self.dispatcher.allocate(reply)
        try:
            await self.writer.send(WireRequest(request_id, method, request_params))
            return await self._wait_reply(reply, request_id, method, timeout)
        finally:
            self.dispatcher.discard(request_id)
            if reply.done() and not reply.cancelled():
                # Mark retrieved so asyncio does not log it
                reply.exception()

    async def _wait_reply(
        self,
        reply: asyncio.Future[WireResponse],
        request_id: int,
        method: str,
        timeout: float | None,
    ) -> WireResponse:
        timeout = self.config.request_timeout if timeout is None else timeout
        if timeout is None:
            return await reply
        try:
            return await asyncio.wait_for(reply, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(
                f"{method} (id {request_id}) timed out after {timeout:.1f}s"
            ) from e

    async def call(
        self,
        method: str,
        params: Params = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and return its ``result``.

        Raises:
            ApiError: The server rejected the call
            LogicError: The response had neither result nor error
        """
        response = await self.request(method, params, timeout=timeout)
        return response.value()

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def open_subscription(self, channels: Iterable[str]) -> Subscription:
        """Register a local ``Subscription`` for ``channels``.

        Only the local routing is set up; the server is not contacted.
        """
        subscription = Subscription(channels, maxsize=self.config.subscription_queue_size)
        for channel in subscription.channels:
            self.dispatcher.subscribe(channel, subscription)
        return subscription

    def close_subscription(self, channels: Iterable[str]) -> None:
        """Remove local routing for ``channels``.

        A ``Subscription`` is closed once none of its channels are routed
        to it anymore.
        """
        removed: list[Any] = []
        for channel in channels:
            sink = self.dispatcher.unsubscribe(channel)
            if sink is not None and sink not in removed:
                removed.append(sink)
        routed = self.dispatcher.channels
        for sink in removed:
            if isinstance(sink, Subscription) and routed.isdisjoint(sink.channels):
                sink.close()

    async def subscribe(
        self,
        channels: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Subscription:
        """Subscribe to public channels and return the notification stream."""
        return await self.subscribe_with(self.call, "public/subscribe", channels, timeout=timeout)

    async def unsubscribe(
        self,
        channels: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Any:
        """Unsubscribe from public channels."""
        return await self.unsubscribe_with(self.call, "public/unsubscribe", channels, timeout=timeout)

    async def subscribe_with(
        self,
        call: Callable[..., Awaitable[Any]],
        method: str,
        channels: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Subscription:
        """Register channels locally, then ask the server via ``call``.

        Local routing is set up first so that no notification sent right
        after the server's acknowledgement is lost. If the call fails, each
        channel is routed back to the sink it had before.
        """
        channel_list = list(channels)
        params = ChannelsParams(channels=channel_list)
        previous = {channel: self.dispatcher.sink(channel) for channel in channel_list}
        subscription = self.open_subscription(channel_list)
        try:
            await call(method, params, timeout=timeout)
        except BaseException:
            subscription.close()
            for channel, sink in previous.items():
                if self.closed:
                    # abandon() already cleared and closed every sink
                    break
                if sink is None:
                    self.dispatcher.unsubscribe(channel)
                else:
                    self.dispatcher.subscribe(channel, sink)
            raise
        return subscription

    async def unsubscribe_with(
        self,
        call: Callable[..., Awaitable[Any]],
        method: str,
        channels: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Any:
        """Drop local routing for channels, then tell the server via ``call``."""
        channel_list = list(channels)
        params = ChannelsParams(channels=channel_list)
        self.close_subscription(channel_list)
        return await call(method, params, timeout=timeout)
