"""Response/notification demultiplexer.

The dispatcher owns the two tables shared between caller tasks and the
reader loop:

1. Pending requests: correlation id -> future awaiting the response
2. Subscriptions: channel name -> notification sink

Both tables are plain dicts. Every operation here is synchronous, so each
one runs to completion without yielding to the event loop; no encoding or
decoding happens while a table is being touched.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

from deribit_ws.error import ChannelError, DeribitError
from deribit_ws.wire import WireNotification, WireResponse

logger = logging.getLogger(__name__)

NotificationSink = Callable[[WireNotification], Any]


class Subscription:
    """Queue-backed notification sink that a consumer iterates.

    Register it with ``Dispatcher.subscribe`` for one or more channels, then
    consume with ``async for``. Iteration ends once the subscription is
    closed and the queue has drained.

    Example:
        ```python
        sub = await session.subscribe(["user.orders.BTC-PERPETUAL.raw"])
        async for notification in sub:
            print(notification.channel, notification.data)
        ```
    """

    __slots__ = ("channels", "_queue", "_closed")

    def __init__(self, channels: Iterable[str] = (), maxsize: int = 0) -> None:
        self.channels: tuple[str, ...] = tuple(channels)
        self._queue: asyncio.Queue[WireNotification | None] = asyncio.Queue(maxsize)
        self._closed = False

    def __call__(self, notification: WireNotification) -> None:
        if self._closed:
            msg = f"Subscription for {notification.channel!r} is closed"
            raise ChannelError(msg)
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull as e:
            msg = f"Subscription queue full, dropping notification on {notification.channel!r}"
            raise ChannelError(msg) from e

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop accepting notifications and wake the consumer."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Consumer sees the closed flag once the queue drains
            pass

    async def get(self) -> WireNotification:
        """Wait for the next notification.

        Raises:
            ChannelError: The subscription was closed and nothing is left
        """
        if self._closed and self._queue.empty():
            msg = "Subscription is closed"
            raise ChannelError(msg)
        notification = await self._queue.get()
        if notification is None:
            msg = "Subscription is closed"
            raise ChannelError(msg)
        return notification

    def __aiter__(self) -> AsyncIterator[WireNotification]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[WireNotification]:
        while True:
            try:
                notification = await self.get()
            except ChannelError:
                return
            yield notification


class Dispatcher:
    """Matches inbound envelopes to whoever is waiting for them.

    Correlation ids start at 1 and only grow for the lifetime of the
    instance; 0 is left free for uncorrelated fire-and-forget requests.
    """

    def __init__(self) -> None:
        self._next_id = 0
        self._pending: dict[int, asyncio.Future[WireResponse]] = {}
        self._subscriptions: dict[str, NotificationSink] = {}

    # -------------------------------------------------------------------------
    # Pending requests
    # -------------------------------------------------------------------------

    def allocate(self, reply: asyncio.Future[WireResponse]) -> int:
        """Register a reply slot and return the id to send with the request."""
        if reply.done():
            msg = "Reply slot is already completed"
            raise ChannelError(msg)
        self._next_id += 1
        request_id = self._next_id
        self._pending[request_id] = reply
        return request_id

    def resolve(self, response: WireResponse) -> bool:
        """Complete the reply slot for ``response.id``.

        Returns:
            True if a waiting caller received the response
        """
        reply = self._pending.pop(response.id, None)
        if reply is None:
            logger.debug("No pending request for response id %d, dropping", response.id)
            return False
        if reply.done():
            # Caller was cancelled between our lookup and now
            logger.debug("Reply slot for id %d already done, dropping", response.id)
            return False
        reply.set_result(response)
        return True

    def reject(self, request_id: int, error: BaseException) -> bool:
        """Fail the reply slot for ``request_id`` with ``error``."""
        reply = self._pending.pop(request_id, None)
        if reply is None or reply.done():
            return False
        reply.set_exception(error)
        return True

    def discard(self, request_id: int) -> None:
        """Forget a pending request whose caller stopped waiting."""
        self._pending.pop(request_id, None)

    def is_pending(self, request_id: int) -> bool:
        return request_id in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def last_id(self) -> int:
        """The most recently allocated id, 0 if none yet."""
        return self._next_id

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, channel: str, sink: NotificationSink) -> None:
        """Route notifications for ``channel`` to ``sink``.

        A channel has at most one sink; a later call replaces the earlier one.
        """
        previous = self._subscriptions.get(channel)
        self._subscriptions[channel] = sink
        if previous is not None and previous is not sink:
            logger.debug("Replaced sink for channel %s", channel)

    def unsubscribe(self, channel: str) -> NotificationSink | None:
        """Stop routing ``channel``. Returns the removed sink, if any."""
        return self._subscriptions.pop(channel, None)

    def sink(self, channel: str) -> NotificationSink | None:
        """The sink currently routed for ``channel``, if any."""
        return self._subscriptions.get(channel)

    @property
    def channels(self) -> frozenset[str]:
        return frozenset(self._subscriptions)

    def dispatch_notification(self, notification: WireNotification) -> bool:
        """Deliver a notification to its channel's sink.

        Notifications for channels with no local sink are dropped: the
        server tracks subscriptions on its side too and the two can race.

        Returns:
            True if a sink accepted the notification
        """
        sink = self._subscriptions.get(notification.channel)
        if sink is None:
            logger.debug("No sink for channel %s, dropping notification", notification.channel)
            return False
        try:
            sink(notification)
        except DeribitError as e:
            logger.warning("Sink for channel %s rejected notification: %s", notification.channel, e)
            return False
        except Exception:
            logger.exception("Sink for channel %s raised", notification.channel)
            return False
        return True

    # -------------------------------------------------------------------------
    # Connection loss
    # -------------------------------------------------------------------------

    def abandon(self, reason: BaseException) -> int:
        """Fail every pending request and close every closable sink.

        Called once when the connection is gone. The id counter is kept, so
        ids are never reused even if the dispatcher is inspected afterwards.

        Returns:
            How many pending requests were failed
        """
        pending = list(self._pending.values())
        self._pending.clear()
        failed = 0
        for reply in pending:
            if not reply.done():
                reply.set_exception(reason)
                failed += 1

        sinks = list(self._subscriptions.values())
        self._subscriptions.clear()
        for sink in sinks:
            close = getattr(sink, "close", None)
            if callable(close):
                close()
        return failed
