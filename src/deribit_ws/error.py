"""Error types for the Deribit WebSocket client.

Every failure surfaced to a caller is a ``DeribitError``. The subclasses
map one-to-one onto where the failure originated:

- ``ApiError``: the venue rejected the call (JSON-RPC ``error`` object)
- ``ProtocolError``: a frame could not be parsed
- ``TransportError``: the WebSocket failed or was closed
- ``ChannelError``: an internal hand-off (subscription queue, sink) failed
- ``LogicError``: an envelope violated an invariant not caught by parsing
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from deribit_ws.wire import WireError


class DeribitError(Exception):
    """Base class for all client errors."""


class ApiError(DeribitError):
    """The server rejected a call."""

    def __init__(self, code: int, message: str, data: Any | None = None) -> None:
        super().__init__(f"API error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def from_wire(cls, error: WireError) -> ApiError:
        """Build from a parsed JSON-RPC error object."""
        return cls(error.code, error.message, error.data)

    def __repr__(self) -> str:
        return f"ApiError(code={self.code!r}, message={self.message!r}, data={self.data!r})"


class ProtocolError(DeribitError):
    """A frame could not be parsed as a response or a notification.

    Attributes:
        frame: The raw frame text, when available
        request_id: The correlation id found in the frame, if any. Lets the
            reader loop fail the matching caller instead of leaving it pending.
    """

    def __init__(
        self,
        message: str,
        *,
        frame: str | None = None,
        request_id: int | None = None,
    ) -> None:
        super().__init__(message)
        self.frame = frame
        self.request_id = request_id


class TransportError(DeribitError, ConnectionError):
    """The underlying stream failed or was closed."""


class RequestTimeoutError(TransportError, TimeoutError):
    """No response arrived within the request timeout."""


class ChannelError(DeribitError):
    """An internal hand-off between the reader loop and a consumer failed."""


class LogicError(DeribitError):
    """An invariant was violated by an otherwise well-formed envelope."""
