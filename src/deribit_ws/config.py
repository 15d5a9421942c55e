"""Pydantic configuration models for the Deribit WebSocket client.

These models are used when building a connection or a session, never on the
per-frame path. Wire envelopes stay as frozen dataclasses in ``wire.py``.
"""

from __future__ import annotations

from typing import Callable, Final

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deribit_ws.error import ProtocolError

TESTNET: Final[str] = "wss://test.deribit.com/ws/api/v2"
MAINNET: Final[str] = "wss://www.deribit.com/ws/api/v2"


class ClientConfig(BaseModel):
    """Configuration for one WebSocket connection.

    Attributes:
        url: WebSocket endpoint (ws:// or wss://)
        request_timeout: Default seconds to wait for a response. ``None``
            waits until the response arrives or the connection drops.
        connect_timeout: Seconds allowed for the WebSocket handshake
        heartbeat: Interval in seconds for WebSocket ping frames, or ``None``
        subscription_queue_size: Bound for each ``Subscription`` queue,
            0 for unbounded
        on_protocol_error: Optional hook called with ``(frame, error)`` for
            every inbound frame that could not be parsed
    """

    model_config = ConfigDict(
        frozen=False,
        arbitrary_types_allowed=True,
    )

    url: str = Field(default=TESTNET, description="WebSocket endpoint URL")
    request_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Default response timeout in seconds",
    )
    connect_timeout: float = Field(
        default=15.0,
        gt=0,
        description="WebSocket handshake timeout in seconds",
    )
    heartbeat: float | None = Field(
        default=None,
        gt=0,
        description="WebSocket ping interval in seconds",
    )
    subscription_queue_size: int = Field(
        default=0,
        ge=0,
        description="Per-subscription queue bound, 0 for unbounded",
    )
    on_protocol_error: Callable[[str, ProtocolError], None] | None = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format."""
        if not v:
            raise ValueError("URL cannot be empty")

        valid_schemes = ("ws://", "wss://")
        if not any(v.startswith(scheme) for scheme in valid_schemes):
            raise ValueError(
                f"URL must start with one of: {', '.join(valid_schemes)}"
            )
        return v


class Credentials(BaseModel):
    """API key pair used for ``client_credentials`` authentication."""

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1, repr=False)
