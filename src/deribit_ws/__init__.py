"""Deribit WebSocket API client - Python Implementation

This module provides the request/response correlation, notification fan-out
and authenticated session lifecycle that every Deribit API v2 method call
rides on.
"""

from deribit_ws.config import (
    MAINNET,
    TESTNET,
    ClientConfig,
    Credentials,
)
from deribit_ws.error import (
    ApiError,
    ChannelError,
    DeribitError,
    LogicError,
    ProtocolError,
    RequestTimeoutError,
    TransportError,
)
from deribit_ws.wire import (
    UNCORRELATED_ID,
    WireError,
    WireNotification,
    WireRequest,
    WireResponse,
    parse_frame,
)
from deribit_ws.dispatcher import Dispatcher, NotificationSink, Subscription
from deribit_ws.transport import FrameWriter, RpcTransport, WebSocketClientTransport
from deribit_ws.params import (
    ChannelsParams,
    ClientCredentialsParams,
    ExchangeTokenParams,
    ForkTokenParams,
    LogoutParams,
    MethodParams,
    RefreshTokenParams,
)
from deribit_ws.scope import Access, Scope
from deribit_ws.connection import Connection
from deribit_ws.session import AuthResponse, Credential, Session

__version__ = "0.1.0"

__all__ = [
    # Configuration (Pydantic models)
    "ClientConfig",
    "Credentials",
    "TESTNET",
    "MAINNET",
    # Errors
    "DeribitError",
    "ApiError",
    "ProtocolError",
    "TransportError",
    "RequestTimeoutError",
    "ChannelError",
    "LogicError",
    # Wire envelopes
    "UNCORRELATED_ID",
    "WireError",
    "WireRequest",
    "WireResponse",
    "WireNotification",
    "parse_frame",
    # Correlation and fan-out
    "Dispatcher",
    "NotificationSink",
    "Subscription",
    # Transport
    "RpcTransport",
    "WebSocketClientTransport",
    "FrameWriter",
    # Method parameters
    "MethodParams",
    "ClientCredentialsParams",
    "RefreshTokenParams",
    "ExchangeTokenParams",
    "ForkTokenParams",
    "LogoutParams",
    "ChannelsParams",
    # Scope codec
    "Access",
    "Scope",
    # Connection and sessions
    "Connection",
    "Session",
    "Credential",
    "AuthResponse",
]
