"""JSON-RPC envelope types for the Deribit WebSocket API.

Three envelope shapes travel over the socket:

    Request:      {"jsonrpc": "2.0", "id": 7, "method": "public/auth", "params": {...}}
    Response:     {"jsonrpc": "2.0", "id": 7, "result": ...}
                  {"jsonrpc": "2.0", "id": 7, "error": {"code": ..., "message": ..., "data": ...}}
    Notification: {"jsonrpc": "2.0", "method": "subscription",
                   "params": {"channel": "trades.BTC-PERPETUAL", "data": ...}}

This module handles envelope-level parsing only. It does not interpret
``result`` payloads; that is the caller's job.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Final

from deribit_ws.error import ApiError, LogicError, ProtocolError

JSONRPC_VERSION: Final[str] = "2.0"

# Id used for fire-and-forget requests that never get a pending entry
UNCORRELATED_ID: Final[int] = 0


def is_int_not_bool(x: object) -> bool:
    """Check if x is an int but not a bool.

    ``isinstance(True, int)`` is true in Python, and a boolean must never be
    accepted as a correlation id.
    """
    return isinstance(x, int) and not isinstance(x, bool)


def _check_version(obj: dict[str, Any]) -> None:
    version = obj.get("jsonrpc")
    if version != JSONRPC_VERSION:
        msg = f"Unsupported jsonrpc version: {version!r}"
        raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class WireError:
    """JSON-RPC error object: {"code", "message", "data"?}"""

    code: int
    message: str
    data: Any | None = None

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON object."""
        result: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            result["data"] = self.data
        return result

    @staticmethod
    def from_json(obj: Any) -> WireError:
        """Parse from JSON object."""
        if not isinstance(obj, dict):
            msg = f"Error must be an object, got {type(obj).__name__}"
            raise ValueError(msg)
        code = obj.get("code")
        message = obj.get("message")
        if not is_int_not_bool(code):
            msg = f"Error code must be int, got {type(code).__name__}"
            raise ValueError(msg)
        if not isinstance(message, str):
            msg = f"Error message must be string, got {type(message).__name__}"
            raise ValueError(msg)
        return WireError(code, message, obj.get("data"))


@dataclass(frozen=True, slots=True)
class WireRequest:
    """An outbound call. Immutable once built."""

    id: int
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON object."""
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }

    def serialize(self) -> str:
        """Encode as frame text."""
        return json.dumps(self.to_json(), separators=(",", ":"))

    @staticmethod
    def from_json(obj: Any) -> WireRequest:
        """Parse from JSON object."""
        if not isinstance(obj, dict):
            msg = f"Request must be an object, got {type(obj).__name__}"
            raise ValueError(msg)
        _check_version(obj)
        request_id = obj.get("id")
        method = obj.get("method")
        params = obj.get("params", {})
        if not is_int_not_bool(request_id) or request_id < 0:
            msg = f"Request id must be a non-negative int, got {request_id!r}"
            raise ValueError(msg)
        if not isinstance(method, str):
            msg = f"Request method must be string, got {type(method).__name__}"
            raise ValueError(msg)
        if not isinstance(params, dict):
            msg = f"Request params must be an object, got {type(params).__name__}"
            raise ValueError(msg)
        return WireRequest(request_id, method, params)


@dataclass(frozen=True, slots=True)
class WireResponse:
    """A reply to one request.

    ``has_result`` distinguishes ``"result": null`` (a valid result) from a
    missing ``result`` key.
    """

    id: int
    result: Any = None
    error: WireError | None = None
    has_result: bool = False

    @property
    def ok(self) -> bool:
        return self.has_result and self.error is None

    def value(self) -> Any:
        """Return the result, or raise the error this response carries.

        Raises:
            ApiError: The server rejected the call
            LogicError: The response carries neither (or both) result and error
        """
        if self.has_result and self.error is not None:
            msg = f"Response {self.id} carries both result and error"
            raise LogicError(msg)
        if self.has_result:
            return self.result
        if self.error is not None:
            raise ApiError.from_wire(self.error)
        msg = f"Response {self.id} must contain either result or error"
        raise LogicError(msg)

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON object."""
        obj: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.has_result:
            obj["result"] = self.result
        if self.error is not None:
            obj["error"] = self.error.to_json()
        return obj

    @staticmethod
    def from_json(obj: dict[str, Any]) -> WireResponse:
        """Parse from JSON object."""
        _check_version(obj)
        response_id = obj.get("id")
        if not is_int_not_bool(response_id) or response_id < 0:
            msg = f"Response id must be a non-negative int, got {response_id!r}"
            raise ValueError(msg)
        raw_error = obj.get("error")
        error = WireError.from_json(raw_error) if raw_error is not None else None
        return WireResponse(
            id=response_id,
            result=obj.get("result"),
            error=error,
            has_result="result" in obj,
        )


@dataclass(frozen=True, slots=True)
class WireNotification:
    """A message pushed on a subscribed channel. Carries no id."""

    channel: str
    data: Any = None
    method: str | None = None

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON object."""
        obj: dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "params": {"channel": self.channel, "data": self.data},
        }
        if self.method is not None:
            obj["method"] = self.method
        return obj

    @staticmethod
    def from_json(obj: dict[str, Any]) -> WireNotification:
        """Parse from JSON object."""
        _check_version(obj)
        params = obj.get("params")
        if not isinstance(params, dict):
            msg = "Notification params must be an object"
            raise ValueError(msg)
        channel = params.get("channel")
        if not isinstance(channel, str) or not channel:
            msg = f"Notification channel must be a non-empty string, got {channel!r}"
            raise ValueError(msg)
        method = obj.get("method")
        return WireNotification(
            channel=channel,
            data=params.get("data"),
            method=method if isinstance(method, str) else None,
        )


def parse_frame(frame: str) -> WireResponse | WireNotification:
    """Classify and parse one inbound frame.

    Tries the response shape first, then the notification shape.

    Raises:
        ProtocolError: The frame is neither. ``request_id`` is set when the
            frame still carries a usable correlation id.
    """
    try:
        obj = json.loads(frame)
    except ValueError as e:
        raise ProtocolError(f"Frame is not valid JSON: {e}", frame=frame) from e
    if not isinstance(obj, dict):
        msg = f"Frame must be a JSON object, got {type(obj).__name__}"
        raise ProtocolError(msg, frame=frame)

    try:
        return WireResponse.from_json(obj)
    except ValueError as e:
        response_problem = str(e)

    try:
        return WireNotification.from_json(obj)
    except ValueError as e:
        raw_id = obj.get("id")
        request_id = raw_id if is_int_not_bool(raw_id) and raw_id >= 0 else None
        msg = (
            f"Frame is neither a response ({response_problem}) "
            f"nor a notification ({e})"
        )
        raise ProtocolError(msg, frame=frame, request_id=request_id) from e
