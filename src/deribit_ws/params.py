"""Structured parameter objects for the methods the client itself calls.

Each model validates its fields at construction. Unknown keyword arguments
are kept (``extra="allow"``) and sent as-is, so newer server-side options can
be passed without a client release.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class MethodParams(BaseModel):
    """Base for per-method parameter models."""

    model_config = ConfigDict(extra="allow", frozen=True)

    def to_params(self) -> dict[str, Any]:
        """Dump to the JSON object placed in the request's ``params``."""
        return self.model_dump(mode="json", exclude_none=True)


class ClientCredentialsParams(MethodParams):
    """``public/auth`` with an API key pair."""

    grant_type: Literal["client_credentials"] = "client_credentials"
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1, repr=False)
    scope: str | None = None


class RefreshTokenParams(MethodParams):
    """``public/auth`` with a refresh token."""

    grant_type: Literal["refresh_token"] = "refresh_token"
    refresh_token: str = Field(..., min_length=1, repr=False)


class ExchangeTokenParams(MethodParams):
    """``public/exchange_token``: token for another subaccount."""

    refresh_token: str = Field(..., min_length=1, repr=False)
    subject_id: int
    scope: str | None = None


class ForkTokenParams(MethodParams):
    """``public/fork_token``: token for a new named session."""

    refresh_token: str = Field(..., min_length=1, repr=False)
    session_name: str = Field(..., min_length=1)


class LogoutParams(MethodParams):
    """``private/logout``."""

    invalidate_token: bool = True


class ChannelsParams(MethodParams):
    """``*/subscribe`` and ``*/unsubscribe``."""

    channels: list[str] = Field(..., min_length=1)


def to_params(params: Mapping[str, Any] | MethodParams | None) -> dict[str, Any]:
    """Normalize caller-supplied params to a fresh dict.

    The returned dict is always a copy, so later changes never reach the
    caller's object.
    """
    if params is None:
        return {}
    if isinstance(params, MethodParams):
        return params.to_params()
    if isinstance(params, Mapping):
        return dict(params)
    msg = f"params must be a mapping or MethodParams, got {type(params).__name__}"
    raise TypeError(msg)
