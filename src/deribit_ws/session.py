"""Authenticated session lifecycle.

A ``Session`` pairs a shared ``Connection`` with one ``Credential``:

    authenticate ──> Authenticated ──(expiry)──> Expired
                          ^                         │
                          └──────── refresh <───────┘

Any authenticated session can derive a sibling (``derive_subaccount``,
``fork``). The sibling reuses the same connection but owns its own
credential; the parent's credential is never touched.

Credentials are immutable. Refreshing or switching replaces the session's
``Credential`` object, so a caller holding the old one keeps a consistent
snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from deribit_ws.config import ClientConfig, Credentials
from deribit_ws.connection import Connection, Params
from deribit_ws.dispatcher import Subscription
from deribit_ws.error import ProtocolError
from deribit_ws.params import (
    ClientCredentialsParams,
    ExchangeTokenParams,
    ForkTokenParams,
    LogoutParams,
    MethodParams,
    RefreshTokenParams,
    to_params,
)
from deribit_ws.scope import Scope
from deribit_ws.wire import UNCORRELATED_ID, WireResponse

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class AuthResponse(BaseModel):
    """Result of ``public/auth``, ``public/exchange_token`` and ``public/fork_token``."""

    model_config = ConfigDict(extra="allow", frozen=True)

    access_token: str = Field(..., min_length=1, repr=False)
    refresh_token: str = Field(..., min_length=1, repr=False)
    expires_in: int = Field(..., ge=0)
    scope: str = ""
    token_type: str = "bearer"
    sid: str | None = None
    enabled_features: list[str] = Field(default_factory=list)
    google_login: bool = False
    mandatory_tfa_status: str = ""


@dataclass(frozen=True, slots=True)
class Credential:
    """An access/refresh token pair and the instant it expires.

    ``issued_at`` and ``expires_at`` are readings of the session clock
    (``time.monotonic`` by default), not wall-clock timestamps.
    """

    response: AuthResponse
    issued_at: float
    expires_at: float

    @classmethod
    def issue(cls, response: AuthResponse, now: float) -> Credential:
        return cls(response, now, now + response.expires_in)

    @property
    def access_token(self) -> str:
        return self.response.access_token

    @property
    def refresh_token(self) -> str:
        return self.response.refresh_token

    @property
    def scope(self) -> Scope:
        """The granted scope, decoded."""
        return Scope.decode(self.response.scope)

    def expired(self, now: float | None = None) -> bool:
        if now is None:
            now = time.monotonic()
        return now >= self.expires_at

    def remaining(self, now: float | None = None) -> float:
        """Seconds until expiry, never negative."""
        if now is None:
            now = time.monotonic()
        return max(0.0, self.expires_at - now)


async def _issue_credential(
    connection: Connection,
    method: str,
    params: MethodParams,
    clock: Clock,
    timeout: float | None,
) -> Credential:
    result = await connection.call(method, params, timeout=timeout)
    try:
        response = AuthResponse.model_validate(result)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {method} result: {e}") from e
    return Credential.issue(response, clock())


def _encode_scope(scope: Scope | None) -> str | None:
    return scope.encode() if scope is not None else None


class Session:
    """An authenticated view of a ``Connection``.

    Example:
        ```python
        creds = Credentials(client_id="...", client_secret="...")
        async with await Session.start(creds) as session:
            summary = await session.authenticated_call(
                "private/get_account_summary", {"currency": "BTC"}
            )
            sub = await session.derive_subaccount(12345)
        ```
    """

    def __init__(
        self,
        connection: Connection,
        credential: Credential,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self.connection = connection
        self._credential = credential
        self._clock = clock
        self._refresh_lock = asyncio.Lock()

    @classmethod
    async def authenticate(
        cls,
        connection: Connection,
        credentials: Credentials,
        *,
        scope: Scope | None = None,
        clock: Clock = time.monotonic,
        timeout: float | None = None,
    ) -> Self:
        """Authenticate an open connection with an API key pair.

        Raises:
            ApiError: The server rejected the credentials
            ProtocolError: The auth result could not be validated
        """
        params = ClientCredentialsParams(
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
            scope=_encode_scope(scope),
        )
        credential = await _issue_credential(connection, "public/auth", params, clock, timeout)
        logger.info("Authenticated client %s", credentials.client_id)
        return cls(connection, credential, clock=clock)

    @classmethod
    async def start(
        cls,
        credentials: Credentials,
        config: ClientConfig | None = None,
        *,
        scope: Scope | None = None,
    ) -> Self:
        """Connect to ``config.url`` and authenticate.

        The connection is closed again if authentication fails.
        """
        connection = await Connection.connect(config=config)
        try:
            return await cls.authenticate(connection, credentials, scope=scope)
        except BaseException:
            await connection.close()
            raise

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def credential(self) -> Credential:
        return self._credential

    @property
    def expired(self) -> bool:
        return self._credential.expired(self._clock())

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    async def request(
        self,
        method: str,
        params: Params = None,
        *,
        timeout: float | None = None,
    ) -> WireResponse:
        """Send an unauthenticated request. For ``public/*`` methods."""
        return await self.connection.request(method, params, timeout=timeout)

    async def call(
        self,
        method: str,
        params: Params = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send an unauthenticated request and return its result."""
        return await self.connection.call(method, params, timeout=timeout)

    async def authenticated_request(
        self,
        method: str,
        params: Params = None,
        *,
        timeout: float | None = None,
    ) -> WireResponse:
        """Send a request carrying the current access token.

        An expired credential is refreshed first, once. A failed refresh is
        not retried; its error is raised here.
        """
        credential = await self._current_credential()
        request_params = to_params(params)
        request_params["access_token"] = credential.access_token
        return await self.connection.request(method, request_params, timeout=timeout)

    async def authenticated_call(
        self,
        method: str,
        params: Params = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Authenticated request returning its result."""
        response = await self.authenticated_request(method, params, timeout=timeout)
        return response.value()

    # -------------------------------------------------------------------------
    # Token lifecycle
    # -------------------------------------------------------------------------

    async def _current_credential(self) -> Credential:
        credential = self._credential
        if not credential.expired(self._clock()):
            return credential
        async with self._refresh_lock:
            if self._credential is not credential:
                # Refreshed by another caller while we waited for the lock
                return self._credential
            return await self._refresh(None)

    async def refresh(self, *, timeout: float | None = None) -> Credential:
        """Re-authenticate with the stored refresh token.

        On failure the previous credential stays in place.
        """
        async with self._refresh_lock:
            return await self._refresh(timeout)

    async def _refresh(self, timeout: float | None) -> Credential:
        params = RefreshTokenParams(refresh_token=self._credential.refresh_token)
        credential = await _issue_credential(
            self.connection, "public/auth", params, self._clock, timeout
        )
        self._credential = credential
        logger.debug("Refreshed access token, valid for %ds", credential.response.expires_in)
        return credential

    async def exchange(
        self,
        subject_id: int,
        scope: Scope | None = None,
        *,
        timeout: float | None = None,
    ) -> Credential:
        """Obtain a credential for subaccount ``subject_id``.

        This session's own credential is unchanged.
        """
        params = ExchangeTokenParams(
            refresh_token=self._credential.refresh_token,
            subject_id=subject_id,
            scope=_encode_scope(scope),
        )
        return await _issue_credential(
            self.connection, "public/exchange_token", params, self._clock, timeout
        )

    async def derive_subaccount(
        self,
        subject_id: int,
        scope: Scope | None = None,
        *,
        timeout: float | None = None,
    ) -> Self:
        """New session for subaccount ``subject_id`` on the same connection."""
        credential = await self.exchange(subject_id, scope, timeout=timeout)
        logger.info("Derived session for subaccount %d", subject_id)
        return self._derive(credential)

    async def switch_subaccount(
        self,
        subject_id: int,
        scope: Scope | None = None,
        *,
        timeout: float | None = None,
    ) -> Credential:
        """Replace this session's credential with one for ``subject_id``."""
        credential = await self.exchange(subject_id, scope, timeout=timeout)
        self._credential = credential
        logger.info("Switched session to subaccount %d", subject_id)
        return credential

    async def fork(self, session_name: str, *, timeout: float | None = None) -> Self:
        """New named session on the same connection."""
        params = ForkTokenParams(
            refresh_token=self._credential.refresh_token,
            session_name=session_name,
        )
        credential = await _issue_credential(
            self.connection, "public/fork_token", params, self._clock, timeout
        )
        logger.info("Forked session %s", session_name)
        return self._derive(credential)

    def _derive(self, credential: Credential) -> Self:
        return type(self)(self.connection, credential, clock=self._clock)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe(
        self,
        channels: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Subscription:
        """Subscribe to private (and public) channels."""
        return await self.connection.subscribe_with(
            self.authenticated_call, "private/subscribe", channels, timeout=timeout
        )

    async def unsubscribe(
        self,
        channels: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Any:
        """Unsubscribe from channels subscribed through ``subscribe``."""
        return await self.connection.unsubscribe_with(
            self.authenticated_call, "private/unsubscribe", channels, timeout=timeout
        )

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def logout(self, invalidate_token: bool = True) -> None:
        """Ask the server to close the session.

        The server does not reply to ``private/logout``, so the request is
        sent with the uncorrelated id and no pending entry.
        """
        params = LogoutParams(invalidate_token=invalidate_token).to_params()
        params["access_token"] = self._credential.access_token
        await self.connection.send("private/logout", params, UNCORRELATED_ID)
        logger.info("Logged out (invalidate_token=%s)", invalidate_token)

    async def close(self) -> None:
        """Close the shared connection. Derived sessions lose it too."""
        await self.connection.close()
