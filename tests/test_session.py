"""Tests for the authenticated session lifecycle."""

import asyncio
from typing import Any

import pytest

from deribit_ws.config import Credentials
from deribit_ws.connection import Connection
from deribit_ws.error import ApiError, ProtocolError
from deribit_ws.scope import Access, Scope
from deribit_ws.session import AuthResponse, Credential, Session
from tests.conftest import (
    FakeClock,
    FakeVenueTransport,
    TokenIssuer,
    VenueError,
    auth_result,
)

CREDENTIALS = Credentials(client_id="client-id", client_secret="client-secret")


async def authenticated(
    venue: FakeVenueTransport,
    clock: FakeClock,
    *,
    expires_in: int = 900,
) -> tuple[Connection, Session, TokenIssuer]:
    issuer = TokenIssuer(expires_in=expires_in)
    venue.on("public/auth", issuer)
    conn = Connection(venue)
    conn.start()
    session = await Session.authenticate(conn, CREDENTIALS, clock=clock)
    return conn, session, issuer


@pytest.mark.asyncio
class TestAuthenticate:
    """Initial authentication."""

    async def test_credential_from_auth_result(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        venue.on("public/auth", lambda params: auth_result("abc", "def", expires_in=100))
        async with Connection(venue) as conn:
            session = await Session.authenticate(conn, CREDENTIALS, clock=clock)

        request = venue.sent[0]
        assert request.id == 1
        assert request.method == "public/auth"
        assert request.params == {
            "grant_type": "client_credentials",
            "client_id": "client-id",
            "client_secret": "client-secret",
        }
        credential = session.credential
        assert credential.access_token == "abc"
        assert credential.refresh_token == "def"
        assert credential.expires_at == credential.issued_at + 100
        assert credential.issued_at == clock.now
        assert not session.expired
        assert not credential.expired(clock.now)

    async def test_expires_after_lifetime(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, _ = await authenticated(venue, clock, expires_in=100)
        clock.advance(99.5)
        assert not session.expired
        assert session.credential.remaining(clock.now) == pytest.approx(0.5)
        clock.advance(0.5)
        assert session.expired
        await conn.close()

    async def test_requested_scope_is_encoded(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        issuer = TokenIssuer()
        venue.on("public/auth", issuer)
        scope = Scope(session="bot", account=Access.READ, trade=Access.READ_WRITE)
        async with Connection(venue) as conn:
            await Session.authenticate(conn, CREDENTIALS, scope=scope, clock=clock)
        assert issuer.calls[0]["scope"] == "session:bot,account:read,trade:read_write"

    async def test_rejected_credentials(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        def reject(params: dict[str, Any]) -> Any:
            raise VenueError(13004, "invalid_credentials")

        venue.on("public/auth", reject)
        async with Connection(venue) as conn:
            with pytest.raises(ApiError) as exc_info:
                await Session.authenticate(conn, CREDENTIALS, clock=clock)
        assert exc_info.value.code == 13004

    async def test_invalid_auth_result(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        venue.on("public/auth", lambda params: {"access_token": "abc"})
        async with Connection(venue) as conn:
            with pytest.raises(ProtocolError):
                await Session.authenticate(conn, CREDENTIALS, clock=clock)

    async def test_granted_scope_decoded(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, _ = await authenticated(venue, clock)
        scope = session.credential.scope
        assert scope.connection
        assert scope.session == "default"
        assert scope.account is Access.READ
        assert scope.trade is Access.READ_WRITE
        await conn.close()


@pytest.mark.asyncio
class TestAuthenticatedRequests:
    """Token injection and refresh-before-use."""

    async def test_access_token_injected(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, _ = await authenticated(venue, clock)
        venue.on("private/get_account_summary", lambda params: {"equity": 1.5})

        params = {"currency": "BTC"}
        result = await session.authenticated_call("private/get_account_summary", params)

        assert result == {"equity": 1.5}
        assert venue.sent[-1].params == {"currency": "BTC", "access_token": "access-1"}
        assert params == {"currency": "BTC"}
        await conn.close()

    async def test_expired_credential_refreshed_once_before_call(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn = Connection(venue)
        conn.start()
        issuer = TokenIssuer()
        venue.on("public/auth", issuer)
        venue.on("private/get_account_summary", lambda params: {})
        stale = Credential.issue(
            AuthResponse.model_validate(auth_result("T0", "R0", expires_in=0)), clock()
        )
        session = Session(conn, stale, clock=clock)

        await session.authenticated_request("private/get_account_summary", {})

        assert venue.methods() == ["public/auth", "private/get_account_summary"]
        assert issuer.calls == [{"grant_type": "refresh_token", "refresh_token": "R0"}]
        assert venue.sent[1].params["access_token"] == "access-1"
        assert session.credential.access_token == "access-1"
        await conn.close()

    async def test_valid_credential_not_refreshed(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, issuer = await authenticated(venue, clock)
        venue.on("private/get_positions", lambda params: [])
        await session.authenticated_call("private/get_positions", {"currency": "BTC"})
        await session.authenticated_call("private/get_positions", {"currency": "ETH"})
        assert len(issuer.calls) == 1
        await conn.close()

    async def test_concurrent_expired_callers_share_one_refresh(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, issuer = await authenticated(venue, clock, expires_in=10)
        venue.on("private/get_positions", lambda params: [])
        clock.advance(10)

        await asyncio.gather(*(
            session.authenticated_call("private/get_positions", {}) for _ in range(5)
        ))

        assert len(issuer.calls) == 2
        tokens = {r.params["access_token"] for r in venue.requests_for("private/get_positions")}
        assert tokens == {"access-2"}
        await conn.close()

    async def test_failed_refresh_keeps_old_credential(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, _ = await authenticated(venue, clock, expires_in=10)
        old = session.credential
        clock.advance(11)

        def reject(params: dict[str, Any]) -> Any:
            raise VenueError(13009, "invalid_token")

        venue.on("public/auth", reject)
        with pytest.raises(ApiError):
            await session.authenticated_call("private/get_positions", {})

        assert session.credential is old
        assert "private/get_positions" not in venue.methods()
        await conn.close()

    async def test_explicit_refresh_replaces_credential(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, _ = await authenticated(venue, clock)
        old = session.credential
        new = await session.refresh()
        assert new is session.credential
        assert new is not old
        assert old.access_token == "access-1"
        assert new.access_token == "access-2"
        await conn.close()

    async def test_unauthenticated_request_has_no_token(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, _ = await authenticated(venue, clock)
        venue.on("public/get_time", lambda params: 1700000000000)
        assert await session.call("public/get_time") == 1700000000000
        assert "access_token" not in venue.sent[-1].params
        await conn.close()


@pytest.mark.asyncio
class TestDerivedSessions:
    """Subaccount exchange and forking."""

    async def test_derive_subaccount(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, parent, _ = await authenticated(venue, clock)
        venue.on("public/exchange_token", lambda params: auth_result("T2", "R2"))

        child = await parent.derive_subaccount(12345)

        assert child.credential.access_token == "T2"
        assert parent.credential.access_token == "access-1"
        assert child is not parent
        assert child.connection is parent.connection
        assert venue.sent[-1].params == {"refresh_token": "refresh-1", "subject_id": 12345}
        await conn.close()

    async def test_exchange_with_scope(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, parent, _ = await authenticated(venue, clock)
        venue.on("public/exchange_token", lambda params: auth_result("T2", "R2"))
        credential = await parent.exchange(7, Scope(session="sub", trade=Access.READ))
        assert credential.access_token == "T2"
        assert venue.sent[-1].params["scope"] == "session:sub,trade:read"
        assert parent.credential.access_token == "access-1"
        await conn.close()

    async def test_switch_subaccount_replaces_own_credential(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, _ = await authenticated(venue, clock)
        old = session.credential
        venue.on("public/exchange_token", lambda params: auth_result("T2", "R2"))
        await session.switch_subaccount(12345)
        assert session.credential.access_token == "T2"
        assert old.access_token == "access-1"
        await conn.close()

    async def test_fork(self, venue: FakeVenueTransport, clock: FakeClock) -> None:
        conn, parent, _ = await authenticated(venue, clock)
        venue.on(
            "public/fork_token",
            lambda params: auth_result("F1", "FR1", scope=f"session:{params['session_name']}"),
        )

        child = await parent.fork("hedger")

        assert venue.sent[-1].params == {"refresh_token": "refresh-1", "session_name": "hedger"}
        assert child.credential.access_token == "F1"
        assert child.credential.scope.session == "hedger"
        assert parent.credential.access_token == "access-1"
        await conn.close()

    async def test_failed_exchange_leaves_parent_untouched(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, parent, _ = await authenticated(venue, clock)
        old = parent.credential

        def reject(params: dict[str, Any]) -> Any:
            raise VenueError(13021, "forbidden")

        venue.on("public/exchange_token", reject)
        with pytest.raises(ApiError):
            await parent.derive_subaccount(1)
        assert parent.credential is old
        await conn.close()

    async def test_siblings_share_the_connection(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, parent, _ = await authenticated(venue, clock)
        venue.on("public/fork_token", lambda params: auth_result("F1", "FR1"))
        venue.on("private/get_open_orders", lambda params: params["access_token"])
        child = await parent.fork("second")

        results = await asyncio.gather(
            parent.authenticated_call("private/get_open_orders", {}),
            child.authenticated_call("private/get_open_orders", {}),
        )

        assert results == ["access-1", "F1"]
        ids = [request.id for request in venue.sent]
        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)
        await conn.close()


@pytest.mark.asyncio
class TestPrivateSubscriptionsAndLogout:
    """Private subscriptions and logout."""

    async def test_private_subscribe(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, _ = await authenticated(venue, clock)
        venue.on("private/subscribe", lambda params: params["channels"])

        subscription = await session.subscribe(["user.orders.BTC-PERPETUAL.raw"])
        venue.notify("user.orders.BTC-PERPETUAL.raw", {"order_id": "42"})
        notification = await asyncio.wait_for(subscription.get(), timeout=1)

        assert notification.data == {"order_id": "42"}
        assert venue.sent[-1].params == {
            "channels": ["user.orders.BTC-PERPETUAL.raw"],
            "access_token": "access-1",
        }
        await conn.close()

    async def test_private_unsubscribe(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, _ = await authenticated(venue, clock)
        venue.on("private/subscribe", lambda params: params["channels"])
        venue.on("private/unsubscribe", lambda params: params["channels"])
        subscription = await session.subscribe(["user.trades.any.any.raw"])
        await session.unsubscribe(["user.trades.any.any.raw"])
        assert subscription.closed
        assert venue.sent[-1].params["access_token"] == "access-1"
        await conn.close()

    async def test_logout_is_uncorrelated(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, _ = await authenticated(venue, clock)
        last_id = conn.dispatcher.last_id

        await session.logout(invalidate_token=True)

        request = venue.sent[-1]
        assert request.method == "private/logout"
        assert request.id == 0
        assert request.params == {"invalidate_token": True, "access_token": "access-1"}
        assert conn.dispatcher.pending_count == 0
        assert conn.dispatcher.last_id == last_id
        await conn.close()

    async def test_close_closes_shared_connection(
        self, venue: FakeVenueTransport, clock: FakeClock
    ) -> None:
        conn, session, _ = await authenticated(venue, clock)
        async with session:
            pass
        assert conn.closed
        assert venue.closed
