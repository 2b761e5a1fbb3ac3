"""
State and Session Store Tests

Single-use pending login states, and server-side sessions behind a signed
cookie.
"""

from datetime import datetime, timedelta, timezone
from http.cookies import SimpleCookie

import jwt
import pytest
from fastapi import Request, Response

from authservice.app.auth.session import (
    SESSION_COOKIE_NAME,
    SESSION_KEY_PREFIX,
    SessionCookieError,
    SessionManager,
)
from authservice.app.auth.state import STATE_KEY_PREFIX, StateNotFoundError, StateStore
from authservice.app.models import OAuth2Token, Session
from authservice.app.storage import MemoryStore, StoreError

from test_storage import FakeClock


SECRET = "test-session-secret-0123456789"


def request_with_cookie(value: str = None) -> Request:
    headers = []
    if value is not None:
        headers.append((b"cookie", f"{SESSION_COOKIE_NAME}={value}".encode()))
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


def cookie_from(response: Response) -> str:
    cookie = SimpleCookie()
    cookie.load(response.headers["set-cookie"])
    return cookie[SESSION_COOKIE_NAME].value


def make_session(**overrides) -> Session:
    values = {
        "user_id": "alice@example.com",
        "claims": {"email": "alice@example.com", "groups": ["admins"], "email_verified": True},
        "id_token": "raw-id-token",
        "oauth2_token": OAuth2Token(access_token="at", refresh_token="rt"),
    }
    values.update(overrides)
    return Session(**values)


class TestStateStore:

    @pytest.mark.asyncio
    async def test_create_then_consume(self):
        states = StateStore(MemoryStore(), max_age_seconds=600)

        state = await states.create("/pipelines?ns=team-a")
        consumed = await states.consume(state.id)

        assert consumed.original_url == "/pipelines?ns=team-a"
        assert consumed.id == state.id

    @pytest.mark.asyncio
    async def test_state_ids_are_unique(self):
        states = StateStore(MemoryStore(), max_age_seconds=600)

        ids = {(await states.create("/")).id for _ in range(20)}

        assert len(ids) == 20

    @pytest.mark.asyncio
    async def test_consume_is_single_use(self):
        states = StateStore(MemoryStore(), max_age_seconds=600)
        state = await states.create("/")
        await states.consume(state.id)

        with pytest.raises(StateNotFoundError):
            await states.consume(state.id)

    @pytest.mark.asyncio
    async def test_unknown_state(self):
        with pytest.raises(StateNotFoundError):
            await StateStore(MemoryStore(), max_age_seconds=600).consume("nope")

    @pytest.mark.asyncio
    async def test_expired_state(self):
        clock = FakeClock()
        states = StateStore(MemoryStore(clock=clock), max_age_seconds=600)
        state = await states.create("/")
        clock.advance(601)

        with pytest.raises(StateNotFoundError):
            await states.consume(state.id)

    @pytest.mark.asyncio
    async def test_corrupted_record(self):
        store = MemoryStore()
        await store.set(STATE_KEY_PREFIX + "bad", "{not json", 60)

        with pytest.raises(StoreError):
            await StateStore(store, max_age_seconds=600).consume("bad")


class TestSessionManager:

    @pytest.mark.asyncio
    async def test_no_cookie_is_new_session(self):
        sessions = SessionManager(MemoryStore(), SECRET, 3600)

        handle = await sessions.get(request_with_cookie())

        assert handle.is_new
        assert handle.session_id is None

    @pytest.mark.asyncio
    async def test_save_then_get(self):
        sessions = SessionManager(MemoryStore(), SECRET, 3600)
        response = Response()

        session_id = await sessions.save(response, make_session())
        handle = await sessions.get(request_with_cookie(cookie_from(response)))

        assert not handle.is_new
        assert handle.session_id == session_id
        assert handle.record.user_id == "alice@example.com"
        assert handle.record.claims["groups"] == ["admins"]
        assert handle.record.oauth2_token.refresh_token == "rt"

    @pytest.mark.asyncio
    async def test_cookie_attributes(self):
        sessions = SessionManager(MemoryStore(), SECRET, 3600)
        response = Response()

        session_id = await sessions.save(response, make_session())

        set_cookie = response.headers["set-cookie"]
        assert "HttpOnly" in set_cookie
        assert "Secure" in set_cookie
        assert "Max-Age=3600" in set_cookie
        # Only a signed reference to the session leaves the server
        assert "raw-id-token" not in set_cookie
        assert jwt.decode(cookie_from(response), SECRET, algorithms=["HS256"])["sid"] == session_id

    @pytest.mark.asyncio
    async def test_each_save_issues_new_id(self):
        sessions = SessionManager(MemoryStore(), SECRET, 3600)

        first = await sessions.save(Response(), make_session())
        second = await sessions.save(Response(), make_session())

        assert first != second

    @pytest.mark.asyncio
    async def test_cookie_signed_with_other_secret(self):
        sessions = SessionManager(MemoryStore(), SECRET, 3600)
        forged = jwt.encode(
            {"sid": "x", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
            "another-secret-0123456789",
            algorithm="HS256",
        )

        with pytest.raises(SessionCookieError):
            await sessions.get(request_with_cookie(forged))

    @pytest.mark.asyncio
    async def test_expired_cookie_is_new_session(self):
        sessions = SessionManager(MemoryStore(), SECRET, 3600)
        expired = jwt.encode(
            {"sid": "x", "exp": datetime.now(timezone.utc) - timedelta(hours=1)},
            SECRET,
            algorithm="HS256",
        )

        handle = await sessions.get(request_with_cookie(expired))

        assert handle.is_new

    @pytest.mark.asyncio
    async def test_store_miss_keeps_session_id(self):
        store = MemoryStore()
        sessions = SessionManager(store, SECRET, 3600)
        response = Response()
        session_id = await sessions.save(response, make_session())
        await store.delete(SESSION_KEY_PREFIX + session_id)

        handle = await sessions.get(request_with_cookie(cookie_from(response)))

        assert handle.is_new
        assert handle.session_id == session_id

    @pytest.mark.asyncio
    async def test_expire_deletes_record_and_cookie(self):
        store = MemoryStore()
        sessions = SessionManager(store, SECRET, 3600)
        response = Response()
        await sessions.save(response, make_session())
        request = request_with_cookie(cookie_from(response))
        handle = await sessions.get(request)

        logout_response = Response()
        await sessions.expire(logout_response, handle)

        assert len(store) == 0
        assert f'{SESSION_COOKIE_NAME}=""' in logout_response.headers["set-cookie"]
        assert (await sessions.get(request)).is_new

    @pytest.mark.asyncio
    async def test_session_expires_with_store_ttl(self):
        clock = FakeClock()
        sessions = SessionManager(MemoryStore(clock=clock), SECRET, 3600)
        response = Response()
        await sessions.save(response, make_session())
        clock.advance(3600)

        handle = await sessions.get(request_with_cookie(cookie_from(response)))

        assert handle.is_new


class TestSessionModel:

    def test_empty_user_id_rejected(self):
        with pytest.raises(ValueError):
            make_session(user_id="")
