"""
Session Management Module
=========================

Server-side sessions keyed by a random id. The browser only ever sees the id,
wrapped in a signed JWT inside an HttpOnly, Secure cookie; everything else
(claims, tokens) stays in the store.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Request, Response
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from pydantic import ValidationError

from ..models import Session
from ..storage import MemoryStore, StoreError

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "authservice_session"
SESSION_KEY_PREFIX = "session:"
COOKIE_ALGORITHM = "HS256"


# =============================================================================
# Exceptions
# =============================================================================

class SessionCookieError(StoreError):
    """Session cookie present but its signature does not verify"""
    pass


# =============================================================================
# Session handle
# =============================================================================

@dataclass
class SessionHandle:
    """Result of a session lookup. A handle without a record is a new session."""
    session_id: Optional[str] = None
    record: Optional[Session] = None

    @property
    def is_new(self) -> bool:
        return self.record is None


# =============================================================================
# Session manager
# =============================================================================

class SessionManager:
    """Loads, creates and expires user sessions."""

    def __init__(
        self,
        store: MemoryStore,
        secret: str,
        max_age_seconds: int,
        cookie_name: str = SESSION_COOKIE_NAME,
    ):
        self._store = store
        self._secret = secret
        self.max_age = max_age_seconds
        self.cookie_name = cookie_name

    async def get(self, request: Request) -> SessionHandle:
        """
        Look up the session referenced by the request cookie.

        A missing cookie, an expired cookie or a store miss all yield a new
        (empty) handle.

        Raises:
            SessionCookieError: If the cookie has been tampered with
            StoreError: If the stored record cannot be read
        """
        cookie = request.cookies.get(self.cookie_name)
        if not cookie:
            return SessionHandle()

        session_id = self._decode_cookie(cookie)
        if session_id is None:
            return SessionHandle()

        raw = await self._store.get(SESSION_KEY_PREFIX + session_id)
        if raw is None:
            return SessionHandle(session_id=session_id)

        try:
            record = Session.model_validate_json(raw)
        except ValidationError as e:
            raise StoreError(f"Corrupted session record: {e}") from e
        return SessionHandle(session_id=session_id, record=record)

    async def save(self, response: Response, record: Session) -> str:
        """
        Persist a new session and attach its cookie to the response.

        Always issues a fresh session id.

        Raises:
            StoreError: If the session could not be persisted
        """
        session_id = secrets.token_urlsafe(32)
        await self._store.set(SESSION_KEY_PREFIX + session_id, record.model_dump_json(), self.max_age)
        response.set_cookie(
            self.cookie_name,
            self._encode_cookie(session_id),
            max_age=self.max_age,
            path="/",
            secure=True,
            httponly=True,
        )
        return session_id

    async def expire(self, response: Response, handle: SessionHandle) -> None:
        """
        Delete a session from the store and clear the cookie.

        The cookie is cleared even if the store delete fails.

        Raises:
            StoreError: If the store delete fails
        """
        response.delete_cookie(self.cookie_name, path="/", secure=True, httponly=True)
        if handle.session_id:
            await self._store.delete(SESSION_KEY_PREFIX + handle.session_id)

    # -------------------------------------------------------------------------
    # Cookie signing
    # -------------------------------------------------------------------------

    def _encode_cookie(self, session_id: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sid": session_id,
            "iat": now,
            "exp": now + timedelta(seconds=self.max_age),
        }
        return jwt.encode(payload, self._secret, algorithm=COOKIE_ALGORITHM)

    def _decode_cookie(self, cookie: str) -> Optional[str]:
        try:
            payload = jwt.decode(
                cookie,
                self._secret,
                algorithms=[COOKIE_ALGORITHM],
                options={"require": ["exp", "sid"]},
            )
        except ExpiredSignatureError:
            return None
        except InvalidTokenError as e:
            raise SessionCookieError(f"Invalid session cookie: {e}") from e

        session_id = payload.get("sid")
        if not isinstance(session_id, str) or not session_id:
            raise SessionCookieError("Session cookie has no session id")
        return session_id
