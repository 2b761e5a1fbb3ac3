"""
Shared application state and FastAPI dependencies.
"""

import asyncio
from typing import Optional

from fastapi import HTTPException, Request, status

from .auth.oidc import OIDCClient
from .auth.session import SessionManager
from .auth.state import StateStore
from .config import Settings
from .policy import ReadinessFlag, WhitelistPolicy
from .storage import MemoryStore


class AppState:
    """
    Process-wide state container.

    Settings, readiness flag and whitelist are available immediately. The
    provider client and stores are filled in by the setup task, which sets
    the readiness flag last; request handlers only touch them once ready.
    """

    def __init__(self, settings: Settings, readiness: Optional[ReadinessFlag] = None):
        self.settings = settings
        self.readiness = readiness or ReadinessFlag()
        self.policy = WhitelistPolicy(settings.whitelist)
        self.oidc: Optional[OIDCClient] = None
        self.store: Optional[MemoryStore] = None
        self.sessions: Optional[SessionManager] = None
        self.states: Optional[StateStore] = None
        self.reaper: Optional[asyncio.Task] = None


def get_app_state(request: Request) -> AppState:
    """Dependency returning the AppState attached to the application."""
    app_state = getattr(request.app.state, "app_state", None)
    if app_state is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Application state not initialized",
        )
    return app_state


def require_ready(request: Request) -> AppState:
    """
    Dependency rejecting requests with 503 until setup has completed.
    """
    app_state = get_app_state(request)
    if not app_state.readiness.is_set():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="OIDC Setup is not complete yet.",
        )
    return app_state
