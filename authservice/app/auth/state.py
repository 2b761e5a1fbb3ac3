"""
Pending login state store.

A PendingLoginState correlates one authorization request with its callback:
its id is sent to the provider as the OAuth2 'state' parameter and the record
remembers where the user was going. Each state is consumed at most once.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from ..models import PendingLoginState
from ..storage import MemoryStore, StoreError

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "state:"


class StateNotFoundError(Exception):
    """Raised for unknown, expired or already consumed state ids."""
    pass


class StateStore:
    """Creates and consumes PendingLoginState records."""

    def __init__(self, store: MemoryStore, max_age_seconds: int):
        self._store = store
        self._max_age = max_age_seconds

    async def create(self, original_url: str) -> PendingLoginState:
        """
        Create and persist a new pending login.

        Args:
            original_url: Path and query of the intercepted request

        Returns:
            The persisted state

        Raises:
            StoreError: If the state could not be persisted
        """
        state = PendingLoginState(
            id=secrets.token_urlsafe(32),
            original_url=original_url,
            expiry=datetime.now(timezone.utc) + timedelta(seconds=self._max_age),
        )
        await self._store.set(STATE_KEY_PREFIX + state.id, state.model_dump_json(), self._max_age)
        return state

    async def consume(self, state_id: str) -> PendingLoginState:
        """
        Load and delete a pending login in one step.

        Raises:
            StateNotFoundError: If the id is unknown, expired or already used
            StoreError: If the stored record cannot be read
        """
        raw = await self._store.pop(STATE_KEY_PREFIX + state_id)
        if raw is None:
            raise StateNotFoundError("Unknown or already consumed state")

        try:
            state = PendingLoginState.model_validate_json(raw)
        except ValidationError as e:
            raise StoreError(f"Corrupted state record: {e}") from e

        if state.expired:
            raise StateNotFoundError("State has expired")
        return state
