"""
Key-Value Store Module
======================

TTL-based key-value store backing both the session store and the pending
login state store.

Values are opaque strings (serialized records). Expired entries behave as a
miss on read and are removed out-of-band by a periodic reaper task.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class StoreError(Exception):
    """Raised when the store cannot read or write a record."""
    pass


# =============================================================================
# Memory Store
# =============================================================================

@dataclass
class _Entry:
    value: str
    expires_at: float


class MemoryStore:
    """
    In-memory TTL store.

    Safe for concurrent use from request tasks via asyncio.Lock. The lock is
    only held for dictionary operations, so requests for different keys never
    wait on each other for longer than a single lookup.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        Initialize the store.

        Args:
            clock: Monotonic time source in seconds (overridable in tests)
        """
        self._entries: Dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        """
        Return the value stored under key, or None if absent or expired.
        """
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """
        Store value under key for ttl_seconds, replacing any previous value.

        Raises:
            StoreError: If ttl_seconds is not positive
        """
        if ttl_seconds <= 0:
            raise StoreError(f"Invalid TTL for store entry: {ttl_seconds}")
        async with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        """
        Atomically return and remove the value under key.

        Two concurrent pops of the same key never both see the value.
        """
        async with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None or self._clock() >= entry.expires_at:
                return None
            return entry.value

    async def purge_expired(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            now = self._clock()
            expired_keys = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired_keys:
                del self._entries[key]
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# Reaper
# =============================================================================

async def run_reaper(store: MemoryStore, interval_seconds: float) -> None:
    """
    Periodically purge expired entries until cancelled.

    Args:
        store: Store to sweep
        interval_seconds: Delay between sweeps
    """
    logger.info(f"Starting store reaper, interval {interval_seconds}s")
    while True:
        await asyncio.sleep(interval_seconds)
        removed = await store.purge_expired()
        if removed:
            logger.debug(f"Reaper removed {removed} expired store entries")
