"""
Access policy applied before authentication.

- ReadinessFlag: process-wide "setup complete" signal
- WhitelistPolicy: path prefixes that bypass authentication entirely
"""

import enum
import threading
from typing import Iterable, List


class ReadinessFlag:
    """
    Set-once readiness signal.

    Written once by the setup task, read by every request. There is no way
    to clear it, so readiness never flaps back to not-ready.
    """

    def __init__(self):
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()


class Decision(enum.Enum):
    BYPASS = "bypass"
    NOT_READY = "not_ready"
    AUTHENTICATE = "authenticate"


class WhitelistPolicy:
    """Literal path-prefix whitelist consulted ahead of the readiness gate."""

    def __init__(self, prefixes: Iterable[str]):
        self.prefixes: List[str] = [p for p in prefixes if p]

    def is_whitelisted(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.prefixes)

    def decide(self, path: str, readiness: ReadinessFlag) -> Decision:
        """
        Classify a request path.

        Whitelisted paths bypass authentication even before setup completes;
        everything else is held back with NOT_READY until the flag is set.
        """
        if self.is_whitelisted(path):
            return Decision.BYPASS
        if not readiness.is_set():
            return Decision.NOT_READY
        return Decision.AUTHENTICATE
