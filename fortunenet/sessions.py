import threading
from typing import Dict, Optional

"""
sessions.py — per-service map of client address -> current token.

The auth server keeps one (address -> nonce) and the content server keeps
another (address -> access token). They are never shared; the only link
between the two services is the handoff call.
"""


class SessionTable:
    """
    Thread-safe address -> token map.

    Last write wins: a new probe (or a new handoff) from the same address
    replaces the previous token. Entries are never evicted; they live as long
    as the owning service.

    Every read and write takes the same lock. Callers never hold it across an
    await or a network call; all methods here are synchronous and short.
    """

    def __init__(self) -> None:
        self._tokens: Dict[str, int] = {}
        self._lock = threading.Lock()

    def put(self, address: str, token: int) -> None:
        with self._lock:
            self._tokens[address] = token

    def get(self, address: str) -> Optional[int]:
        """Token for `address`, or None if that address never checked in."""
        with self._lock:
            return self._tokens.get(address)

    def __contains__(self, address: object) -> bool:
        with self._lock:
            return address in self._tokens

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
