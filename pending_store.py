"""
pending_store.py — Short-lived state -> PendingAuthorization records.

Bridges the upstream and downstream handshakes across the redirect to the
user's IndieAuth provider. Records are stored serialized (JSON), the same
shape a shared KV backend would hold, and expire PENDING_AUTH_TTL seconds
after they are written.

The callback must consume a record with pop(): whichever request removes it
first wins, every later request with the same state sees None.
"""

import asyncio
import logging
import time
from typing import Callable, Protocol

from models import PendingAuthorization

logger = logging.getLogger("micropub-delegation")

PENDING_AUTH_TTL = 600  # 10 minutes


class PendingAuthStore(Protocol):
    async def put(self, state: str, record: PendingAuthorization, ttl: int = PENDING_AUTH_TTL) -> None: ...

    async def get(self, state: str) -> PendingAuthorization | None: ...

    async def delete(self, state: str) -> None: ...

    async def pop(self, state: str) -> PendingAuthorization | None: ...


class MemoryPendingAuthStore:
    """In-process store. Safe for concurrent coroutines in one event loop."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def put(self, state: str, record: PendingAuthorization, ttl: int = PENDING_AUTH_TTL) -> None:
        async with self._lock:
            self._evict_expired()
            self._entries[state] = (self._clock() + ttl, record.model_dump_json())

    async def get(self, state: str) -> PendingAuthorization | None:
        async with self._lock:
            return self._load(state, remove=False)

    async def delete(self, state: str) -> None:
        async with self._lock:
            self._entries.pop(state, None)

    async def pop(self, state: str) -> PendingAuthorization | None:
        """Get and delete in one step."""
        async with self._lock:
            return self._load(state, remove=True)

    def _load(self, state: str, remove: bool) -> PendingAuthorization | None:
        entry = self._entries.pop(state, None) if remove else self._entries.get(state)
        if entry is None:
            return None
        expires_at, payload = entry
        if self._clock() >= expires_at:
            self._entries.pop(state, None)
            logger.info("pending auth expired: state=%s...", state[:6])
            return None
        return PendingAuthorization.model_validate_json(payload)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [s for s, (expires_at, _) in self._entries.items() if expires_at <= now]
        for s in expired:
            del self._entries[s]
