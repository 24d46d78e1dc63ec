"""Per-key async lock manager.

Serializes the freshness-check-then-fetch sequence of the OAuth token cache
per tenant so that two rapid deliveries for the same tenant trigger at most
one token request.

Example:
    >>> from wahook.locks import KeyedLock, KeyedLockManager
    >>>
    >>> locks = KeyedLockManager()
    >>>
    >>> async def refresh(tenant_id: int):
    ...     async with KeyedLock(locks, f"tenant:{tenant_id}"):
    ...         # This block is atomic per tenant
    ...         ...
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

logger = logging.getLogger(__name__)

__all__ = ["KeyedLock", "KeyedLockManager"]


class KeyedLockManager:
    """Manages per-key async locks with reference-counted cleanup.

    Attributes:
        _locks: Dictionary mapping key to asyncio.Lock
        _lock_counts: Reference count for each key
        _manager_lock: Global lock protecting internal state
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock_counts: dict[str, int] = defaultdict(int)
        self._manager_lock = asyncio.Lock()

    async def acquire(self, key: str) -> asyncio.Lock:
        """Get or create the lock for key and increment its reference count."""
        async with self._manager_lock:
            self._lock_counts[key] += 1
            return self._locks[key]

    async def release(self, key: str) -> None:
        """Drop one reference; the lock is forgotten once nobody holds it."""
        async with self._manager_lock:
            self._lock_counts[key] -= 1
            if self._lock_counts[key] <= 0:
                self._locks.pop(key, None)
                self._lock_counts.pop(key, None)
                logger.debug(f"Cleaned up lock for key: {key}")


class KeyedLock:
    """Async context manager holding the lock for one key."""

    def __init__(self, manager: KeyedLockManager, key: str) -> None:
        self.manager = manager
        self.key = key
        self._lock: asyncio.Lock | None = None

    async def __aenter__(self) -> KeyedLock:
        self._lock = await self.manager.acquire(self.key)
        await self._lock.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        if self._lock is not None:
            self._lock.release()
        await self.manager.release(self.key)
