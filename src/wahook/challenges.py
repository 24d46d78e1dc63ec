"""Ephemeral store correlating sessions to their pending QR challenge.

A challenge is written when the protocol layer issues a QR code during a
session handshake, read by clients polling for it, and removed once the
session connects or is logged out. Entries expire after a fixed TTL; reads
evict expired entries lazily so no background sweep is needed for
correctness.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from wahook.config import CHALLENGE_TTL_SECONDS

if TYPE_CHECKING:
    from collections.abc import Callable

    import redis

__all__ = [
    "ChallengeEntry",
    "ChallengeStoreProtocol",
    "MemoryChallengeStore",
    "RedisChallengeStore",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChallengeEntry:
    """A stored challenge and the instant it was created."""

    challenge: str
    created_at: float


class ChallengeStoreProtocol(ABC):
    """Protocol for challenge storage backends."""

    ttl: int

    @abstractmethod
    def store(self, session_id: str, challenge: str) -> None:
        """Upsert the challenge for a session, replacing any previous one."""
        ...

    @abstractmethod
    def get(self, session_id: str) -> str | None:
        """Return the live challenge, or None if absent or expired."""
        ...

    @abstractmethod
    def remove(self, session_id: str) -> None:
        """Delete the challenge for a session (idempotent)."""
        ...

    @abstractmethod
    def sweep_expired(self) -> int:
        """Remove every expired entry and return how many were dropped."""
        ...


class MemoryChallengeStore(ChallengeStoreProtocol):
    """In-memory challenge store with lazy expiry.

    Example:
        >>> store = MemoryChallengeStore(ttl=300)
        >>> store.store("alice", "2@AbCd...")
        >>> store.get("alice")
        '2@AbCd...'
    """

    def __init__(
        self,
        ttl: int = CHALLENGE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the store.

        Args:
            ttl: Seconds a challenge stays valid
            clock: Source of the current time in seconds
        """
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, ChallengeEntry] = {}

    def _is_live(self, entry: ChallengeEntry, now: float) -> bool:
        return now - entry.created_at < self.ttl

    def store(self, session_id: str, challenge: str) -> None:
        self._entries[session_id] = ChallengeEntry(challenge, self._clock())

    def get(self, session_id: str) -> str | None:
        entry = self._entries.get(session_id)
        if entry is None:
            return None

        if not self._is_live(entry, self._clock()):
            self._entries.pop(session_id, None)
            logger.debug(f"Challenge for session '{session_id}' expired")
            return None

        return entry.challenge

    def remove(self, session_id: str) -> None:
        self._entries.pop(session_id, None)

    def sweep_expired(self) -> int:
        now = self._clock()
        expired = [
            session_id
            for session_id, entry in self._entries.items()
            if not self._is_live(entry, now)
        ]
        for session_id in expired:
            self._entries.pop(session_id, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisChallengeStore(ChallengeStoreProtocol):
    """Redis-backed challenge store.

    Key schema:
        wahook:challenge:{session_id} -> challenge string (EX ttl)

    Expiry is enforced by Redis, so sweeping is a no-op.
    """

    def __init__(
        self,
        redis_client: redis.Redis[bytes],
        ttl: int = CHALLENGE_TTL_SECONDS,
        prefix: str = "wahook:",
    ) -> None:
        self._redis = redis_client
        self.ttl = ttl
        self._prefix = prefix

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}challenge:{session_id}"

    def store(self, session_id: str, challenge: str) -> None:
        self._redis.set(self._key(session_id), challenge, ex=self.ttl)

    def get(self, session_id: str) -> str | None:
        data = self._redis.get(self._key(session_id))
        if not data:
            return None
        return data.decode() if isinstance(data, bytes) else str(data)

    def remove(self, session_id: str) -> None:
        self._redis.delete(self._key(session_id))

    def sweep_expired(self) -> int:
        return 0
