"""Bounded TTL cache used to suppress repeated pages for the same finding.

Classes:
    CooldownCache: Remembers keys for a TTL, evicting the oldest past max_size
"""

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable


class CooldownCache:
    """Bounded key -> expiry map guarded by an asyncio lock.

    Uses monotonic time so wall clock adjustments cannot extend or cut
    a cooldown.

    Args:
        ttl_seconds: How long a key stays cooling down
        max_size: Maximum number of tracked keys; oldest evicted first
        monotonic: Time source (tests pass a fake)
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int = 1024,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._monotonic = monotonic
        self._entries: OrderedDict[str, float] = OrderedDict()
        self._lock = asyncio.Lock()

    async def try_acquire(self, key: str) -> bool:
        """Start a cooldown for key unless one is active.

        Returns:
            True if the caller may proceed (no active cooldown), False otherwise
        """
        async with self._lock:
            now = self._monotonic()
            self._evict_expired(now)

            if key in self._entries:
                return False

            self._entries[key] = now + self.ttl_seconds
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
            return True

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
