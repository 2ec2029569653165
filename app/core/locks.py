"""
Keyed asyncio locks

Serializes critical sections that share a key (e.g. one OAuth token refresh
per carrier configuration) while letting unrelated keys run concurrently.
"""
import asyncio
from collections import defaultdict
from typing import Dict, Hashable


class KeyedLockManager:
    """
    Manages one asyncio.Lock per key.

    Two coroutines refreshing the same carrier credentials must not both hit
    the token endpoint; the second waits and then sees the first one's token.
    """
    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock = asyncio.Lock()  # Protects _locks dict creation

    async def get_lock(self, key: Hashable) -> asyncio.Lock:
        """Get or create a lock for a specific key."""
        async with self._lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# Global lock manager for carrier token refresh, keyed by configuration id
token_refresh_locks = KeyedLockManager()
