from typing import Dict, Any, Optional, Tuple
import asyncio
import fnmatch
from datetime import datetime, timedelta, timezone


class CacheMemoryStore:
    """Process-local TTL cache behind the side-effect gateway.

    Keys are namespaced per user ("user:<id>:<what>") so a user's entries can
    be dropped together with a glob pattern.
    """

    def __init__(self):
        self.entries: Dict[str, Tuple[Any, datetime]] = {}
        self._lock = asyncio.Lock()

    async def set(self, key: str, value: Any, ttl: int = 3600) -> None:
        async with self._lock:
            self.entries[key] = (value, datetime.now(timezone.utc) + timedelta(seconds=ttl))

    async def get(self, key: str) -> Optional[Any]:
        """Live value for key; expired entries are evicted on read"""

        async with self._lock:
            if key not in self.entries:
                return None
            value, expires_at = self.entries[key]
            if expires_at < datetime.now(timezone.utc):
                self.entries.pop(key)
                return None
            return value

    async def invalidate(self, pattern: str) -> int:
        async with self._lock:
            doomed = fnmatch.filter(list(self.entries), pattern)
            for key in doomed:
                self.entries.pop(key)
            return len(doomed)

    async def clear_expired(self) -> int:
        async with self._lock:
            now = datetime.now(timezone.utc)
            doomed = [key for key, (_, expires_at) in self.entries.items() if expires_at < now]
            for key in doomed:
                self.entries.pop(key)
            return len(doomed)
