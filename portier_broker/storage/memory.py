from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from portier_broker.logging import get_logger
from portier_broker.storage.base import validate_ttl


class MemoryStore:
    """Volatile single-process store.

    Suitable for development and tests; state is lost on restart and is not
    shared between worker processes.
    """

    def __init__(
        self, *, clock: Callable[[], float] = time.time, purge_interval: float = 60.0
    ) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self.purge_interval = purge_interval
        self._last_purge = clock()
        # key -> (value, absolute expiry or None)
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= now:
            del self._entries[key]
            return None
        return value

    def _maybe_purge(self, now: float) -> None:
        # Keys that are never read again are only reclaimed here
        if now - self._last_purge >= self.purge_interval:
            self.purge_expired()

    def _expiry(self, ttl: Optional[int], now: float) -> Optional[float]:
        ttl = validate_ttl(ttl)
        return None if ttl is None else now + ttl

    async def put(self, key: str, value: str, ttl: Optional[int]) -> None:
        with self._data_lock:
            now = self._clock()
            self._maybe_purge(now)
            self._entries[key] = (value, self._expiry(ttl, now))

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            return self._live(key, self._clock())

    async def take(self, key: str) -> Optional[str]:
        with self._data_lock:
            value = self._live(key, self._clock())
            if value is not None:
                del self._entries[key]
            return value

    async def increment_with_expiry(self, key: str, ttl: int) -> int:
        with self._data_lock:
            now = self._clock()
            self._maybe_purge(now)
            current = self._live(key, now)
            if current is None:
                self._entries[key] = ("1", self._expiry(ttl, now))
                return 1
            count = int(current) + 1
            self._entries[key] = (str(count), self._entries[key][1])
            return count

    async def delete(self, key: str) -> None:
        with self._data_lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._data_lock:
            now = self._clock()
            self._last_purge = now
            expired = [
                key
                for key, (_, expires_at) in self._entries.items()
                if expires_at is not None and expires_at <= now
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            self.logger.debug("memory_store_purged", count=len(expired))
        return len(expired)

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        with self._data_lock:
            self._entries.clear()
