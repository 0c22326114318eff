from __future__ import annotations

import hashlib
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class Store(Protocol):
    """Expiring key-value store shared by sessions, rate limits, keys and caches.

    Values are opaque strings. Every backend must make ``take`` and
    ``increment_with_expiry`` atomic, including across processes when the
    backend is shared, and must raise ``StoreError`` rather than report a
    missing key when the backend itself fails.
    """

    async def put(self, key: str, value: str, ttl: Optional[int]) -> None:
        """Overwrite ``key``; ``ttl=None`` stores it without expiry."""

    async def get(self, key: str) -> Optional[str]:
        """Return the live value or ``None`` when absent or expired."""

    async def take(self, key: str) -> Optional[str]:
        """Atomically fetch and delete ``key``."""

    async def increment_with_expiry(self, key: str, ttl: int) -> int:
        """Atomically increment a counter; expiry is set only on creation."""

    async def delete(self, key: str) -> None:
        ...

    async def ping(self) -> None:
        ...

    async def close(self) -> None:
        ...


def session_key(nonce: str) -> str:
    return f"session:{nonce}"


def rate_limit_key(email: str) -> str:
    # Hashed so raw addresses never land in the backend
    digest = hashlib.sha256(email.encode("utf-8")).hexdigest()
    return f"ratelimit:{digest}"


def discovery_key(domain: str) -> str:
    return f"cache:discovery:{domain}"


def keys_key(alg: str) -> str:
    return f"keys:{alg}"


def key_lock_key(alg: str) -> str:
    return f"lock:keys:{alg}"


def validate_ttl(ttl: Optional[int]) -> Optional[int]:
    if ttl is None:
        return None
    ttl = int(ttl)
    if ttl < 1:
        raise ValueError("ttl must be at least one second")
    return ttl


__all__ = [
    "Store",
    "session_key",
    "rate_limit_key",
    "discovery_key",
    "keys_key",
    "key_lock_key",
    "validate_ttl",
]
