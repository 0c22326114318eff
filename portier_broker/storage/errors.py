from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when a storage backend is unreachable or fails mid-operation.

    Always transient from the caller's point of view; never a stand-in for
    "key absent".
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["StoreError"]
