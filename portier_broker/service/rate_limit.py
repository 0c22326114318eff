from __future__ import annotations

from dataclasses import dataclass

from portier_broker.config import LimitConfig
from portier_broker.logging import email_hash, get_logger
from portier_broker.storage.base import Store, rate_limit_key

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int = 0


class RateLimiter:
    """Fixed-window limiter: ``limit.count`` attempts per email per window.

    The window starts at the first attempt and ends when the counter's TTL
    expires, so this is a bucket rather than a sliding window.
    """

    def __init__(self, store: Store, limit: LimitConfig) -> None:
        self.store = store
        self.limit = limit

    async def check_and_increment(self, email: str) -> RateLimitDecision:
        count = await self.store.increment_with_expiry(
            rate_limit_key(email), self.limit.window_seconds
        )
        if count > self.limit.count:
            logger.info(
                "auth_rate_limited",
                subject=email_hash(email),
                count=count,
                limit=self.limit.count,
            )
            return RateLimitDecision(
                allowed=False,
                count=count,
                limit=self.limit.count,
                retry_after=self.limit.window_seconds,
            )
        return RateLimitDecision(allowed=True, count=count, limit=self.limit.count)
