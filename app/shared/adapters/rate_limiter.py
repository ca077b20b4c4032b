"""
Azure Resource Manager Rate Limiting

ARM throttles per principal and per tenant. A reservation refresh fans out
one request per reservation and per subscription, so all management calls
share one token bucket per process.
"""

import asyncio
import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()


class RateLimiter:
    """Token bucket rate limiter for management API calls."""

    def __init__(self, rate_per_second: float):
        self.rate = rate_per_second
        self.tokens = rate_per_second
        self.last_update: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a token is available."""
        async with self._lock:
            now = asyncio.get_running_loop().time()
            if self.last_update is None:
                self.last_update = now
            elapsed = now - self.last_update

            # Refill tokens based on elapsed time
            self.tokens = min(self.rate, self.tokens + elapsed * self.rate)
            self.last_update = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / self.rate
                logger.debug("rate_limit_waiting", wait_seconds=round(wait_time, 3))
                await asyncio.sleep(wait_time)
                self.tokens = 0
                self.last_update = asyncio.get_running_loop().time()
            else:
                self.tokens -= 1


_azure_rate_limiter: RateLimiter | None = None


def get_azure_rate_limiter() -> RateLimiter:
    """Get or create the global management API rate limiter."""
    global _azure_rate_limiter
    if _azure_rate_limiter is None:
        _azure_rate_limiter = RateLimiter(rate_per_second=get_settings().AZURE_RATE_LIMIT_PER_SECOND)
    return _azure_rate_limiter
