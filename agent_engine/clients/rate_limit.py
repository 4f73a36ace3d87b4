"""Request rate limiting for model calls."""

import asyncio
import time

from limits import RateLimitItem, parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)

MIN_WAIT_SECONDS = 0.05


class ModelRateLimiter:
    """Moving-window limiter applied before every model turn.

    A hit over the limit waits for the window to reset rather than failing.
    """

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int | None = None):
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute") if tokens_per_minute else None

    async def acquire(self, identifier: str, estimated_tokens: int = 0) -> None:
        """Wait until a request for ``identifier`` is within limits and record it."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        await self._hit(self.request_limit, identifier, "Request")

        if self.token_limit is not None and estimated_tokens > 0:
            # A single request larger than the whole window could never pass
            cost = min(estimated_tokens, self.token_limit.amount)
            await self._hit(self.token_limit, f"{identifier}_tokens", "Token", cost)

    async def _hit(self, limit: RateLimitItem, identifier: str, kind: str, cost: int = 1) -> None:
        while not self.limiter.hit(limit, identifier, cost=cost):
            window_stats = self.limiter.get_window_stats(limit, identifier)
            wait_time = max(MIN_WAIT_SECONDS, window_stats.reset_time - time.time())
            logger.warning(f"{kind} rate limit exceeded for {identifier}, waiting {wait_time:.2f}s")
            await asyncio.sleep(wait_time)
