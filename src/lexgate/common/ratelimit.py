"""Fixed-window rate limiting over the shared store."""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass

import structlog

from .stores import SharedStore

LOGGER = structlog.get_logger("lexgate.ratelimit")


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_seconds: int


class RateLimitPresets:
    """Defaults for token issuance (STRICT) and content serving (RELAXED)."""

    STRICT = RateLimitPolicy(max_requests=10, window_seconds=60)
    RELAXED = RateLimitPolicy(max_requests=300, window_seconds=60)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def retry_after(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at - now))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


class RateLimiter:
    """Counts requests per client identity in ``floor(now / window)`` buckets.

    The increment is delegated to the store so concurrent gateway instances
    share one atomic counter. Store errors and timeouts fail open.
    """

    def __init__(self, store: SharedStore, timeout_seconds: float = 0.25) -> None:
        self._store = store
        self._timeout = timeout_seconds

    async def check(self, identity: str, window_seconds: int, max_requests: int) -> RateLimitDecision:
        """
        Record one request for ``identity`` and decide whether it is allowed.

        Args:
            identity: Client identity (usually the client IP)
            window_seconds: Window length; also the counter TTL
            max_requests: Requests allowed per window

        Returns:
            RateLimitDecision with the post-increment remaining quota
        """
        window_seconds = max(1, int(window_seconds))
        now = time.time()
        window_id = int(now // window_seconds)
        reset_at = float((window_id + 1) * window_seconds)
        rate_key = f"ratelimit:{identity}:{window_id}"

        try:
            current = await asyncio.wait_for(self._store.incr(rate_key, window_seconds), timeout=self._timeout)
        except asyncio.TimeoutError:
            LOGGER.error("rate_limiter_timeout_failing_open", identity=identity, timeout=self._timeout)
            return RateLimitDecision(allowed=True, limit=max_requests, remaining=max_requests, reset_at=reset_at)
        except Exception as exc:
            # Fail open on store errors to avoid cascading failures
            LOGGER.error("rate_limiter_error_failing_open", identity=identity, error=str(exc))
            return RateLimitDecision(allowed=True, limit=max_requests, remaining=max_requests, reset_at=reset_at)

        allowed = current <= max_requests
        if not allowed:
            LOGGER.warning(
                "rate_limit_exceeded",
                identity=identity,
                current=current,
                limit=max_requests,
                window=window_seconds,
            )
        return RateLimitDecision(
            allowed=allowed,
            limit=max_requests,
            remaining=max(0, max_requests - current),
            reset_at=reset_at,
        )

    async def check_policy(self, identity: str, policy: RateLimitPolicy) -> RateLimitDecision:
        return await self.check(identity, policy.window_seconds, policy.max_requests)
