from reader_ai.ratelimit.limiter import RateLimitDecision, RateLimiter, build_rate_limiter, sweep_periodically
from reader_ai.ratelimit.store import InMemoryRateLimitStore, RateLimitEntry, RateLimitStore, UpstashRedisStore

__all__ = [
    "InMemoryRateLimitStore",
    "RateLimitDecision",
    "RateLimitEntry",
    "RateLimitStore",
    "RateLimiter",
    "UpstashRedisStore",
    "build_rate_limiter",
    "sweep_periodically",
]
