from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import redis

from ComplianceBackend.errors import RateLimitedError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    wait_seconds: int = 0


class UploadRateLimiter(Protocol):
    def check(self, user_id: str) -> RateLimitDecision: ...


# Sliding-window limit on document uploads per user, stored as a Redis sorted set
class RedisUploadRateLimiter:
    def __init__(self, redis_url: str, *, max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._client = redis.from_url(redis_url, decode_responses=True)

    def check(self, user_id: str) -> RateLimitDecision:
        key = f"document_upload_rate:{user_id}"
        now_ts = datetime.now(timezone.utc).timestamp()
        min_ts = now_ts - self.window_seconds  # anything older is outside the window

        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.zremrangebyscore(key, 0, min_ts)
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)  # oldest hit tells us when a slot frees up
            pipe.expire(key, self.window_seconds + 5)
            _, count, oldest, _ = pipe.execute()

            if int(count) >= self.max_requests:
                if not oldest:
                    return RateLimitDecision(allowed=False, wait_seconds=self.window_seconds)
                oldest_ts = float(oldest[0][1])
                wait_s = max(0, int((oldest_ts + self.window_seconds) - now_ts))
                return RateLimitDecision(allowed=False, wait_seconds=wait_s)

            self._client.zadd(key, {str(now_ts): now_ts})
            self._client.expire(key, self.window_seconds + 5)
            return RateLimitDecision(allowed=True, wait_seconds=0)
        # Redis down/unreachable: fail open
        except redis.RedisError as e:
            logger.warning("rate_limit.unavailable: user_id=%s error=%s", user_id, e)
            return RateLimitDecision(allowed=True, wait_seconds=0)


# Used when no Redis is configured
class NoopRateLimiter:
    def check(self, user_id: str) -> RateLimitDecision:
        return RateLimitDecision(allowed=True, wait_seconds=0)


def enforce_rate_limit(limiter: UploadRateLimiter, user_id: str) -> None:
    decision = limiter.check(user_id)
    if decision.allowed:
        return
    raise RateLimitedError(
        f"Too many upload requests. Please wait {decision.wait_seconds} seconds before trying again.",
        details={"retryAfterSeconds": decision.wait_seconds},
    )


_singleton: Optional[UploadRateLimiter] = None


def get_upload_rate_limiter() -> UploadRateLimiter:
    global _singleton
    if _singleton is not None:
        return _singleton

    redis_url = os.getenv("REDIS_URL") or os.getenv("CELERY_BROKER_URL")
    if not redis_url:
        logger.info("rate_limit.disabled: REDIS_URL is not set")
        _singleton = NoopRateLimiter()
    else:
        _singleton = RedisUploadRateLimiter(redis_url=redis_url)
    return _singleton


def reset_upload_rate_limiter() -> None:
    global _singleton
    _singleton = None
