# store_api/rate_limit.py

import logging
import math
import time
import uuid
from dataclasses import dataclass
from typing import Annotated

import redis
from fastapi import Depends, Request, Response
from store_api import settings
from store_api.cache import get_redis
from store_api.purchase_limit import get_client_ip

logger = logging.getLogger(__name__)

RATE_LIMIT_REQUESTS = settings.RATE_LIMIT_REQUESTS
RATE_LIMIT_WINDOW_SECONDS = settings.RATE_LIMIT_WINDOW_SECONDS


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset: int  # epoch seconds when the oldest counted request leaves the window


class RateLimitExceeded(Exception):
    def __init__(self, result: RateLimitResult):
        super().__init__("Too many requests")
        self.result = result


def rate_limit_key(ip: str) -> str:
    return f"ratelimit_{ip}"


def hit(client: redis.Redis, ip: str, now: float | None = None) -> RateLimitResult:
    """
    Count one request from ip in a sliding window.

    The window is a sorted set of request timestamps; entries older than the
    window are trimmed before counting. Refused requests are not counted.
    Fails open when Redis is unreachable.
    """
    now = time.time() if now is None else now
    key = rate_limit_key(ip)
    try:
        pipe = client.pipeline()
        pipe.zremrangebyscore(key, 0, now - RATE_LIMIT_WINDOW_SECONDS)
        pipe.zcard(key)
        _, count = pipe.execute()

        if count >= RATE_LIMIT_REQUESTS:
            oldest = client.zrange(key, 0, 0, withscores=True)
            started = oldest[0][1] if oldest else now
            return RateLimitResult(
                allowed=False,
                limit=RATE_LIMIT_REQUESTS,
                remaining=0,
                reset=math.ceil(started + RATE_LIMIT_WINDOW_SECONDS),
            )

        pipe = client.pipeline()
        pipe.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        pipe.expire(key, RATE_LIMIT_WINDOW_SECONDS)
        pipe.execute()
        return RateLimitResult(
            allowed=True,
            limit=RATE_LIMIT_REQUESTS,
            remaining=RATE_LIMIT_REQUESTS - count - 1,
            reset=math.ceil(now + RATE_LIMIT_WINDOW_SECONDS),
        )
    except redis.RedisError as e:
        logger.error(f"Error applying rate limit for {ip}: {e}")
        return RateLimitResult(
            allowed=True,
            limit=RATE_LIMIT_REQUESTS,
            remaining=RATE_LIMIT_REQUESTS,
            reset=math.ceil(now + RATE_LIMIT_WINDOW_SECONDS),
        )


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset),
    }


def enforce_rate_limit(
    request: Request,
    response: Response,
    cache: Annotated[redis.Redis, Depends(get_redis)],
) -> None:
    """Route dependency: raises RateLimitExceeded, otherwise adds X-RateLimit-* headers."""
    result = hit(cache, get_client_ip(request))
    if not result.allowed:
        raise RateLimitExceeded(result)
    response.headers.update(rate_limit_headers(result))
