import redis.asyncio as redis
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Request

logger = logging.getLogger(__name__)


def create_redis(redis_url: str) -> redis.Redis:
    # Create Redis client with connection pooling
    return redis.Redis.from_url(
        redis_url,
        decode_responses=True,  # Better for JSON handling
        max_connections=10,     # Maximum number of connections in the pool
        socket_timeout=5,       # Socket timeout in seconds
        socket_connect_timeout=2,  # Socket connect timeout
        retry_on_timeout=True,  # Retry on timeout
        health_check_interval=30  # Seconds between health checks
    )


# Test connection at startup
async def test_redis_connection(client) -> bool:
    try:
        await client.ping()
        logger.info("Redis connection successful")
        return True
    except redis.RedisError as e:
        logger.error(f"Redis connection error: {e}")
        # Don't raise, let the app start anyway
        return False


def client_ip(request: Request, trust_proxy: bool = False) -> Optional[str]:
    """Client address, taken from the first X-Forwarded-For hop behind a proxy"""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset: int


class RateLimiter:
    """Fixed window request counter per client, kept in Redis"""

    def __init__(self, client, window_ms: int = 60000, max_requests: int = 10, prefix: str = "ratelimit"):
        self.client = client
        self.window = max(1, math.ceil(window_ms / 1000))
        self.max_requests = max_requests
        self.prefix = prefix

    async def hit(self, identifier: str) -> RateLimitResult:
        window_start = int(time.time()) // self.window
        key = f"{self.prefix}:{identifier}:{window_start}"
        reset = (window_start + 1) * self.window - int(time.time())

        try:
            count = await self.client.incr(key)
            if count == 1:
                await self.client.expire(key, self.window)
        except redis.RedisError as e:
            # Fail open: a Redis outage should not take the board down
            logger.warning(f"Rate limiter unavailable, allowing request: {e}")
            return RateLimitResult(True, self.max_requests, self.max_requests, reset)

        return RateLimitResult(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset=reset
        )


class JsonCache:
    """Small JSON cache on top of Redis; misses and Redis errors both return None"""

    def __init__(self, client, prefix: str = "cache"):
        self.client = client
        self.prefix = prefix

    async def get(self, key: str) -> Optional[Any]:
        try:
            cached = await self.client.get(f"{self.prefix}:{key}")
        except redis.RedisError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if not cached:
            return None
        try:
            return json.loads(cached)
        except json.JSONDecodeError:
            logger.warning(f"Failed to decode cached {key} data")
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.client.set(f"{self.prefix}:{key}", json.dumps(value), ex=ttl)
        except redis.RedisError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(f"{self.prefix}:{key}")
        except redis.RedisError as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
