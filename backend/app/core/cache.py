"""
Shared Redis connection pool.

Redis is the cross-worker store for provider rate-limit counters, the AI
response cache and its statistics, escalation history, and usage/budget
records.

Pool settings:
- Max connections: 20
- Connection / socket timeout: 5 seconds
"""
import hashlib
import os
from typing import Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from app.core.circuit_breaker import CircuitBreaker
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_pool: Optional[Redis] = None
_cache_circuit_breaker: Optional[CircuitBreaker] = None


def get_redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://redis:6379")


async def initialize_redis() -> bool:
    """
    Create the Redis pool and verify it with PING.

    Returns:
        True if Redis is reachable, False otherwise (the service then runs
        degraded: no shared cache, rate limiter fails open)
    """
    global _redis_pool, _cache_circuit_breaker

    try:
        redis_url = get_redis_url()
        logger.info("redis_initializing", url=redis_url)

        _redis_pool = aioredis.from_url(
            redis_url,
            max_connections=20,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            decode_responses=True,
        )
        await _redis_pool.ping()

        _cache_circuit_breaker = CircuitBreaker(
            name="redis_cache",
            failure_threshold=0.5,
            time_window_seconds=60,
            open_duration_seconds=30,
            half_open_test_percentage=0.1,
        )

        logger.info("redis_initialized")
        return True

    except Exception as e:
        logger.error(
            "redis_initialization_failed",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        _redis_pool = None
        return False


async def close_redis() -> None:
    global _redis_pool

    if _redis_pool:
        try:
            await _redis_pool.aclose()
            logger.info("redis_closed")
        except Exception as e:
            logger.error("redis_close_failed", error=str(e), exc_info=True)
        finally:
            _redis_pool = None


def get_redis_client() -> Optional[Redis]:
    """Shared Redis client, or None when Redis is not initialized."""
    return _redis_pool


def get_cache_circuit_breaker() -> Optional[CircuitBreaker]:
    return _cache_circuit_breaker


def hash_content(content: str) -> str:
    """SHA-256 hex digest used for content-addressed cache keys."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
