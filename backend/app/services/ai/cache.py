"""
Content-addressed cache of validated AI responses.

Key format:
    ai_response:{request_type}:{provider}:{tier}:{sha256(normalized prompt)[:16]}

The prompt is normalized (strip, lowercase, collapsed whitespace) before
hashing. Entries are CacheEntry envelopes stored with SETEX (default TTL 1h).

Writes are refused (return False, no error) when the response confidence is
below 0.7 or the serialized entry is larger than 10 MB. Expired or malformed
entries are evicted on read and count as misses.

Counters (hits, misses, writes, write_failures, errors) are kept in the
``ai_cache_stats`` Redis hash and mirrored to Prometheus. Redis errors are
logged and counted; they never fail the caller's request.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.cache import get_cache_circuit_breaker, get_redis_client, hash_content
from app.core.circuit_breaker import CircuitBreakerOpenError
from app.core.logging import get_logger
from app.core.metrics import record_ai_cache_hit, record_ai_cache_miss, record_ai_cache_write
from app.services.ai.schema import CacheEntry

logger = get_logger(__name__)

KEY_PREFIX = "ai_response:"
STATS_KEY = "ai_cache_stats"
STATS_TTL_SECONDS = 24 * 60 * 60
DEFAULT_TTL_SECONDS = 3600
MIN_CACHE_CONFIDENCE = 0.7
MAX_CACHE_BYTES = 10 * 1024 * 1024
STAT_FIELDS = ("hits", "misses", "writes", "write_failures", "errors")

CacheFailure = (RedisError, CircuitBreakerOpenError)


def normalize_prompt(prompt: str) -> str:
    return " ".join(prompt.strip().lower().split())


class ResponseCache:
    def __init__(self, redis_client: Optional[Redis] = None, ttl: int = DEFAULT_TTL_SECONDS):
        self._redis_client = redis_client
        self.ttl = ttl

    @property
    def redis_client(self) -> Optional[Redis]:
        return self._redis_client or get_redis_client()

    async def _execute(self, func, *args, **kwargs) -> Any:
        breaker = get_cache_circuit_breaker()
        if breaker is None:
            return await func(*args, **kwargs)
        return await breaker.call_async(func, *args, **kwargs)

    @staticmethod
    def build_key(request_type: str, provider: str, tier: str, prompt: str) -> str:
        digest = hash_content(normalize_prompt(prompt))[:16]
        return f"{KEY_PREFIX}{request_type}:{provider}:{tier}:{digest}"

    async def _incr_stat(self, field: str) -> None:
        client = self.redis_client
        if not client:
            return
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.hincrby(STATS_KEY, field, 1)
                pipe.expire(STATS_KEY, STATS_TTL_SECONDS)
                await pipe.execute()
        except RedisError as e:
            logger.warning("ai_cache_stats_failed", field=field, error=str(e), error_type=type(e).__name__)

    async def _evict(self, key: str) -> None:
        try:
            await self._execute(self.redis_client.delete, key)
        except CacheFailure as e:
            logger.warning("ai_cache_evict_failed", key=key, error=str(e), error_type=type(e).__name__)

    async def get(self, key: str, request_type: str = "analysis") -> Optional[Dict[str, Any]]:
        """Cached payload for ``key``, or None on miss."""
        client = self.redis_client
        if not client:
            return None

        try:
            raw = await self._execute(client.get, key)
        except CacheFailure as e:
            logger.error("ai_cache_read_failed", key=key, error=str(e), error_type=type(e).__name__)
            await self._incr_stat("errors")
            return None

        if raw is None:
            record_ai_cache_miss(request_type)
            await self._incr_stat("misses")
            return None

        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("ai_cache_entry_invalid", key=key)
            entry = None

        if entry is None or entry.is_expired():
            await self._evict(key)
            record_ai_cache_miss(request_type)
            await self._incr_stat("misses")
            return None

        record_ai_cache_hit(request_type)
        await self._incr_stat("hits")
        logger.info("ai_cache_hit", key=key)
        return entry.payload

    async def set(
        self,
        key: str,
        payload: Dict[str, Any],
        confidence: float,
        ttl: Optional[int] = None,
    ) -> bool:
        """
        Store ``payload`` if it is eligible.

        Returns:
            True when written, False when refused or on Redis failure
        """
        if confidence < MIN_CACHE_CONFIDENCE:
            record_ai_cache_write("refused")
            logger.debug("ai_cache_write_refused", key=key, reason="low_confidence", confidence=confidence)
            return False

        client = self.redis_client
        if not client:
            return False

        ttl = ttl or self.ttl
        now = datetime.now(timezone.utc)
        entry = CacheEntry(
            key=key,
            payload=payload,
            cached_at=now,
            expires_at=now + timedelta(seconds=ttl),
            confidence=min(confidence, 1.0),
        )
        serialized = entry.model_dump_json()
        if len(serialized.encode("utf-8")) > MAX_CACHE_BYTES:
            record_ai_cache_write("refused")
            logger.warning("ai_cache_write_refused", key=key, reason="too_large", size=len(serialized))
            return False

        try:
            written = await self._execute(client.setex, key, ttl, serialized)
        except CacheFailure as e:
            logger.error("ai_cache_write_failed", key=key, error=str(e), error_type=type(e).__name__)
            record_ai_cache_write("error")
            await self._incr_stat("errors")
            return False

        if not written:
            record_ai_cache_write("failed")
            await self._incr_stat("write_failures")
            return False

        record_ai_cache_write("success")
        await self._incr_stat("writes")
        logger.info("ai_cache_written", key=key, ttl=ttl)
        return True

    async def _cache_keys(self):
        async for key in self.redis_client.scan_iter(match=f"{KEY_PREFIX}*"):
            yield key

    async def stats(self) -> Dict[str, Any]:
        client = self.redis_client
        counters = {field: 0 for field in STAT_FIELDS}
        if not client:
            return {**counters, "hit_rate": 0.0, "total_keys": 0}

        try:
            stored = await client.hgetall(STATS_KEY)
            total_keys = 0
            async for _ in self._cache_keys():
                total_keys += 1
        except RedisError as e:
            logger.error("ai_cache_stats_read_failed", error=str(e), error_type=type(e).__name__)
            return {**counters, "hit_rate": 0.0, "total_keys": 0}

        for field in STAT_FIELDS:
            counters[field] = int(stored.get(field, 0))
        lookups = counters["hits"] + counters["misses"]
        return {
            **counters,
            "hit_rate": round(counters["hits"] / lookups, 4) if lookups else 0.0,
            "total_keys": total_keys,
        }

    async def clear_expired(self) -> int:
        """Evict entries whose envelope is expired or unreadable."""
        client = self.redis_client
        if not client:
            return 0

        removed = 0
        now = datetime.now(timezone.utc)
        try:
            async for key in self._cache_keys():
                raw = await client.get(key)
                if raw is None:
                    continue
                try:
                    expired = CacheEntry.model_validate_json(raw).is_expired(now)
                except ValidationError:
                    expired = True
                if expired:
                    removed += await client.delete(key)
        except RedisError as e:
            logger.error("ai_cache_clear_expired_failed", error=str(e), error_type=type(e).__name__)

        logger.info("ai_cache_expired_cleared", removed=removed)
        return removed

    async def clear_all(self) -> int:
        client = self.redis_client
        if not client:
            return 0

        removed = 0
        try:
            async for key in self._cache_keys():
                removed += await client.delete(key)
            await client.delete(STATS_KEY)
        except RedisError as e:
            logger.error("ai_cache_clear_failed", error=str(e), error_type=type(e).__name__)

        logger.info("ai_cache_cleared", removed=removed)
        return removed

