"""
Per-provider rate limiting with Redis fixed one-minute buckets.

Each provider has two counters per minute bucket:
- ai_rate_limit:{provider}:{minute}         requests
- ai_rate_limit:{provider}:tokens:{minute}  tokens

Counters are updated with INCRBY inside a MULTI/EXEC pipeline and expire
when the minute ends. ``acquire`` increments first and checks the returned
values, rolling back its own increment when a quota would be exceeded, so
concurrent workers sharing a provider quota can never be admitted past it.

Without Redis the limiter fails open (requests are allowed and a warning is
logged), matching the rest of the service's degraded mode.
"""
import time
from typing import Callable, Dict, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.cache import get_redis_client
from app.core.logging import get_logger
from app.core.metrics import record_rate_limit_blocked

logger = get_logger(__name__)

BUCKET_SECONDS = 60


class ProviderRateLimiter:
    """Request and token quotas for one provider."""

    def __init__(
        self,
        provider: str,
        requests_per_minute: int,
        tokens_per_minute: int,
        redis_client: Optional[Redis] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.requests_per_minute = requests_per_minute
        self.tokens_per_minute = tokens_per_minute
        self._redis_client = redis_client
        self._clock = clock

    @property
    def redis_client(self) -> Optional[Redis]:
        return self._redis_client or get_redis_client()

    def _bucket(self) -> int:
        return int(self._clock() // BUCKET_SECONDS)

    def _keys(self, bucket: int) -> Tuple[str, str]:
        return (
            f"ai_rate_limit:{self.provider}:{bucket}",
            f"ai_rate_limit:{self.provider}:tokens:{bucket}",
        )

    def seconds_until_reset(self) -> float:
        now = self._clock()
        return BUCKET_SECONDS - (now % BUCKET_SECONDS)

    def _bucket_ttl(self, bucket: int) -> int:
        return max(1, int((bucket + 1) * BUCKET_SECONDS - self._clock()))

    async def _counts(self) -> Tuple[int, int]:
        request_key, token_key = self._keys(self._bucket())
        requests, tokens = await self.redis_client.mget(request_key, token_key)
        return int(requests or 0), int(tokens or 0)

    async def can_request(self) -> bool:
        if not self.redis_client:
            return True
        try:
            requests, _ = await self._counts()
        except RedisError as e:
            logger.warning("rate_limit_check_failed", provider=self.provider, error=str(e), error_type=type(e).__name__)
            return True
        return requests < self.requests_per_minute

    async def can_use_tokens(self, tokens: int) -> bool:
        if not self.redis_client:
            return True
        try:
            _, used = await self._counts()
        except RedisError as e:
            logger.warning("rate_limit_check_failed", provider=self.provider, error=str(e), error_type=type(e).__name__)
            return True
        return used + tokens <= self.tokens_per_minute

    async def record(self, tokens_used: int, requests: int = 1, bucket: Optional[int] = None) -> Tuple[int, int]:
        """
        Atomically add to both counters of ``bucket`` (default: the active one).

        Returns:
            (request_count, token_count) after the increment
        """
        client = self.redis_client
        if not client:
            return 0, 0

        if bucket is None:
            bucket = self._bucket()
        request_key, token_key = self._keys(bucket)
        ttl = self._bucket_ttl(bucket)
        async with client.pipeline(transaction=True) as pipe:
            pipe.incrby(request_key, requests)
            pipe.incrby(token_key, tokens_used)
            pipe.expire(request_key, ttl)
            pipe.expire(token_key, ttl)
            request_count, token_count, _, _ = await pipe.execute()
        return int(request_count), int(token_count)

    async def acquire(self, estimated_tokens: int) -> bool:
        """
        Reserve one request and ``estimated_tokens`` tokens in the current bucket.

        Returns:
            True when admitted, False when either quota is exhausted
        """
        if not self.redis_client:
            return True

        # Rollback targets the incremented bucket, even across a minute boundary.
        bucket = self._bucket()
        try:
            request_count, token_count = await self.record(estimated_tokens, requests=1, bucket=bucket)
            if request_count <= self.requests_per_minute and token_count <= self.tokens_per_minute:
                return True
            await self.record(-estimated_tokens, requests=-1, bucket=bucket)
        except RedisError as e:
            logger.warning(
                "rate_limit_acquire_failed",
                provider=self.provider,
                error=str(e),
                error_type=type(e).__name__,
            )
            return True

        record_rate_limit_blocked(self.provider)
        logger.warning(
            "rate_limit_exceeded",
            provider=self.provider,
            requests_per_minute=self.requests_per_minute,
            tokens_per_minute=self.tokens_per_minute,
            reset_in=round(self.seconds_until_reset(), 2),
        )
        return False

    async def reconcile(self, estimated_tokens: int, actual_tokens: int) -> None:
        """Replace a reservation's token estimate with the provider-reported usage."""
        delta = actual_tokens - estimated_tokens
        if delta == 0 or not self.redis_client:
            return
        try:
            await self.record(delta, requests=0)
        except RedisError as e:
            logger.warning("rate_limit_reconcile_failed", provider=self.provider, error=str(e))

    async def wait_time(self) -> float:
        """Seconds until the next bucket when blocked, 0 otherwise."""
        if await self.can_request() and await self.can_use_tokens(1):
            return 0.0
        return self.seconds_until_reset()

    async def status(self) -> Dict[str, object]:
        requests, tokens = 0, 0
        if self.redis_client:
            try:
                requests, tokens = await self._counts()
            except RedisError as e:
                logger.warning("rate_limit_status_failed", provider=self.provider, error=str(e))
        return {
            "provider": self.provider,
            "requests_used": requests,
            "requests_limit": self.requests_per_minute,
            "tokens_used": tokens,
            "tokens_limit": self.tokens_per_minute,
            "reset_in_seconds": round(self.seconds_until_reset(), 2),
        }
