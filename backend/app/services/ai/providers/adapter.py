"""
Provider adapter: one vendor's completion endpoint behind ``generate``.

Per call:
1. Pre-flight rate-limit reservation (fails fast with RateLimitExceededError)
2. HTTP POST via httpx (connect timeout 10s, total timeout 60s by default)
3. Response shape validation (content + usage counts); a malformed payload is
   terminal for this provider and is never retried
4. Bounded retry with linear backoff for timeouts, network errors and
   HTTP 429/500/502/503/504
5. Token usage reported back to the rate limiter
"""
import asyncio
import time
from typing import Any, Dict, List, Optional

import httpx

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from app.core.errors import ProviderError, RateLimitExceededError, ResponseValidationError
from app.core.logging import get_logger
from app.core.metrics import (
    record_provider_error,
    record_provider_request,
    record_tokens_and_cost,
)
from app.core.rate_limit import ProviderRateLimiter
from app.core.tracing import get_tracer, set_span_attribute
from app.services.ai.config import AISettings, ProviderDescriptor
from app.services.ai.providers.formats import ProviderFormat, WireRequest, get_provider_format
from app.services.ai.schema import ResponseEnvelope, Tier
from app.services.ai.usage import calculate_cost

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 characters per token)."""
    return len(text) // 4


class ProviderAdapter:
    """Uniform async call contract to one provider."""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        settings: AISettings,
        rate_limiter: ProviderRateLimiter,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.descriptor = descriptor
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.wire: ProviderFormat = get_provider_format(descriptor.wire_format)
        self.max_retries = settings.max_retries
        self.retry_delay = settings.retry_delay_seconds
        self.timeout_seconds = settings.timeout_seconds
        self.connect_timeout_seconds = settings.connect_timeout_seconds
        self._transport = transport

        self.circuit_breaker = CircuitBreaker(
            name=f"ai_provider_{descriptor.name}",
            failure_threshold=0.5,
            time_window_seconds=60,
            open_duration_seconds=30,
            half_open_test_percentage=0.2,
        )

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def available(self) -> bool:
        """Credentials present and circuit not open."""
        return self.descriptor.has_credentials and self.circuit_breaker.is_available()

    async def _send(self, request: WireRequest) -> Dict[str, Any]:
        url = f"{self.descriptor.base_url.rstrip('/')}{request.path}"
        headers = {"Content-Type": "application/json", **request.headers}
        timeout = httpx.Timeout(self.timeout_seconds, connect=self.connect_timeout_seconds)

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await asyncio.wait_for(
                    client.post(url, headers=headers, params=request.params or None, json=request.payload),
                    timeout=self.timeout_seconds,
                )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise ProviderError(f"timeout: {exc!r}", provider=self.name) from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"network error: {exc}", provider=self.name) from exc

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise ProviderError(
                f"HTTP {response.status_code}",
                provider=self.name,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                provider=self.name,
                status_code=response.status_code,
                retryable=False,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise ResponseValidationError("response body is not JSON", provider=self.name, raw_output=response.text[:500]) from exc

    async def generate(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        model: str,
        tier: Tier,
        images: Optional[List[str]] = None,
        system_prompt: Optional[str] = None,
    ) -> ResponseEnvelope:
        """
        Run one completion.

        Raises:
            RateLimitExceededError: quota exhausted for the current minute
            ProviderError: network / timeout / non-2xx after retries
            ResponseValidationError: 2xx response without content or usage
        """
        if not self.descriptor.has_credentials:
            raise ProviderError(f"{self.name} has no API key configured", provider=self.name, retryable=False)

        if images and not self.descriptor.multimodal:
            logger.warning("ai_provider_images_dropped", provider=self.name, image_count=len(images))
            images = None

        estimated = estimate_tokens(prompt + (system_prompt or "")) + max_tokens
        if not await self.rate_limiter.acquire(estimated):
            raise RateLimitExceededError(self.name, self.rate_limiter.seconds_until_reset())

        request = self.wire.build_request(
            self.descriptor,
            model,
            prompt,
            max_tokens,
            temperature,
            images=images,
            system_prompt=system_prompt,
        )

        start = time.time()
        with get_tracer().start_as_current_span("ai.provider.generate"):
            set_span_attribute("ai.provider", self.name)
            set_span_attribute("ai.model", model)
            set_span_attribute("ai.tier", tier.value)

            attempt = 0
            while True:
                attempt += 1
                try:
                    data = await self.circuit_breaker.call_async(self._send, request)
                    completion = self.wire.parse_response(data)
                    break
                except CircuitBreakerOpenError as exc:
                    record_provider_error(self.name, "circuit_open")
                    record_provider_request(self.name, tier.value, "error", time.time() - start)
                    raise ProviderError(str(exc), provider=self.name) from exc
                except ResponseValidationError as exc:
                    exc.provider = self.name
                    record_provider_error(self.name, "validation_error")
                    record_provider_request(self.name, tier.value, "error", time.time() - start)
                    logger.warning("ai_provider_invalid_response", provider=self.name, model=model, error=str(exc))
                    raise
                except ProviderError as exc:
                    record_provider_error(self.name, "http_error" if exc.status_code else "network_error")
                    if not exc.retryable or attempt > self.max_retries:
                        record_provider_request(self.name, tier.value, "error", time.time() - start)
                        logger.warning(
                            "ai_provider_failed",
                            provider=self.name,
                            model=model,
                            attempts=attempt,
                            status_code=exc.status_code,
                            retryable=exc.retryable,
                            error=str(exc),
                        )
                        raise
                    delay = self.retry_delay * attempt
                    logger.info(
                        "ai_provider_retry",
                        provider=self.name,
                        attempt=attempt,
                        delay_seconds=delay,
                        error=str(exc),
                    )
                    await asyncio.sleep(delay)

        duration = time.time() - start
        cost = calculate_cost(self.settings.tier(tier), completion.input_tokens, completion.output_tokens)

        await self.rate_limiter.reconcile(estimated, completion.input_tokens + completion.output_tokens)
        record_provider_request(self.name, tier.value, "success", duration)
        record_tokens_and_cost(self.name, tier.value, completion.input_tokens, completion.output_tokens, cost)

        logger.info(
            "ai_provider_completed",
            provider=self.name,
            model=model,
            tier=tier.value,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            cost=cost,
            attempts=attempt,
            latency_ms=int(duration * 1000),
        )

        return ResponseEnvelope(
            content=completion.content,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            model=model,
            provider=self.name,
            finish_reason=completion.finish_reason,
            tier=tier,
            cost=cost,
            latency_ms=duration * 1000.0,
        )

    async def health_check(self) -> Dict[str, Any]:
        return {
            "provider": self.name,
            "configured": self.descriptor.has_credentials,
            "available": self.available,
            "multimodal": self.descriptor.multimodal,
            "models": {tier.value: model for tier, model in self.descriptor.models.items()},
            "circuit_breaker": self.circuit_breaker.get_metrics(),
            "rate_limit": await self.rate_limiter.status(),
        }


def build_adapters(
    settings: AISettings,
    redis_client: Any = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, ProviderAdapter]:
    """One adapter (with its own rate limiter) per configured provider."""
    adapters = {}
    for name, descriptor in settings.providers.items():
        limiter = ProviderRateLimiter(
            provider=name,
            requests_per_minute=descriptor.requests_per_minute,
            tokens_per_minute=descriptor.tokens_per_minute,
            redis_client=redis_client,
        )
        adapters[name] = ProviderAdapter(descriptor, settings, limiter, transport=transport)
    return adapters
