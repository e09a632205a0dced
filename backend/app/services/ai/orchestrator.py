"""
Provider orchestrator: sequential fallback across provider adapters.

Providers are tried one at a time in the configured fallback order (filtered
to providers with credentials). The first success is returned together with
diagnostics for every provider that failed or was skipped before it. When
all of them fail, AllProvidersFailedError carries the last error per provider.
"""
import asyncio
from typing import Dict, List, Optional

from app.core.errors import AIEngineError, AllProvidersFailedError
from app.core.logging import get_logger
from app.services.ai.config import AISettings
from app.services.ai.providers.adapter import ProviderAdapter
from app.services.ai.schema import OrchestratedResponse, ProviderAttempt, Tier

logger = get_logger(__name__)


class ProviderOrchestrator:
    def __init__(self, settings: AISettings, adapters: Dict[str, ProviderAdapter]):
        self.settings = settings
        self.adapters = adapters
        self.max_rate_limit_wait = settings.rate_limit_max_wait_seconds

    def fallback_list(self) -> List[ProviderAdapter]:
        return [
            self.adapters[descriptor.name]
            for descriptor in self.settings.fallback_providers()
            if descriptor.name in self.adapters
        ]

    @property
    def routing_profile(self) -> str:
        """Identity of the fallback list, used to scope cache keys."""
        return ",".join(adapter.name for adapter in self.fallback_list()) or "none"

    async def _wait_for_quota(self, adapter: ProviderAdapter) -> bool:
        """True when the provider can take a request now (after at most the allowed wait)."""
        wait = await adapter.rate_limiter.wait_time()
        if wait <= 0:
            return True
        if wait > self.max_rate_limit_wait:
            return False
        logger.info("ai_orchestrator_waiting_for_quota", provider=adapter.name, wait_seconds=round(wait, 2))
        await asyncio.sleep(wait)
        return True

    async def generate(
        self,
        prompt: str,
        tier: Tier,
        max_tokens: Optional[int] = None,
        temperature: float = 0.3,
        images: Optional[List[str]] = None,
        system_prompt: Optional[str] = None,
    ) -> OrchestratedResponse:
        max_tokens = max_tokens or self.settings.tier(tier).max_output_tokens
        attempts: List[ProviderAttempt] = []
        errors: Dict[str, str] = {}

        for adapter in self.fallback_list():
            model = adapter.descriptor.model_for_tier(tier)
            if not model:
                attempts.append(ProviderAttempt(provider=adapter.name, outcome="skipped", message="no model for tier"))
                continue
            if not adapter.available:
                attempts.append(ProviderAttempt(provider=adapter.name, model=model, outcome="skipped", message="circuit open"))
                errors[adapter.name] = "circuit open"
                continue
            if not await self._wait_for_quota(adapter):
                attempts.append(ProviderAttempt(provider=adapter.name, model=model, outcome="skipped", message="rate limited"))
                errors[adapter.name] = "rate limited"
                continue

            try:
                envelope = await adapter.generate(
                    prompt,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    model=model,
                    tier=tier,
                    images=images,
                    system_prompt=system_prompt,
                )
            except AIEngineError as exc:
                attempts.append(
                    ProviderAttempt(
                        provider=adapter.name,
                        model=model,
                        outcome="failed",
                        error_type=type(exc).__name__,
                        message=str(exc),
                    )
                )
                errors[adapter.name] = str(exc)
                logger.warning(
                    "ai_orchestrator_provider_failed",
                    provider=adapter.name,
                    tier=tier.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue

            if attempts:
                logger.info(
                    "ai_orchestrator_fallback_succeeded",
                    provider=adapter.name,
                    tier=tier.value,
                    failed_providers=[a.provider for a in attempts],
                )
            return OrchestratedResponse(envelope=envelope, provider=adapter.name, tier=tier, attempts=attempts)

        logger.error("ai_orchestrator_all_providers_failed", tier=tier.value, errors=errors)
        raise AllProvidersFailedError(errors)

    async def provider_status(self) -> List[Dict]:
        return [await adapter.health_check() for adapter in self.adapters.values()]
