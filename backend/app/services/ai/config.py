"""
Provider and tier configuration loaded from environment variables.

Environment configuration (per provider, NAME in OPENROUTER/OPENAI/ANTHROPIC/GOOGLE):
- {NAME}_API_KEY: credential; providers without one are left out of the fallback list
- {NAME}_BASE_URL: API base URL
- {NAME}_TIER1_MODEL / _TIER2_MODEL / _TIER3_MODEL: model per tier
- {NAME}_REQUESTS_PER_MINUTE / {NAME}_TOKENS_PER_MINUTE: per-minute quotas

Engine-wide:
- AI_PROVIDER_FALLBACK_ORDER: comma separated (default: openrouter,openai,anthropic,google)
- AI_PROVIDER_MAX_RETRIES (default: 3), AI_PROVIDER_RETRY_DELAY_SECONDS (default: 1.0)
- AI_PROVIDER_CONNECT_TIMEOUT_SECONDS (default: 10), AI_PROVIDER_TIMEOUT_SECONDS (default: 60)
- AI_RATE_LIMIT_MAX_WAIT_SECONDS: how long the orchestrator waits for a blocked provider (default: 0)
- AI_CACHE_TTL_SECONDS (default: 3600)
- AI_MONTHLY_BUDGET_LIMIT: monthly provider spend limit in USD (default: 1000)
"""
import os
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from app.core.logging import get_logger
from app.services.ai.schema import ALL_TIERS, Subscription, Tier

logger = get_logger(__name__)

env_path = Path(__file__).resolve().parents[4] / ".env"
if env_path.exists():
    load_dotenv(env_path)

DEFAULT_FALLBACK_ORDER = ["openrouter", "openai", "anthropic", "google"]


class ProviderDescriptor(BaseModel):
    name: str
    wire_format: str = Field(..., description="openai | anthropic | google")
    api_key: Optional[str] = None
    base_url: str
    models: Dict[Tier, str] = Field(default_factory=dict)
    requests_per_minute: int = Field(..., gt=0)
    tokens_per_minute: int = Field(..., gt=0)
    multimodal: bool = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    def model_for_tier(self, tier: Tier) -> Optional[str]:
        """Model for ``tier``, falling back to the closest lower tier the provider serves."""
        if tier in self.models:
            return self.models[tier]
        for lower in tier.lower_tiers():
            if lower in self.models:
                return self.models[lower]
        return None


class TierConfig(BaseModel):
    tier: Tier
    input_price_per_million: float = Field(..., ge=0.0)
    output_price_per_million: float = Field(..., ge=0.0)
    max_output_tokens: int = Field(..., gt=0)
    quality_threshold: Optional[float] = None
    min_budget_units: int = Field(..., ge=0)
    budget_unit_multiplier: float = Field(..., gt=0.0)
    entitled_subscriptions: List[Subscription]


class AISettings(BaseModel):
    providers: Dict[str, ProviderDescriptor]
    tiers: Dict[Tier, TierConfig]
    fallback_order: List[str] = Field(default_factory=lambda: list(DEFAULT_FALLBACK_ORDER))
    max_retries: int = Field(3, ge=0)
    retry_delay_seconds: float = Field(1.0, ge=0.0)
    connect_timeout_seconds: float = Field(10.0, gt=0.0)
    timeout_seconds: float = Field(60.0, gt=0.0)
    rate_limit_max_wait_seconds: float = Field(0.0, ge=0.0)
    cache_ttl_seconds: int = Field(3600, gt=0)
    monthly_budget_limit: float = Field(1000.0, gt=0.0)

    @model_validator(mode="after")
    def check_tiers(self) -> "AISettings":
        missing = [t.value for t in ALL_TIERS if t not in self.tiers]
        if missing:
            raise ValueError(f"missing tier configuration: {missing}")
        # Same token volume must always cost strictly more one tier up.
        for lower, higher in zip(ALL_TIERS, ALL_TIERS[1:]):
            lo, hi = self.tiers[lower], self.tiers[higher]
            if not (
                hi.input_price_per_million > lo.input_price_per_million
                and hi.output_price_per_million > lo.output_price_per_million
            ):
                raise ValueError(f"{higher.value} prices must exceed {lower.value} prices")
        unknown = [name for name in self.fallback_order if name not in self.providers]
        if unknown:
            raise ValueError(f"unknown providers in fallback order: {unknown}")
        return self

    def tier(self, tier: Tier) -> TierConfig:
        return self.tiers[tier]

    @property
    def top_tier(self) -> Tier:
        return ALL_TIERS[-1]

    def fallback_providers(self) -> List[ProviderDescriptor]:
        """Providers in fallback order, filtered to those with credentials."""
        return [
            self.providers[name]
            for name in self.fallback_order
            if self.providers[name].has_credentials
        ]


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)) or default)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)) or default)


def _provider(
    name: str,
    wire_format: str,
    base_url: str,
    models: Dict[Tier, str],
    requests_per_minute: int,
    tokens_per_minute: int,
    multimodal: bool,
    api_key_fallback: Optional[str] = None,
) -> ProviderDescriptor:
    prefix = name.upper()
    resolved_models = {}
    for tier in ALL_TIERS:
        model = os.getenv(f"{prefix}_{tier.value.upper()}_MODEL") or models.get(tier)
        if model:
            resolved_models[tier] = model
    return ProviderDescriptor(
        name=name,
        wire_format=wire_format,
        api_key=os.getenv(f"{prefix}_API_KEY") or api_key_fallback,
        base_url=os.getenv(f"{prefix}_BASE_URL", base_url),
        models=resolved_models,
        requests_per_minute=_env_int(f"{prefix}_REQUESTS_PER_MINUTE", requests_per_minute),
        tokens_per_minute=_env_int(f"{prefix}_TOKENS_PER_MINUTE", tokens_per_minute),
        multimodal=multimodal,
    )


def default_tiers() -> Dict[Tier, TierConfig]:
    paid = [Subscription.PRO, Subscription.ENTERPRISE]
    return {
        Tier.TIER1: TierConfig(
            tier=Tier.TIER1,
            input_price_per_million=0.15,
            output_price_per_million=0.15,
            max_output_tokens=1000,
            quality_threshold=7.5,
            min_budget_units=10,
            budget_unit_multiplier=1.0,
            entitled_subscriptions=[Subscription.FREE, *paid],
        ),
        Tier.TIER2: TierConfig(
            tier=Tier.TIER2,
            input_price_per_million=0.39,
            output_price_per_million=0.39,
            max_output_tokens=2000,
            quality_threshold=8.5,
            min_budget_units=50,
            budget_unit_multiplier=2.6,
            entitled_subscriptions=paid,
        ),
        Tier.TIER3: TierConfig(
            tier=Tier.TIER3,
            input_price_per_million=0.40,
            output_price_per_million=1.60,
            max_output_tokens=3000,
            quality_threshold=None,
            min_budget_units=100,
            budget_unit_multiplier=10.0,
            entitled_subscriptions=[Subscription.ENTERPRISE],
        ),
    }


def load_settings() -> AISettings:
    """Build settings from the environment."""
    openrouter_key = os.getenv("OPENROUTER_API_KEY")
    providers = {
        "openrouter": _provider(
            "openrouter",
            "openai",
            "https://openrouter.ai/api/v1",
            {
                Tier.TIER1: "mistralai/mistral-7b-instruct",
                Tier.TIER2: "meta-llama/llama-3.1-70b-instruct",
                Tier.TIER3: "openai/gpt-4o-mini",
            },
            requests_per_minute=5000,
            tokens_per_minute=500_000,
            multimodal=True,
        ),
        "openai": _provider(
            "openai",
            "openai",
            "https://api.openai.com/v1",
            {Tier.TIER1: "gpt-3.5-turbo", Tier.TIER2: "gpt-4"},
            requests_per_minute=3000,
            tokens_per_minute=250_000,
            multimodal=True,
            api_key_fallback=openrouter_key,
        ),
        "anthropic": _provider(
            "anthropic",
            "anthropic",
            "https://api.anthropic.com/v1",
            {Tier.TIER1: "claude-3-haiku-20240307", Tier.TIER2: "claude-3-opus-20240229"},
            requests_per_minute=1000,
            tokens_per_minute=200_000,
            multimodal=False,
            api_key_fallback=openrouter_key,
        ),
        "google": _provider(
            "google",
            "google",
            "https://generativelanguage.googleapis.com/v1",
            {Tier.TIER1: "gemini-pro", Tier.TIER2: "gemini-pro"},
            requests_per_minute=1500,
            tokens_per_minute=300_000,
            multimodal=False,
        ),
    }

    order_env = os.getenv("AI_PROVIDER_FALLBACK_ORDER")
    fallback_order = (
        [name.strip() for name in order_env.split(",") if name.strip()]
        if order_env
        else list(DEFAULT_FALLBACK_ORDER)
    )

    settings = AISettings(
        providers=providers,
        tiers=default_tiers(),
        fallback_order=fallback_order,
        max_retries=_env_int("AI_PROVIDER_MAX_RETRIES", 3),
        retry_delay_seconds=_env_float("AI_PROVIDER_RETRY_DELAY_SECONDS", 1.0),
        connect_timeout_seconds=_env_float("AI_PROVIDER_CONNECT_TIMEOUT_SECONDS", 10.0),
        timeout_seconds=_env_float("AI_PROVIDER_TIMEOUT_SECONDS", 60.0),
        rate_limit_max_wait_seconds=_env_float("AI_RATE_LIMIT_MAX_WAIT_SECONDS", 0.0),
        cache_ttl_seconds=_env_int("AI_CACHE_TTL_SECONDS", 3600),
        monthly_budget_limit=_env_float("AI_MONTHLY_BUDGET_LIMIT", 1000.0),
    )

    logger.info(
        "ai_settings_loaded",
        fallback_order=settings.fallback_order,
        providers_with_credentials=[p.name for p in settings.fallback_providers()],
    )
    return settings


_settings: Optional[AISettings] = None


def get_settings() -> AISettings:
    """Global settings accessor."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next access re-reads the environment."""
    global _settings
    _settings = None
