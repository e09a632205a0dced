"""Provider adapters and their wire formats."""
from app.services.ai.providers.adapter import ProviderAdapter, build_adapters, estimate_tokens
from app.services.ai.providers.formats import PROVIDER_FORMATS, get_provider_format

__all__ = [
    "PROVIDER_FORMATS",
    "ProviderAdapter",
    "build_adapters",
    "estimate_tokens",
    "get_provider_format",
]
