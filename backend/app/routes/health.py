"""
Health check endpoints.
"""
from fastapi import APIRouter

from app.core.cache import get_redis_client
from app.core.logging import get_logger
from app.services.ai.engine import get_ai_engine

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    """
    return {
        "status": "ok",
        "message": "API is running"
    }


@router.get("/providers")
async def providers_health():
    """
    Health of every configured AI provider.

    Returns, per provider:
        - configured: whether an API key is present
        - available: configured and circuit breaker not open
        - models: model per tier
        - circuit_breaker: breaker state and recent error rate
        - rate_limit: requests/tokens used in the current minute
    """
    engine = get_ai_engine()
    providers = await engine.orchestrator.provider_status()
    available = [p["provider"] for p in providers if p["available"]]

    if not available:
        status = "unavailable"
        message = "No AI provider is available"
    elif len(available) < len(providers):
        status = "degraded"
        message = f"{len(available)}/{len(providers)} providers available"
    else:
        status = "ok"
        message = "All providers available"

    return {
        "status": status,
        "message": message,
        "redis_connected": get_redis_client() is not None,
        "fallback_order": [adapter.name for adapter in engine.orchestrator.fallback_list()],
        "providers": providers,
    }
