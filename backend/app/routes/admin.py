"""
Admin endpoints for the AI engine.

GET    /admin/ai-cache/stats
POST   /admin/ai-cache/clear-expired
DELETE /admin/ai-cache
GET    /admin/escalations/stats
GET    /admin/usage/monthly
GET    /admin/quality/summary
"""
from fastapi import APIRouter

from app.core.logging import get_logger
from app.services.ai.engine import get_ai_engine

logger = get_logger(__name__)

router = APIRouter()


@router.get("/ai-cache/stats")
async def ai_cache_stats():
    """Hit/miss/write counters, hit rate and number of cached responses."""
    return await get_ai_engine().cache.stats()


@router.post("/ai-cache/clear-expired")
async def ai_cache_clear_expired():
    """
    Remove expired or unreadable cache entries.

    Security: Should require admin authentication in production.
    """
    removed = await get_ai_engine().cache.clear_expired()
    logger.info("admin_ai_cache_clear_expired", removed=removed)
    return {"status": "ok", "removed": removed}


@router.delete("/ai-cache")
async def ai_cache_clear():
    """Remove every cached AI response and reset the counters."""
    removed = await get_ai_engine().cache.clear_all()
    logger.warning("admin_ai_cache_cleared", removed=removed)
    return {"status": "ok", "removed": removed}


@router.get("/escalations/stats")
async def escalation_stats():
    """Escalation outcomes and suggested quality thresholds."""
    controller = get_ai_engine().escalation
    return {
        "statistics": await controller.statistics(),
        "thresholds": await controller.recommend_thresholds(),
    }


@router.get("/usage/monthly")
async def monthly_usage():
    """Provider spend for the current month against the configured limit."""
    return await get_ai_engine().accountant.monthly_stats()


@router.get("/quality/summary")
async def quality_summary():
    """Averages, score distribution and recurring weaknesses over recent judge verdicts."""
    return get_ai_engine().quality_summary()
