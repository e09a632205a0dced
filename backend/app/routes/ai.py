"""
AI endpoints.

POST /ai/analyze  analyze detected spreadsheet issues
POST /ai/chat     answer a chat message

Engine failures map to HTTP status codes:
- authorization_error  -> 403
- insufficient_budget  -> 402
- validation_error     -> 502
- provider_error       -> 502
- all_providers_failed -> 503
"""
from fastapi import APIRouter, HTTPException

from app.core.logging import get_logger, set_caller_id
from app.models.responses import AnalyzeRequest, ChatRequest
from app.services.ai.engine import get_ai_engine
from app.services.ai.schema import AnalysisOutcome, ChatOutcome, Failure

logger = get_logger(__name__)

router = APIRouter()

FAILURE_STATUS_CODES = {
    "authorization_error": 403,
    "insufficient_budget": 402,
    "validation_error": 502,
    "provider_error": 502,
    "all_providers_failed": 503,
}


def raise_for_failure(failure: Failure) -> None:
    status_code = FAILURE_STATUS_CODES.get(failure.kind, 500)
    raise HTTPException(
        status_code=status_code,
        detail={"kind": failure.kind, "message": failure.message, "details": failure.details},
    )


@router.post("/analyze", response_model=AnalysisOutcome)
async def analyze(request: AnalyzeRequest):
    """
    Analyze issues detected in a file.

    The tier is picked by complexity and entitlement unless given explicitly;
    an explicit tier the caller cannot use is rejected (403/402).
    """
    set_caller_id(request.caller.id)
    result = await get_ai_engine().analyze(
        request.issues,
        request.metadata,
        request.tier,
        request.caller,
        images=request.images,
    )
    if not result.ok:
        raise_for_failure(result)
    return result.value


@router.post("/chat", response_model=ChatOutcome)
async def chat(request: ChatRequest):
    """Answer a chat message, with optional file context and history."""
    set_caller_id(request.caller.id)
    result = await get_ai_engine().chat(request.message, request.context, request.caller)
    if not result.ok:
        raise_for_failure(result)
    return result.value
