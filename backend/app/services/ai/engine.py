"""
AI orchestration engine: the caller-facing ``analyze`` and ``chat`` operations.

Pipeline per request:
1. Tier selection: explicit tier is checked strictly (entitlement + budget),
   otherwise the classifier picks one and clamps it to the caller's ceiling
2. Response cache lookup (hits are returned without touching providers or budget)
3. Content call through the provider orchestrator, usage recorded and debited
4. Quality judge on the response
5. Escalation decision; at most one escalated cycle (content + judge) one tier up
6. Eligible results written back to the cache

Every outcome is a Result: Success(outcome) or Failure(kind, message).
"""
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from opentelemetry.trace import StatusCode

from app.core.cache import get_redis_client
from app.core.errors import (
    AIEngineError,
    AllProvidersFailedError,
    InsufficientBudgetError,
)
from app.core.logging import get_logger
from app.core.metrics import record_ai_cache_write, record_quality_score, record_response_flag
from app.core.tracing import get_tracer, record_exception, set_span_attribute, set_span_status
from app.services.ai.cache import ResponseCache
from app.services.ai.config import AISettings, get_settings
from app.services.ai.escalation import (
    EscalationController,
    InMemoryEscalationHistory,
    RedisEscalationHistory,
)
from app.services.ai.judge import QualityJudge, summarize_assessments
from app.services.ai.orchestrator import ProviderOrchestrator
from app.services.ai.prompts import (
    CHAT_SYSTEM_PROMPT,
    StructuredOutputError,
    analysis_question,
    build_analysis_prompt,
    build_chat_prompt,
    parse_analysis,
)
from app.services.ai.providers import build_adapters
from app.services.ai.schema import (
    AIRequest,
    AnalysisOutcome,
    Caller,
    ChatOutcome,
    ContentMetadata,
    DetectedIssue,
    Failure,
    QualityAssessment,
    RequestType,
    Result,
    Success,
    Tier,
    TierRun,
)
from app.services.ai.tiering import TierClassifier
from app.services.ai.usage import RedisUsageStore, UsageAccountant
from app.services.ai.validation import SENSITIVE_FLAGS, review_content

logger = get_logger(__name__)

ANALYSIS_TEMPERATURE = 0.3
CHAT_TEMPERATURE = 0.7
RECENT_ASSESSMENTS = 100


def failure_from_error(exc: AIEngineError) -> Failure:
    details: Dict[str, Any] = {}
    if isinstance(exc, AllProvidersFailedError):
        details["errors"] = exc.errors
    elif isinstance(exc, InsufficientBudgetError):
        details["required_units"] = exc.required_units
        details["available_units"] = exc.available_units
    provider = getattr(exc, "provider", None)
    if provider:
        details["provider"] = provider
    return Failure(kind=exc.kind, message=str(exc), details=details or None)


class AIOrchestrationEngine:
    def __init__(
        self,
        settings: AISettings,
        orchestrator: ProviderOrchestrator,
        accountant: UsageAccountant,
        classifier: TierClassifier,
        judge: QualityJudge,
        escalation: EscalationController,
        cache: ResponseCache,
    ):
        self.settings = settings
        self.orchestrator = orchestrator
        self.accountant = accountant
        self.classifier = classifier
        self.judge = judge
        self.escalation = escalation
        self.cache = cache
        self.recent_assessments: Deque[QualityAssessment] = deque(maxlen=RECENT_ASSESSMENTS)

    # ------------------------------------------------------------------
    # Single tier execution
    # ------------------------------------------------------------------

    async def _run_tier(self, request: AIRequest, tier: Tier, question: str, temperature: float) -> TierRun:
        """One content call at ``tier``, accounted and judged."""
        result = await self.orchestrator.generate(
            request.prompt,
            tier=tier,
            temperature=temperature,
            images=request.images or None,
            system_prompt=request.system_prompt,
        )
        envelope = result.envelope
        usage = await self.accountant.record_usage(envelope, request.caller, request.request_type.value)

        review = review_content(envelope.content)
        if review.flags:
            logger.warning(
                "ai_response_sanitized",
                tier=tier.value,
                provider=envelope.provider,
                flags=review.flags,
            )
            for flag in review.flags:
                record_response_flag(flag)
            envelope = envelope.model_copy(update={"content": review.content})

        summary = envelope.content
        analysis: Dict[str, Any] = {}
        if request.request_type == RequestType.ANALYSIS:
            try:
                parsed = parse_analysis(envelope.content)
            except StructuredOutputError as e:
                logger.warning(
                    "ai_analysis_unstructured",
                    tier=tier.value,
                    provider=envelope.provider,
                    error=str(e),
                )
            else:
                summary = parsed.pop("summary")
                analysis = parsed

        verdict = await self.judge.assess(question, envelope.content, request.context, caller=request.caller)
        assessment = verdict.assessment
        record_quality_score(tier.value, assessment.overall_score)
        if not verdict.is_fallback:
            self.recent_assessments.append(assessment)
        confidence = assessment.confidence if verdict.is_fallback else round(assessment.overall_score / 10.0, 4)

        return TierRun(
            tier=tier,
            envelope=envelope,
            summary=summary,
            analysis=analysis,
            assessment=assessment,
            quality_estimated=verdict.is_fallback,
            confidence=confidence,
            budget_units=usage.budget_units,
            attempts=result.attempts,
            content_flags=review.flags,
        )

    async def _run_with_escalation(
        self,
        make_request: Callable[[Tier], AIRequest],
        tier: Tier,
        question: str,
        temperature: float,
    ) -> Dict[str, Any]:
        """
        Run at ``tier`` and escalate at most once. ``make_request`` builds the
        request for a given tier.

        Returns:
            dict with ``run`` (authoritative TierRun), ``runs`` (all executed
            runs) and ``escalation`` (annotations for the caller)
        """
        request = make_request(tier)
        first = await self._run_tier(request, tier, question, temperature)

        # Ceiling after the first debit.
        balance = await self.accountant.available_units(request.caller)
        ceiling = self.accountant.ceiling_for(request.caller, balance)
        decision = await self.escalation.decide(question, tier, first.assessment, ceiling)

        annotations: Dict[str, Any] = {
            "escalation_considered": True,
            "escalation_reasons": decision.reasons,
            "quality_score": decision.quality_score,
        }
        if decision.blocked:
            annotations["escalation_blocked"] = True
        if not decision.should_escalate:
            return {"run": first, "runs": [first], "escalation": annotations}

        target = decision.recommended_tier
        set_span_attribute("ai.escalated_to", target.value)
        try:
            second = await self._run_tier(make_request(target), target, question, temperature)
        except AIEngineError as e:
            logger.warning(
                "ai_escalation_failed",
                from_tier=tier.value,
                to_tier=target.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.escalation.record_outcome(
                question, tier, target, success=False, quality_before=decision.quality_score
            )
            annotations.update({"escalation_attempted": True, "escalation_failed": True})
            return {"run": first, "runs": [first], "escalation": annotations}

        improved = second.assessment.overall_score >= first.assessment.overall_score
        await self.escalation.record_outcome(
            question,
            tier,
            target,
            success=improved,
            quality_before=first.assessment.overall_score,
            quality_after=second.assessment.overall_score,
        )
        annotations.update({"escalation_attempted": True, **self.escalation.merge(first, second, decision.reasons)})
        return {"run": second, "runs": [first, second], "escalation": annotations}

    async def _resolve_tier(
        self,
        caller: Caller,
        tier: Optional[Tier],
        issues: List[DetectedIssue],
        metadata: Optional[ContentMetadata],
        has_images: bool,
    ) -> Dict[str, Any]:
        score = self.classifier.complexity_score(issues, metadata, caller, has_images)
        if tier is not None:
            await self.accountant.ensure_can_use(caller, tier)
            return {"tier": tier, "complexity_score": round(score, 4)}

        selection = await self.classifier.select_tier(issues, metadata, caller, has_images)
        return {"tier": selection.tier, "complexity_score": selection.complexity_score}

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    async def analyze(
        self,
        content: List[DetectedIssue],
        metadata: Optional[ContentMetadata],
        tier: Optional[Tier],
        caller: Caller,
        images: Optional[List[str]] = None,
    ) -> Result[AnalysisOutcome]:
        """
        Analyze detected issues.

        Args:
            content: Issues detected upstream in the analyzed file
            metadata: Size/structure descriptors of the file
            tier: Explicit tier, or None to let the classifier choose
            caller: Caller identity, subscription and budget
            images: Optional image references (http(s) URLs or data URIs)
        """
        images = images or []
        with get_tracer().start_as_current_span("ai.analyze"):
            set_span_attribute("ai.caller_id", caller.id)
            set_span_attribute("ai.issue_count", len(content))
            try:
                resolved = await self._resolve_tier(caller, tier, content, metadata, bool(images))
                selected: Tier = resolved["tier"]
                set_span_attribute("ai.tier", selected.value)

                def make_request(for_tier: Tier) -> AIRequest:
                    system_prompt, prompt = build_analysis_prompt(content, metadata, for_tier)
                    return AIRequest(
                        prompt=prompt,
                        system_prompt=system_prompt,
                        images=images,
                        requested_tier=tier,
                        caller=caller,
                        request_type=RequestType.ANALYSIS,
                        context={"file_metadata": metadata.model_dump() if metadata else {}},
                    )

                initial = make_request(selected)
                cache_key = self.cache.build_key(
                    RequestType.ANALYSIS.value,
                    self.orchestrator.routing_profile,
                    selected.value,
                    "\n".join([initial.system_prompt or "", initial.prompt, *images]),
                )
                cached = await self.cache.get(cache_key, RequestType.ANALYSIS.value)
                if cached is not None:
                    outcome = AnalysisOutcome.model_validate(cached)
                    return Success(self._from_cache(outcome))

                question = analysis_question(content)
                pipeline = await self._run_with_escalation(make_request, selected, question, ANALYSIS_TEMPERATURE)
                run: TierRun = pipeline["run"]
                runs: List[TierRun] = pipeline["runs"]

                outcome = AnalysisOutcome(
                    summary=run.summary,
                    analysis=run.analysis,
                    tier_used=run.tier,
                    provider=run.envelope.provider,
                    model=run.envelope.model,
                    confidence=run.confidence,
                    quality=run.assessment,
                    quality_estimated=run.quality_estimated,
                    tokens_used=sum(r.tokens_used for r in runs),
                    total_cost=round(sum(r.cost for r in runs), 8),
                    budget_units_used=sum(r.budget_units for r in runs),
                    complexity_score=resolved["complexity_score"],
                    escalation=pipeline["escalation"],
                    attempts=[a for r in runs for a in r.attempts],
                    content_flags=run.content_flags,
                )
                await self._cache_outcome(cache_key, outcome, runs)

                logger.info(
                    "ai_analysis_completed",
                    caller_id=caller.id,
                    tier_used=outcome.tier_used.value,
                    provider=outcome.provider,
                    tokens_used=outcome.tokens_used,
                    total_cost=outcome.total_cost,
                    confidence=outcome.confidence,
                    escalated=bool(outcome.escalation.get("escalated")),
                )
                return Success(outcome)

            except AIEngineError as e:
                record_exception(e)
                set_span_status(StatusCode.ERROR, str(e))
                logger.error(
                    "ai_analysis_failed",
                    caller_id=caller.id,
                    error=str(e),
                    error_type=type(e).__name__,
                    kind=e.kind,
                )
                return failure_from_error(e)

    async def chat(
        self,
        message: str,
        context: Optional[Dict[str, Any]],
        caller: Caller,
    ) -> Result[ChatOutcome]:
        """
        Answer a chat message.

        ``context`` may carry ``file`` (workbook metadata) and ``history``
        (earlier turns as role/content dicts).
        """
        context = context or {}
        with get_tracer().start_as_current_span("ai.chat"):
            set_span_attribute("ai.caller_id", caller.id)
            try:
                selection = await self.classifier.select_tier([], None, caller)
                selected = selection.tier
                set_span_attribute("ai.tier", selected.value)

                prompt = build_chat_prompt(message, context)
                request = AIRequest(
                    prompt=prompt,
                    system_prompt=CHAT_SYSTEM_PROMPT,
                    caller=caller,
                    request_type=RequestType.CHAT,
                    context=context,
                )

                cache_key = self.cache.build_key(
                    RequestType.CHAT.value,
                    self.orchestrator.routing_profile,
                    selected.value,
                    prompt,
                )
                cached = await self.cache.get(cache_key, RequestType.CHAT.value)
                if cached is not None:
                    return Success(self._from_cache(ChatOutcome.model_validate(cached)))

                pipeline = await self._run_with_escalation(lambda _tier: request, selected, message, CHAT_TEMPERATURE)
                run: TierRun = pipeline["run"]
                runs: List[TierRun] = pipeline["runs"]

                outcome = ChatOutcome(
                    message=run.envelope.content,
                    tier_used=run.tier,
                    provider=run.envelope.provider,
                    model=run.envelope.model,
                    confidence=run.confidence,
                    quality=run.assessment,
                    quality_estimated=run.quality_estimated,
                    tokens_used=sum(r.tokens_used for r in runs),
                    total_cost=round(sum(r.cost for r in runs), 8),
                    budget_units_used=sum(r.budget_units for r in runs),
                    escalation=pipeline["escalation"],
                    attempts=[a for r in runs for a in r.attempts],
                    content_flags=run.content_flags,
                )
                await self._cache_outcome(cache_key, outcome, runs)

                logger.info(
                    "ai_chat_completed",
                    caller_id=caller.id,
                    tier_used=outcome.tier_used.value,
                    provider=outcome.provider,
                    tokens_used=outcome.tokens_used,
                    total_cost=outcome.total_cost,
                )
                return Success(outcome)

            except AIEngineError as e:
                record_exception(e)
                set_span_status(StatusCode.ERROR, str(e))
                logger.error(
                    "ai_chat_failed",
                    caller_id=caller.id,
                    error=str(e),
                    error_type=type(e).__name__,
                    kind=e.kind,
                )
                return failure_from_error(e)

    async def _cache_outcome(self, cache_key: str, outcome, runs: List[TierRun]) -> None:
        flags = sorted({flag for r in runs for flag in r.content_flags} & SENSITIVE_FLAGS)
        if flags:
            record_ai_cache_write("refused")
            logger.warning("ai_cache_write_refused", key=cache_key, reason="sensitive_content", flags=flags)
            return
        await self.cache.set(cache_key, outcome.model_dump(mode="json"), confidence=outcome.confidence)

    def quality_summary(self) -> Dict[str, Any]:
        """Aggregate of the most recent judge verdicts (fallback estimates excluded)."""
        summary = summarize_assessments(self.recent_assessments) or {"total_responses": 0}
        return {"window": RECENT_ASSESSMENTS, **summary}

    @staticmethod
    def _from_cache(outcome):
        """A cached outcome costs nothing this time."""
        return outcome.model_copy(
            update={"from_cache": True, "tokens_used": 0, "total_cost": 0.0, "budget_units_used": 0}
        )


def build_engine(
    settings: Optional[AISettings] = None,
    redis_client: Any = None,
    transport: Any = None,
) -> AIOrchestrationEngine:
    """Wire the engine and its collaborators."""
    settings = settings or get_settings()
    redis_client = redis_client or get_redis_client()

    adapters = build_adapters(settings, redis_client=redis_client, transport=transport)
    orchestrator = ProviderOrchestrator(settings, adapters)
    accountant = UsageAccountant(settings, RedisUsageStore(redis_client))
    history = RedisEscalationHistory(redis_client) if redis_client is not None else InMemoryEscalationHistory()

    return AIOrchestrationEngine(
        settings=settings,
        orchestrator=orchestrator,
        accountant=accountant,
        classifier=TierClassifier(accountant),
        judge=QualityJudge(orchestrator, accountant),
        escalation=EscalationController(settings, history),
        cache=ResponseCache(redis_client, ttl=settings.cache_ttl_seconds),
    )


_ai_engine: Optional[AIOrchestrationEngine] = None


def get_ai_engine() -> AIOrchestrationEngine:
    """Global singleton accessor for the AI orchestration engine."""
    global _ai_engine
    if _ai_engine is None:
        _ai_engine = build_engine()
    return _ai_engine


def reset_ai_engine() -> None:
    global _ai_engine
    _ai_engine = None
