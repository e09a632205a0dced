"""
End-to-end tests for the orchestration engine with mocked provider HTTP.

Provider calls are served by httpx.MockTransport: content calls answer with
an analysis JSON tagged with the tier's model, judge calls answer with a
score chosen per tier. Redis state (rate limits, budgets, cache, history)
lives in the in-memory FakeRedis.
"""
import json

import httpx
import pytest

from app.services.ai.engine import build_engine
from app.services.ai.escalation import REASON_LOW_QUALITY
from app.services.ai.schema import (
    AnalysisOutcome,
    Caller,
    ChatOutcome,
    DetectedIssue,
    Failure,
    Subscription,
    Success,
    Tier,
)

from conftest import (
    RecordingTransport,
    completion,
    is_judge_call,
    judge_answer,
    make_settings,
    request_payload,
    user_text,
)

ISSUES = [DetectedIssue(type="formula_error", severity="low", message="SUM range includes header", location="B12")]

TIER_MARKERS = {"small": "TIER1 ANSWER", "medium": "TIER2 ANSWER", "large": "TIER3 ANSWER"}


def analysis_answer(marker: str) -> str:
    return json.dumps(
        {
            "analysis": {"error_1": {"explanation": marker, "severity": "Low"}},
            "corrections": [{"cell": "B12", "original": "=SUM(B:B)", "corrected": "=SUM(B2:B11)", "confidence": 0.9}],
            "overall_confidence": 0.8,
            "summary": f"{marker}: narrow the SUM range",
            "estimated_time_saved": "5 minutes",
        }
    )


def provider_handler(judge_scores, content_status=200):
    """
    Serve content and judge calls.

    ``judge_scores`` maps a tier marker to the judge's overall score for the
    response carrying that marker.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        if is_judge_call(request):
            text = user_text(request)
            score = next((s for marker, s in judge_scores.items() if marker in text), 9.0)
            return httpx.Response(200, json=completion(judge_answer(score), 400, 120))
        if content_status != 200:
            return httpx.Response(content_status)
        model = request_payload(request)["model"]
        marker = next(m for suffix, m in TIER_MARKERS.items() if model.endswith(suffix))
        return httpx.Response(200, json=completion(analysis_answer(marker), 100, 50))

    return handler


def make_engine(fake_redis, handler, provider_names=("alpha",), **overrides):
    settings = make_settings(provider_names, **overrides)
    recorder = RecordingTransport(handler)
    engine = build_engine(settings, redis_client=fake_redis, transport=recorder.transport)
    return engine, recorder


def content_models(recorder):
    return [request_payload(r)["model"] for r in recorder.content_calls()]


class TestAnalyze:
    """Test the analyze operation."""

    @pytest.mark.asyncio
    async def test_good_first_answer(self, fake_redis):
        """Test that a tier1 answer above threshold is returned without escalation."""
        engine, recorder = make_engine(fake_redis, provider_handler({"TIER1": 8.0}))
        caller = Caller(id="pro-1", subscription=Subscription.PRO, budget_units=1000)

        result = await engine.analyze(ISSUES, None, None, caller)

        assert isinstance(result, Success)
        outcome = result.value
        assert outcome.tier_used == Tier.TIER1
        assert outcome.summary == "TIER1 ANSWER: narrow the SUM range"
        assert outcome.analysis["corrections"][0]["cell"] == "B12"
        assert outcome.confidence == pytest.approx(0.8)
        assert outcome.quality_estimated is False
        assert outcome.tokens_used == 150
        assert outcome.budget_units_used == 2
        assert outcome.escalation["escalation_considered"] is True
        assert "escalated" not in outcome.escalation
        assert content_models(recorder) == ["alpha-small"]
        assert len(recorder.judge_calls()) == 1
        assert request_payload(recorder.judge_calls()[0])["model"] == "alpha-large"

    @pytest.mark.asyncio
    async def test_pro_caller_escalates_once_to_tier2(self, fake_redis):
        """Test that a tier1 score of 6.0 is retried once at tier2."""
        engine, recorder = make_engine(fake_redis, provider_handler({"TIER1": 6.0, "TIER2": 9.0}))
        caller = Caller(id="pro-2", subscription=Subscription.PRO, budget_units=1000)

        result = await engine.analyze(ISSUES, None, None, caller)

        outcome = result.value
        assert outcome.tier_used == Tier.TIER2
        assert outcome.summary.startswith("TIER2 ANSWER")
        assert outcome.confidence == pytest.approx(0.9)
        assert content_models(recorder) == ["alpha-small", "alpha-medium"]
        assert len(recorder.judge_calls()) == 2

        escalation = outcome.escalation
        assert escalation["escalated"] is True
        assert escalation["escalated_from"] == "tier1"
        assert escalation["escalation_reasons"] == [REASON_LOW_QUALITY]
        assert escalation["tier1_confidence"] == pytest.approx(0.6)
        assert escalation["tier1_cost"] + escalation["tier2_cost"] == pytest.approx(outcome.total_cost)
        assert outcome.total_cost == pytest.approx(150 / 1e6 * 0.15 + 150 / 1e6 * 0.39)
        assert outcome.tokens_used == 300
        assert outcome.budget_units_used == 2 + 6

        # Only content calls are debited.
        assert await engine.accountant.available_units(caller) == 1000 - 8

        stats = await engine.escalation.statistics()
        assert stats["total_escalations"] == 1
        assert stats["successful_escalations"] == 1

    @pytest.mark.asyncio
    async def test_free_caller_escalation_is_blocked(self, fake_redis, monkeypatch):
        """Test that a complex request from a free caller stays at tier1."""
        engine, recorder = make_engine(fake_redis, provider_handler({"TIER1": 6.0}))
        monkeypatch.setattr(engine.classifier, "complexity_score", lambda *args, **kwargs: 0.9)
        caller = Caller(id="free-1", subscription=Subscription.FREE, budget_units=100)

        result = await engine.analyze(ISSUES, None, None, caller)

        outcome = result.value
        assert outcome.tier_used == Tier.TIER1
        assert outcome.complexity_score == pytest.approx(0.9)
        assert outcome.escalation["escalation_blocked"] is True
        assert "escalation_attempted" not in outcome.escalation
        assert content_models(recorder) == ["alpha-small"]

    @pytest.mark.asyncio
    async def test_explicit_tier_not_entitled(self, fake_redis):
        """Test that an explicit tier beyond the subscription fails before any call."""
        engine, recorder = make_engine(fake_redis, provider_handler({}))
        caller = Caller(id="free-2", subscription=Subscription.FREE, budget_units=1000)

        result = await engine.analyze(ISSUES, None, Tier.TIER3, caller)

        assert isinstance(result, Failure)
        assert result.kind == "authorization_error"
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_insufficient_budget(self, fake_redis):
        """Test that a caller below tier1's minimum gets insufficient_budget."""
        engine, recorder = make_engine(fake_redis, provider_handler({}))
        caller = Caller(id="broke", subscription=Subscription.PRO, budget_units=3)

        result = await engine.analyze(ISSUES, None, None, caller)

        assert isinstance(result, Failure)
        assert result.kind == "insufficient_budget"
        assert result.details == {"required_units": 10, "available_units": 3}
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_explicit_tier_used_as_requested(self, fake_redis):
        """Test that an entitled explicit tier is honored."""
        engine, recorder = make_engine(fake_redis, provider_handler({"TIER3": 9.5}))
        caller = Caller(id="ent-1", subscription=Subscription.ENTERPRISE, budget_units=1000)

        result = await engine.analyze(ISSUES, None, Tier.TIER3, caller)

        assert result.value.tier_used == Tier.TIER3
        assert content_models(recorder) == ["alpha-large"]

    @pytest.mark.asyncio
    async def test_all_providers_failed(self, fake_redis):
        """Test that exhausting the fallback list returns a Failure with per-provider errors."""
        engine, _ = make_engine(fake_redis, provider_handler({}, content_status=503), ("alpha", "beta"), max_retries=0)
        caller = Caller(id="pro-3", subscription=Subscription.PRO, budget_units=1000)

        result = await engine.analyze(ISSUES, None, None, caller)

        assert isinstance(result, Failure)
        assert result.kind == "all_providers_failed"
        assert set(result.details["errors"]) == {"alpha", "beta"}
        assert await engine.accountant.available_units(caller) == 1000

    @pytest.mark.asyncio
    async def test_cache_hit_skips_providers(self, fake_redis):
        """Test that a repeated request is served from cache at no cost."""
        engine, recorder = make_engine(fake_redis, provider_handler({"TIER1": 8.0}))
        caller = Caller(id="pro-4", subscription=Subscription.PRO, budget_units=1000)

        first = await engine.analyze(ISSUES, None, None, caller)
        calls_after_first = len(recorder.requests)
        second = await engine.analyze(ISSUES, None, None, caller)

        assert first.value.from_cache is False
        assert second.value.from_cache is True
        assert second.value.summary == first.value.summary
        assert second.value.total_cost == 0.0
        assert second.value.budget_units_used == 0
        assert len(recorder.requests) == calls_after_first
        assert await engine.accountant.available_units(caller) == 1000 - 2

    @pytest.mark.asyncio
    async def test_low_confidence_not_cached(self, fake_redis):
        """Test that a judge fallback (confidence 0.3) is not cached."""
        def handler(request):
            if is_judge_call(request):
                return httpx.Response(200, json=completion("no json here"))
            return httpx.Response(200, json=completion(analysis_answer("TIER1 ANSWER")))

        engine, recorder = make_engine(fake_redis, handler)
        caller = Caller(id="ent-2", subscription=Subscription.ENTERPRISE, budget_units=1000)

        result = await engine.analyze(ISSUES, None, Tier.TIER1, caller)

        outcome = result.value
        assert outcome.quality_estimated is True
        assert outcome.confidence == pytest.approx(0.3)
        assert (await engine.cache.stats())["total_keys"] == 0

    @pytest.mark.asyncio
    async def test_unstructured_answer_kept_as_summary(self, fake_redis):
        """Test that a non-JSON analysis degrades to the raw text."""
        def handler(request):
            if is_judge_call(request):
                return httpx.Response(200, json=completion(judge_answer(8.0)))
            return httpx.Response(200, json=completion("Narrow the SUM range to B2:B11."))

        engine, _ = make_engine(fake_redis, handler)
        caller = Caller(id="pro-5", subscription=Subscription.PRO, budget_units=1000)

        result = await engine.analyze(ISSUES, None, None, caller)

        assert result.value.summary == "Narrow the SUM range to B2:B11."
        assert result.value.analysis == {}

    @pytest.mark.asyncio
    async def test_wrongly_typed_analysis_degrades_to_raw_text(self, fake_redis):
        """Test that a JSON answer with a non-string summary still returns a Success."""
        answer = json.dumps({"analysis": {"a": 1}, "corrections": [], "summary": {"text": "nested"}})

        def handler(request):
            if is_judge_call(request):
                return httpx.Response(200, json=completion(judge_answer(8.0)))
            return httpx.Response(200, json=completion(answer))

        engine, _ = make_engine(fake_redis, handler)
        caller = Caller(id="pro-7", subscription=Subscription.PRO, budget_units=1000)

        result = await engine.analyze(ISSUES, None, None, caller)

        assert isinstance(result, Success)
        assert result.value.summary == answer
        assert result.value.analysis == {}

    @pytest.mark.asyncio
    async def test_failed_escalation_keeps_first_answer(self, fake_redis):
        """Test that a failing tier2 call leaves the tier1 result in place."""
        def handler(request):
            if is_judge_call(request):
                return httpx.Response(200, json=completion(judge_answer(6.0)))
            if request_payload(request)["model"].endswith("medium"):
                return httpx.Response(503)
            return httpx.Response(200, json=completion(analysis_answer("TIER1 ANSWER")))

        engine, _ = make_engine(fake_redis, handler, max_retries=0)
        caller = Caller(id="pro-6", subscription=Subscription.PRO, budget_units=1000)

        result = await engine.analyze(ISSUES, None, None, caller)

        outcome = result.value
        assert outcome.tier_used == Tier.TIER1
        assert outcome.escalation["escalation_attempted"] is True
        assert outcome.escalation["escalation_failed"] is True
        stats = await engine.escalation.statistics()
        assert stats["successful_escalations"] == 0

    @pytest.mark.asyncio
    async def test_leaked_credential_is_redacted_and_not_cached(self, fake_redis):
        """Test that a password in the answer never reaches the caller, the judge or the cache."""
        answer = json.dumps(
            {"analysis": {}, "corrections": [], "summary": "Connect with password: hunter2 then refresh"}
        )

        def handler(request):
            if is_judge_call(request):
                return httpx.Response(200, json=completion(judge_answer(8.0)))
            return httpx.Response(200, json=completion(answer))

        engine, recorder = make_engine(fake_redis, handler)
        caller = Caller(id="pro-9", subscription=Subscription.PRO, budget_units=1000)

        result = await engine.analyze(ISSUES, None, None, caller)

        outcome = result.value
        assert outcome.summary == "Connect with password: [REDACTED] then refresh"
        assert outcome.content_flags == ["credential"]
        assert "hunter2" not in user_text(recorder.judge_calls()[0])
        assert (await engine.cache.stats())["total_keys"] == 0


class TestChat:
    """Test the chat operation."""

    @pytest.mark.asyncio
    async def test_chat_answer(self, fake_redis):
        def handler(request):
            if is_judge_call(request):
                return httpx.Response(200, json=completion(judge_answer(8.0)))
            return httpx.Response(200, json=completion("Use =XLOOKUP(A2, Sheet2!A:A, Sheet2!B:B)."))

        engine, recorder = make_engine(fake_redis, handler)
        caller = Caller(id="pro-7", subscription=Subscription.PRO, budget_units=1000)
        context = {"file": {"filename": "q3.xlsx"}, "history": [{"role": "user", "content": "hi"}]}

        result = await engine.chat("How do I look up prices?", context, caller)

        assert isinstance(result, Success)
        assert isinstance(result.value, ChatOutcome)
        assert result.value.message.startswith("Use =XLOOKUP")
        assert result.value.tier_used == Tier.TIER1
        sent = user_text(recorder.content_calls()[0])
        assert "q3.xlsx" in sent
        assert sent.endswith("user: How do I look up prices?")

    @pytest.mark.asyncio
    async def test_chat_strips_script_tags(self, fake_redis):
        def handler(request):
            if is_judge_call(request):
                return httpx.Response(200, json=completion(judge_answer(8.0)))
            return httpx.Response(200, json=completion("Freeze row 1.<script>fetch('/steal')</script>"))

        engine, _ = make_engine(fake_redis, handler)
        caller = Caller(id="pro-10", subscription=Subscription.PRO, budget_units=1000)

        result = await engine.chat("How do I pin the header?", None, caller)

        assert result.value.message == "Freeze row 1."
        assert result.value.content_flags == ["script_tag"]
        assert (await engine.cache.stats())["total_keys"] == 0

    @pytest.mark.asyncio
    async def test_chat_failure(self, fake_redis):
        engine, _ = make_engine(fake_redis, lambda request: httpx.Response(500), max_retries=0)
        caller = Caller(id="pro-8", subscription=Subscription.PRO, budget_units=1000)

        result = await engine.chat("hello", None, caller)

        assert isinstance(result, Failure)
        assert result.kind == "all_providers_failed"


def test_outcome_models_serialize():
    outcome = AnalysisOutcome(tier_used=Tier.TIER2, summary="s")
    data = outcome.model_dump(mode="json")
    assert data["tier_used"] == "tier2"
    assert AnalysisOutcome.model_validate(data) == outcome
