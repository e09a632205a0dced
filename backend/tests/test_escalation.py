"""
Unit tests for the escalation controller and its history stores.
"""
import pytest

from app.services.ai.escalation import (
    REASON_COMPLEXITY,
    REASON_HISTORY,
    REASON_LOW_QUALITY,
    EscalationController,
    InMemoryEscalationHistory,
    RedisEscalationHistory,
    analyze_question_complexity,
    pattern_key,
)
from app.services.ai.schema import (
    EscalationOutcome,
    QualityAssessment,
    ResponseEnvelope,
    Tier,
    TierRun,
)

SIMPLE_QUESTION = "Why does my total show zero?"


def assessment(score: float) -> QualityAssessment:
    return QualityAssessment(overall_score=score, confidence=0.9)


def tier_run(tier: Tier, score: float, cost: float, tokens=(100, 50)) -> TierRun:
    envelope = ResponseEnvelope(
        content=f"{tier.value} answer",
        input_tokens=tokens[0],
        output_tokens=tokens[1],
        model=f"alpha-{tier.value}",
        provider="alpha",
        tier=tier,
        cost=cost,
    )
    return TierRun(tier=tier, envelope=envelope, assessment=assessment(score), confidence=score / 10)


@pytest.fixture
def controller(settings):
    return EscalationController(settings, InMemoryEscalationHistory())


class TestQuestionComplexity:
    """Test the keyword/length heuristic."""

    def test_simple_question(self):
        result = analyze_question_complexity(SIMPLE_QUESTION)
        assert result["complexity_score"] == 0
        assert result["recommended_tier"] == Tier.TIER1

    def test_functions_and_topics(self):
        question = "Build a dashboard with power query, then vlookup and index match across several sheets"
        result = analyze_question_complexity(question)

        # dashboard 2 + power query 2 + vlookup + index + match + several
        assert result["complexity_score"] == 8
        assert result["recommended_tier"] == Tier.TIER3

    def test_conjunctions_need_two_matches(self):
        assert analyze_question_complexity("sum and average")["complexity_score"] == 0
        assert analyze_question_complexity("sum and average or count")["complexity_score"] == 1

    def test_length_points(self):
        assert analyze_question_complexity("x" * 201)["complexity_score"] == 1
        assert analyze_question_complexity("x" * 501)["complexity_score"] == 2

    def test_pattern_key(self):
        assert pattern_key("How do I use vlookup with match?") == "short_vlookup_match"
        assert pattern_key("advanced " + "y" * 150) == "medium_complex"


class TestDecide:
    """Test escalation decisions."""

    @pytest.mark.asyncio
    async def test_good_quality_does_not_escalate(self, controller):
        decision = await controller.decide(SIMPLE_QUESTION, Tier.TIER1, assessment(8.0), Tier.TIER3)

        assert decision.should_escalate is False
        assert decision.recommended_tier == Tier.TIER1
        assert decision.reasons == []

    @pytest.mark.asyncio
    async def test_low_quality_escalates_one_tier(self, controller):
        decision = await controller.decide(SIMPLE_QUESTION, Tier.TIER1, assessment(6.0), Tier.TIER3)

        assert decision.should_escalate is True
        assert decision.recommended_tier == Tier.TIER2
        assert decision.reasons == [REASON_LOW_QUALITY]
        assert decision.quality_score == 6.0

    @pytest.mark.asyncio
    async def test_never_skips_a_tier(self, controller):
        question = "Automate a dashboard with power query and power pivot using vba macro arrays"
        decision = await controller.decide(question, Tier.TIER1, assessment(1.0), Tier.TIER3)

        assert REASON_COMPLEXITY in decision.reasons
        assert decision.recommended_tier == Tier.TIER2

    @pytest.mark.asyncio
    async def test_target_above_ceiling_is_blocked(self, controller):
        decision = await controller.decide(SIMPLE_QUESTION, Tier.TIER1, assessment(6.0), Tier.TIER1)

        assert decision.should_escalate is False
        assert decision.blocked is True
        assert decision.recommended_tier == Tier.TIER1
        assert decision.reasons == [REASON_LOW_QUALITY]

    @pytest.mark.asyncio
    async def test_no_ceiling_is_blocked(self, controller):
        decision = await controller.decide(SIMPLE_QUESTION, Tier.TIER1, assessment(6.0), None)
        assert decision.blocked is True

    @pytest.mark.asyncio
    async def test_top_tier_never_escalates(self, controller):
        decision = await controller.decide(SIMPLE_QUESTION, Tier.TIER3, assessment(2.0), Tier.TIER3)

        assert decision.should_escalate is False
        assert decision.blocked is False

    @pytest.mark.asyncio
    async def test_tier2_threshold(self, controller):
        decision = await controller.decide(SIMPLE_QUESTION, Tier.TIER2, assessment(8.0), Tier.TIER3)

        assert decision.should_escalate is True
        assert decision.recommended_tier == Tier.TIER3

    @pytest.mark.asyncio
    async def test_history_trigger(self, controller):
        for _ in range(2):
            await controller.record_outcome(SIMPLE_QUESTION, Tier.TIER1, Tier.TIER2, True, 6.0, 8.8)

        decision = await controller.decide(SIMPLE_QUESTION, Tier.TIER1, assessment(9.0), Tier.TIER3)

        assert decision.reasons == [REASON_HISTORY]
        assert decision.recommended_tier == Tier.TIER2

    @pytest.mark.asyncio
    async def test_history_needs_two_successes(self, controller):
        await controller.record_outcome(SIMPLE_QUESTION, Tier.TIER1, Tier.TIER2, True, 6.0, 8.8)
        await controller.record_outcome(SIMPLE_QUESTION, Tier.TIER1, Tier.TIER2, False, 6.0, 5.5)

        decision = await controller.decide(SIMPLE_QUESTION, Tier.TIER1, assessment(9.0), Tier.TIER3)

        assert decision.should_escalate is False


class TestMerge:
    """Test the escalated result annotations."""

    def test_merge_keeps_both_tiers(self):
        lower = tier_run(Tier.TIER1, 6.0, 0.0000225)
        higher = tier_run(Tier.TIER2, 9.0, 0.0000585, tokens=(200, 100))

        merged = EscalationController.merge(lower, higher, [REASON_LOW_QUALITY])

        assert merged["escalated"] is True
        assert merged["escalated_from"] == "tier1"
        assert merged["tier_used"] == "tier2"
        assert merged["tier1_confidence"] == 0.6
        assert merged["tier2_confidence"] == 0.9
        assert merged["tier1_tokens_used"] == 150
        assert merged["tier2_tokens_used"] == 300
        assert merged["tier1_cost"] + merged["tier2_cost"] == pytest.approx(merged["total_cost"])
        assert merged["confidence_improvement"] == pytest.approx(0.3)
        assert merged["escalation_reasons"] == [REASON_LOW_QUALITY]


class TestHistoryStores:
    """Test bounded history storage."""

    @pytest.mark.asyncio
    async def test_in_memory_bounds_per_key_and_keys(self):
        history = InMemoryEscalationHistory(max_keys=2, per_key=3)
        outcome = EscalationOutcome(original_tier=Tier.TIER1, escalated_tier=Tier.TIER2, success=True)

        for _ in range(5):
            await history.append("a", outcome)
        await history.append("b", outcome)
        await history.append("c", outcome)

        stored = await history.all_outcomes()
        assert set(stored) == {"b", "c"}
        assert await history.recent("a", 5) == []

        for _ in range(5):
            await history.append("c", outcome)
        assert len(await history.recent("c", 10)) == 3

    @pytest.mark.asyncio
    async def test_redis_history_round_trip(self, fake_redis):
        history = RedisEscalationHistory(fake_redis, per_key=3)
        for score in (5.0, 6.0, 7.0, 8.0):
            await history.append(
                "short",
                EscalationOutcome(original_tier=Tier.TIER1, escalated_tier=Tier.TIER2, success=True, quality_before=score),
            )

        recent = await history.recent("short", 5)
        assert [o.quality_before for o in recent] == [6.0, 7.0, 8.0]
        assert fake_redis.ttls["ai_escalation_history:short"] == history.ttl

        everything = await history.all_outcomes()
        assert list(everything) == ["short"]
        assert len(everything["short"]) == 3

    @pytest.mark.asyncio
    async def test_redis_history_without_redis(self):
        history = RedisEscalationHistory(None)
        outcome = EscalationOutcome(original_tier=Tier.TIER1, escalated_tier=Tier.TIER2, success=True)

        await history.append("k", outcome)

        assert await history.recent("k", 5) == []
        assert await history.all_outcomes() == {}


class TestStatistics:
    """Test aggregate escalation statistics and threshold recommendations."""

    @pytest.mark.asyncio
    async def test_statistics(self, controller):
        await controller.record_outcome(SIMPLE_QUESTION, Tier.TIER1, Tier.TIER2, True, 6.0, 8.0)
        await controller.record_outcome(SIMPLE_QUESTION, Tier.TIER1, Tier.TIER2, False, 7.0, 6.0)
        await controller.record_outcome("Use vlookup please", Tier.TIER2, Tier.TIER3, True, 8.0, 9.0)

        stats = await controller.statistics()

        assert stats["total_escalations"] == 3
        assert stats["successful_escalations"] == 2
        assert stats["success_rate"] == pytest.approx(2 / 3)
        assert stats["escalation_patterns"] == 2
        assert stats["tier_distribution"] == {"tier1": 0, "tier2": 2, "tier3": 1}
        assert stats["average_quality_improvement"] == pytest.approx((2.0 - 1.0 + 1.0) / 3, abs=1e-4)

    @pytest.mark.asyncio
    async def test_empty_statistics(self, controller):
        stats = await controller.statistics()
        assert stats["total_escalations"] == 0
        assert stats["success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_recommend_thresholds(self, controller):
        await controller.record_outcome(SIMPLE_QUESTION, Tier.TIER1, Tier.TIER2, True, 7.0, 8.5)
        await controller.record_outcome(SIMPLE_QUESTION, Tier.TIER1, Tier.TIER2, True, 6.0, 8.0)
        await controller.record_outcome(SIMPLE_QUESTION, Tier.TIER1, Tier.TIER2, True, 5.0, 8.0)

        result = await controller.recommend_thresholds()

        assert result["current_thresholds"] == {"tier1": 7.5, "tier2": 8.5}
        assert result["recommended_thresholds"] == {"tier1": 6.0}
        assert result["analysis"]["tier1"] == "Based on 3 escalations"
