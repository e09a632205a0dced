"""
Escalation controller: decides whether a response should be retried one tier up.

Triggers (any one is enough):
- Quality: judge overall score below the current tier's threshold
  (tier1 7.5, tier2 8.5; tier3 has no threshold)
- Complexity: keyword/length heuristic on the question recommends a higher tier
- History: recent escalations for similar questions mostly succeeded at a
  higher tier

The target is always exactly one tier up and is never above the caller's
ceiling (entitlement and budget). A target above the ceiling yields a blocked
decision instead of a skip or a partial escalation.

History of executed escalations lives in an injected, size-bounded store:
RedisEscalationHistory for shared state, InMemoryEscalationHistory otherwise.
"""
import re
from collections import Counter, OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.cache import get_redis_client
from app.core.logging import get_logger
from app.core.metrics import record_escalation
from app.services.ai.config import AISettings
from app.services.ai.schema import (
    ALL_TIERS,
    EscalationDecision,
    EscalationOutcome,
    QualityAssessment,
    Tier,
    TierRun,
)

logger = get_logger(__name__)

HISTORY_PER_KEY = 10
HISTORY_WINDOW = 5
HISTORY_MIN_SUCCESSES = 2
HISTORY_TTL_SECONDS = 7 * 24 * 60 * 60
HISTORY_KEY_PREFIX = "ai_escalation_history:"

COMPLEX_FUNCTIONS = [
    "vlookup", "hlookup", "index", "match", "sumifs", "countifs",
    "xlookup", "pivot", "macro", "vba", "array",
]
ADVANCED_TOPICS = ["automation", "dashboard", "visualization", "power query", "power pivot"]
PATTERN_FUNCTIONS = ["sum", "average", "count", "vlookup", "hlookup", "index", "match", "sumifs", "countifs"]

_MULTIPLE_PATTERN = re.compile(r"\b(multiple|several|various)\b")
_CONJUNCTION_PATTERN = re.compile(r"\b(and|or)\b")

REASON_LOW_QUALITY = "Quality score below threshold"
REASON_COMPLEXITY = "Question complexity requires higher tier"
REASON_HISTORY = "Historical pattern suggests higher tier needed"


class EscalationHistory(Protocol):
    async def append(self, key: str, outcome: EscalationOutcome) -> None: ...

    async def recent(self, key: str, limit: int) -> List[EscalationOutcome]: ...

    async def all_outcomes(self) -> Dict[str, List[EscalationOutcome]]: ...


class InMemoryEscalationHistory:
    """Per-process history: ``per_key`` outcomes per pattern, LRU over patterns."""

    def __init__(self, max_keys: int = 1000, per_key: int = HISTORY_PER_KEY):
        self.max_keys = max_keys
        self.per_key = per_key
        self._entries: "OrderedDict[str, Deque[EscalationOutcome]]" = OrderedDict()

    async def append(self, key: str, outcome: EscalationOutcome) -> None:
        if key not in self._entries:
            self._entries[key] = deque(maxlen=self.per_key)
        self._entries.move_to_end(key)
        self._entries[key].append(outcome)
        while len(self._entries) > self.max_keys:
            self._entries.popitem(last=False)

    async def recent(self, key: str, limit: int) -> List[EscalationOutcome]:
        entries = self._entries.get(key)
        if not entries:
            return []
        self._entries.move_to_end(key)
        return list(entries)[-limit:]

    async def all_outcomes(self) -> Dict[str, List[EscalationOutcome]]:
        return {key: list(entries) for key, entries in self._entries.items()}


class RedisEscalationHistory:
    """
    History shared across workers.

    One list per pattern (``ai_escalation_history:{pattern}``), newest first,
    trimmed to ``per_key`` entries and expiring after ``ttl`` seconds.
    """

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        per_key: int = HISTORY_PER_KEY,
        ttl: int = HISTORY_TTL_SECONDS,
    ):
        self._redis_client = redis_client
        self.per_key = per_key
        self.ttl = ttl

    @property
    def redis_client(self) -> Optional[Redis]:
        return self._redis_client or get_redis_client()

    async def append(self, key: str, outcome: EscalationOutcome) -> None:
        client = self.redis_client
        if not client:
            return
        redis_key = f"{HISTORY_KEY_PREFIX}{key}"
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.lpush(redis_key, outcome.model_dump_json())
                pipe.ltrim(redis_key, 0, self.per_key - 1)
                pipe.expire(redis_key, self.ttl)
                await pipe.execute()
        except RedisError as e:
            logger.warning("escalation_history_write_failed", key=key, error=str(e), error_type=type(e).__name__)

    async def recent(self, key: str, limit: int) -> List[EscalationOutcome]:
        client = self.redis_client
        if not client:
            return []
        try:
            raw = await client.lrange(f"{HISTORY_KEY_PREFIX}{key}", 0, limit - 1)
        except RedisError as e:
            logger.warning("escalation_history_read_failed", key=key, error=str(e), error_type=type(e).__name__)
            return []
        return [EscalationOutcome.model_validate_json(item) for item in reversed(raw)]

    async def all_outcomes(self) -> Dict[str, List[EscalationOutcome]]:
        client = self.redis_client
        if not client:
            return {}
        outcomes: Dict[str, List[EscalationOutcome]] = {}
        try:
            async for redis_key in client.scan_iter(match=f"{HISTORY_KEY_PREFIX}*"):
                raw = await client.lrange(redis_key, 0, -1)
                outcomes[redis_key[len(HISTORY_KEY_PREFIX):]] = [
                    EscalationOutcome.model_validate_json(item) for item in reversed(raw)
                ]
        except RedisError as e:
            logger.warning("escalation_history_scan_failed", error=str(e), error_type=type(e).__name__)
        return outcomes


def analyze_question_complexity(question: str) -> Dict[str, Any]:
    """Keyword and length score of a question, with the tier it calls for."""
    text = question.lower()
    score = 0

    if len(question) > 200:
        score += 1
    if len(question) > 500:
        score += 1

    score += sum(1 for func in COMPLEX_FUNCTIONS if func in text)

    if _MULTIPLE_PATTERN.search(text):
        score += 1
    if len(_CONJUNCTION_PATTERN.findall(text)) >= 2:
        score += 1

    score += sum(2 for topic in ADVANCED_TOPICS if topic in text)

    if score >= 7:
        recommended = Tier.TIER3
    elif score >= 4:
        recommended = Tier.TIER2
    else:
        recommended = Tier.TIER1
    return {"complexity_score": score, "recommended_tier": recommended}


def pattern_key(question: str) -> str:
    """Coarse features that group similar questions in the history."""
    text = question.lower()
    if len(question) <= 100:
        parts = ["short"]
    elif len(question) <= 300:
        parts = ["medium"]
    else:
        parts = ["long"]

    found = [func for func in PATTERN_FUNCTIONS if func in text]
    if found:
        parts.append("_".join(found[:2]))

    if "complex" in text or "advanced" in text:
        parts.append("complex")
    return "_".join(parts)


class EscalationController:
    def __init__(self, settings: AISettings, history: Optional[EscalationHistory] = None):
        self.settings = settings
        self.history: EscalationHistory = history or InMemoryEscalationHistory()

    async def _history_suggests(self, question: str, current_tier: Tier) -> bool:
        recent = await self.history.recent(pattern_key(question), HISTORY_WINDOW)
        successful = [o for o in recent if o.success]
        if len(successful) < HISTORY_MIN_SUCCESSES:
            return False
        most_common, _ = Counter(o.escalated_tier for o in successful).most_common(1)[0]
        return most_common > current_tier

    async def decide(
        self,
        question: str,
        current_tier: Tier,
        assessment: Optional[QualityAssessment],
        ceiling: Optional[Tier],
    ) -> EscalationDecision:
        """
        Decide whether to retry one tier above ``current_tier``.

        Args:
            question: The caller's question (or analysis prompt)
            current_tier: Tier that produced the response
            assessment: Judge verdict on the response, if any
            ceiling: Highest tier the caller can use, None if none
        """
        reasons: List[str] = []
        quality_score = assessment.overall_score if assessment else None

        threshold = self.settings.tier(current_tier).quality_threshold
        if quality_score is not None and threshold is not None and quality_score < threshold:
            reasons.append(REASON_LOW_QUALITY)

        if analyze_question_complexity(question)["recommended_tier"] > current_tier:
            reasons.append(REASON_COMPLEXITY)

        if await self._history_suggests(question, current_tier):
            reasons.append(REASON_HISTORY)

        target = current_tier.next_tier()
        if not reasons or target is None:
            return EscalationDecision(
                current_tier=current_tier,
                recommended_tier=current_tier,
                reasons=reasons,
                quality_score=quality_score,
            )

        if ceiling is None or target > ceiling:
            logger.info(
                "ai_escalation_blocked",
                current_tier=current_tier.value,
                target_tier=target.value,
                ceiling=ceiling.value if ceiling else None,
                reasons=reasons,
            )
            record_escalation(current_tier.value, target.value, "blocked")
            return EscalationDecision(
                current_tier=current_tier,
                recommended_tier=current_tier,
                reasons=reasons,
                quality_score=quality_score,
                blocked=True,
            )

        logger.info(
            "ai_escalation_recommended",
            current_tier=current_tier.value,
            target_tier=target.value,
            quality_score=quality_score,
            reasons=reasons,
        )
        return EscalationDecision(
            should_escalate=True,
            current_tier=current_tier,
            recommended_tier=target,
            reasons=reasons,
            quality_score=quality_score,
        )

    async def record_outcome(
        self,
        question: str,
        original_tier: Tier,
        escalated_tier: Tier,
        success: bool,
        quality_before: Optional[float] = None,
        quality_after: Optional[float] = None,
    ) -> None:
        outcome = EscalationOutcome(
            original_tier=original_tier,
            escalated_tier=escalated_tier,
            success=success,
            quality_before=quality_before,
            quality_after=quality_after,
        )
        await self.history.append(pattern_key(question), outcome)
        record_escalation(original_tier.value, escalated_tier.value, "success" if success else "failed")
        logger.info(
            "ai_escalation_recorded",
            original_tier=original_tier.value,
            escalated_tier=escalated_tier.value,
            success=success,
            quality_before=quality_before,
            quality_after=quality_after,
        )

    @staticmethod
    def merge(lower: TierRun, higher: TierRun, reasons: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Escalation annotations for a result produced by ``higher``.

        The higher-tier run is authoritative for content and confidence; both
        tiers' confidence, tokens and cost are kept for the record.
        """
        return {
            "escalated": True,
            "escalated_from": lower.tier.value,
            "tier_used": higher.tier.value,
            "escalation_reasons": list(reasons or []),
            f"{lower.tier.value}_confidence": lower.confidence,
            f"{lower.tier.value}_tokens_used": lower.tokens_used,
            f"{lower.tier.value}_cost": lower.cost,
            f"{higher.tier.value}_confidence": higher.confidence,
            f"{higher.tier.value}_tokens_used": higher.tokens_used,
            f"{higher.tier.value}_cost": higher.cost,
            "total_cost": round(lower.cost + higher.cost, 8),
            "confidence_improvement": round(higher.confidence - lower.confidence, 4),
        }

    async def statistics(self) -> Dict[str, Any]:
        by_key = await self.history.all_outcomes()
        outcomes = [o for entries in by_key.values() for o in entries]
        successful = [o for o in outcomes if o.success]
        improvements = [
            o.quality_after - o.quality_before
            for o in outcomes
            if o.quality_before is not None and o.quality_after is not None
        ]
        distribution = {tier.value: 0 for tier in ALL_TIERS}
        for o in outcomes:
            distribution[o.escalated_tier.value] += 1

        return {
            "total_escalations": len(outcomes),
            "successful_escalations": len(successful),
            "success_rate": len(successful) / len(outcomes) if outcomes else 0.0,
            "escalation_patterns": len(by_key),
            "tier_distribution": distribution,
            "average_quality_improvement": (
                round(sum(improvements) / len(improvements), 4) if improvements else 0.0
            ),
        }

    async def recommend_thresholds(self) -> Dict[str, Any]:
        """Suggest quality thresholds from the scores that preceded successful escalations."""
        by_key = await self.history.all_outcomes()
        outcomes = [o for entries in by_key.values() for o in entries]
        floors = {Tier.TIER1: 6.0, Tier.TIER2: 7.0}

        current = {}
        recommended = {}
        analysis = {}
        for tier, floor in floors.items():
            current[tier.value] = self.settings.tier(tier).quality_threshold
            from_tier = [o for o in outcomes if o.original_tier == tier]
            if not from_tier:
                continue
            scores = [o.quality_before for o in from_tier if o.success and o.quality_before is not None]
            if scores:
                recommended[tier.value] = round(max(sum(scores) / len(scores) - 0.5, floor), 2)
            analysis[tier.value] = f"Based on {len(from_tier)} escalations"

        return {
            "current_thresholds": current,
            "recommended_thresholds": recommended,
            "analysis": analysis,
        }
