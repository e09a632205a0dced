"""
Initial tier selection from request complexity and caller entitlement.

complexity = 0.4 * issue complexity
           + 0.3 * content complexity
           + 0.2 * image complexity
           + subscription bonus          (capped at 1.0)

>= 0.8 and entitled to tier3 -> tier3, >= 0.5 and entitled to tier2 -> tier2,
otherwise tier1. The selection is then clamped to the highest tier the caller
can actually use (entitlement and budget).
"""
from typing import Iterable, Optional

from app.core.errors import InsufficientBudgetError
from app.core.logging import get_logger
from app.core.metrics import record_tier_selected
from app.services.ai.schema import (
    Caller,
    ContentMetadata,
    DetectedIssue,
    Subscription,
    Tier,
    TierSelection,
)
from app.services.ai.usage import UsageAccountant

logger = get_logger(__name__)

ISSUE_WEIGHT = 0.4
CONTENT_WEIGHT = 0.3
IMAGE_WEIGHT = 0.2
IMAGE_COMPLEXITY = 0.3

TIER3_THRESHOLD = 0.8
TIER2_THRESHOLD = 0.5

ISSUE_TYPE_WEIGHTS = {
    "circular_reference": 0.9,
    "complex_formula_error": 0.8,
    "macro_error": 0.8,
    "data_integrity_issue": 0.7,
    "external_reference_error": 0.6,
    "formula_error": 0.4,
    "data_validation": 0.3,
    "format_error": 0.2,
}
DEFAULT_ISSUE_TYPE_WEIGHT = 0.3

SEVERITY_WEIGHTS = {
    "critical": 1.0,
    "high": 0.8,
    "medium": 0.5,
    "low": 0.2,
}
DEFAULT_SEVERITY_WEIGHT = 0.3

SUBSCRIPTION_BONUS = {
    Subscription.ENTERPRISE: 0.1,
    Subscription.PRO: 0.05,
}


def issue_complexity(issues: Iterable[DetectedIssue]) -> float:
    issues = list(issues)
    if not issues:
        return 0.0
    total = sum(
        ISSUE_TYPE_WEIGHTS.get(issue.type, DEFAULT_ISSUE_TYPE_WEIGHT)
        * SEVERITY_WEIGHTS.get(issue.severity, DEFAULT_SEVERITY_WEIGHT)
        for issue in issues
    )
    return total / len(issues)


def content_complexity(metadata: Optional[ContentMetadata]) -> float:
    if metadata is None:
        return 0.0
    score = (
        min(metadata.file_size / 1_000_000, 0.3)
        + min(metadata.sheet_count / 20, 0.2)
        + min(metadata.formula_count / 100, 0.3)
        + min(metadata.external_references / 10, 0.2)
    )
    return min(score, 1.0)


class TierClassifier:
    def __init__(self, accountant: UsageAccountant):
        self.accountant = accountant

    def complexity_score(
        self,
        issues: Iterable[DetectedIssue],
        metadata: Optional[ContentMetadata],
        caller: Caller,
        has_images: bool = False,
    ) -> float:
        score = ISSUE_WEIGHT * issue_complexity(issues)
        score += CONTENT_WEIGHT * content_complexity(metadata)
        if has_images:
            score += IMAGE_WEIGHT * IMAGE_COMPLEXITY
        score += SUBSCRIPTION_BONUS.get(caller.subscription, 0.0)
        return min(score, 1.0)

    @staticmethod
    def score_tier(score: float) -> Tier:
        """Tier the score alone calls for, before entitlement."""
        if score >= TIER3_THRESHOLD:
            return Tier.TIER3
        if score >= TIER2_THRESHOLD:
            return Tier.TIER2
        return Tier.TIER1

    def tier_for_score(self, score: float, caller: Caller) -> Tier:
        if score >= TIER3_THRESHOLD and self.accountant.is_entitled(caller, Tier.TIER3):
            return Tier.TIER3
        if score >= TIER2_THRESHOLD and self.accountant.is_entitled(caller, Tier.TIER2):
            return Tier.TIER2
        return Tier.TIER1

    async def select_tier(
        self,
        issues: Iterable[DetectedIssue],
        metadata: Optional[ContentMetadata],
        caller: Caller,
        has_images: bool = False,
    ) -> TierSelection:
        """
        Pick the initial tier and clamp it to what the caller can use.

        Raises:
            InsufficientBudgetError: the caller cannot afford even tier1
        """
        score = self.complexity_score(issues, metadata, caller, has_images)
        computed = self.score_tier(score)
        entitled = self.tier_for_score(score, caller)

        balance = await self.accountant.available_units(caller)
        ceiling = self.accountant.ceiling_for(caller, balance)
        if ceiling is None:
            required = self.accountant.settings.tier(Tier.TIER1).min_budget_units
            raise InsufficientBudgetError(
                f"tier1 requires at least {required} budget units, {balance} available",
                required_units=required,
                available_units=balance,
            )

        tier = entitled if entitled <= ceiling else ceiling
        downgraded = tier != computed
        if downgraded:
            logger.info(
                "ai_tier_downgraded",
                computed_tier=computed.value,
                tier=tier.value,
                subscription=caller.subscription.value,
                balance=balance,
            )

        record_tier_selected(tier.value, downgraded)
        return TierSelection(
            tier=tier,
            complexity_score=round(score, 4),
            computed_tier=computed,
            downgraded=downgraded,
            available_units=balance,
        )
