"""
Pydantic models shared by the AI orchestration engine.

Tiers are totally ordered (tier1 < tier2 < tier3); every comparison in the
engine goes through ``Tier.rank`` so the ordering lives in one place.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

from pydantic import BaseModel, Field, field_validator


class Tier(str, Enum):
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def next_tier(self) -> Optional["Tier"]:
        """Exactly one tier up, or None at the top."""
        idx = self.rank + 1
        return _TIER_ORDER[idx] if idx < len(_TIER_ORDER) else None

    def lower_tiers(self) -> List["Tier"]:
        """Tiers below this one, closest first."""
        return list(reversed(_TIER_ORDER[: self.rank]))

    def __lt__(self, other: "Tier") -> bool:  # type: ignore[override]
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "Tier") -> bool:  # type: ignore[override]
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: "Tier") -> bool:  # type: ignore[override]
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: "Tier") -> bool:  # type: ignore[override]
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank


_TIER_ORDER = [Tier.TIER1, Tier.TIER2, Tier.TIER3]
ALL_TIERS = list(_TIER_ORDER)


class Subscription(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class RequestType(str, Enum):
    CHAT = "chat"
    ANALYSIS = "analysis"
    JUDGE = "judge"


class Caller(BaseModel):
    """Caller identity and entitlement, as resolved by the authentication layer."""

    id: str = Field(..., description="Caller ID")
    subscription: Subscription = Subscription.FREE
    budget_units: int = Field(0, ge=0, description="Available budget units")


class DetectedIssue(BaseModel):
    """An issue found upstream in the analyzed content."""

    type: str = "other"
    severity: str = "medium"
    message: Optional[str] = None
    location: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ContentMetadata(BaseModel):
    """Size and structure descriptors of the analyzed content."""

    filename: Optional[str] = None
    file_size: int = Field(0, ge=0)
    sheet_count: int = Field(0, ge=0)
    formula_count: int = Field(0, ge=0)
    external_references: int = Field(0, ge=0)


class AIRequest(BaseModel):
    """A prompt bound for the providers, as built by the engine."""

    prompt: str
    system_prompt: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    requested_tier: Optional[Tier] = None
    caller: Caller
    request_type: RequestType
    context: Dict[str, Any] = Field(default_factory=dict)


class ResponseEnvelope(BaseModel):
    """Normalized result of one successful provider call."""

    content: str
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)
    model: str
    provider: str
    finish_reason: Optional[str] = None
    tier: Tier
    cost: float = Field(0.0, ge=0.0)
    latency_ms: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ProviderAttempt(BaseModel):
    """Diagnostic record of a provider that failed or was skipped."""

    provider: str
    model: Optional[str] = None
    outcome: str  # "failed" | "skipped"
    error_type: Optional[str] = None
    message: Optional[str] = None


class OrchestratedResponse(BaseModel):
    envelope: ResponseEnvelope
    provider: str
    tier: Tier
    attempts: List[ProviderAttempt] = Field(default_factory=list)


def _clamp_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(10.0, score))


class QualityAssessment(BaseModel):
    """Five-dimension quality score of a candidate response."""

    accuracy: float = 0.0
    completeness: float = 0.0
    clarity: float = 0.0
    relevance: float = 0.0
    practicality: float = 0.0
    overall_score: float = 0.0
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    improvement_suggestions: List[str] = Field(default_factory=list)
    judge_model: Optional[str] = None

    @field_validator(
        "accuracy", "completeness", "clarity", "relevance", "practicality", "overall_score",
        mode="before",
    )
    @classmethod
    def clamp_score(cls, value: Any) -> float:
        return _clamp_score(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value: Any) -> float:
        try:
            confidence = float(value) if value is not None else 0.5
        except (TypeError, ValueError):
            confidence = 0.5
        return max(0.0, min(1.0, confidence))

    @field_validator("strengths", "weaknesses", "improvement_suggestions", mode="before")
    @classmethod
    def coerce_list(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if not isinstance(value, (list, tuple)):
            raise ValueError(f"expected a list of strings, got {type(value).__name__}")
        return [str(v) for v in value]

    def dimension_scores(self) -> Dict[str, float]:
        return {
            "accuracy": self.accuracy,
            "completeness": self.completeness,
            "clarity": self.clarity,
            "relevance": self.relevance,
            "practicality": self.practicality,
        }


@dataclass(frozen=True)
class Parsed:
    """Judge output parsed from the model's structured answer."""

    assessment: QualityAssessment
    is_fallback = False


@dataclass(frozen=True)
class FallbackEstimate:
    """Heuristic quality estimate used when the judge call or its parse failed."""

    assessment: QualityAssessment
    reason: str
    is_fallback = True


JudgeResult = Union[Parsed, FallbackEstimate]


class EscalationDecision(BaseModel):
    should_escalate: bool = False
    current_tier: Tier
    recommended_tier: Tier
    reasons: List[str] = Field(default_factory=list)
    quality_score: Optional[float] = None
    blocked: bool = False


class CacheEntry(BaseModel):
    key: str
    payload: Dict[str, Any]
    cached_at: datetime
    expires_at: datetime
    confidence: float = Field(..., ge=0.0, le=1.0)
    cache_version: str = "1.0"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


class UsageRecord(BaseModel):
    model: str
    provider: str
    cost: float = Field(..., ge=0.0)
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_type: str
    caller_id: Optional[str] = None
    tier: Optional[Tier] = None
    budget_units: int = 0


class TierRun(BaseModel):
    """One content call at one tier, with its judge verdict."""

    tier: Tier
    envelope: ResponseEnvelope
    summary: str = ""
    analysis: Dict[str, Any] = Field(default_factory=dict)
    assessment: QualityAssessment
    quality_estimated: bool = False
    confidence: float = 0.0
    budget_units: int = 0
    attempts: List[ProviderAttempt] = Field(default_factory=list)
    content_flags: List[str] = Field(default_factory=list)

    @property
    def cost(self) -> float:
        return self.envelope.cost

    @property
    def tokens_used(self) -> int:
        return self.envelope.total_tokens


class EscalationOutcome(BaseModel):
    """History entry for one executed escalation."""

    original_tier: Tier
    escalated_tier: Tier
    success: bool
    quality_before: Optional[float] = None
    quality_after: Optional[float] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TierSelection(BaseModel):
    tier: Tier
    complexity_score: float = 0.0
    computed_tier: Tier
    downgraded: bool = False
    available_units: int = 0


class AnalysisOutcome(BaseModel):
    """Caller-facing result of ``analyze``."""

    summary: str = ""
    analysis: Dict[str, Any] = Field(default_factory=dict)
    tier_used: Tier
    provider: Optional[str] = None
    model: Optional[str] = None
    confidence: float = 0.0
    quality: Optional[QualityAssessment] = None
    quality_estimated: bool = False
    tokens_used: int = 0
    total_cost: float = 0.0
    budget_units_used: int = 0
    complexity_score: float = 0.0
    from_cache: bool = False
    escalation: Dict[str, Any] = Field(default_factory=dict)
    attempts: List[ProviderAttempt] = Field(default_factory=list)
    content_flags: List[str] = Field(default_factory=list)


class ChatOutcome(BaseModel):
    """Caller-facing result of ``chat``."""

    message: str
    tier_used: Tier
    provider: Optional[str] = None
    model: Optional[str] = None
    confidence: float = 0.0
    quality: Optional[QualityAssessment] = None
    quality_estimated: bool = False
    tokens_used: int = 0
    total_cost: float = 0.0
    budget_units_used: int = 0
    from_cache: bool = False
    escalation: Dict[str, Any] = Field(default_factory=dict)
    attempts: List[ProviderAttempt] = Field(default_factory=list)
    content_flags: List[str] = Field(default_factory=list)


T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T
    ok = True


@dataclass(frozen=True)
class Failure:
    kind: str
    message: str
    details: Optional[Dict[str, Any]] = None
    ok = False


Result = Union[Success[T], Failure]
