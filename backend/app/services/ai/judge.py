"""
Quality judge: scores a candidate response with a second model call.

The judge always runs at the top tier (temperature 0.1) and asks for a JSON
object with five dimension scores (accuracy, completeness, clarity,
relevance, practicality), an overall score and a confidence.

The result is tagged:
- Parsed(assessment): the judge answered with a usable JSON object
- FallbackEstimate(assessment, reason): the call or the parse failed and the
  score comes from a text heuristic (confidence 0.3)

A judge failure never aborts the caller's request.
"""
import json
import re
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from app.core.errors import AIEngineError
from app.core.logging import get_logger
from app.core.metrics import record_judge_fallback
from app.services.ai.orchestrator import ProviderOrchestrator
from app.services.ai.prompts import StructuredOutputError, extract_json_object
from app.services.ai.schema import (
    Caller,
    FallbackEstimate,
    JudgeResult,
    Parsed,
    QualityAssessment,
    RequestType,
)
from app.services.ai.usage import UsageAccountant

logger = get_logger(__name__)

JUDGE_TEMPERATURE = 0.1
JUDGE_MAX_TOKENS = 1000
FALLBACK_CONFIDENCE = 0.3
FALLBACK_JUDGE_MODEL = "fallback_heuristic"

_FORMULA_PATTERN = re.compile(r"=\w+\(")
_STEP_PATTERN = re.compile(r"\d+\.\s")
_EXAMPLE_PATTERN = re.compile(r"example|for instance", re.IGNORECASE)

JUDGE_PROMPT = """You are an expert evaluator of AI responses to spreadsheet questions. Assess the AI response below across multiple quality dimensions.

**Original Question:**
{question}

**Context:**
{context}

**AI Response to Evaluate:**
{response}

**Assessment Instructions:**
Rate the response on a scale of 1-10 for each dimension:

1. **Accuracy**: How technically correct is the information?
2. **Completeness**: Does it fully address the question?
3. **Clarity**: How clear and understandable is the explanation?
4. **Relevance**: How relevant is the response to the specific question?
5. **Practicality**: How actionable and useful is the response?

**Required Output Format (JSON only):**
{{
  "accuracy": 8,
  "completeness": 7,
  "clarity": 9,
  "relevance": 8,
  "practicality": 7,
  "overall_score": 7.8,
  "strengths": ["Clear step-by-step instructions"],
  "weaknesses": ["Could include more examples"],
  "improvement_suggestions": ["Add a worked example"],
  "confidence": 0.85
}}

Provide only the JSON response without any additional text."""


def parse_assessment(text: str, judge_model: Optional[str] = None) -> QualityAssessment:
    data = extract_json_object(text)
    data["judge_model"] = judge_model
    try:
        assessment = QualityAssessment.model_validate(data)
    except ValidationError as exc:
        raise StructuredOutputError(f"judge output failed validation: {exc.error_count()} errors") from exc
    except (TypeError, ValueError) as exc:
        raise StructuredOutputError(f"judge output failed validation: {exc}") from exc

    if assessment.overall_score == 0:
        scores = list(assessment.dimension_scores().values())
        assessment.overall_score = round(sum(scores) / len(scores), 2)
    return assessment


def heuristic_assessment(response: str) -> QualityAssessment:
    """Score a response from its shape alone."""
    score = 5.0
    if len(response) > 200:
        score += 1.0
    if _FORMULA_PATTERN.search(response):
        score += 1.0
    if _STEP_PATTERN.search(response):
        score += 1.0
    if _EXAMPLE_PATTERN.search(response):
        score += 1.0
    score = min(score, 10.0)

    return QualityAssessment(
        accuracy=score,
        completeness=score,
        clarity=score,
        relevance=score,
        practicality=score,
        overall_score=score,
        confidence=FALLBACK_CONFIDENCE,
        judge_model=FALLBACK_JUDGE_MODEL,
    )


class QualityJudge:
    def __init__(
        self,
        orchestrator: ProviderOrchestrator,
        accountant: Optional[UsageAccountant] = None,
    ):
        self.orchestrator = orchestrator
        self.accountant = accountant

    def build_prompt(self, question: str, response: str, context: Optional[Dict[str, Any]] = None) -> str:
        return JUDGE_PROMPT.format(
            question=question,
            context=json.dumps(context, default=str) if context else "",
            response=response,
        )

    async def assess(
        self,
        question: str,
        response: str,
        context: Optional[Dict[str, Any]] = None,
        caller: Optional[Caller] = None,
    ) -> JudgeResult:
        """
        Score ``response`` as an answer to ``question``.

        Judge calls are accounted (cost, monthly spend) but never debit the
        caller's budget units.
        """
        tier = self.orchestrator.settings.top_tier
        try:
            result = await self.orchestrator.generate(
                self.build_prompt(question, response, context),
                tier=tier,
                max_tokens=JUDGE_MAX_TOKENS,
                temperature=JUDGE_TEMPERATURE,
            )
        except AIEngineError as e:
            logger.warning("ai_judge_call_failed", error=str(e), error_type=type(e).__name__)
            return self._fallback(response, "call_failed")

        if self.accountant and caller:
            await self.accountant.record_usage(result.envelope, caller, RequestType.JUDGE.value, debit=False)

        try:
            assessment = parse_assessment(result.envelope.content, judge_model=result.envelope.model)
        except StructuredOutputError as e:
            logger.warning("ai_judge_parse_failed", error=str(e), model=result.envelope.model)
            return self._fallback(response, "parse_failed")

        logger.info(
            "ai_judge_assessed",
            overall_score=assessment.overall_score,
            confidence=assessment.confidence,
            judge_model=assessment.judge_model,
        )
        return Parsed(assessment)

    def _fallback(self, response: str, reason: str) -> FallbackEstimate:
        assessment = heuristic_assessment(response)
        record_judge_fallback(reason)
        return FallbackEstimate(assessment, reason)


def quality_health(average_score: float) -> str:
    if average_score >= 8.5:
        return "excellent"
    if average_score >= 7.0:
        return "good"
    if average_score >= 5.5:
        return "fair"
    return "needs_improvement"


def summarize_assessments(assessments: Iterable[QualityAssessment]) -> Dict[str, Any]:
    """Aggregate a batch of assessments: averages, distribution, recurring weaknesses."""
    assessments = list(assessments)
    if not assessments:
        return {}

    overall: List[float] = [a.overall_score for a in assessments]
    average = sum(overall) / len(overall)
    dimensions = assessments[0].dimension_scores().keys()

    weaknesses = Counter(w for a in assessments for w in a.weaknesses)
    suggestions = Counter(s for a in assessments for s in a.improvement_suggestions)

    return {
        "total_responses": len(assessments),
        "average_overall_score": round(average, 2),
        "dimension_averages": {
            dim: round(sum(a.dimension_scores()[dim] for a in assessments) / len(assessments), 2)
            for dim in dimensions
        },
        "quality_distribution": {
            "excellent": sum(1 for s in overall if s >= 8.5),
            "good": sum(1 for s in overall if 7.0 <= s < 8.5),
            "fair": sum(1 for s in overall if 5.5 <= s < 7.0),
            "poor": sum(1 for s in overall if s < 5.5),
        },
        "common_weaknesses": [w for w, _ in weaknesses.most_common(3)],
        "common_suggestions": [s for s, _ in suggestions.most_common(3)],
        "overall_health": quality_health(average),
    }
