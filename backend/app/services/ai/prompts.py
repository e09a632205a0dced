"""
Prompt builders and structured-output parsing for analysis and chat requests.
"""
import json
import re
from typing import Any, Dict, List, Optional, Tuple

from app.services.ai.schema import ContentMetadata, DetectedIssue, Tier

_CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)

ANALYST_PERSONA = {
    Tier.TIER1: "You are a spreadsheet expert analyzing errors in a workbook.",
    Tier.TIER2: "You are a senior spreadsheet expert with advanced analytical capabilities.",
    Tier.TIER3: (
        "You are a world-class spreadsheet expert with deep expertise in advanced analytics, "
        "VBA, Power Query, and enterprise-level spreadsheet optimization."
    ),
}

ANALYSIS_DEPTH = {
    Tier.TIER1: [
        "Clear analysis of each error",
        "Direct corrections that should be applied",
        "Basic explanation of the fixes",
    ],
    Tier.TIER2: [
        "Deep technical analysis of each error",
        "Root cause analysis with dependency mapping",
        "Performance impact assessment",
        "Multiple correction options with trade-offs",
        "Preventive recommendations for similar issues",
        "Code quality improvements for complex formulas",
    ],
    Tier.TIER3: [
        "Comprehensive technical analysis with architecture insights",
        "Advanced root cause analysis with dependency mapping and data flow analysis",
        "Performance impact assessment with optimization recommendations",
        "Multiple correction options with detailed trade-offs and implementation complexity",
        "Preventive recommendations with best practices and governance strategies",
        "Code quality improvements for complex formulas with refactoring suggestions",
        "Enterprise-level recommendations for scalability and maintainability",
        "Advanced features utilization (Power Query, Power Pivot, VBA alternatives)",
    ],
}

ANALYSIS_FORMAT = """Respond in valid JSON format only:
{
  "analysis": {
    "error_1": {
      "explanation": "Clear explanation of the error",
      "impact": "High/Medium/Low - business impact",
      "root_cause": "Technical root cause",
      "severity": "Critical/High/Medium/Low"
    }
  },
  "corrections": [
    {
      "cell": "A1",
      "original": "=SUM(A:A)",
      "corrected": "=SUM(A2:A100)",
      "explanation": "Why this correction fixes the issue",
      "confidence": 0.95
    }
  ],
  "overall_confidence": 0.85,
  "summary": "Brief summary of all issues and recommended actions",
  "estimated_time_saved": "X hours/minutes of manual correction"
}"""

CHAT_SYSTEM_PROMPT = """You are an AI assistant specialized in spreadsheet management.
You can help users with:
- Creating formulas and functions
- Analyzing spreadsheet errors
- Generating workbook templates
- Optimizing spreadsheet performance
- Data analysis and visualization recommendations

When users ask you to create or generate spreadsheet content, provide clear,
structured responses that can be easily implemented."""


class StructuredOutputError(ValueError):
    """Model output does not contain the expected JSON object."""


def extract_json_object(text: str) -> Dict[str, Any]:
    """Strip code fences and load the outermost ``{...}`` block."""
    cleaned = _CODE_FENCE.sub("", text or "")
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise StructuredOutputError("no JSON object in model output")
    try:
        data = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError as exc:
        raise StructuredOutputError(f"invalid JSON in model output: {exc}") from exc
    if not isinstance(data, dict):
        raise StructuredOutputError("model output is not a JSON object")
    return data


def build_analysis_prompt(
    issues: List[DetectedIssue],
    metadata: Optional[ContentMetadata],
    tier: Tier,
) -> Tuple[str, str]:
    """(system prompt, user prompt) for an analysis at ``tier``."""
    depth = "\n".join(f"{i}. {item}" for i, item in enumerate(ANALYSIS_DEPTH[tier], start=1))
    metadata_json = metadata.model_dump_json() if metadata else "{}"
    issues_json = json.dumps([issue.model_dump() for issue in issues], default=str)

    prompt = (
        f"File metadata:\n```json\n{metadata_json}\n```\n\n"
        f"Detected errors:\n```json\n{issues_json}\n```\n\n"
        f"Provide:\n{depth}\n\n"
        f"{ANALYSIS_FORMAT}"
    )
    return ANALYST_PERSONA[tier], prompt


def analysis_question(issues: List[DetectedIssue]) -> str:
    """Short natural-language question the analysis answers, for judging and escalation."""
    descriptions = [issue.message or issue.type for issue in issues if issue.message or issue.type]
    return f"Spreadsheet errors: {', '.join(descriptions)}"


def parse_analysis(content: str) -> Dict[str, Any]:
    """
    Structured fields of an analysis answer.

    Raises:
        StructuredOutputError: no JSON object, one without analysis/corrections,
            or fields of the wrong type
    """
    data = extract_json_object(content)
    if "analysis" not in data and "corrections" not in data:
        raise StructuredOutputError("analysis output has neither 'analysis' nor 'corrections'")

    analysis = data.get("analysis") or {}
    corrections = data.get("corrections") or []
    summary = data.get("summary") or "No summary provided"
    if not isinstance(analysis, dict):
        raise StructuredOutputError(f"'analysis' is {type(analysis).__name__}, expected an object")
    if not isinstance(corrections, list):
        raise StructuredOutputError(f"'corrections' is {type(corrections).__name__}, expected a list")
    if not isinstance(summary, str):
        raise StructuredOutputError(f"'summary' is {type(summary).__name__}, expected a string")

    try:
        overall_confidence = float(data.get("overall_confidence") or 0.0)
    except (TypeError, ValueError):
        overall_confidence = 0.0

    return {
        "analysis": analysis,
        "corrections": corrections,
        "overall_confidence": overall_confidence,
        "summary": summary,
        "estimated_time_saved": str(data.get("estimated_time_saved") or "Unknown"),
    }


def build_chat_prompt(message: str, context: Optional[Dict[str, Any]] = None) -> str:
    """
    Flatten a chat turn into a single prompt.

    ``context`` may carry ``file`` (metadata of the workbook being discussed)
    and ``history`` (earlier turns as ``{"role", "content"}`` dicts).
    """
    context = context or {}
    parts = []
    if context.get("file"):
        parts.append(f"User is working with a spreadsheet: {json.dumps(context['file'], default=str)}")
    for turn in context.get("history") or []:
        parts.append(f"{turn.get('role', 'user')}: {turn.get('content', '')}")
    parts.append(f"user: {message}")
    return "\n\n".join(parts)
