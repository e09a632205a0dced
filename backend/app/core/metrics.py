"""
Prometheus metrics for the AI orchestration service.

Metric groups:
- RED metrics for the HTTP surface (rate, errors, duration)
- Provider metrics: requests, latency, errors, tokens, cost, rate-limit blocks
- Engine metrics: tier selection, escalations, judge fallbacks, response cache
- Budget metrics: monthly spend utilization
- Resource metrics: process host CPU and memory

Naming follows Prometheus conventions: counters end in _total, durations in
_seconds.
"""

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from app.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
    registry=registry,
)

# ============================================================================
# PROVIDER METRICS
# ============================================================================

ai_provider_requests_total = Counter(
    "ai_provider_requests_total",
    "Total number of provider generation calls",
    ["provider", "tier", "status"],
    registry=registry,
)

ai_provider_request_duration_seconds = Histogram(
    "ai_provider_request_duration_seconds",
    "Provider generation call latency in seconds (including retries)",
    ["provider", "tier"],
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0],
    registry=registry,
)

ai_provider_errors_total = Counter(
    "ai_provider_errors_total",
    "Total number of provider call errors",
    ["provider", "error_type"],
    registry=registry,
)

ai_tokens_total = Counter(
    "ai_tokens_total",
    "Total number of tokens consumed",
    ["provider", "direction"],  # direction: input | output
    registry=registry,
)

ai_cost_usd_total = Counter(
    "ai_cost_usd_total",
    "Total provider spend in USD",
    ["provider", "tier"],
    registry=registry,
)

ai_rate_limit_blocked_total = Counter(
    "ai_rate_limit_blocked_total",
    "Total number of calls refused by the per-provider rate limiter",
    ["provider"],
    registry=registry,
)

# ============================================================================
# ENGINE METRICS
# ============================================================================

ai_tier_selected_total = Counter(
    "ai_tier_selected_total",
    "Initial tier chosen for a request",
    ["tier", "downgraded"],
    registry=registry,
)

ai_escalations_total = Counter(
    "ai_escalations_total",
    "Escalation outcomes",
    ["from_tier", "to_tier", "outcome"],  # outcome: success | failed | blocked
    registry=registry,
)

ai_judge_fallback_total = Counter(
    "ai_judge_fallback_total",
    "Quality assessments that fell back to the heuristic scorer",
    ["reason"],
    registry=registry,
)

ai_quality_score = Histogram(
    "ai_quality_score",
    "Judge overall quality score",
    ["tier"],
    buckets=[1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 7.5, 8.0, 8.5, 9.0, 10.0],
    registry=registry,
)

ai_response_flags_total = Counter(
    "ai_response_flags_total",
    "Provider answers sanitized before delivery, by finding",
    ["flag"],  # flag: credential | card_number | ssn | script_tag | truncated
    registry=registry,
)

ai_cache_hits_total = Counter(
    "ai_cache_hits_total",
    "Response cache hits",
    ["request_type"],
    registry=registry,
)

ai_cache_misses_total = Counter(
    "ai_cache_misses_total",
    "Response cache misses",
    ["request_type"],
    registry=registry,
)

ai_cache_writes_total = Counter(
    "ai_cache_writes_total",
    "Response cache write attempts",
    ["status"],  # status: success | refused | failed | error
    registry=registry,
)

# ============================================================================
# BUDGET / RESOURCE METRICS
# ============================================================================

ai_budget_utilization_ratio = Gauge(
    "ai_budget_utilization_ratio",
    "Current month provider spend divided by the configured monthly limit",
    registry=registry,
)

system_cpu_usage_percent = Gauge(
    "system_cpu_usage_percent",
    "System CPU usage percentage",
    registry=registry,
)

system_memory_usage_bytes = Gauge(
    "system_memory_usage_bytes",
    "System memory usage in bytes",
    registry=registry,
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def normalize_endpoint(path: str) -> str:
    """Strip query strings so endpoint labels stay low-cardinality."""
    return path.split("?", 1)[0]


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_provider_request(provider: str, tier: str, status: str, duration_seconds: float) -> None:
    """
    Record one provider generation call.

    Args:
        provider: Provider name
        tier: Tier the call served
        status: "success" or "error"
        duration_seconds: Wall time including retries
    """
    ai_provider_requests_total.labels(provider=provider, tier=tier, status=status).inc()
    ai_provider_request_duration_seconds.labels(provider=provider, tier=tier).observe(duration_seconds)


def record_provider_error(provider: str, error_type: str) -> None:
    ai_provider_errors_total.labels(provider=provider, error_type=error_type).inc()


def record_tokens_and_cost(
    provider: str,
    tier: str,
    input_tokens: int,
    output_tokens: int,
    cost_usd: float,
) -> None:
    if input_tokens:
        ai_tokens_total.labels(provider=provider, direction="input").inc(input_tokens)
    if output_tokens:
        ai_tokens_total.labels(provider=provider, direction="output").inc(output_tokens)
    if cost_usd > 0:
        ai_cost_usd_total.labels(provider=provider, tier=tier).inc(cost_usd)


def record_rate_limit_blocked(provider: str) -> None:
    ai_rate_limit_blocked_total.labels(provider=provider).inc()


def record_tier_selected(tier: str, downgraded: bool) -> None:
    ai_tier_selected_total.labels(tier=tier, downgraded=str(downgraded).lower()).inc()


def record_escalation(from_tier: str, to_tier: str, outcome: str) -> None:
    ai_escalations_total.labels(from_tier=from_tier, to_tier=to_tier, outcome=outcome).inc()


def record_judge_fallback(reason: str) -> None:
    ai_judge_fallback_total.labels(reason=reason).inc()


def record_quality_score(tier: str, score: float) -> None:
    ai_quality_score.labels(tier=tier).observe(score)


def record_response_flag(flag: str) -> None:
    ai_response_flags_total.labels(flag=flag).inc()


def record_ai_cache_hit(request_type: str) -> None:
    ai_cache_hits_total.labels(request_type=request_type).inc()


def record_ai_cache_miss(request_type: str) -> None:
    ai_cache_misses_total.labels(request_type=request_type).inc()


def record_ai_cache_write(status: str) -> None:
    ai_cache_writes_total.labels(status=status).inc()


def update_budget_utilization(ratio: float) -> None:
    ai_budget_utilization_ratio.set(ratio)


def update_resource_metrics() -> None:
    """Refresh CPU and memory gauges (called on scrape)."""
    try:
        system_cpu_usage_percent.set(psutil.cpu_percent(interval=None))
        system_memory_usage_bytes.set(psutil.virtual_memory().used)
    except Exception as e:
        logger.warning(
            "metrics_resource_update_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


def get_metrics() -> bytes:
    update_resource_metrics()
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
