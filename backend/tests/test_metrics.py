"""
Unit tests for Prometheus metrics collection.

Tests verify:
- RED metrics are recorded per method/endpoint/status
- Provider, engine and cache metrics are incremented with the right labels
- Resource metrics tolerate psutil failures
- The /metrics endpoint returns Prometheus text format
"""
from unittest.mock import patch

from fastapi.testclient import TestClient

from app.core.metrics import (
    get_metrics,
    get_metrics_content_type,
    normalize_endpoint,
    record_ai_cache_hit,
    record_ai_cache_write,
    record_escalation,
    record_http_request,
    record_judge_fallback,
    record_provider_request,
    record_response_flag,
    record_tier_selected,
    record_tokens_and_cost,
    registry,
    update_budget_utilization,
    update_resource_metrics,
)
from app.main import app


def sample(name, **labels):
    return registry.get_sample_value(name, labels) or 0.0


class TestHttpMetrics:
    """Test RED metrics."""

    def test_normalize_endpoint_strips_query(self):
        assert normalize_endpoint("/ai/chat?debug=1") == "/ai/chat"

    def test_record_http_request_success(self):
        before = sample("http_requests_total", method="POST", endpoint="/ai/analyze", status="200")

        record_http_request("POST", "/ai/analyze", 200, 0.4)

        assert sample("http_requests_total", method="POST", endpoint="/ai/analyze", status="200") == before + 1

    def test_record_http_request_error(self):
        before = sample("http_errors_total", method="POST", endpoint="/ai/analyze", status_code="503")

        record_http_request("POST", "/ai/analyze?x=1", 503, 2.0)

        assert sample("http_errors_total", method="POST", endpoint="/ai/analyze", status_code="503") == before + 1


class TestAIMetrics:
    """Test provider and engine metrics."""

    def test_provider_request(self):
        before = sample("ai_provider_requests_total", provider="alpha", tier="tier1", status="success")

        record_provider_request("alpha", "tier1", "success", 0.8)

        assert sample("ai_provider_requests_total", provider="alpha", tier="tier1", status="success") == before + 1

    def test_tokens_and_cost(self):
        tokens_before = sample("ai_tokens_total", provider="alpha", direction="input")
        cost_before = sample("ai_cost_usd_total", provider="alpha", tier="tier2")

        record_tokens_and_cost("alpha", "tier2", 1000, 200, 0.0005)

        assert sample("ai_tokens_total", provider="alpha", direction="input") == tokens_before + 1000
        assert sample("ai_cost_usd_total", provider="alpha", tier="tier2") == cost_before + 0.0005

    def test_escalation_and_tier_selection(self):
        escalations_before = sample("ai_escalations_total", from_tier="tier1", to_tier="tier2", outcome="blocked")
        selected_before = sample("ai_tier_selected_total", tier="tier1", downgraded="true")

        record_escalation("tier1", "tier2", "blocked")
        record_tier_selected("tier1", True)

        assert sample("ai_escalations_total", from_tier="tier1", to_tier="tier2", outcome="blocked") == escalations_before + 1
        assert sample("ai_tier_selected_total", tier="tier1", downgraded="true") == selected_before + 1

    def test_judge_fallback(self):
        before = sample("ai_judge_fallback_total", reason="parse_failed")

        record_judge_fallback("parse_failed")

        assert sample("ai_judge_fallback_total", reason="parse_failed") == before + 1

    def test_response_flag(self):
        before = sample("ai_response_flags_total", flag="credential")

        record_response_flag("credential")

        assert sample("ai_response_flags_total", flag="credential") == before + 1

    def test_cache_counters(self):
        hits_before = sample("ai_cache_hits_total", request_type="chat")
        refused_before = sample("ai_cache_writes_total", status="refused")

        record_ai_cache_hit("chat")
        record_ai_cache_write("refused")

        assert sample("ai_cache_hits_total", request_type="chat") == hits_before + 1
        assert sample("ai_cache_writes_total", status="refused") == refused_before + 1

    def test_budget_utilization_gauge(self):
        update_budget_utilization(0.42)
        assert sample("ai_budget_utilization_ratio") == 0.42


class TestResourceMetrics:
    """Test CPU and memory gauges."""

    @patch("app.core.metrics.psutil.cpu_percent", return_value=37.5)
    def test_update_resource_metrics(self, mock_cpu):
        update_resource_metrics()
        assert sample("system_cpu_usage_percent") == 37.5

    @patch("app.core.metrics.psutil.cpu_percent", side_effect=RuntimeError("no /proc"))
    def test_update_resource_metrics_handles_errors(self, mock_cpu):
        update_resource_metrics()


class TestMetricsEndpoint:
    """Test metrics exposition."""

    def test_get_metrics_returns_prometheus_text(self):
        record_provider_request("alpha", "tier1", "success", 0.1)
        content = get_metrics()

        assert isinstance(content, bytes)
        assert b"ai_provider_requests_total" in content
        assert "text/plain" in get_metrics_content_type()

    def test_metrics_endpoint(self):
        client = TestClient(app)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
