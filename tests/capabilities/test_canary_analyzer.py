"""
Tests for tiller.capabilities.canary_analyzer.

Covers:
- PromQL construction
- PROMOTE / ROLLBACK decisions against a mocked Prometheus
- Bearer token from a mounted secret, scrubbed from failures
- Egress allowlist enforcement before any request
"""

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from tiller.capabilities.canary_analyzer import (
    CANARY_ANALYZER,
    CANARY_ANALYZER_ID,
    CanaryDecision,
    analyze_canary,
    classify_prometheus_error,
    error_rate_query,
    latency_p99_query,
    version_selector,
)
from tiller.capabilities.registry import CapabilityRegistry
from tiller.core.errors import ErrorKind
from tiller.core.logging import REDACTED
from tiller.core.secrets import SecretsResolver
from tiller.execution.invoker import CapabilityInvoker
from tiller.execution.runtime import ExecutionRuntime


class FakePrometheus:
    """MockTransport handler answering instant queries per version."""

    def __init__(self, error_rates: dict[str, str], latencies: dict[str, str] | None = None):
        self.error_rates = error_rates
        self.latencies = latencies or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        query = parse_qs(urlsplit(str(request.url)).query)["query"][0]
        table = self.latencies if query.startswith("histogram_quantile") else self.error_rates
        for version, value in table.items():
            if f'version="{version}"' in query:
                return httpx.Response(
                    200, json={"status": "success", "data": {"result": [{"value": [1700000000, value]}]}}
                )
        return httpx.Response(200, json={"status": "success", "data": {"result": []}})


def make_invoker(handler, secrets, tmp_path) -> CapabilityInvoker:
    registry = CapabilityRegistry()
    registry.register(CANARY_ANALYZER, analyze_canary)
    runtime = ExecutionRuntime(
        SecretsResolver([secrets]),
        sandbox_root=tmp_path / "sandboxes",
        transport=httpx.MockTransport(handler),
    )
    return CapabilityInvoker(registry, runtime, sleep=lambda seconds: None)


ARGS = {
    "baselineVersion": "v1",
    "canaryVersion": "v2",
    "prometheusUrl": "http://prometheus:9090",
    "analysisWindowSeconds": 300,
}


class TestQueries:
    def test_selector(self):
        assert version_selector("v2", "web", "prod") == 'version="v2",service="web",namespace="prod"'
        assert version_selector("v2") == 'version="v2"'

    def test_error_rate_query(self):
        query = error_rate_query('version="v2"', 300)
        assert query == (
            'sum(rate(http_requests_total{version="v2",status=~"5.."}[300s]))'
            '/sum(rate(http_requests_total{version="v2"}[300s]))'
        )

    def test_latency_query(self):
        assert latency_p99_query('version="v2"', 60).startswith("histogram_quantile(0.99, sum(rate(")


class TestAnalyze:
    def test_promote_when_within_threshold(self, context, secrets, tmp_path):
        prometheus = FakePrometheus({"v1": "0.01", "v2": "0.02"})
        result = make_invoker(prometheus, secrets, tmp_path).invoke(CANARY_ANALYZER_ID, ARGS, context)
        output = result.unwrap()
        assert output.decision is CanaryDecision.PROMOTE
        assert output.canary_metrics["error_rate"] == pytest.approx(0.02)
        assert output.deltas["error_rate"] == pytest.approx(0.01)
        assert output.analysis_window_seconds == 300
        assert len(prometheus.requests) == 4

    def test_rollback_when_error_rate_exceeds(self, context, secrets, tmp_path):
        prometheus = FakePrometheus({"v1": "0.01", "v2": "0.12"})
        output = make_invoker(prometheus, secrets, tmp_path).invoke(CANARY_ANALYZER_ID, ARGS, context).unwrap()
        assert output.decision is CanaryDecision.ROLLBACK
        assert "exceeds threshold" in output.reason

    def test_rollback_on_latency_threshold(self, context, secrets, tmp_path):
        prometheus = FakePrometheus({"v1": "0", "v2": "0"}, {"v1": "120", "v2": "480"})
        args = {**ARGS, "latencyThresholdMs": 250}
        output = make_invoker(prometheus, secrets, tmp_path).invoke(CANARY_ANALYZER_ID, args, context).unwrap()
        assert output.decision is CanaryDecision.ROLLBACK
        assert output.deltas["latency_p99"] == pytest.approx(360)
        assert [r.metric.value for r in output.metric_results] == ["error_rate", "latency_p99"]

    def test_nan_and_empty_results_count_as_zero(self, context, secrets, tmp_path):
        prometheus = FakePrometheus({"v1": "NaN"})
        output = make_invoker(prometheus, secrets, tmp_path).invoke(CANARY_ANALYZER_ID, ARGS, context).unwrap()
        assert output.baseline_metrics["error_rate"] == 0.0
        assert output.canary_metrics["error_rate"] == 0.0
        assert output.decision is CanaryDecision.PROMOTE

    def test_bearer_token_from_secret(self, context, secrets, tmp_path):
        prometheus = FakePrometheus({"v2": "0"})
        ctx = context.derive(secret_refs={"prometheus_token": "prom-token"})
        make_invoker(prometheus, secrets, tmp_path).invoke(CANARY_ANALYZER_ID, ARGS, ctx).unwrap()
        assert prometheus.requests[0].headers["Authorization"] == "Bearer s3cr3t-value"


class TestFailures:
    def test_disallowed_host_never_connects(self, context, secrets, tmp_path):
        prometheus = FakePrometheus({})
        args = {**ARGS, "prometheusUrl": "http://metrics.evil.example.com"}
        result = make_invoker(prometheus, secrets, tmp_path).invoke(CANARY_ANALYZER_ID, args, context)
        assert result.is_err()
        assert result.kind is ErrorKind.OUTBOUND_HOST_NOT_ALLOWED
        assert prometheus.requests == []

    def test_connection_failure_is_retried_and_scrubbed(self, context, secrets, tmp_path):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ConnectError(f"connection refused (auth {request.headers['Authorization']})")

        ctx = context.derive(secret_refs={"prometheus_token": "prom-token"})
        result = make_invoker(handler, secrets, tmp_path).invoke(CANARY_ANALYZER_ID, ARGS, ctx)
        assert result.is_err()
        assert result.kind is ErrorKind.RUNNER_ERROR
        assert result.retryable is True
        assert len(attempts) == CANARY_ANALYZER.operations.retry_policy.max_attempts
        assert "s3cr3t-value" not in result.message
        assert REDACTED in result.message
        assert result.cause is None

    def test_unauthorized_is_fatal_without_retry(self, context, secrets, tmp_path):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(401, json={"status": "error", "error": "unauthorized"})

        result = make_invoker(handler, secrets, tmp_path).invoke(CANARY_ANALYZER_ID, ARGS, context)
        assert result.is_err()
        assert result.retryable is False
        assert len(calls) == 1

    def test_prometheus_classifier(self):
        assert classify_prometheus_error(RuntimeError("no data for query")) == "RETRYABLE"
        assert classify_prometheus_error(RuntimeError("Unauthorized")) == "FATAL"
        assert classify_prometheus_error(RuntimeError("parse error")) is None
