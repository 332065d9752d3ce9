"""
Canary analyzer - compare golden signals between baseline and canary.

Manifesto:
    The rollout decision engine needs one number it can trust per stage:
    is the canary failing more often than the operator tolerates?  This
    capability asks Prometheus for the 5xx error rate and p99 latency of
    both versions over the analysis window and returns a PROMOTE or
    ROLLBACK verdict with the raw metrics attached for audit.

Architecture:
    ::

        analyze / compare-metrics / get-decision
          │
          ├── selector  version="<v>"[,service="<s>"][,namespace="<ns>"]
          ├── error rate  sum(rate(http_requests_total{sel,status=~"5.."}[W]))
          │               / sum(rate(http_requests_total{sel}[W]))
          ├── latency     histogram_quantile(0.99, sum(rate(
          │                 http_request_duration_seconds_bucket{sel}[W])) by (le)) * 1000
          └── decision    PROMOTE if canary error rate <= threshold
                          (and p99 <= latency_threshold_ms when given)
                          else ROLLBACK

    Queries go through ``sandbox.http`` so the egress allowlist
    (``prometheus:9090``, ``*.prometheus.io``) is enforced before any
    connection.  An optional ``prometheus_token`` secret is read from its
    mount path and sent as a bearer token.

Guardrails:
    - Empty, ``NaN`` or ``null`` query results count as ``0``
    - Connection, timeout and "no data" failures are retryable;
      unauthorized is fatal

Tags:
    capability, canary, prometheus, rollout, golden-signals, tiller

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tiller.capabilities.descriptor import (
    CapabilityDescriptor,
    CapabilitySchemas,
    CostFactor,
    DataClassification,
    OperationsPolicy,
    SecurityPolicy,
)
from tiller.execution.retry import RetryPolicy

if TYPE_CHECKING:
    from tiller.execution.sandbox import Sandbox

CANARY_ANALYZER_ID = "golden.traffic.canary-analyzer"

DEFAULT_PROMETHEUS_URL = "http://prometheus:9090"
DEFAULT_ANALYSIS_WINDOW_SECONDS = 600
DEFAULT_ERROR_RATE_THRESHOLD = 0.05


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CanaryOperation(str, Enum):
    ANALYZE = "analyze"
    COMPARE_METRICS = "compare-metrics"
    GET_DECISION = "get-decision"


class MetricType(str, Enum):
    ERROR_RATE = "error_rate"
    LATENCY_P50 = "latency_p50"
    LATENCY_P90 = "latency_p90"
    LATENCY_P99 = "latency_p99"
    THROUGHPUT = "throughput"
    SUCCESS_RATE = "success_rate"
    SATURATION = "saturation"


class CanaryDecision(str, Enum):
    PROMOTE = "PROMOTE"
    ROLLBACK = "ROLLBACK"
    CONTINUE = "CONTINUE"


class CanaryAnalyzerInput(_CamelModel):
    operation: CanaryOperation = CanaryOperation.ANALYZE
    baseline_version: str
    canary_version: str
    prometheus_url: str | None = None
    analysis_window_seconds: int | None = Field(default=None, gt=0)
    error_rate_threshold: float | None = Field(default=None, ge=0, le=1)
    latency_threshold_ms: float | None = Field(default=None, gt=0)
    metrics: list[MetricType] = Field(default_factory=lambda: [MetricType.ERROR_RATE])
    service: str | None = None
    namespace: str | None = None


class MetricResult(_CamelModel):
    metric: MetricType
    baseline_value: float
    canary_value: float
    delta: float
    delta_percent: float
    threshold: float
    passed: bool


class CanaryAnalyzerOutput(_CamelModel):
    decision: CanaryDecision
    baseline_version: str
    canary_version: str
    baseline_metrics: dict[str, float]
    canary_metrics: dict[str, float]
    deltas: dict[str, float]
    metric_results: list[MetricResult] = Field(default_factory=list)
    reason: str
    analysis_window_seconds: int
    analyzed_at: str


class CanaryAnalyzerConfig(_CamelModel):
    default_prometheus_url: str | None = None
    default_analysis_window: int | None = Field(default=None, gt=0)
    default_error_threshold: float | None = Field(default=None, ge=0, le=1)


class CanaryAnalyzerSecrets(BaseModel):
    prometheus_token: str | None = Field(default=None, description="Prometheus bearer token ref")


def classify_prometheus_error(error: BaseException) -> str | None:
    """Capability classifier; ``None`` defers to the default rules."""
    message = str(error).lower()
    if "connection" in message or "timeout" in message or "no data" in message:
        return "RETRYABLE"
    if "unauthorized" in message:
        return "FATAL"
    return None


CANARY_ANALYZER = CapabilityDescriptor(
    id=CANARY_ANALYZER_ID,
    version="1.0.0",
    name="canaryAnalyzer",
    description=(
        "Compare golden signals between baseline and canary versions. Returns a "
        "PROMOTE/ROLLBACK decision based on error rate and latency thresholds."
    ),
    tags=("guardian", "traffic", "observability", "canary"),
    schemas=CapabilitySchemas(
        input=CanaryAnalyzerInput,
        output=CanaryAnalyzerOutput,
        config=CanaryAnalyzerConfig,
        secrets=CanaryAnalyzerSecrets,
    ),
    security=SecurityPolicy(
        required_scopes=("metrics:read",),
        data_classification=DataClassification.INTERNAL,
        allow_outbound=("prometheus:9090", "*.prometheus.io"),
    ),
    operations=OperationsPolicy(
        is_idempotent=True,
        retry_policy=RetryPolicy(max_attempts=3, initial_interval_seconds=5, backoff_coefficient=2),
        classify=classify_prometheus_error,
        cost_factor=CostFactor.LOW,
    ),
)


def version_selector(version: str, service: str | None = None, namespace: str | None = None) -> str:
    selector = f'version="{version}"'
    if service:
        selector += f',service="{service}"'
    if namespace:
        selector += f',namespace="{namespace}"'
    return selector


def error_rate_query(selector: str, window_seconds: int) -> str:
    window = f"{window_seconds}s"
    return (
        f'sum(rate(http_requests_total{{{selector},status=~"5.."}}[{window}]))'
        f"/sum(rate(http_requests_total{{{selector}}}[{window}]))"
    )


def latency_p99_query(selector: str, window_seconds: int) -> str:
    return (
        f"histogram_quantile(0.99, sum(rate(http_request_duration_seconds_bucket"
        f"{{{selector}}}[{window_seconds}s])) by (le)) * 1000"
    )


def _as_number(raw: Any) -> float:
    if raw in (None, "", "null"):
        return 0.0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(value) or math.isinf(value) else value


class PrometheusClient:
    """Instant-query client bound to a sandbox's egress-gated HTTP client."""

    def __init__(self, sandbox: Sandbox, base_url: str, token: str | None = None):
        self.sandbox = sandbox
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}

    def query(self, promql: str) -> float:
        response = self.sandbox.http.get(
            f"{self.base_url}/api/v1/query",
            params={"query": promql},
            headers=self.headers,
        )
        response.raise_for_status()
        body = response.json()
        if body.get("status") == "error":
            raise RuntimeError(f"prometheus query failed: {body.get('error', 'unknown error')}")
        results = (body.get("data") or {}).get("result") or []
        if not results:
            return 0.0
        value = results[0].get("value") or [None, None]
        return _as_number(value[1] if len(value) > 1 else None)


def _delta_percent(baseline: float, canary: float) -> float:
    return round((canary - baseline) * 100 / (baseline + 0.0001), 2)


def analyze_canary(args: CanaryAnalyzerInput, sandbox: Sandbox) -> CanaryAnalyzerOutput:
    """Handler for :data:`CANARY_ANALYZER`."""
    config: CanaryAnalyzerConfig = sandbox.config or CanaryAnalyzerConfig()
    prometheus_url = args.prometheus_url or config.default_prometheus_url or DEFAULT_PROMETHEUS_URL
    window = args.analysis_window_seconds or config.default_analysis_window or DEFAULT_ANALYSIS_WINDOW_SECONDS
    threshold = (
        args.error_rate_threshold
        if args.error_rate_threshold is not None
        else config.default_error_threshold
        if config.default_error_threshold is not None
        else DEFAULT_ERROR_RATE_THRESHOLD
    )

    token = None
    if sandbox.has_secret("prometheus_token"):
        token = sandbox.read_secret("prometheus_token").get_secret().strip()
    prometheus = PrometheusClient(sandbox, prometheus_url, token)

    baseline_sel = version_selector(args.baseline_version, args.service, args.namespace)
    canary_sel = version_selector(args.canary_version, args.service, args.namespace)

    baseline_error = prometheus.query(error_rate_query(baseline_sel, window))
    canary_error = prometheus.query(error_rate_query(canary_sel, window))
    baseline_latency = prometheus.query(latency_p99_query(baseline_sel, window))
    canary_latency = prometheus.query(latency_p99_query(canary_sel, window))

    error_passed = canary_error <= threshold
    results = [
        MetricResult(
            metric=MetricType.ERROR_RATE,
            baseline_value=baseline_error,
            canary_value=canary_error,
            delta=canary_error - baseline_error,
            delta_percent=_delta_percent(baseline_error, canary_error),
            threshold=threshold,
            passed=error_passed,
        )
    ]
    latency_passed = True
    if args.latency_threshold_ms is not None:
        latency_passed = canary_latency <= args.latency_threshold_ms
        results.append(
            MetricResult(
                metric=MetricType.LATENCY_P99,
                baseline_value=baseline_latency,
                canary_value=canary_latency,
                delta=canary_latency - baseline_latency,
                delta_percent=_delta_percent(baseline_latency, canary_latency),
                threshold=args.latency_threshold_ms,
                passed=latency_passed,
            )
        )

    if error_passed and latency_passed:
        decision = CanaryDecision.PROMOTE
        reason = "Canary error rate within threshold. All metrics passed."
    elif not error_passed:
        decision = CanaryDecision.ROLLBACK
        reason = f"Canary error rate ({canary_error}) exceeds threshold ({threshold}). Recommend rollback."
    else:
        decision = CanaryDecision.ROLLBACK
        reason = (
            f"Canary p99 latency ({canary_latency}ms) exceeds threshold "
            f"({args.latency_threshold_ms}ms). Recommend rollback."
        )

    sandbox.logger.info(
        "canary.analyzed",
        decision=decision.value,
        canary_error_rate=canary_error,
        baseline_error_rate=baseline_error,
    )
    return CanaryAnalyzerOutput(
        decision=decision,
        baseline_version=args.baseline_version,
        canary_version=args.canary_version,
        baseline_metrics={"error_rate": baseline_error, "latency_p99": baseline_latency},
        canary_metrics={"error_rate": canary_error, "latency_p99": canary_latency},
        deltas={"error_rate": canary_error - baseline_error, "latency_p99": canary_latency - baseline_latency},
        metric_results=results,
        reason=reason,
        analysis_window_seconds=window,
        analyzed_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    )


__all__ = [
    "CANARY_ANALYZER",
    "CANARY_ANALYZER_ID",
    "CanaryAnalyzerInput",
    "CanaryAnalyzerOutput",
    "CanaryAnalyzerConfig",
    "CanaryAnalyzerSecrets",
    "CanaryDecision",
    "CanaryOperation",
    "MetricResult",
    "MetricType",
    "PrometheusClient",
    "analyze_canary",
    "classify_prometheus_error",
    "error_rate_query",
    "latency_p99_query",
    "version_selector",
]
