"""
Progressive rollout - staged canary release driven by live metrics.

Manifesto:
    A release flag is opened to a growing share of traffic, one stage at a
    time.  After each step the canary is observed for an analysis window
    and compared against the baseline.  A single ROLLBACK verdict ends the
    rollout and closes the flag; surviving the last stage promotes the
    release to 100%.

Architecture:
    ::

        ensure flag  release-<version>-enabled
            evaluateBoolean ─ fails ─► generateReleaseFlags
        │
        for p in stages:
            SET_PERCENTAGE     auto-feature-flag setFlagState(p)
            SET_MESH_WEIGHTS   mesh-router set-weights {stable: 100-p, canary: p}   (optional)
            SLEEP              saga.sleep(analysis_window)
            ANALYZE            canary-analyzer analyze
            DECIDE             decide_stage(...)
                ROLLBACK ─► rollbackRelease, mesh 100/0 ─► ROLLED_BACK (terminal)
                PROMOTE | CONTINUE ─► next stage
        │
        setFlagState(100), mesh reset ─► PROMOTED

        unhandled error ─► annotate rollout FAILED with partial stages,
                           register "disable flag + reset mesh" undo, re-raise

Guardrails:
    - Stages are visited in the order given; ROLLBACK is terminal
    - The stage log is append-only and survives rollback for audit

Tags:
    blueprint, rollout, canary, feature-flags, service-mesh, tiller

Doc-Types:
    - API Reference
    - Operator Guide
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tiller.capabilities.canary_analyzer import CANARY_ANALYZER_ID, CanaryAnalyzerOutput, CanaryDecision
from tiller.capabilities.catalog import AUTO_FEATURE_FLAG, MESH_ROUTER, OPENFEATURE_PROVIDER, MeshType
from tiller.core.errors import CapabilityFailedError, SagaStateError, ValidationFailedError
from tiller.core.logging import get_logger
from tiller.orchestration.blueprint import Blueprint, BlueprintMetadata

if TYPE_CHECKING:
    from tiller.orchestration.orchestrator import SagaOrchestrator

logger = get_logger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RolloutStatus(str, Enum):
    PROMOTED = "PROMOTED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


def release_flag_key(version: str) -> str:
    return f"release-{version}-enabled"


class StageMetrics(_CamelModel):
    baseline_error_rate: float | None = None
    canary_error_rate: float | None = None
    latency_delta: float | None = None


class StageResult(_CamelModel):
    percentage: int
    decision: CanaryDecision
    metrics: StageMetrics


class RolloutStage(_CamelModel):
    """One analysed stage, with the raw analyzer metrics kept for audit."""

    percentage: int
    decision: CanaryDecision
    baseline_metrics: dict[str, float] = Field(default_factory=dict)
    canary_metrics: dict[str, float] = Field(default_factory=dict)
    deltas: dict[str, float] = Field(default_factory=dict)
    reason: str = ""

    def result(self) -> StageResult:
        return StageResult(
            percentage=self.percentage,
            decision=self.decision,
            metrics=StageMetrics(
                baseline_error_rate=self.baseline_metrics.get("error_rate"),
                canary_error_rate=self.canary_metrics.get("error_rate"),
                latency_delta=self.deltas.get("latency_p99"),
            ),
        )


class RolloutRun(_CamelModel):
    """Append-only stage log of one rollout."""

    version: str
    baseline_version: str
    stages: list[RolloutStage] = Field(default_factory=list)
    final_status: RolloutStatus | None = None

    def record(self, stage: RolloutStage) -> None:
        if self.final_status is not None:
            raise SagaStateError(f"Rollout of {self.version} already {self.final_status.value}")
        self.stages.append(stage)
        if stage.decision is CanaryDecision.ROLLBACK:
            self.final_status = RolloutStatus.ROLLED_BACK

    def finish(self, status: RolloutStatus) -> None:
        self.final_status = status

    def stage_results(self) -> list[StageResult]:
        return [stage.result() for stage in self.stages]


Percentage = Annotated[int, Field(ge=0, le=100)]


class ProgressiveRolloutInput(_CamelModel):
    version: str = Field(min_length=1)
    baseline_version: str = Field(min_length=1)
    prometheus_url: str | None = None
    service: str
    stages: list[Percentage] | None = None
    analysis_window_seconds: int | None = Field(default=None, gt=0)
    error_rate_threshold: float | None = Field(default=None, ge=0, le=1)
    max_latency_delta_ms: float | None = Field(default=None, gt=0)
    use_mesh_routing: bool = False
    namespace: str | None = None
    mesh_type: MeshType | None = None


class ProgressiveRolloutConfig(_CamelModel):
    default_prometheus_url: str | None = None
    default_analysis_window_seconds: int | None = Field(default=None, gt=0)
    default_error_rate_threshold: float | None = Field(default=None, ge=0, le=1)
    default_stages: list[Percentage] | None = None
    default_mesh_type: MeshType | None = None


class ProgressiveRolloutOutput(_CamelModel):
    status: RolloutStatus
    final_percentage: int
    reason: str | None = None
    stopped_at_percentage: int | None = None
    stage_results: list[StageResult]
    message: str


def _first_set(*values: Any) -> Any:
    """First value that is not ``None``; an explicit empty list still counts."""
    return next(value for value in values if value is not None)


def decide_stage(
    analysis: CanaryAnalyzerOutput,
    error_rate_threshold: float,
    max_latency_delta_ms: float | None = None,
) -> tuple[CanaryDecision, str]:
    """Combine the analyzer verdict with the rollout's own thresholds.

    ROLLBACK wins if the analyzer says so, the canary error rate exceeds
    ``error_rate_threshold``, or the p99 latency delta exceeds
    ``max_latency_delta_ms``.  Otherwise the analyzer's decision stands.
    """
    if analysis.decision is CanaryDecision.ROLLBACK:
        return CanaryDecision.ROLLBACK, analysis.reason
    canary_error = analysis.canary_metrics.get("error_rate", 0.0)
    if canary_error > error_rate_threshold:
        return (
            CanaryDecision.ROLLBACK,
            f"Canary error rate ({canary_error}) exceeds threshold ({error_rate_threshold})",
        )
    latency_delta = analysis.deltas.get("latency_p99", 0.0)
    if max_latency_delta_ms is not None and latency_delta > max_latency_delta_ms:
        return (
            CanaryDecision.ROLLBACK,
            f"Canary p99 latency delta ({latency_delta}ms) exceeds {max_latency_delta_ms}ms",
        )
    return analysis.decision, analysis.reason


class ProgressiveRollout(Blueprint):
    metadata = BlueprintMetadata(
        id="blueprints.traffic.progressive-rollout",
        version="1.0.0",
        description=(
            "Staged rollout with automatic analysis and rollback. Uses feature flags "
            "for gating and canary metrics for rollout decisions. Supports Istio and "
            "Linkerd mesh routing."
        ),
        tags=("traffic", "rollout", "canary", "feature-flags", "service-mesh"),
    )
    input_model = ProgressiveRolloutInput
    output_model = ProgressiveRolloutOutput
    config_model = ProgressiveRolloutConfig

    def logic(self, saga: SagaOrchestrator, input: ProgressiveRolloutInput) -> ProgressiveRolloutOutput:
        config: ProgressiveRolloutConfig = self.config
        settings = self.settings
        stages = _first_set(input.stages, config.default_stages, list(settings.rollout_stages))
        window = _first_set(
            input.analysis_window_seconds,
            config.default_analysis_window_seconds,
            settings.rollout_analysis_window_seconds,
        )
        threshold = _first_set(
            input.error_rate_threshold,
            config.default_error_rate_threshold,
            settings.rollout_error_rate_threshold,
        )
        prometheus_url = input.prometheus_url or config.default_prometheus_url
        if not prometheus_url:
            raise ValidationFailedError(
                "Prometheus URL is required for canary analysis", fields=["prometheusUrl"]
            ).with_context(blueprint_id=self.id)

        mesh = {
            "service": input.service,
            "namespace": input.namespace or "default",
            "meshType": (input.mesh_type or config.default_mesh_type or MeshType.ISTIO).value,
        }
        flag = release_flag_key(input.version)
        rollout = RolloutRun(version=input.version, baseline_version=input.baseline_version)

        try:
            return self._run_stages(saga, input, rollout, stages, window, threshold, prometheus_url, flag, mesh)
        except Exception:
            rollout.finish(RolloutStatus.FAILED)
            saga.annotate(rollout=rollout.model_dump(mode="json", by_alias=True))
            saga.add_compensation(
                lambda: self._close_release(saga, flag, input.use_mesh_routing, mesh),
                name="disable-release-flag",
            )
            raise

    def _run_stages(
        self,
        saga: SagaOrchestrator,
        input: ProgressiveRolloutInput,
        rollout: RolloutRun,
        stages: list[int],
        window: int,
        threshold: float,
        prometheus_url: str,
        flag: str,
        mesh: dict[str, Any],
    ) -> ProgressiveRolloutOutput:
        try:
            saga.execute_by_id(
                OPENFEATURE_PROVIDER.id,
                {"operation": "evaluateBoolean", "flagKey": flag, "defaultValue": False},
            )
        except CapabilityFailedError:
            logger.info("rollout.generating_release_flags", flag=flag)
            saga.execute_by_id(
                AUTO_FEATURE_FLAG.id,
                {"operation": "generateReleaseFlags", "releaseVersion": input.version},
            )

        for percentage in stages:
            saga.execute_by_id(
                AUTO_FEATURE_FLAG.id,
                {
                    "operation": "setFlagState",
                    "targetId": flag,
                    "enabled": True,
                    "rolloutPercentage": percentage,
                },
            )
            if input.use_mesh_routing:
                saga.execute_by_id(
                    MESH_ROUTER.id,
                    {
                        "operation": "set-weights",
                        **mesh,
                        "weights": {"stable": 100 - percentage, "canary": percentage},
                    },
                )

            saga.sleep(window * 1000)

            analysis = saga.execute_by_id(
                CANARY_ANALYZER_ID,
                {
                    "operation": "analyze",
                    "baselineVersion": input.baseline_version,
                    "canaryVersion": input.version,
                    "prometheusUrl": prometheus_url,
                    "analysisWindowSeconds": window,
                    "errorRateThreshold": threshold,
                    "service": input.service,
                    "namespace": mesh["namespace"],
                },
            )
            decision, reason = decide_stage(analysis, threshold, input.max_latency_delta_ms)
            rollout.record(
                RolloutStage(
                    percentage=percentage,
                    decision=decision,
                    baseline_metrics=analysis.baseline_metrics,
                    canary_metrics=analysis.canary_metrics,
                    deltas=analysis.deltas,
                    reason=reason,
                )
            )
            logger.info("rollout.stage_analyzed", percentage=percentage, decision=decision.value)

            if decision is CanaryDecision.ROLLBACK:
                self._close_release(saga, flag, input.use_mesh_routing, mesh, version=input.version)
                saga.annotate(rollout=rollout.model_dump(mode="json", by_alias=True))
                return ProgressiveRolloutOutput(
                    status=RolloutStatus.ROLLED_BACK,
                    final_percentage=percentage,
                    stopped_at_percentage=percentage,
                    reason=reason,
                    stage_results=rollout.stage_results(),
                    message=f"Rollback triggered at {percentage}%: {reason}",
                )

        saga.execute_by_id(
            AUTO_FEATURE_FLAG.id,
            {"operation": "setFlagState", "targetId": flag, "enabled": True, "rolloutPercentage": 100},
        )
        if input.use_mesh_routing:
            saga.execute_by_id(MESH_ROUTER.id, {"operation": "reset", **mesh})

        rollout.finish(RolloutStatus.PROMOTED)
        saga.annotate(rollout=rollout.model_dump(mode="json", by_alias=True))
        return ProgressiveRolloutOutput(
            status=RolloutStatus.PROMOTED,
            final_percentage=100,
            stage_results=rollout.stage_results(),
            message=f"Successfully promoted {input.version} through all stages. Release is now at 100%.",
        )

    def _close_release(
        self,
        saga: SagaOrchestrator,
        flag: str,
        use_mesh_routing: bool,
        mesh: dict[str, Any],
        *,
        version: str | None = None,
    ) -> None:
        """Turn the canary off: roll back (or disable) the flag and send all traffic to stable."""
        if version is not None:
            saga.execute_by_id(
                AUTO_FEATURE_FLAG.id,
                {"operation": "rollbackRelease", "releaseVersion": version},
            )
        else:
            saga.execute_by_id(
                AUTO_FEATURE_FLAG.id,
                {"operation": "setFlagState", "targetId": flag, "enabled": False, "rolloutPercentage": 0},
            )
        if use_mesh_routing:
            saga.execute_by_id(
                MESH_ROUTER.id,
                {"operation": "set-weights", **mesh, "weights": {"stable": 100, "canary": 0}},
            )


__all__ = [
    "ProgressiveRollout",
    "ProgressiveRolloutInput",
    "ProgressiveRolloutConfig",
    "ProgressiveRolloutOutput",
    "RolloutRun",
    "RolloutStage",
    "RolloutStatus",
    "StageMetrics",
    "StageResult",
    "decide_stage",
    "release_flag_key",
]
