"""
Capability catalog - descriptors for the external units the sagas compose.

Manifesto:
    The blue/green and progressive rollout blueprints call seven external
    capabilities (image builds, manifest applies, worker versioning, flags
    and mesh routing).  Their implementations live with the deployer; the
    *contracts* live here so blueprints, the tool surface and the CLI can
    validate against them before anything is bound.

    Deployers attach handlers with :meth:`CapabilityRegistry.bind`.  An
    unbound capability fails with ``RUNNER_ERROR`` when invoked.

Architecture:
    ::

        default_registry()
          ├── register_catalog(registry)
          │     ├── golden.ci.container-builder       (unbound)
          │     ├── golden.k8s.apply                  (unbound)
          │     ├── golden.temporal.version-manager   (unbound)
          │     ├── golden.flags.openfeature-provider (unbound)
          │     ├── golden.flags.flagd-sync           (unbound)
          │     ├── golden.flags.auto-feature-flag    (unbound)
          │     └── golden.traffic.mesh-router        (unbound)
          └── golden.traffic.canary-analyzer          (bound: analyze_canary)

Tags:
    capability, catalog, contracts, deploy, flags, traffic, tiller

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tiller.capabilities.canary_analyzer import CANARY_ANALYZER, analyze_canary
from tiller.capabilities.descriptor import (
    CapabilityDescriptor,
    CapabilitySchemas,
    CostFactor,
    OperationsPolicy,
    SecurityPolicy,
)
from tiller.capabilities.registry import CapabilityRegistry
from tiller.execution.retry import RetryPolicy


class _Input(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _Output(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


def keyword_classifier(
    retryable: tuple[str, ...] = (), fatal: tuple[str, ...] = ()
) -> Callable[[BaseException], str | None]:
    """Build a classifier from message substrings; unmatched errors defer to the defaults."""

    def classify(error: BaseException) -> str | None:
        message = str(error).lower()
        if any(word in message for word in retryable):
            return "RETRYABLE"
        if any(word in message for word in fatal):
            return "FATAL"
        return None

    return classify


# =============================================================================
# golden.ci.container-builder
# =============================================================================


class BuildOperation(str, Enum):
    BUILD = "build"
    BUILD_AND_PUSH = "build-and-push"


class ContainerBuildInput(_Input):
    operation: BuildOperation
    context: str
    dockerfile: str | None = None
    target: str | None = None
    build_args: dict[str, str] | None = None
    tags: list[str] = Field(min_length=1)
    registry: str | None = None
    platform: str | None = None
    labels: dict[str, str] | None = None
    no_cache: bool | None = None


class ContainerBuildOutput(_Output):
    image_ref: str
    digest: str | None = None
    tags: list[str] = Field(default_factory=list)
    build_duration: float = 0
    pushed: bool = False


class ContainerBuildSecrets(BaseModel):
    registry_username: str | None = None
    registry_password: str | None = None


CONTAINER_BUILDER = CapabilityDescriptor(
    id="golden.ci.container-builder",
    version="1.0.0",
    name="containerBuilder",
    description="Build container images and push them to a registry.",
    tags=("ci", "containers", "build"),
    schemas=CapabilitySchemas(
        input=ContainerBuildInput, output=ContainerBuildOutput, secrets=ContainerBuildSecrets
    ),
    security=SecurityPolicy(
        required_scopes=("ci:build",),
        allow_outbound=("ghcr.io", "*.docker.io", "*.gcr.io", "*.azurecr.io", "*.amazonaws.com", "quay.io"),
    ),
    operations=OperationsPolicy(
        is_idempotent=False,
        retry_policy=RetryPolicy(max_attempts=2, initial_interval_seconds=5, backoff_coefficient=2),
        classify=keyword_classifier(("network", "timeout", "rate limit"), ("unauthorized", "not found")),
        cost_factor=CostFactor.HIGH,
    ),
)


# =============================================================================
# golden.k8s.apply
# =============================================================================


class K8sOperation(str, Enum):
    APPLY = "apply"
    DELETE = "delete"
    ROLLOUT_RESTART = "rollout-restart"
    GET_STATUS = "get-status"


class K8sApplyInput(_Input):
    operation: K8sOperation
    manifests: list[str] | None = None
    manifest_path: str | None = None
    namespace: str | None = None
    substitutions: dict[str, str] | None = None
    resource_type: str | None = None
    resource_name: str | None = None
    dry_run: bool | None = None
    wait: bool | None = None
    timeout_seconds: int | None = Field(default=None, gt=0)


class K8sApplyOutput(_Output):
    success: bool
    operation: K8sOperation
    namespace: str = "default"
    resources_affected: int = 0
    message: str = ""


class K8sSecrets(BaseModel):
    kubeconfig: str | None = None
    service_account_token: str | None = None


K8S_APPLY = CapabilityDescriptor(
    id="golden.k8s.apply",
    version="1.0.0",
    name="k8sApply",
    description="Apply, delete or restart Kubernetes resources.",
    tags=("kubernetes", "deploy"),
    schemas=CapabilitySchemas(input=K8sApplyInput, output=K8sApplyOutput, secrets=K8sSecrets),
    security=SecurityPolicy(
        required_scopes=("k8s:write",),
        allow_outbound=("kubernetes.default.svc", "*.eks.amazonaws.com", "*.azmk8s.io", "*.gke.io"),
    ),
    operations=OperationsPolicy(
        is_idempotent=True,
        retry_policy=RetryPolicy(max_attempts=3, initial_interval_seconds=2, backoff_coefficient=2),
        classify=keyword_classifier(("connection refused", "timeout", "conflict"), ("unauthorized", "not found")),
        cost_factor=CostFactor.MEDIUM,
    ),
)


# =============================================================================
# golden.temporal.version-manager
# =============================================================================


class VersionOperation(str, Enum):
    REGISTER_BUILD_AS_DEFAULT = "registerBuildAsDefault"
    GET_ACTIVE_EXECUTIONS = "getActiveExecutions"
    WAIT_FOR_DRAIN = "waitForDrain"
    LIST_BUILD_IDS = "listBuildIds"


class VersionManagerInput(_Input):
    operation: VersionOperation
    build_id: str
    task_queue: str
    timeout_seconds: int | None = Field(default=None, gt=0)
    poll_interval_seconds: int | None = Field(default=None, gt=0)


class VersionManagerOutput(_Output):
    success: bool
    build_id: str
    operation: VersionOperation
    active_executions: int | None = None
    drain_duration_ms: float | None = None
    message: str = ""


class VersionManagerSecrets(BaseModel):
    temporal_api_key: str | None = None
    temporal_cert_path: str | None = None
    temporal_key_path: str | None = None


VERSION_MANAGER = CapabilityDescriptor(
    id="golden.temporal.version-manager",
    version="1.0.0",
    name="temporalVersionManager",
    description="Register worker build ids and wait for old builds to drain.",
    tags=("workers", "versioning", "deploy"),
    schemas=CapabilitySchemas(
        input=VersionManagerInput, output=VersionManagerOutput, secrets=VersionManagerSecrets
    ),
    security=SecurityPolicy(required_scopes=("temporal:admin",), allow_outbound=("temporal:7233", "*.tmprl.cloud")),
    operations=OperationsPolicy(
        retry_policy=RetryPolicy(max_attempts=3, initial_interval_seconds=2, backoff_coefficient=2),
        classify=keyword_classifier(("connection", "timeout"), ("not found", "unauthorized")),
    ),
)


# =============================================================================
# golden.flags.openfeature-provider
# =============================================================================


class EvaluateOperation(str, Enum):
    EVALUATE_BOOLEAN = "evaluateBoolean"
    EVALUATE_STRING = "evaluateString"
    EVALUATE_NUMBER = "evaluateNumber"
    EVALUATE_OBJECT = "evaluateObject"


class FlagEvaluationInput(_Input):
    operation: EvaluateOperation
    flag_key: str
    default_value: Any = None
    evaluation_context: dict[str, Any] = Field(default_factory=dict)


class FlagEvaluationOutput(_Output):
    value: Any = None
    details: dict[str, Any] = Field(default_factory=dict)
    cached: bool | None = None
    evaluated_at: str = ""


class OpenFeatureSecrets(BaseModel):
    sdk_key: str | None = None


OPENFEATURE_PROVIDER = CapabilityDescriptor(
    id="golden.flags.openfeature-provider",
    version="1.0.0",
    name="openfeatureProvider",
    description="Evaluate feature flags through an OpenFeature-compatible provider.",
    tags=("flags", "openfeature"),
    schemas=CapabilitySchemas(
        input=FlagEvaluationInput, output=FlagEvaluationOutput, secrets=OpenFeatureSecrets
    ),
    security=SecurityPolicy(
        required_scopes=("flags:read",),
        allow_outbound=(
            "*.launchdarkly.com",
            "*.split.io",
            "*.configcat.com",
            "*.unleash-hosted.com",
            "localhost:8013",
        ),
    ),
    operations=OperationsPolicy(
        retry_policy=RetryPolicy(max_attempts=3, initial_interval_seconds=1, backoff_coefficient=2),
        classify=keyword_classifier(("connection", "timeout"), ("not found",)),
    ),
)


# =============================================================================
# golden.flags.flagd-sync
# =============================================================================


class FlagdOperation(str, Enum):
    SYNC = "sync"
    VALIDATE = "validate"
    DIFF = "diff"
    APPLY = "apply"


class FlagdSyncStatus(str, Enum):
    SYNCED = "SYNCED"
    VALIDATED = "VALIDATED"
    DIFF = "DIFF"
    APPLIED = "APPLIED"
    PENDING = "PENDING"
    FAILED = "FAILED"


class FlagdSyncInput(_Input):
    operation: FlagdOperation
    version: str | None = None
    config_path: str | None = None
    namespace: str | None = None
    config_map_name: str | None = None
    dry_run: bool | None = None


class FlagdSyncOutput(_Output):
    status: FlagdSyncStatus
    operation: FlagdOperation
    flags_count: int = 0
    message: str = ""


class KubeconfigSecrets(BaseModel):
    kubeconfig: str | None = None


FLAGD_SYNC = CapabilityDescriptor(
    id="golden.flags.flagd-sync",
    version="1.0.0",
    name="flagdSync",
    description="Sync flagd flag definitions to a Kubernetes ConfigMap.",
    tags=("flags", "flagd", "kubernetes"),
    schemas=CapabilitySchemas(input=FlagdSyncInput, output=FlagdSyncOutput, secrets=KubeconfigSecrets),
    security=SecurityPolicy(required_scopes=("flags:write", "k8s:write"), allow_outbound=("kubernetes.default.svc",)),
    operations=OperationsPolicy(
        retry_policy=RetryPolicy(max_attempts=3, initial_interval_seconds=2, backoff_coefficient=2),
        classify=keyword_classifier(("connection", "timeout"), ("not found", "unauthorized")),
    ),
)


# =============================================================================
# golden.flags.auto-feature-flag
# =============================================================================


class FlagOperation(str, Enum):
    GENERATE_RELEASE_FLAGS = "generateReleaseFlags"
    GENERATE_CAPABILITY_FLAGS = "generateCapabilityFlags"
    GENERATE_BLUEPRINT_FLAGS = "generateBlueprintFlags"
    SET_FLAG_STATE = "setFlagState"
    ROLLBACK_RELEASE = "rollbackRelease"
    GET_FLAG_STATUS = "getFlagStatus"


class AutoFlagInput(_Input):
    operation: FlagOperation
    release_version: str | None = None
    target_id: str | None = None
    enabled: bool | None = None
    rollout_percentage: float | None = Field(default=None, ge=0, le=100)
    source_paths: list[str] | None = None


class AutoFlagOutput(_Output):
    operation: FlagOperation
    flags_generated: list[dict[str, Any]] | None = None
    flags_updated: list[str] | None = None
    flagd_config_path: str | None = None
    message: str = ""


AUTO_FEATURE_FLAG = CapabilityDescriptor(
    id="golden.flags.auto-feature-flag",
    version="1.0.0",
    name="autoFeatureFlag",
    description="Generate, toggle and roll back release feature flags.",
    tags=("flags", "release"),
    schemas=CapabilitySchemas(input=AutoFlagInput, output=AutoFlagOutput),
    security=SecurityPolicy(required_scopes=("flags:write",), allow_outbound=()),
    operations=OperationsPolicy(
        retry_policy=RetryPolicy(max_attempts=2, initial_interval_seconds=1, backoff_coefficient=2),
        classify=keyword_classifier(fatal=("not found",)),
    ),
)


# =============================================================================
# golden.traffic.mesh-router
# =============================================================================


class MeshOperation(str, Enum):
    SET_WEIGHTS = "set-weights"
    HEADER_ROUTE = "header-route"
    GET_STATUS = "get-status"
    RESET = "reset"


class MeshType(str, Enum):
    ISTIO = "istio"
    LINKERD = "linkerd"


class TrafficWeights(BaseModel):
    stable: int = Field(ge=0, le=100)
    canary: int = Field(ge=0, le=100)


class MeshRouterInput(_Input):
    operation: MeshOperation
    service: str
    namespace: str | None = None
    mesh_type: MeshType | None = None
    weights: TrafficWeights | None = None
    virtual_service_name: str | None = None
    destination_rule_name: str | None = None


class MeshRouterOutput(_Output):
    success: bool
    operation: MeshOperation
    service: str
    namespace: str = "default"
    mesh_type: MeshType = MeshType.ISTIO
    current_weights: TrafficWeights | None = None
    message: str = ""


MESH_ROUTER = CapabilityDescriptor(
    id="golden.traffic.mesh-router",
    version="1.0.0",
    name="meshRouter",
    description="Shift traffic weights between stable and canary subsets in a service mesh.",
    tags=("traffic", "mesh", "istio", "linkerd"),
    schemas=CapabilitySchemas(input=MeshRouterInput, output=MeshRouterOutput, secrets=KubeconfigSecrets),
    security=SecurityPolicy(required_scopes=("mesh:write",), allow_outbound=("kubernetes.default.svc",)),
    operations=OperationsPolicy(
        retry_policy=RetryPolicy(max_attempts=3, initial_interval_seconds=2, backoff_coefficient=2),
        classify=keyword_classifier(("connection", "timeout", "conflict"), ("not found", "unauthorized")),
    ),
)


CATALOG: tuple[CapabilityDescriptor, ...] = (
    CONTAINER_BUILDER,
    K8S_APPLY,
    VERSION_MANAGER,
    OPENFEATURE_PROVIDER,
    FLAGD_SYNC,
    AUTO_FEATURE_FLAG,
    MESH_ROUTER,
)


def register_catalog(registry: CapabilityRegistry) -> CapabilityRegistry:
    """Publish the catalog descriptors (unbound) and the bound canary analyzer."""
    for descriptor in CATALOG:
        registry.register(descriptor)
    registry.register(CANARY_ANALYZER, analyze_canary)
    return registry


def default_registry() -> CapabilityRegistry:
    return register_catalog(CapabilityRegistry())


__all__ = [
    "CATALOG",
    "CONTAINER_BUILDER",
    "K8S_APPLY",
    "VERSION_MANAGER",
    "OPENFEATURE_PROVIDER",
    "FLAGD_SYNC",
    "AUTO_FEATURE_FLAG",
    "MESH_ROUTER",
    "ContainerBuildInput",
    "ContainerBuildOutput",
    "K8sApplyInput",
    "K8sApplyOutput",
    "VersionManagerInput",
    "VersionManagerOutput",
    "FlagEvaluationInput",
    "FlagEvaluationOutput",
    "FlagdSyncInput",
    "FlagdSyncOutput",
    "AutoFlagInput",
    "AutoFlagOutput",
    "MeshRouterInput",
    "MeshRouterOutput",
    "TrafficWeights",
    "keyword_classifier",
    "register_catalog",
    "default_registry",
]
