"""
Blue/green deploy - zero-downtime worker rollout with build-id versioning.

Manifesto:
    A new worker version is built, its release flags are generated and
    synced, its manifests are applied next to the running version, its
    build id becomes the task-queue default and the previous build is
    drained.  Anything after the image push can be reverted, so each
    revertible step registers its undo as soon as it succeeds.

Architecture:
    ::

        1. container-builder  build-and-push       (no undo: pushed images stay,
                                                     logged as a gap)
        2. auto-feature-flag  generateReleaseFlags ┐ unless skip_flags
           flagd-sync         sync                 ┘ undo: rollbackRelease
        3. k8s.apply          apply (wait)           undo: rollout-restart
        4. version-manager    registerBuildAsDefault
        5. version-manager    waitForDrain           only with previous_build_id;
                                                     failure → drainStatus=TIMEOUT

        Unwind on failure after step 3: rollout-restart, then rollbackRelease.

Guardrails:
    - A drain timeout is reported, never raised
    - ``k8s.apply`` reporting ``success=False`` raises :class:`DeployStepError`
      before its undo is registered

Tags:
    blueprint, deploy, blue-green, kubernetes, feature-flags, tiller

Doc-Types:
    - API Reference
    - Operator Guide
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tiller.capabilities.catalog import (
    AUTO_FEATURE_FLAG,
    CONTAINER_BUILDER,
    FLAGD_SYNC,
    K8S_APPLY,
    VERSION_MANAGER,
)
from tiller.core.errors import CapabilityFailedError, DeployStepError, ErrorKind, ValidationFailedError
from tiller.core.logging import get_logger
from tiller.orchestration.blueprint import Blueprint, BlueprintMetadata

if TYPE_CHECKING:
    from tiller.orchestration.orchestrator import SagaOrchestrator

logger = get_logger(__name__)

WORKER_IMAGE = "harmony-worker"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FlagSyncStatus(str, Enum):
    SYNCED = "SYNCED"
    PENDING = "PENDING"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class DrainStatus(str, Enum):
    DRAINED = "DRAINED"
    SKIPPED = "SKIPPED"
    TIMEOUT = "TIMEOUT"


class BlueGreenInput(_CamelModel):
    version: str = Field(min_length=1, description="Release version, also used as the build id")
    registry: str | None = Field(default=None, description="Container registry address")
    context_path: str = Field(description="Build context path")
    task_queue: str | None = None
    previous_build_id: str | None = None
    namespace: str | None = None
    manifest_path: str | None = None
    dockerfile: str | None = None
    build_args: dict[str, str] = Field(default_factory=dict)
    skip_flags: bool = False
    wait_for_drain: bool = True
    drain_timeout_seconds: int | None = Field(default=None, gt=0)


class BlueGreenConfig(_CamelModel):
    default_registry: str | None = None
    default_namespace: str | None = None
    default_manifest_path: str | None = None
    default_drain_timeout_seconds: int | None = Field(default=None, gt=0)


class BlueGreenOutput(_CamelModel):
    success: bool
    image_ref: str
    digest: str | None = None
    build_id: str
    resources_affected: int
    flag_sync_status: FlagSyncStatus
    drain_status: DrainStatus
    message: str


def flag_sync_status(reported: str) -> FlagSyncStatus:
    """Map a flagd-sync status onto the deploy summary's vocabulary."""
    if reported in ("SYNCED", "APPLIED"):
        return FlagSyncStatus.SYNCED
    if reported == "FAILED":
        return FlagSyncStatus.FAILED
    return FlagSyncStatus.PENDING


class BlueGreenDeploy(Blueprint):
    metadata = BlueprintMetadata(
        id="blueprints.deploy.blue-green",
        version="1.0.0",
        description=(
            "Zero-downtime blue/green deployment with worker versioning. Builds the "
            "container image, deploys to Kubernetes, registers the build id and "
            "optionally drains the old version."
        ),
        tags=("deploy", "blue-green", "kubernetes", "containers"),
    )
    input_model = BlueGreenInput
    output_model = BlueGreenOutput
    config_model = BlueGreenConfig

    def logic(self, saga: SagaOrchestrator, input: BlueGreenInput) -> BlueGreenOutput:
        config: BlueGreenConfig = self.config
        registry = input.registry or config.default_registry
        if not registry:
            raise ValidationFailedError(
                "Registry is required (provide in input or config)", fields=["registry"]
            ).with_context(blueprint_id=self.id)

        namespace = input.namespace or config.default_namespace or self.settings.deploy_namespace
        manifest_path = input.manifest_path or config.default_manifest_path or self.settings.deploy_manifest_path
        task_queue = input.task_queue or self.settings.deploy_task_queue
        drain_timeout = (
            input.drain_timeout_seconds
            or config.default_drain_timeout_seconds
            or self.settings.deploy_drain_timeout_seconds
        )

        # 1. Build and push
        image_tag = f"{registry}/{WORKER_IMAGE}:{input.version}"
        build = saga.execute_by_id(
            CONTAINER_BUILDER.id,
            {
                "operation": "build-and-push",
                "context": input.context_path,
                "dockerfile": input.dockerfile,
                "tags": [image_tag],
                "registry": registry,
                "buildArgs": {"WORKER_BUILD_ID": input.version, **input.build_args},
            },
        )
        logger.info(
            "deploy.image_pushed",
            image_ref=build.image_ref,
            compensation="none: pushed images are not deleted on rollback",
        )

        # 2. Release flags
        sync_status = FlagSyncStatus.SKIPPED
        if not input.skip_flags:
            saga.execute_by_id(
                AUTO_FEATURE_FLAG.id,
                {"operation": "generateReleaseFlags", "releaseVersion": input.version},
            )
            synced = saga.execute_by_id(
                FLAGD_SYNC.id,
                {"operation": "sync", "version": input.version, "namespace": namespace},
            )
            sync_status = flag_sync_status(synced.status.value)
            saga.add_capability_compensation(
                AUTO_FEATURE_FLAG.id,
                {"operation": "rollbackRelease", "releaseVersion": input.version},
                name="rollback-release-flags",
            )

        # 3. Apply manifests
        applied = saga.execute_by_id(
            K8S_APPLY.id,
            {
                "operation": "apply",
                "manifestPath": manifest_path,
                "namespace": namespace,
                "substitutions": {
                    "BUILD_ID": input.version,
                    "IMAGE_TAG": input.version,
                    "IMAGE_REF": image_tag,
                },
                "wait": True,
            },
        )
        if not applied.success:
            raise DeployStepError(f"K8s apply failed: {applied.message}").with_context(
                blueprint_id=self.id, capability_id=K8S_APPLY.id
            )
        saga.add_capability_compensation(
            K8S_APPLY.id,
            {"operation": "rollout-restart", "namespace": namespace, "resourceType": "deployment"},
            name="rollout-restart",
        )

        # 4. Make the new build the default
        saga.execute_by_id(
            VERSION_MANAGER.id,
            {"operation": "registerBuildAsDefault", "buildId": input.version, "taskQueue": task_queue},
        )

        # 5. Drain the previous build
        drain_status = DrainStatus.SKIPPED
        if input.previous_build_id and input.wait_for_drain:
            try:
                drained = saga.execute_by_id(
                    VERSION_MANAGER.id,
                    {
                        "operation": "waitForDrain",
                        "buildId": input.previous_build_id,
                        "taskQueue": task_queue,
                        "timeoutSeconds": drain_timeout,
                    },
                )
                drain_status = DrainStatus.DRAINED if drained.success else DrainStatus.TIMEOUT
            except CapabilityFailedError as exc:
                drain_status = DrainStatus.TIMEOUT
                logger.warning(
                    "deploy.drain_timeout",
                    kind=ErrorKind.DRAIN_TIMEOUT.value,
                    previous_build_id=input.previous_build_id,
                    error=exc.message,
                )

        message = (
            f"Successfully deployed {input.version} to {namespace}. "
            f"Image: {build.image_ref}. Build ID registered."
        )
        if drain_status is DrainStatus.DRAINED:
            message += " Previous version drained."
        elif drain_status is DrainStatus.TIMEOUT:
            message += f" Previous version {input.previous_build_id} did not drain within {drain_timeout}s."

        return BlueGreenOutput(
            success=True,
            image_ref=build.image_ref,
            digest=build.digest,
            build_id=input.version,
            resources_affected=applied.resources_affected,
            flag_sync_status=sync_status,
            drain_status=drain_status,
            message=message,
        )


__all__ = [
    "BlueGreenDeploy",
    "BlueGreenInput",
    "BlueGreenConfig",
    "BlueGreenOutput",
    "DrainStatus",
    "FlagSyncStatus",
    "flag_sync_status",
]
