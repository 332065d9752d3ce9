"""
Capability descriptor - the static contract of one unit of work.

Manifesto:
    A capability is identified by ``(id, version)`` and described entirely
    by data: pydantic models for its input, output, config and secrets,
    plus declared security and operational policy.  The descriptor has no
    behaviour beyond structural validation; the handler that does the work
    is bound separately in a :class:`~tiller.capabilities.registry.CapabilityRegistry`.

Architecture:
    ::

        CapabilityDescriptor(id, version)
        ├── schemas     CapabilitySchemas(input, output, config, secrets)
        ├── security    SecurityPolicy(required_scopes, data_classification,
        │                              allow_outbound)
        └── operations  OperationsPolicy(is_idempotent, retry_policy,
                                         classify, cost_factor)

        validate_input / validate_output / validate_config
            → Ok(model) | Err(VALIDATION_FAILED, details={"fields": [...]})

Guardrails:
    - Validation never raises past the boundary
    - Error details list field paths and messages, never input values
    - ``secrets`` declares logical secret *names*; the invocation context
      maps each name to a ref, never a value

Tags:
    capability, contract, schema, validation, tiller

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel, ConfigDict, ValidationError

from tiller.core.errors import ErrorKind
from tiller.core.result import Err, Ok, Result
from tiller.execution.retry import RetryPolicy

if TYPE_CHECKING:
    from tiller.execution.sandbox import Sandbox

Handler = Callable[[BaseModel, "Sandbox"], "BaseModel | Mapping[str, Any]"]
Classifier = Callable[[BaseException], str]

_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)
_CAPABILITY_ID_RE = re.compile(r"^[a-z0-9][a-z0-9-]*(\.[a-z0-9][a-z0-9-]*)+$")


def semver_key(version: str) -> tuple[int, int, int, int, str]:
    """Sort key for a semver string; pre-releases sort before the release."""
    match = _SEMVER_RE.match(version)
    if not match:
        raise ValueError(f"Invalid semver: {version!r}")
    major, minor, patch, pre = match.groups()
    return int(major), int(minor), int(patch), 0 if pre else 1, pre or ""


class NoConfig(BaseModel):
    """Config schema for capabilities that take none."""

    model_config = ConfigDict(extra="forbid")


class NoSecrets(BaseModel):
    """Secrets schema for capabilities that need none."""

    model_config = ConfigDict(extra="forbid")


class DataClassification(str, Enum):
    PUBLIC = "PUBLIC"
    INTERNAL = "INTERNAL"
    CONFIDENTIAL = "CONFIDENTIAL"
    RESTRICTED = "RESTRICTED"


class CostFactor(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class CapabilitySchemas:
    input: type[BaseModel]
    output: type[BaseModel]
    config: type[BaseModel] = NoConfig
    secrets: type[BaseModel] = NoSecrets


@dataclass(frozen=True)
class SecurityPolicy:
    required_scopes: tuple[str, ...] = ()
    data_classification: DataClassification = DataClassification.INTERNAL
    allow_outbound: tuple[str, ...] = ()


@dataclass(frozen=True)
class OperationsPolicy:
    """
    Operational metadata.

    ``is_idempotent`` is advisory: the retry policy retries on
    classification alone, so callers wrapping non-idempotent side effects
    must decide for themselves whether a blind retry is safe.
    """

    is_idempotent: bool = True
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    classify: Classifier | None = None
    cost_factor: CostFactor = CostFactor.LOW


def _error_fields(exc: ValidationError) -> list[dict[str, str]]:
    errors = []
    for error in exc.errors(include_url=False, include_input=False):
        path = ".".join(str(part) for part in error["loc"]) or "<root>"
        errors.append({"field": path, "message": error["msg"]})
    return errors


def validate_model(model: type[BaseModel], data: Any, *, label: str) -> Result[BaseModel]:
    """Validate ``data`` against ``model``; never raises."""
    if isinstance(data, model):
        return Ok(data)
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    if data is None:
        data = {}
    try:
        return Ok(model.model_validate(data))
    except ValidationError as exc:
        errors = _error_fields(exc)
        fields = [e["field"] for e in errors]
        return Err(
            ErrorKind.VALIDATION_FAILED,
            f"{label} failed validation: {', '.join(fields)}",
            retryable=False,
            details={"fields": fields, "errors": errors},
        )


@dataclass(frozen=True)
class CapabilityDescriptor:
    """Immutable capability contract, identified by ``(id, version)``."""

    id: str
    version: str
    schemas: CapabilitySchemas
    security: SecurityPolicy = field(default_factory=SecurityPolicy)
    operations: OperationsPolicy = field(default_factory=OperationsPolicy)
    name: str = ""
    description: str = ""
    tags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not _CAPABILITY_ID_RE.match(self.id):
            raise ValueError(f"Capability id must be namespaced (a.b[.c]): {self.id!r}")
        semver_key(self.version)

    @property
    def key(self) -> tuple[str, str]:
        return self.id, self.version

    def validate_input(self, args: Any) -> Result[BaseModel]:
        return validate_model(self.schemas.input, args, label=f"{self.id} input")

    def validate_output(self, output: Any) -> Result[BaseModel]:
        return validate_model(self.schemas.output, output, label=f"{self.id} output")

    def validate_config(self, config: Any) -> Result[BaseModel]:
        return validate_model(self.schemas.config, config, label=f"{self.id} config")

    def secret_names(self) -> list[str]:
        return list(self.schemas.secrets.model_fields)

    def required_secrets(self) -> list[str]:
        return [name for name, info in self.schemas.secrets.model_fields.items() if info.is_required()]

    def validate_secret_refs(self, refs: Mapping[str, str]) -> Result[dict[str, str]]:
        """Check every required secret has a ref; return the declared subset."""
        for name in self.required_secrets():
            if not refs.get(name):
                return Err(
                    ErrorKind.MISSING_SECRET,
                    f"{self.id} requires secret '{name}' but no ref was provided",
                    retryable=False,
                    details={"secret": name},
                )
        declared = set(self.secret_names())
        return Ok({name: ref for name, ref in refs.items() if name in declared and ref})

    def describe(self) -> dict[str, Any]:
        """JSON-ready summary for tool listings."""
        return {
            "id": self.id,
            "version": self.version,
            "name": self.name or self.id,
            "description": self.description,
            "tags": list(self.tags),
            "input_schema": self.schemas.input.model_json_schema(by_alias=True),
            "output_schema": self.schemas.output.model_json_schema(by_alias=True),
            "secrets": self.secret_names(),
            "security": {
                "required_scopes": list(self.security.required_scopes),
                "data_classification": self.security.data_classification.value,
                "allow_outbound": list(self.security.allow_outbound),
            },
            "operations": {
                "is_idempotent": self.operations.is_idempotent,
                "retry_policy": self.operations.retry_policy.to_dict(),
                "cost_factor": self.operations.cost_factor.value,
            },
        }


@dataclass(frozen=True)
class ExecutionContext:
    """
    Propagated call context.

    ``config`` holds the validated config for the capability being invoked
    and ``secret_refs`` maps logical secret names to refs.  Instances are
    never mutated; :meth:`derive` returns a copy.
    """

    app_id: str
    environment: str = "dev"
    initiator_id: str = "system"
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    config: Any = None
    secret_refs: Mapping[str, str] = field(default_factory=dict)

    def derive(self, **changes: Any) -> ExecutionContext:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serializable form; refs are safe to persist, config is left out."""
        return {
            "app_id": self.app_id,
            "environment": self.environment,
            "initiator_id": self.initiator_id,
            "trace_id": self.trace_id,
            "secret_refs": dict(self.secret_refs),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionContext:
        return cls(
            app_id=data["app_id"],
            environment=data.get("environment", "dev"),
            initiator_id=data.get("initiator_id", "system"),
            trace_id=data.get("trace_id") or uuid.uuid4().hex,
            secret_refs=dict(data.get("secret_refs") or {}),
        )


@dataclass(frozen=True)
class CapabilityInvocation:
    """A call whose ``args`` and ``context.config`` have already been validated."""

    cap_id: str
    version: str
    args: BaseModel
    context: ExecutionContext


__all__ = [
    "Handler",
    "Classifier",
    "semver_key",
    "NoConfig",
    "NoSecrets",
    "DataClassification",
    "CostFactor",
    "CapabilitySchemas",
    "SecurityPolicy",
    "OperationsPolicy",
    "validate_model",
    "CapabilityDescriptor",
    "ExecutionContext",
    "CapabilityInvocation",
]
