"""
Structured error types for tiller.

Every failure that crosses a component boundary is a :class:`TillerError`
carrying a category, a retry flag, an :class:`ErrorContext` and an optional
chained cause.  Capability failures additionally carry an :class:`ErrorKind`,
the closed taxonomy that result envelopes and tool responses expose.

Manifesto:
    - **Typed hierarchy:** one subclass per failure the orchestrator reacts to
    - **Explicit retry semantics:** each error knows whether it is retryable
    - **Rich context:** run, step, capability and trace identifiers travel
      with the error into logs and audit history
    - **No secrets:** messages and context carry refs and paths, never values

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        TillerError                               │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │  CapabilityError (kind)          OrchestrationError             │
        │    ValidationFailedError           SagaStateError               │
        │    MissingSecretError              RunCancelledError            │
        │    OutboundHostNotAllowedError     NonDeterminismError          │
        │    RetryableCapabilityError        BlueprintNotFoundError       │
        │    FatalCapabilityError            RunFailedError               │
        │    CapabilityFailedError           DeployStepError              │
        │  CapabilityNotFoundError                                        │
        └─────────────────────────────────────────────────────────────────┘

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context, tiller

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tiller.core.result import Err
    from tiller.orchestration.saga import SagaHistory


class ErrorCategory(str, Enum):
    """Coarse routing category for alerting and reporting."""

    VALIDATION = "VALIDATION"
    SECURITY = "SECURITY"
    NETWORK = "NETWORK"
    CAPABILITY = "CAPABILITY"
    ORCHESTRATION = "ORCHESTRATION"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


class ErrorKind(str, Enum):
    """
    Closed taxonomy of capability failure kinds.

    ``RETRYABLE`` and ``FATAL`` come from a capability's own classifier;
    the others are produced by the platform itself.  ``DRAIN_TIMEOUT`` is
    never raised, only recorded in deploy output.
    """

    VALIDATION_FAILED = "VALIDATION_FAILED"
    MISSING_SECRET = "MISSING_SECRET"
    OUTBOUND_HOST_NOT_ALLOWED = "OUTBOUND_HOST_NOT_ALLOWED"
    RETRYABLE = "RETRYABLE"
    FATAL = "FATAL"
    RUNNER_ERROR = "RUNNER_ERROR"
    DRAIN_TIMEOUT = "DRAIN_TIMEOUT"


# Kinds that are never retried whatever a classifier says.
NEVER_RETRY_KINDS = frozenset(
    {
        ErrorKind.VALIDATION_FAILED,
        ErrorKind.MISSING_SECRET,
        ErrorKind.OUTBOUND_HOST_NOT_ALLOWED,
        ErrorKind.FATAL,
    }
)


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only identifiers belong here.  Anything that could hold secret
    material (config values, resolved secrets, request bodies) must be
    left out; put refs in ``metadata`` instead.
    """

    run_id: str | None = None
    blueprint_id: str | None = None
    step: str | None = None
    capability_id: str | None = None
    capability_version: str | None = None
    trace_id: str | None = None
    host: str | None = None
    http_status: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ["run_id", "blueprint_id", "step", "capability_id",
                    "capability_version", "trace_id", "host", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        result.update(self.metadata)
        return result


class TillerError(Exception):
    """
    Base class for all tiller errors.

    Subclasses set ``default_category`` and ``default_retryable`` so callers
    rarely pass them explicitly.  ``saga_history`` is populated by the saga
    orchestrator when the error is surfaced from a failed run.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    saga_history: SagaHistory | None = None

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> TillerError:
        """
        Add context to this error (fluent API).

        Usage:
            raise CapabilityFailedError(err).with_context(run_id=run_id, step="main:3")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = type(self.cause).__name__
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CAPABILITY ERRORS
# =============================================================================


class CapabilityError(TillerError):
    """
    A failure attributable to one capability invocation.

    Handlers raise subclasses of this to report a classified failure; the
    runtime turns it into ``Err(kind=...)`` without consulting the
    classifier.
    """

    default_category = ErrorCategory.CAPABILITY
    default_kind: ErrorKind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.kind = kind or self.default_kind
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["kind"] = self.kind.value
        if self.details:
            result["details"] = self.details
        return result


class RetryableCapabilityError(CapabilityError):
    """Transient failure a handler knows is safe to retry."""

    default_kind = ErrorKind.RETRYABLE
    default_retryable = True


class FatalCapabilityError(CapabilityError):
    """Permanent failure a handler knows must not be retried."""

    default_kind = ErrorKind.FATAL


class ValidationFailedError(CapabilityError):
    """Input, output or config did not match the declared schema."""

    default_category = ErrorCategory.VALIDATION
    default_kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str, *, fields: list[str] | None = None, **kwargs: Any):
        details = kwargs.pop("details", None) or {}
        details.setdefault("fields", list(fields or []))
        super().__init__(message, details=details, **kwargs)

    @property
    def fields(self) -> list[str]:
        return self.details.get("fields", [])


class MissingSecretError(CapabilityError):
    """A required secret had no ref, or its ref could not be resolved."""

    default_category = ErrorCategory.SECURITY
    default_kind = ErrorKind.MISSING_SECRET


class OutboundHostNotAllowedError(CapabilityError):
    """An outbound call targeted a host outside the capability's allowlist."""

    default_category = ErrorCategory.SECURITY
    default_kind = ErrorKind.OUTBOUND_HOST_NOT_ALLOWED

    def __init__(self, host: str, *, allowed: list[str] | tuple[str, ...] = (), **kwargs: Any):
        super().__init__(
            f"Outbound host not allowed: {host}",
            details={"host": host, "allow_outbound": list(allowed)},
            **kwargs,
        )
        self.host = host
        self.context.host = host


class CapabilityFailedError(CapabilityError):
    """
    Raised by the orchestrator when an invocation ends in ``Err``.

    Wraps the error envelope so blueprint logic can inspect ``kind`` and
    ``retryable`` without unpacking the result.
    """

    def __init__(self, cap_id: str, err: Err, **kwargs: Any):
        super().__init__(
            f"{cap_id} failed ({err.kind.value}): {err.message}",
            kind=err.kind,
            retryable=err.retryable,
            details=dict(err.details),
            cause=err.cause,
            **kwargs,
        )
        self.cap_id = cap_id
        self.err = err
        self.context.capability_id = cap_id


class CapabilityNotFoundError(TillerError):
    """No descriptor registered for the requested ``(id, version)``."""

    default_category = ErrorCategory.CONFIG

    def __init__(self, cap_id: str, version: str | None = None):
        label = f"{cap_id}@{version}" if version else cap_id
        super().__init__(f"Capability not found: {label}")
        self.cap_id = cap_id
        self.version = version
        self.context.capability_id = cap_id
        self.context.capability_version = version


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class OrchestrationError(TillerError):
    """Base for saga and runner failures."""

    default_category = ErrorCategory.ORCHESTRATION


class SagaStateError(OrchestrationError):
    """An operation was attempted in a saga state that forbids it."""


class RunCancelledError(OrchestrationError):
    """The run observed a cancellation request between steps."""

    def __init__(self, reason: str = "cancelled", **kwargs: Any):
        super().__init__(f"Run cancelled: {reason}", **kwargs)
        self.reason = reason


class NonDeterminismError(OrchestrationError):
    """Replay produced a different step sequence than the recorded run."""


class BlueprintNotFoundError(OrchestrationError):
    """No blueprint registered under the requested id."""

    default_category = ErrorCategory.CONFIG

    def __init__(self, blueprint_id: str):
        super().__init__(f"Blueprint not found: {blueprint_id}")
        self.blueprint_id = blueprint_id
        self.context.blueprint_id = blueprint_id


class RunFailedError(OrchestrationError):
    """
    A replayed run had already failed.

    The original exception object is not recoverable from the journal, so
    the recorded error payload is surfaced instead.
    """

    def __init__(self, run_id: str, error: dict[str, Any]):
        super().__init__(error.get("message", "run failed"))
        self.run_id = run_id
        self.error = error
        self.context.run_id = run_id


class DeployStepError(OrchestrationError):
    """A deploy step reported failure in its output rather than raising."""


__all__ = [
    "ErrorCategory",
    "ErrorKind",
    "NEVER_RETRY_KINDS",
    "ErrorContext",
    "TillerError",
    "CapabilityError",
    "RetryableCapabilityError",
    "FatalCapabilityError",
    "ValidationFailedError",
    "MissingSecretError",
    "OutboundHostNotAllowedError",
    "CapabilityFailedError",
    "CapabilityNotFoundError",
    "OrchestrationError",
    "SagaStateError",
    "RunCancelledError",
    "NonDeterminismError",
    "BlueprintNotFoundError",
    "RunFailedError",
    "DeployStepError",
]
