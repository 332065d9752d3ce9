"""
Egress-gated execution runtime.

Manifesto:
    The runtime is the only place a capability handler runs.  Given an
    invocation whose arguments are already validated it mounts secrets,
    hands the handler a sandbox whose HTTP client enforces the egress
    allowlist, validates the output, and folds every possible outcome into
    exactly one :class:`~tiller.core.result.Ok` or
    :class:`~tiller.core.result.Err`.

Architecture:
    ::

        execute(entry, invocation)
          │
          ├─ no handler bound ───────────────────────────► Err(RUNNER_ERROR)
          ├─ required secret without ref ────────────────► Err(MISSING_SECRET)
          ├─ open_sandbox: resolve + mount refs ─ fail ──► Err(MISSING_SECRET)
          ├─ handler(args, sandbox)
          │     ├─ OutboundHostNotAllowedError (pre-I/O) ► Err(OUTBOUND_HOST_NOT_ALLOWED)
          │     ├─ CapabilityError(kind) ────────────────► Err(kind)
          │     └─ any other exception ──────────────────► Err(RUNNER_ERROR, retryable=classify())
          ├─ validate_output ─ fail ─────────────────────► Err(VALIDATION_FAILED)
          └─ Ok(output model)

Guardrails:
    - Secret values mounted for the invocation are scrubbed from every Err
      message and detail, and from log events emitted while it runs
    - When scrubbing changed a message the original exception is dropped
      from ``Err.cause`` so it cannot leak through a traceback
    - Sandbox state is deleted before ``execute`` returns

Tags:
    execution, sandbox, egress, secrets, result-normalization, tiller
"""

from __future__ import annotations

from pathlib import Path

import httpx

from tiller.capabilities.classification import classify_error
from tiller.capabilities.descriptor import CapabilityInvocation
from tiller.capabilities.registry import RegisteredCapability
from tiller.core.errors import CapabilityError, ErrorKind
from tiller.core.logging import get_logger, scrub, scrub_value, secret_scope
from tiller.core.result import Err, Result
from tiller.core.secrets import SecretsResolver
from tiller.execution.sandbox import Sandbox, open_sandbox

logger = get_logger(__name__)


class ExecutionRuntime:
    """Runs capability handlers inside per-invocation sandboxes."""

    def __init__(
        self,
        resolver: SecretsResolver | None = None,
        *,
        sandbox_root: Path | None = None,
        http_timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.resolver = resolver or SecretsResolver()
        self.sandbox_root = sandbox_root
        self.http_timeout = http_timeout
        self.transport = transport

    def execute(self, entry: RegisteredCapability, invocation: CapabilityInvocation) -> Result:
        descriptor = entry.descriptor
        log = logger.bind(
            capability_id=descriptor.id,
            capability_version=descriptor.version,
            trace_id=invocation.context.trace_id,
        )

        if entry.handler is None:
            return Err(
                ErrorKind.RUNNER_ERROR,
                f"No handler bound for {descriptor.id}@{descriptor.version}",
                retryable=False,
            )

        refs = descriptor.validate_secret_refs(invocation.context.secret_refs)
        if refs.is_err():
            log.warning("capability.missing_secret", secret=refs.details.get("secret"))
            return refs

        sandbox: Sandbox | None = None
        try:
            with open_sandbox(
                descriptor,
                invocation,
                refs.value,
                self.resolver,
                root=self.sandbox_root,
                http_timeout=self.http_timeout,
                transport=self.transport,
            ) as sandbox:
                with secret_scope(sandbox.secret_values()):
                    log.debug("capability.started", secrets=sorted(sandbox.mounted_paths()))
                    raw = entry.handler(invocation.args, sandbox)
                    result = descriptor.validate_output(raw)
                    if result.is_err():
                        log.warning("capability.invalid_output", fields=result.details.get("fields"))
                    else:
                        log.debug("capability.completed")
                    return result
        except CapabilityError as exc:
            err = self._scrubbed(Err.from_exception(exc), sandbox)
        except Exception as exc:
            verdict = classify_error(exc, descriptor.operations.classify)
            err = self._scrubbed(
                Err(
                    ErrorKind.RUNNER_ERROR,
                    f"{type(exc).__name__}: {exc}",
                    retryable=verdict.retryable,
                    details={
                        "exception_type": type(exc).__name__,
                        "classification": verdict.classification.value,
                        "classification_reason": verdict.reason,
                    },
                    cause=exc,
                ),
                sandbox,
            )

        log.warning(
            "capability.failed",
            kind=err.kind.value,
            retryable=err.retryable,
            error=err.message,
        )
        return err

    @staticmethod
    def _scrubbed(err: Err, sandbox: Sandbox | None) -> Err:
        secrets = sandbox.secret_values() if sandbox is not None else []
        if not secrets:
            return err
        message = scrub(err.message, secrets)
        details = scrub_value(err.details, tuple(secrets))
        leaked = message != err.message or details != err.details
        return Err(
            err.kind,
            message,
            retryable=err.retryable,
            details=details,
            cause=None if leaked else err.cause,
        )


__all__ = ["ExecutionRuntime"]
