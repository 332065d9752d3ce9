"""Capability invocation boundary.

``CapabilityInvoker.invoke`` is the single entry point through which a
capability is called, whether from a saga step, a compensation or the tool
surface:

1. resolve ``(cap_id, version)`` in the injected registry
2. validate ``args`` and ``context.config`` exactly once; a failure returns
   ``Err(VALIDATION_FAILED)`` and the runtime is never entered
3. run the runtime under the descriptor's retry policy, sleeping between
   attempts through the supplied ``sleep`` callable
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any, Callable

from tiller.capabilities.classification import is_retryable
from tiller.capabilities.descriptor import CapabilityInvocation, ExecutionContext
from tiller.capabilities.registry import CapabilityRegistry
from tiller.core.logging import get_logger
from tiller.core.result import Err, Result
from tiller.execution.retry import RetryContext
from tiller.execution.runtime import ExecutionRuntime

logger = get_logger(__name__)


class CapabilityInvoker:
    """Validate, then execute with classified retries."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        runtime: ExecutionRuntime | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.runtime = runtime or ExecutionRuntime()
        self._sleep = sleep

    def invoke(
        self,
        cap_id: str,
        args: Mapping[str, Any] | Any,
        context: ExecutionContext,
        *,
        version: str | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> Result:
        """Invoke a capability.  Raises only :class:`CapabilityNotFoundError`."""
        entry = self.registry.get(cap_id, version)
        descriptor = entry.descriptor

        validated = descriptor.validate_input(args)
        if validated.is_err():
            logger.info("capability.rejected", capability_id=cap_id, fields=validated.details.get("fields"))
            return validated

        config = descriptor.validate_config(context.config)
        if config.is_err():
            logger.info("capability.rejected_config", capability_id=cap_id, fields=config.details.get("fields"))
            return config

        invocation = CapabilityInvocation(
            cap_id=descriptor.id,
            version=descriptor.version,
            args=validated.value,
            context=context.derive(config=config.value),
        )

        def on_retry(attempt: int, err: Err, delay: float) -> None:
            logger.info(
                "capability.retrying",
                capability_id=cap_id,
                attempt=attempt,
                kind=err.kind.value,
                delay_seconds=delay,
                trace_id=context.trace_id,
            )

        retry = RetryContext(
            policy=descriptor.operations.retry_policy,
            sleep=sleep or self._sleep,
            should_retry=is_retryable,
            on_retry=on_retry,
        )
        result = retry.run(lambda: self.runtime.execute(entry, invocation))
        if result.is_err() and retry.attempts > 1:
            logger.warning("capability.failed_after_retries", capability_id=cap_id, attempts=retry.attempts)
        return result


__all__ = ["CapabilityInvoker"]
