"""
Saga orchestrator - checkpointed capability steps, durable sleep, LIFO unwind.

Manifesto:
    Blueprint logic is written as straight-line Python: call a capability,
    register its undo, sleep, call the next one.  Every one of those calls
    is checkpointed in the substrate's journal under a deterministic key,
    so re-executing the same logic for the same ``run_id`` after a crash
    returns recorded outputs instead of repeating side effects, and waits
    only for whatever part of a timer had not yet elapsed.

Architecture:
    ::

        run(logic)
          │   RUNNING
          ├── execute_by_id ──► journal[key]? ─ COMPLETED ─► recorded output
          │                       └─ otherwise ─► invoker (validate → retry → runtime)
          ├── add_compensation  (push, RUNNING only)
          ├── sleep(ms)        ──► journal[key].fire_at, wait remaining
          │
          ├── success ─────────► COMPLETED, return output
          └── error / cancel ──► COMPENSATING
                                   pop LIFO, run each, checkpoint each,
                                   log-and-continue on compensation failure
                                 ► FAILED, re-raise ORIGINAL error with
                                   ``saga_history`` attached

    Step keys: ``<scope>:<n>`` where scope is ``main`` for forward steps,
    ``compensation-<i>`` inside the i-th registered compensation, and
    ``<key>/retry`` for backoff sleeps of the step ``<key>``.

Guardrails:
    - Only this class mutates its :class:`SagaRun`
    - A replayed key whose recorded kind or name differs raises
      :class:`NonDeterminismError` instead of guessing
    - Cancellation is observed before each step and during sleeps; it never
      skips compensation

Tags:
    saga, orchestration, compensation, durable-sleep, replay, tiller

Doc-Types:
    - API Reference
    - Architecture Guide
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any, Callable, TypeVar

from pydantic import BaseModel

from tiller.capabilities.descriptor import ExecutionContext
from tiller.capabilities.registry import CapabilityRegistry
from tiller.core.errors import (
    CapabilityFailedError,
    NonDeterminismError,
    RunCancelledError,
    TillerError,
)
from tiller.core.logging import LogContext, get_logger
from tiller.execution.invoker import CapabilityInvoker
from tiller.execution.runtime import ExecutionRuntime
from tiller.orchestration.saga import (
    CompensationOutcome,
    CompensationStep,
    CompletedStep,
    SagaRun,
    SagaStatus,
)
from tiller.orchestration.substrate import StepKind, StepRecord, StepStatus, Substrate

logger = get_logger(__name__)

T = TypeVar("T")


class SagaOrchestrator:
    """Executes one blueprint run against a registry snapshot and a substrate."""

    def __init__(
        self,
        run_id: str,
        blueprint_id: str,
        *,
        registry: CapabilityRegistry,
        context: ExecutionContext,
        substrate: Substrate | None = None,
        runtime: ExecutionRuntime | None = None,
    ):
        self.run_id = run_id
        self.blueprint_id = blueprint_id
        self.context = context
        self.substrate = substrate or Substrate()
        self.saga = SagaRun(run_id=run_id, blueprint_id=blueprint_id)
        self._invoker = CapabilityInvoker(registry, runtime, sleep=self.sleep_seconds)
        self._registry = registry
        self._cancel = threading.Event()
        self._cancel_reason = ""
        self._unwinding = False
        self._scope = "main"
        self._counters: dict[str, int] = defaultdict(int)

    # ── Public API used by blueprint logic ───────────────────────

    @property
    def status(self) -> SagaStatus:
        return self.saga.status

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def execute_by_id(
        self,
        cap_id: str,
        args: Mapping[str, Any] | BaseModel,
        *,
        version: str | None = None,
        config: Mapping[str, Any] | None = None,
        secret_refs: Mapping[str, str] | None = None,
    ) -> BaseModel:
        """Run one capability step and return its typed output.

        Raises:
            CapabilityFailedError: the invocation ended in ``Err``
            RunCancelledError: the run was cancelled before the step
        """
        self._check_cancelled()
        key = self._next_key()
        entry = self._registry.get(cap_id, version)
        descriptor = entry.descriptor

        record = self.substrate.journal.get_step(self.run_id, key)
        if record is not None:
            self._assert_same(record, StepKind.CAPABILITY, cap_id)
            if record.status is StepStatus.COMPLETED:
                output = descriptor.schemas.output.model_validate(record.output)
                self._record_step(key, cap_id, descriptor.version, replayed=True)
                logger.debug("saga.step.replayed", step=key, capability_id=cap_id)
                return output

        self.substrate.journal.put_step(
            self.run_id, StepRecord(key, StepKind.CAPABILITY, cap_id, StepStatus.STARTED)
        )
        context = self.context.derive(
            config=dict(config or {}),
            secret_refs=dict(secret_refs if secret_refs is not None else self.context.secret_refs),
        )
        logger.info("saga.step.started", step=key, capability_id=cap_id)

        with self._scoped(f"{key}/retry"):
            result = self._invoker.invoke(cap_id, args, context, version=descriptor.version)

        if result.is_err():
            logger.warning("saga.step.failed", step=key, capability_id=cap_id, kind=result.kind.value)
            raise CapabilityFailedError(cap_id, result).with_context(
                run_id=self.run_id,
                blueprint_id=self.blueprint_id,
                step=key,
                trace_id=self.context.trace_id,
                capability_version=descriptor.version,
            )

        output = result.value
        self.substrate.journal.put_step(
            self.run_id,
            StepRecord(
                key,
                StepKind.CAPABILITY,
                cap_id,
                StepStatus.COMPLETED,
                output=output.model_dump(mode="json", by_alias=True),
            ),
        )
        self._record_step(key, cap_id, descriptor.version, replayed=False)
        logger.info("saga.step.completed", step=key, capability_id=cap_id)
        return output

    def add_compensation(self, action: Callable[[], Any], *, name: str | None = None) -> CompensationStep:
        """Register an inline undo action.  Only allowed while RUNNING."""
        step = CompensationStep(
            index=self.saga.next_compensation_index(),
            name=name or getattr(action, "__name__", "compensation"),
            action=action,
        )
        self.saga.push(step)
        logger.debug("saga.compensation.registered", name=step.name, index=step.index)
        return step

    def add_capability_compensation(
        self,
        cap_id: str,
        args: Mapping[str, Any],
        *,
        name: str | None = None,
        config: Mapping[str, Any] | None = None,
        version: str | None = None,
    ) -> CompensationStep:
        """Register a capability invocation as an undo action."""
        step = CompensationStep(
            index=self.saga.next_compensation_index(),
            name=name or cap_id,
            cap_id=cap_id,
            args=dict(args),
            config=dict(config) if config else None,
            version=version,
        )
        self.saga.push(step)
        logger.debug("saga.compensation.registered", name=step.name, index=step.index, capability_id=cap_id)
        return step

    def sleep(self, duration_ms: float) -> None:
        """Durable timer.  Replays wait only for the time not yet elapsed."""
        self._check_cancelled()
        key = self._next_key()
        journal = self.substrate.journal
        clock = self.substrate.clock

        record = journal.get_step(self.run_id, key)
        if record is not None:
            self._assert_same(record, StepKind.SLEEP, "sleep")
            if record.status is StepStatus.COMPLETED:
                return
            fire_at = record.fire_at if record.fire_at is not None else clock.now()
        else:
            fire_at = clock.now() + duration_ms / 1000.0
            journal.put_step(
                self.run_id,
                StepRecord(key, StepKind.SLEEP, "sleep", StepStatus.STARTED, fire_at=fire_at),
            )

        remaining = max(0.0, fire_at - clock.now())
        if remaining > 0:
            logger.debug("saga.sleep", step=key, seconds=remaining)
            finished = clock.sleep(remaining, None if self._unwinding else self._cancel)
            if not finished:
                self._check_cancelled()

        journal.put_step(
            self.run_id,
            StepRecord(key, StepKind.SLEEP, "sleep", StepStatus.COMPLETED, fire_at=fire_at),
        )

    def sleep_seconds(self, seconds: float) -> None:
        self.sleep(seconds * 1000.0)

    def annotate(self, **values: Any) -> None:
        """Attach JSON-ready audit data to the run history."""
        self.saga.annotations.update(values)

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation; safe to call from any thread."""
        self._cancel_reason = reason
        self._cancel.set()
        logger.info("saga.cancel_requested", run_id=self.run_id, reason=reason)

    # ── Run driver ───────────────────────────────────────────────

    def run(self, logic: Callable[[SagaOrchestrator], T]) -> T:
        """Drive ``logic`` to completion, unwinding compensations on failure."""
        with LogContext(run_id=self.run_id, blueprint_id=self.blueprint_id, trace_id=self.context.trace_id):
            logger.info("saga.started")
            try:
                output = logic(self)
            except Exception as exc:
                self._unwind(exc)
                exc.saga_history = self.saga.history()  # type: ignore[attr-defined]
                if isinstance(exc, TillerError):
                    exc.with_context(run_id=self.run_id, blueprint_id=self.blueprint_id)
                raise
            self.saga.transition(SagaStatus.COMPLETED)
            logger.info("saga.completed", steps=len(self.saga.steps))
            return output

    # ── Internals ────────────────────────────────────────────────

    def _unwind(self, error: Exception) -> None:
        self.saga.transition(SagaStatus.COMPENSATING)
        self._unwinding = True
        logger.warning(
            "saga.compensating",
            error_type=type(error).__name__,
            error=str(error),
            pending=len(self.saga.compensations),
        )
        try:
            while (step := self.saga.pop()) is not None:
                self._run_compensation(step)
        finally:
            self._unwinding = False
        self.saga.transition(SagaStatus.FAILED)
        logger.error("saga.failed", error_type=type(error).__name__, compensations=len(self.saga.unwound))

    def _run_compensation(self, step: CompensationStep) -> None:
        done_key = f"compensation-{step.index}"
        journal = self.substrate.journal
        record = journal.get_step(self.run_id, done_key)
        if record is not None and record.status is StepStatus.COMPLETED:
            self.saga.record_compensation(step, CompensationOutcome.REPLAYED)
            return

        try:
            with self._scoped(done_key):
                if step.is_capability:
                    self.execute_by_id(step.cap_id, step.args or {}, version=step.version, config=step.config)
                else:
                    step.action()
        except Exception as exc:
            # Best-effort unwind: record and keep going.
            logger.error(
                "saga.compensation.failed",
                name=step.name,
                index=step.index,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.saga.record_compensation(step, CompensationOutcome.FAILED, error=str(exc))
            return

        journal.put_step(
            self.run_id,
            StepRecord(done_key, StepKind.COMPENSATION, step.name, StepStatus.COMPLETED),
        )
        self.saga.record_compensation(step, CompensationOutcome.COMPLETED)
        logger.info("saga.compensation.completed", name=step.name, index=step.index)

    def _record_step(self, key: str, cap_id: str, version: str, *, replayed: bool) -> None:
        if not self._unwinding:
            self.saga.record_step(CompletedStep(key, cap_id, version, replayed))

    def _check_cancelled(self) -> None:
        if self._cancel.is_set() and not self._unwinding:
            raise RunCancelledError(self._cancel_reason or "cancelled").with_context(run_id=self.run_id)

    def _next_key(self) -> str:
        self._counters[self._scope] += 1
        return f"{self._scope}:{self._counters[self._scope]}"

    @contextmanager
    def _scoped(self, scope: str) -> Iterator[None]:
        previous = self._scope
        self._scope = scope
        try:
            yield
        finally:
            self._scope = previous

    def _assert_same(self, record: StepRecord, kind: StepKind, name: str) -> None:
        if record.kind is not kind or record.name != name:
            raise NonDeterminismError(
                f"Replay mismatch at {record.key}: recorded {record.kind.value} '{record.name}', "
                f"got {kind.value} '{name}'"
            ).with_context(run_id=self.run_id, step=record.key)


__all__ = ["SagaOrchestrator"]
