"""
Blueprint runner - starts, resumes and tracks saga runs.

Manifesto:
    The runner is the substrate-facing entry point.  ``start_run`` validates
    the blueprint input, records the run in the journal and executes it on
    a worker thread.  Starting a ``run_id`` the journal already knows is a
    replay: a RUNNING record is re-executed against its recorded steps, a
    terminal record is returned as-is.

Architecture:
    ::

        BlueprintRunner(capabilities, blueprints, substrate)
          │
          ├── start_run(blueprint_id, input, context, run_id=None) ─► RunHandle
          │     ├── BlueprintRegistry.get(id)       (BlueprintNotFoundError)
          │     ├── blueprint.validate_input(input) (ValidationFailedError)
          │     ├── journal.get_run(run_id)
          │     │     ├── terminal  ─► handle over the stored record
          │     │     └── RUNNING   ─► resume with stored input/context
          │     └── executor.submit(SagaOrchestrator.run(blueprint.main))
          │
          └── RunHandle
                ├── result(timeout)   output model, or raises the run's error
                ├── outcome(timeout)  RunOutcome (never raises for run failure)
                └── cancel(reason)

Guardrails:
    - Every run gets a registry snapshot taken at start
    - Runs share nothing else; each has its own orchestrator
    - The journal record carries refs only; secret values are never stored

Tags:
    runner, saga, thread-pool, replay, tiller

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from tiller.capabilities.descriptor import ExecutionContext
from tiller.capabilities.registry import CapabilityRegistry
from tiller.core.config import TillerSettings, get_settings
from tiller.core.errors import (
    BlueprintNotFoundError,
    NonDeterminismError,
    OrchestrationError,
    RunFailedError,
    TillerError,
)
from tiller.core.logging import get_logger
from tiller.core.secrets import build_resolver
from tiller.execution.runtime import ExecutionRuntime
from tiller.orchestration.blueprint import Blueprint
from tiller.orchestration.orchestrator import SagaOrchestrator
from tiller.orchestration.substrate import RunRecord, Substrate

logger = get_logger(__name__)


class BlueprintRegistry:
    """Explicit map of blueprint id to blueprint class."""

    def __init__(self) -> None:
        self._blueprints: dict[str, type[Blueprint]] = {}

    def register(self, blueprint: type[Blueprint]) -> type[Blueprint]:
        """Register a blueprint class; usable as a class decorator."""
        blueprint_id = blueprint.metadata.id
        if blueprint_id in self._blueprints:
            raise ValueError(f"Blueprint already registered: {blueprint_id}")
        self._blueprints[blueprint_id] = blueprint
        return blueprint

    def get(self, blueprint_id: str) -> type[Blueprint]:
        try:
            return self._blueprints[blueprint_id]
        except KeyError:
            raise BlueprintNotFoundError(blueprint_id) from None

    def list(self) -> list[type[Blueprint]]:
        return [self._blueprints[k] for k in sorted(self._blueprints)]

    def __contains__(self, blueprint_id: object) -> bool:
        return blueprint_id in self._blueprints

    def __len__(self) -> int:
        return len(self._blueprints)


def _error_payload(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, TillerError):
        return exc.to_dict()
    return {"error_type": type(exc).__name__, "message": str(exc)}


@dataclass(frozen=True)
class RunOutcome:
    run_id: str
    blueprint_id: str
    status: str
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    history: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "COMPLETED"

    @classmethod
    def from_record(cls, record: RunRecord) -> RunOutcome:
        return cls(
            run_id=record.run_id,
            blueprint_id=record.blueprint_id,
            status=record.status,
            output=record.output,
            error=record.error,
            history=record.history,
        )


class RunHandle:
    """Handle on a started (or previously finished) run."""

    def __init__(
        self,
        runner: BlueprintRunner,
        run_id: str,
        blueprint: Blueprint,
        *,
        future: Future | None = None,
        orchestrator: SagaOrchestrator | None = None,
    ):
        self.run_id = run_id
        self.blueprint = blueprint
        self._runner = runner
        self._future = future
        self._orchestrator = orchestrator

    @property
    def blueprint_id(self) -> str:
        return self.blueprint.id

    def done(self) -> bool:
        return self._future is None or self._future.done()

    def cancel(self, reason: str = "cancelled") -> None:
        """Ask the run to stop; it unwinds its compensations before finishing."""
        if self._orchestrator is not None and not self.done():
            self._orchestrator.cancel(reason)

    def _wait(self, timeout: float | None) -> None:
        if self._future is None:
            return
        try:
            self._future.exception(timeout=timeout)
        except FutureTimeoutError:
            raise TimeoutError(f"Run {self.run_id} did not finish within {timeout}s") from None

    def outcome(self, timeout: float | None = None) -> RunOutcome:
        self._wait(timeout)
        record = self._runner.get_run(self.run_id)
        if record is None:
            raise OrchestrationError(f"Run record missing: {self.run_id}").with_context(run_id=self.run_id)
        return RunOutcome.from_record(record)

    def result(self, timeout: float | None = None) -> BaseModel:
        """Return the output model, or raise the run's original error."""
        if self._future is not None:
            try:
                return self._future.result(timeout=timeout)
            except FutureTimeoutError:
                raise TimeoutError(f"Run {self.run_id} did not finish within {timeout}s") from None
        record = self._runner.get_run(self.run_id)
        if record is None or record.status != "COMPLETED":
            raise RunFailedError(self.run_id, (record.error if record else None) or {})
        return self.blueprint.output_model.model_validate(record.output)


class BlueprintRunner:
    """Runs blueprints on a thread pool against one substrate."""

    def __init__(
        self,
        capabilities: CapabilityRegistry,
        blueprints: BlueprintRegistry,
        *,
        substrate: Substrate | None = None,
        runtime: ExecutionRuntime | None = None,
        settings: TillerSettings | None = None,
        max_workers: int | None = None,
    ):
        self.settings = settings or get_settings()
        self.capabilities = capabilities
        self.blueprints = blueprints
        self.substrate = substrate or Substrate()
        self.runtime = runtime or ExecutionRuntime(
            build_resolver(self.settings),
            sandbox_root=self.settings.sandbox_root,
            http_timeout=self.settings.http_timeout_seconds,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or self.settings.max_concurrent_runs,
            thread_name_prefix="tiller-run",
        )
        self._lock = threading.Lock()
        self._live: dict[str, RunHandle] = {}
        self._running = True

    @property
    def running(self) -> bool:
        return self._running

    def start_run(
        self,
        blueprint_id: str,
        input: Any,
        context: ExecutionContext,
        run_id: str | None = None,
        *,
        config: dict[str, Any] | BaseModel | None = None,
    ) -> RunHandle:
        if not self._running:
            raise OrchestrationError("Runner is shut down")
        blueprint_cls = self.blueprints.get(blueprint_id)
        run_id = run_id or uuid.uuid4().hex
        journal = self.substrate.journal

        with self._lock:
            live = self._live.get(run_id)
            if live is not None and not live.done():
                if live.blueprint_id != blueprint_id:
                    raise NonDeterminismError(
                        f"Run {run_id} belongs to {live.blueprint_id}, not {blueprint_id}"
                    ).with_context(run_id=run_id)
                logger.info("run.already_running", run_id=run_id)
                return live
            self._live = {rid: h for rid, h in self._live.items() if not h.done()}

            record = journal.get_run(run_id)
            if record is not None:
                if record.blueprint_id != blueprint_id:
                    raise NonDeterminismError(
                        f"Run {run_id} belongs to {record.blueprint_id}, not {blueprint_id}"
                    ).with_context(run_id=run_id)
                blueprint = blueprint_cls(config=record.config or {}, settings=self.settings)
                if record.is_terminal:
                    logger.info("run.already_finished", run_id=run_id, status=record.status)
                    return RunHandle(self, run_id, blueprint)
                validated = blueprint.validate_input(record.input)
                context = ExecutionContext.from_dict(record.context)
                logger.info("run.resuming", run_id=run_id, blueprint_id=blueprint_id)
            else:
                blueprint = blueprint_cls(config=config, settings=self.settings)
                validated = blueprint.validate_input(input)
                record = RunRecord(
                    run_id=run_id,
                    blueprint_id=blueprint_id,
                    input=validated.model_dump(mode="json", by_alias=True),
                    context=context.to_dict(),
                    config=blueprint.config.model_dump(mode="json", by_alias=True),
                )
                journal.save_run(record)
                logger.info("run.started", run_id=run_id, blueprint_id=blueprint_id)

            # Submitted under the lock so one run id never has two live orchestrators.
            orchestrator = SagaOrchestrator(
                run_id,
                blueprint_id,
                registry=self.capabilities.snapshot(),
                context=context,
                substrate=self.substrate,
                runtime=self.runtime,
            )
            future = self._executor.submit(self._drive, blueprint, orchestrator, validated, record)
            handle = RunHandle(self, run_id, blueprint, future=future, orchestrator=orchestrator)
            self._live[run_id] = handle
            return handle

    def run(
        self,
        blueprint_id: str,
        input: Any,
        context: ExecutionContext,
        run_id: str | None = None,
        *,
        config: dict[str, Any] | BaseModel | None = None,
        timeout: float | None = None,
    ) -> BaseModel:
        """Start a run and block for its result."""
        return self.start_run(blueprint_id, input, context, run_id, config=config).result(timeout)

    def get_run(self, run_id: str) -> RunRecord | None:
        return self.substrate.journal.get_run(run_id)

    def runs(self) -> list[RunRecord]:
        return self.substrate.journal.runs()

    def shutdown(self, wait: bool = True) -> None:
        self._running = False
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> BlueprintRunner:
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown()

    def _drive(
        self,
        blueprint: Blueprint,
        orchestrator: SagaOrchestrator,
        input: BaseModel,
        record: RunRecord,
    ) -> BaseModel:
        journal = self.substrate.journal
        try:
            output = orchestrator.run(lambda saga: blueprint.main(saga, input))
        except Exception as exc:
            record.status = "FAILED"
            record.error = _error_payload(exc)
            record.history = orchestrator.saga.history().to_dict()
            journal.save_run(record)
            logger.error("run.failed", run_id=record.run_id, error_type=type(exc).__name__)
            raise
        record.status = "COMPLETED"
        record.output = output.model_dump(mode="json", by_alias=True)
        record.history = orchestrator.saga.history().to_dict()
        journal.save_run(record)
        logger.info("run.completed", run_id=record.run_id)
        return output


__all__ = ["BlueprintRegistry", "BlueprintRunner", "RunHandle", "RunOutcome"]
