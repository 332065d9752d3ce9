"""
Saga run state - status machine, step log and compensation stack.

Manifesto:
    A saga is a sequence of forward steps, each paired with an undo action
    registered only after the step succeeds.  On failure the undo actions
    run newest-first.  This module holds the *state* of one run; the
    :class:`~tiller.orchestration.orchestrator.SagaOrchestrator` is the only
    thing that mutates it.

Architecture:
    ::

        RUNNING ──────────────► COMPLETED
           │
           │ forward step failed / cancelled
           ▼
        COMPENSATING ─────────► FAILED

        compensations: append-only while RUNNING, pop-only while COMPENSATING

Tags:
    saga, compensation, state-machine, audit, tiller

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from tiller.core.errors import SagaStateError


class SagaStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPENSATING = "COMPENSATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


_TRANSITIONS: dict[SagaStatus, set[SagaStatus]] = {
    SagaStatus.RUNNING: {SagaStatus.COMPLETED, SagaStatus.COMPENSATING},
    SagaStatus.COMPENSATING: {SagaStatus.FAILED},
    SagaStatus.COMPLETED: set(),
    SagaStatus.FAILED: set(),
}


class CompensationOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REPLAYED = "REPLAYED"


@dataclass(frozen=True)
class CompensationStep:
    """
    An idempotent undo action.

    Either ``action`` (an inline callable) or ``cap_id`` (a capability
    invocation with ``args``) is set.  ``index`` is the registration order
    and keys the step's checkpoint.
    """

    index: int
    name: str
    action: Callable[[], Any] | None = None
    cap_id: str | None = None
    args: dict[str, Any] | None = None
    config: dict[str, Any] | None = None
    version: str | None = None

    def __post_init__(self) -> None:
        if (self.action is None) == (self.cap_id is None):
            raise ValueError("CompensationStep needs exactly one of action or cap_id")

    @property
    def is_capability(self) -> bool:
        return self.cap_id is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"index": self.index, "name": self.name}
        if self.cap_id:
            data["cap_id"] = self.cap_id
        return data


@dataclass(frozen=True)
class CompletedStep:
    key: str
    cap_id: str
    version: str
    replayed: bool = False


@dataclass(frozen=True)
class CompensationRecord:
    name: str
    index: int
    outcome: CompensationOutcome
    error: str | None = None


@dataclass(frozen=True)
class SagaHistory:
    """Audit snapshot attached to a surfaced error and stored with the run."""

    run_id: str
    blueprint_id: str
    status: SagaStatus
    steps: tuple[CompletedStep, ...]
    compensations_registered: tuple[str, ...]
    compensations_run: tuple[CompensationRecord, ...]
    annotations: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "blueprint_id": self.blueprint_id,
            "status": self.status.value,
            "steps": [
                {"key": s.key, "cap_id": s.cap_id, "version": s.version, "replayed": s.replayed}
                for s in self.steps
            ],
            "compensations_registered": list(self.compensations_registered),
            "compensations_run": [
                {"name": c.name, "index": c.index, "outcome": c.outcome.value, "error": c.error}
                for c in self.compensations_run
            ],
            "annotations": self.annotations,
        }


@dataclass
class SagaRun:
    """Mutable state of one saga run."""

    run_id: str
    blueprint_id: str
    status: SagaStatus = SagaStatus.RUNNING
    steps: list[CompletedStep] = field(default_factory=list)
    compensations: list[CompensationStep] = field(default_factory=list)
    registered: list[CompensationStep] = field(default_factory=list)
    unwound: list[CompensationRecord] = field(default_factory=list)
    annotations: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    def transition(self, status: SagaStatus) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise SagaStateError(f"Illegal saga transition {self.status.value} -> {status.value}").with_context(
                run_id=self.run_id
            )
        self.status = status
        if status in (SagaStatus.COMPLETED, SagaStatus.FAILED):
            self.finished_at = datetime.now(timezone.utc)

    def record_step(self, step: CompletedStep) -> None:
        self.steps.append(step)

    def push(self, step: CompensationStep) -> None:
        if self.status is not SagaStatus.RUNNING:
            raise SagaStateError(
                f"Cannot add compensation '{step.name}' while {self.status.value}"
            ).with_context(run_id=self.run_id)
        self.compensations.append(step)
        self.registered.append(step)

    def pop(self) -> CompensationStep | None:
        if self.status is not SagaStatus.COMPENSATING:
            raise SagaStateError(f"Cannot unwind while {self.status.value}").with_context(run_id=self.run_id)
        return self.compensations.pop() if self.compensations else None

    def next_compensation_index(self) -> int:
        return len(self.registered)

    def record_compensation(self, step: CompensationStep, outcome: CompensationOutcome, error: str | None = None) -> None:
        self.unwound.append(CompensationRecord(step.name, step.index, outcome, error))

    def history(self) -> SagaHistory:
        return SagaHistory(
            run_id=self.run_id,
            blueprint_id=self.blueprint_id,
            status=self.status,
            steps=tuple(self.steps),
            compensations_registered=tuple(s.name for s in self.registered),
            compensations_run=tuple(self.unwound),
            annotations=dict(self.annotations),
        )


__all__ = [
    "SagaStatus",
    "CompensationOutcome",
    "CompensationStep",
    "CompletedStep",
    "CompensationRecord",
    "SagaHistory",
    "SagaRun",
]
