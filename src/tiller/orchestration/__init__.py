"""Saga orchestration: blueprints, the orchestrator, the runner and the durable substrate."""

from tiller.orchestration.blueprint import Blueprint, BlueprintMetadata
from tiller.orchestration.orchestrator import SagaOrchestrator
from tiller.orchestration.runner import BlueprintRegistry, BlueprintRunner, RunHandle, RunOutcome
from tiller.orchestration.saga import CompensationStep, SagaHistory, SagaRun, SagaStatus
from tiller.orchestration.substrate import (
    InMemoryJournal,
    JsonlJournal,
    RunRecord,
    Substrate,
    SystemClock,
)

__all__ = [
    "Blueprint",
    "BlueprintMetadata",
    "SagaOrchestrator",
    "BlueprintRegistry",
    "BlueprintRunner",
    "RunHandle",
    "RunOutcome",
    "CompensationStep",
    "SagaHistory",
    "SagaRun",
    "SagaStatus",
    "InMemoryJournal",
    "JsonlJournal",
    "RunRecord",
    "Substrate",
    "SystemClock",
]
