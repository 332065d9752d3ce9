"""
Shared pytest fixtures and configuration for tiller tests.

This module provides:
- A deterministic clock so durable sleeps and retries never block
- In-memory substrates and registries for test isolation
- Handler helpers that record every invocation they receive

Usage:
    Fixtures are auto-discovered by pytest.

    def test_something(substrate, fake_clock):
        ...
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Generator

import pytest
import structlog
from pydantic import BaseModel

from tiller.capabilities.descriptor import (
    CapabilityDescriptor,
    CapabilitySchemas,
    ExecutionContext,
    OperationsPolicy,
)
from tiller.capabilities.registry import CapabilityRegistry
from tiller.core.config import TillerSettings, clear_settings_cache
from tiller.core.errors import FatalCapabilityError, RetryableCapabilityError
from tiller.core.secrets import DictSecretBackend, SecretsResolver
from tiller.execution.retry import RetryPolicy
from tiller.execution.runtime import ExecutionRuntime
from tiller.orchestration.substrate import InMemoryJournal, Substrate


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark every test without an explicit marker as a unit test."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Global state cleanup
# =============================================================================


@pytest.fixture(autouse=True)
def reset_global_state() -> Generator[None, None, None]:
    """Drop cached settings and structlog config between tests."""
    clear_settings_cache()
    yield
    clear_settings_cache()
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Clock and substrate
# =============================================================================


class FakeClock:
    """Clock whose ``sleep`` advances time instantly and records the request."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        if cancel is not None and cancel.is_set():
            return False
        self.sleeps.append(seconds)
        self.advance(seconds)
        return True


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def journal() -> InMemoryJournal:
    return InMemoryJournal()


@pytest.fixture
def substrate(journal: InMemoryJournal, fake_clock: FakeClock) -> Substrate:
    return Substrate(journal=journal, clock=fake_clock)


# =============================================================================
# Capabilities
# =============================================================================


@pytest.fixture
def secrets() -> DictSecretBackend:
    return DictSecretBackend({"prom-token": "s3cr3t-value"})


@pytest.fixture
def runtime(tmp_path: Path, secrets: DictSecretBackend) -> ExecutionRuntime:
    return ExecutionRuntime(SecretsResolver([secrets]), sandbox_root=tmp_path / "sandboxes")


@pytest.fixture
def registry() -> CapabilityRegistry:
    return CapabilityRegistry()


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext(app_id="tests", environment="test", initiator_id="pytest", trace_id="trace-1")


@pytest.fixture
def settings(tmp_path: Path) -> TillerSettings:
    return TillerSettings(
        sandbox_root=tmp_path / "sandboxes",
        journal_dir=tmp_path / "runs",
        secrets_file_dir=tmp_path / "secrets",
        rollout_stages=[10, 50],
        rollout_analysis_window_seconds=60,
    )


class Recorder:
    """Handler factory that logs ``(cap_id, operation)`` for every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None, dict[str, Any]]] = []

    def handler(self, cap_id: str, respond: Callable[[Any], Any]) -> Callable[[Any, Any], Any]:
        def handle(args: Any, sandbox: Any) -> Any:
            dumped = args.model_dump(mode="json", by_alias=True)
            self.calls.append((cap_id, dumped.get("operation"), dumped))
            return respond(args)

        return handle

    def operations(self) -> list[tuple[str, str | None]]:
        return [(cap_id, op) for cap_id, op, _ in self.calls]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


# =============================================================================
# Step capability used by orchestration tests
# =============================================================================


class StepInput(BaseModel):
    name: str
    fail: bool = False
    flaky: int = 0


class StepOutput(BaseModel):
    name: str
    attempt: int = 1


STEP_DESCRIPTOR = CapabilityDescriptor(
    id="test.step",
    version="1.0.0",
    schemas=CapabilitySchemas(input=StepInput, output=StepOutput),
    operations=OperationsPolicy(
        retry_policy=RetryPolicy(max_attempts=3, initial_interval_seconds=5, backoff_coefficient=2),
    ),
)


class StepHandler:
    """Records invocations; ``fail`` raises fatally, ``flaky=n`` fails n times first."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self._attempts: dict[str, int] = {}

    def __call__(self, args: StepInput, sandbox: Any) -> StepOutput:
        self.calls.append(args.name)
        attempt = self._attempts.get(args.name, 0) + 1
        self._attempts[args.name] = attempt
        if args.fail:
            raise FatalCapabilityError(f"step {args.name} failed")
        if attempt <= args.flaky:
            raise RetryableCapabilityError(f"step {args.name} busy")
        return StepOutput(name=args.name, attempt=attempt)


@pytest.fixture
def step_handler() -> StepHandler:
    return StepHandler()


@pytest.fixture
def step_registry(step_handler: StepHandler) -> CapabilityRegistry:
    registry = CapabilityRegistry()
    registry.register(STEP_DESCRIPTOR, step_handler)
    return registry
