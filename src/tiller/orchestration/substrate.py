"""
Durable substrate contract and local reference implementations.

Manifesto:
    The saga orchestrator does not own durability; it consumes it.  What it
    needs from a substrate is small: a crash-safe log of run records and
    step records keyed deterministically, and a clock whose sleep can be
    interrupted.  Anything that satisfies :class:`RunJournal` and
    :class:`Clock` can host runs.  The implementations here cover tests,
    local development and single-node operation.

Architecture:
    ::

        Substrate(journal, clock)
        ├── RunJournal (protocol)
        │     get_run / save_run / runs
        │     get_step / put_step / steps
        │   ├── InMemoryJournal   dicts behind a lock
        │   └── JsonlJournal      one append-only <run_id>.jsonl per run
        └── Clock (protocol)
              now() -> epoch seconds
              sleep(seconds, cancel_event) -> bool (False if cancelled)
            └── SystemClock

    Step keys are produced by the orchestrator (``main:3``,
    ``compensation-1:2``, ``main:4/retry:1``).  A replayed run asks the
    journal for each key before acting; a COMPLETED record short-circuits
    the action.

Tags:
    substrate, durability, replay, journal, timers, tiller

Doc-Types:
    - API Reference
    - Architecture Guide
"""

from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from tiller.core.logging import get_logger

logger = get_logger(__name__)


class StepKind(str, Enum):
    CAPABILITY = "capability"
    SLEEP = "sleep"
    COMPENSATION = "compensation"


class StepStatus(str, Enum):
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"


@dataclass
class StepRecord:
    """One durable step; ``output`` is JSON-ready, ``fire_at`` is set for sleeps."""

    key: str
    kind: StepKind
    name: str
    status: StepStatus
    output: Any = None
    fire_at: float | None = None
    recorded_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepRecord:
        return cls(
            key=data["key"],
            kind=StepKind(data["kind"]),
            name=data["name"],
            status=StepStatus(data["status"]),
            output=data.get("output"),
            fire_at=data.get("fire_at"),
            recorded_at=data.get("recorded_at", 0.0),
        )


@dataclass
class RunRecord:
    """Durable record of one blueprint run."""

    run_id: str
    blueprint_id: str
    input: dict[str, Any]
    context: dict[str, Any]
    status: str = "RUNNING"
    config: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    history: dict[str, Any] | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("COMPLETED", "FAILED")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        return cls(**data)


@runtime_checkable
class RunJournal(Protocol):
    def get_run(self, run_id: str) -> RunRecord | None: ...

    def save_run(self, record: RunRecord) -> None: ...

    def runs(self) -> list[RunRecord]: ...

    def get_step(self, run_id: str, key: str) -> StepRecord | None: ...

    def put_step(self, run_id: str, record: StepRecord) -> None: ...

    def steps(self, run_id: str) -> list[StepRecord]: ...


@runtime_checkable
class Clock(Protocol):
    def now(self) -> float: ...

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool: ...


class SystemClock:
    """Wall clock; sleeps wake early when ``cancel`` is set."""

    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        if seconds <= 0:
            return True
        if cancel is None:
            time.sleep(seconds)
            return True
        return not cancel.wait(seconds)


class InMemoryJournal:
    """Process-local journal; survives orchestrator restarts, not process restarts."""

    def __init__(self) -> None:
        self._runs: dict[str, RunRecord] = {}
        self._steps: dict[str, dict[str, StepRecord]] = {}
        self._lock = threading.Lock()

    def get_run(self, run_id: str) -> RunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def save_run(self, record: RunRecord) -> None:
        record.updated_at = time.time()
        with self._lock:
            self._runs[record.run_id] = record

    def runs(self) -> list[RunRecord]:
        with self._lock:
            return sorted(self._runs.values(), key=lambda r: r.created_at)

    def get_step(self, run_id: str, key: str) -> StepRecord | None:
        with self._lock:
            return self._steps.get(run_id, {}).get(key)

    def put_step(self, run_id: str, record: StepRecord) -> None:
        with self._lock:
            self._steps.setdefault(run_id, {})[record.key] = record

    def steps(self, run_id: str) -> list[StepRecord]:
        with self._lock:
            return list(self._steps.get(run_id, {}).values())


class JsonlJournal:
    """
    File-backed journal: ``<directory>/<run_id>.jsonl``.

    Every write appends one line (``{"type": "run"|"step", ...}``) and
    fsyncs, so a crash loses at most the line being written.  Loading
    replays the file; later lines win.  A torn final line is cut off
    on load so the next append starts on a clean line.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._cache: dict[str, tuple[RunRecord | None, dict[str, StepRecord]]] = {}

    def _path(self, run_id: str) -> Path:
        return self.directory / f"{run_id}.jsonl"

    def _load(self, run_id: str) -> tuple[RunRecord | None, dict[str, StepRecord]]:
        if run_id in self._cache:
            return self._cache[run_id]
        run: RunRecord | None = None
        steps: dict[str, StepRecord] = {}
        path = self._path(run_id)
        if path.exists():
            lines = path.read_bytes().splitlines(keepends=True)
            offset = 0
            for index, line in enumerate(lines):
                if line.strip():
                    try:
                        entry = json.loads(line)
                    except ValueError:
                        if index != len(lines) - 1:
                            raise
                        logger.warning("journal.torn_tail", run_id=run_id, dropped_bytes=len(line))
                        with path.open("r+b") as fh:
                            fh.truncate(offset)
                        break
                    if entry["type"] == "run":
                        run = RunRecord.from_dict(entry["data"])
                    else:
                        step = StepRecord.from_dict(entry["data"])
                        steps[step.key] = step
                offset += len(line)
        self._cache[run_id] = (run, steps)
        return run, steps

    def _append(self, run_id: str, entry: dict[str, Any]) -> None:
        with self._path(run_id).open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry, default=str) + "\n")
            fh.flush()
            os.fsync(fh.fileno())

    def get_run(self, run_id: str) -> RunRecord | None:
        with self._lock:
            return self._load(run_id)[0]

    def save_run(self, record: RunRecord) -> None:
        record.updated_at = time.time()
        with self._lock:
            _, steps = self._load(record.run_id)
            self._append(record.run_id, {"type": "run", "data": record.to_dict()})
            self._cache[record.run_id] = (record, steps)

    def runs(self) -> list[RunRecord]:
        found = []
        for path in sorted(self.directory.glob("*.jsonl")):
            record = self.get_run(path.stem)
            if record is not None:
                found.append(record)
        return sorted(found, key=lambda r: r.created_at)

    def get_step(self, run_id: str, key: str) -> StepRecord | None:
        with self._lock:
            return self._load(run_id)[1].get(key)

    def put_step(self, run_id: str, record: StepRecord) -> None:
        with self._lock:
            _, steps = self._load(run_id)
            self._append(run_id, {"type": "step", "data": record.to_dict()})
            steps[record.key] = record

    def steps(self, run_id: str) -> list[StepRecord]:
        with self._lock:
            return list(self._load(run_id)[1].values())


@dataclass
class Substrate:
    journal: RunJournal = field(default_factory=InMemoryJournal)
    clock: Clock = field(default_factory=SystemClock)


__all__ = [
    "StepKind",
    "StepStatus",
    "StepRecord",
    "RunRecord",
    "RunJournal",
    "Clock",
    "SystemClock",
    "InMemoryJournal",
    "JsonlJournal",
    "Substrate",
]
