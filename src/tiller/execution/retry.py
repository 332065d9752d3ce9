"""Classified retries with exponential backoff.

A capability's :class:`RetryPolicy` bounds how often a failed invocation is
re-attempted.  Whether an ``Err`` is retried at all is decided by its
classification, not by the policy: validation, secret and egress failures
never retry, ``RETRYABLE`` failures retry until ``max_attempts``.

The wait between attempts goes through an injected ``sleep`` callable.
Inside a saga that is the orchestrator's durable sleep, so backoff time
survives a process restart instead of blocking a worker.

Example:
    >>> policy = RetryPolicy(max_attempts=3, initial_interval_seconds=2, backoff_coefficient=2)
    >>> [policy.delay_for(n) for n in (1, 2)]
    [2.0, 4.0]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from tiller.core.result import Err, Result


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Delay before attempt ``n + 1`` is
    ``initial_interval_seconds * backoff_coefficient ** (n - 1)``.
    """

    max_attempts: int = 1
    initial_interval_seconds: float = 1.0
    backoff_coefficient: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_interval_seconds < 0:
            raise ValueError("initial_interval_seconds must be >= 0")
        if self.backoff_coefficient < 1:
            raise ValueError("backoff_coefficient must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return float(self.initial_interval_seconds * (self.backoff_coefficient ** (attempt - 1)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_interval_seconds": self.initial_interval_seconds,
            "backoff_coefficient": self.backoff_coefficient,
        }


NO_RETRY = RetryPolicy(max_attempts=1)


@dataclass
class RetryContext:
    """Retry state for one invocation.

    Example:
        >>> ctx = RetryContext(policy, sleep=saga.sleep_seconds)
        >>> result = ctx.run(lambda: runtime.execute(entry, invocation))
    """

    policy: RetryPolicy
    sleep: Callable[[float], None]
    should_retry: Callable[[Err], bool]
    on_retry: Callable[[int, Err, float], None] | None = None
    attempt: int = field(default=0, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, Err, datetime]] = field(default_factory=list, init=False)
    delays: list[float] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        return self.attempt

    @property
    def last_error(self) -> Err | None:
        return self.errors[-1][1] if self.errors else None

    def run(self, func: Callable[[], Result]) -> Result:
        """Call ``func`` until it returns ``Ok``, a non-retryable ``Err``,
        or the attempt budget is spent.  Returns the last result."""
        while True:
            self.attempt += 1
            result = func()
            if result.is_ok():
                return result

            self.errors.append((self.attempt, result, utcnow()))
            if self.attempt >= self.policy.max_attempts or not self.should_retry(result):
                return result

            delay = self.policy.delay_for(self.attempt)
            if self.on_retry:
                self.on_retry(self.attempt, result, delay)
            self.delays.append(delay)
            self.sleep(delay)


__all__ = ["RetryPolicy", "NO_RETRY", "RetryContext", "utcnow"]
