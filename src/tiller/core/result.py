"""
Capability result envelope.

Every capability invocation terminates in exactly one :class:`Ok` or
:class:`Err`.  ``Err`` is a flat, serializable record (``kind``,
``message``, ``retryable``, ``details``) rather than a wrapped exception so
it can be journaled, returned from the tool surface and compared in tests.
The originating exception, when there is one, rides along in ``cause``
but is excluded from ``to_dict()`` and equality.

Examples:
    >>> from tiller.core.result import Ok, Err
    >>> from tiller.core.errors import ErrorKind
    >>> Ok({"digest": "sha256:abc"}).unwrap()
    {'digest': 'sha256:abc'}
    >>> Err(ErrorKind.FATAL, "boom").is_err()
    True

Tags:
    result-pattern, success-type, error-type, tiller

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from tiller.core.errors import CapabilityError, ErrorKind

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful invocation carrying the validated output."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Get the value. Safe for Ok."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, f: Callable[[T], U]) -> Result[U]:
        """Transform the value if Ok."""
        return Ok(f(self.value))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        value = self.value
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json", by_alias=True)
        return {"ok": True, "value": value}

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """
    Failed invocation.

    ``message`` has already been scrubbed of secret material by the
    runtime; ``cause`` is kept for tracebacks only and never serialized.
    """

    kind: ErrorKind
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)
    cause: BaseException | None = field(default=None, compare=False, repr=False)

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the error as a :class:`CapabilityError`."""
        raise self.to_exception()

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, f: Callable[[T], U]) -> Result[U]:
        """No-op for Err."""
        return self  # type: ignore[return-value]

    def to_exception(self) -> CapabilityError:
        return CapabilityError(
            self.message,
            kind=self.kind,
            retryable=self.retryable,
            details=dict(self.details),
            cause=self.cause,
        )

    @classmethod
    def from_exception(cls, error: CapabilityError, *, message: str | None = None) -> Err[Any]:
        """Build an envelope from a kind-bearing exception."""
        return cls(
            kind=error.kind,
            message=message if message is not None else error.message,
            retryable=error.retryable,
            details=dict(error.details),
            cause=error,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        result: dict[str, Any] = {
            "ok": False,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return f"Err({self.kind.value}, {self.message!r}, retryable={self.retryable})"


Result = Ok[T] | Err[T]


__all__ = ["Ok", "Err", "Result"]
