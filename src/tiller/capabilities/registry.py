"""
Capability registry.

An explicit, injectable map of ``(id, version)`` to descriptor and handler.
Orchestrators receive a registry at construction and take a
:meth:`~CapabilityRegistry.snapshot` when a run starts, so registrations
made while a run is in flight never change what that run resolves.

Example:
    >>> registry = CapabilityRegistry()
    >>> registry.register(CANARY_ANALYZER, analyze_canary)
    >>> registry.get("golden.traffic.canary-analyzer").descriptor.version
    '1.0.0'

Catalog descriptors can be published without a handler and bound later:

    >>> registry.register(K8S_APPLY)
    >>> registry.bind("golden.k8s.apply", kubectl_apply)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Iterator

from tiller.capabilities.descriptor import CapabilityDescriptor, Handler, semver_key
from tiller.core.errors import CapabilityNotFoundError
from tiller.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RegisteredCapability:
    descriptor: CapabilityDescriptor
    handler: Handler | None = None

    @property
    def bound(self) -> bool:
        return self.handler is not None


class CapabilityRegistry:
    """Thread-safe registry keyed by ``(id, version)``."""

    def __init__(self, entries: dict[tuple[str, str], RegisteredCapability] | None = None):
        self._entries: dict[tuple[str, str], RegisteredCapability] = dict(entries or {})
        self._lock = threading.RLock()

    def register(self, descriptor: CapabilityDescriptor, handler: Handler | None = None) -> CapabilityDescriptor:
        """Publish a descriptor.  Raises ``ValueError`` if ``(id, version)`` exists."""
        with self._lock:
            if descriptor.key in self._entries:
                raise ValueError(f"Capability already registered: {descriptor.id}@{descriptor.version}")
            self._entries[descriptor.key] = RegisteredCapability(descriptor, handler)
        logger.debug("capability.registered", capability_id=descriptor.id, version=descriptor.version,
                     bound=handler is not None)
        return descriptor

    def bind(self, cap_id: str, handler: Handler, version: str | None = None) -> None:
        """Attach a handler to a published descriptor that has none."""
        with self._lock:
            entry = self.get(cap_id, version)
            if entry.bound:
                raise ValueError(f"Capability already has a handler: {cap_id}@{entry.descriptor.version}")
            self._entries[entry.descriptor.key] = RegisteredCapability(entry.descriptor, handler)

    def capability(self, descriptor: CapabilityDescriptor) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Handler) -> Handler:
            self.register(descriptor, handler)
            return handler

        return decorator

    def get(self, cap_id: str, version: str | None = None) -> RegisteredCapability:
        """Resolve an exact version, or the highest semver when ``version`` is None."""
        with self._lock:
            if version is not None:
                entry = self._entries.get((cap_id, version))
                if entry is None:
                    raise CapabilityNotFoundError(cap_id, version)
                return entry
            candidates = [e for (cid, _), e in self._entries.items() if cid == cap_id]
        if not candidates:
            raise CapabilityNotFoundError(cap_id)
        return max(candidates, key=lambda e: semver_key(e.descriptor.version))

    def versions(self, cap_id: str) -> list[str]:
        with self._lock:
            found = [v for (cid, v) in self._entries if cid == cap_id]
        return sorted(found, key=semver_key)

    def descriptors(self) -> list[CapabilityDescriptor]:
        with self._lock:
            entries = list(self._entries.values())
        return sorted((e.descriptor for e in entries), key=lambda d: (d.id, semver_key(d.version)))

    def snapshot(self) -> CapabilityRegistry:
        """Immutable-in-practice copy used for the lifetime of one run."""
        with self._lock:
            return CapabilityRegistry(self._entries)

    def __contains__(self, cap_id: object) -> bool:
        with self._lock:
            return any(cid == cap_id for cid, _ in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[RegisteredCapability]:
        with self._lock:
            return iter(list(self._entries.values()))


__all__ = ["RegisteredCapability", "CapabilityRegistry"]
