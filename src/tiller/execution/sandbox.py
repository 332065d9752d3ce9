"""Per-invocation sandbox.

Each capability invocation gets a private working directory, a
``secrets/`` directory holding one ``0600`` file per mounted secret, and an
egress-gated HTTP client.  All of it is torn down when the invocation
returns, whatever the outcome.

Handlers receive the :class:`Sandbox` as their second argument::

    def analyze(args: AnalyzeInput, sandbox: Sandbox) -> AnalyzeOutput:
        token = sandbox.read_secret("prometheus_token") if sandbox.has_secret("prometheus_token") else None
        response = sandbox.http.get(f"{args.prometheus_url}/api/v1/query", params=...)
"""

from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import httpx

from tiller.capabilities.descriptor import CapabilityDescriptor, CapabilityInvocation
from tiller.core.errors import MissingSecretError
from tiller.core.logging import get_logger
from tiller.core.secrets import SecretResolutionError, SecretsResolver, SecretValue
from tiller.execution.egress import EgressClient, EgressGate


class Sandbox:
    """Execution environment handed to a capability handler."""

    def __init__(
        self,
        descriptor: CapabilityDescriptor,
        invocation: CapabilityInvocation,
        workdir: Path,
        *,
        http_timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.descriptor = descriptor
        self.invocation = invocation
        self.workdir = workdir
        self.secrets_dir = workdir / "secrets"
        self.egress = EgressGate(descriptor.security.allow_outbound, capability_id=descriptor.id)
        self.logger = get_logger(f"tiller.capability.{descriptor.id}").bind(
            capability_id=descriptor.id,
            capability_version=descriptor.version,
            trace_id=invocation.context.trace_id,
        )
        self._http_timeout = http_timeout
        self._transport = transport
        self._http: EgressClient | None = None
        self._mounted: dict[str, Path] = {}
        self._values: list[str] = []

    @property
    def context(self):
        return self.invocation.context

    @property
    def config(self) -> Any:
        return self.invocation.context.config

    @property
    def http(self) -> EgressClient:
        if self._http is None:
            self._http = EgressClient(self.egress, timeout=self._http_timeout, transport=self._transport)
        return self._http

    # ── Secrets ──────────────────────────────────────────────────

    def mount_secret(self, name: str, value: SecretValue) -> Path:
        self.secrets_dir.mkdir(mode=0o700, exist_ok=True)
        path = self.secrets_dir / name
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(value.get_secret())
        self._mounted[name] = path
        self._values.append(value.get_secret())
        return path

    def has_secret(self, name: str) -> bool:
        return name in self._mounted

    def secret_path(self, name: str) -> Path:
        """Mount path for a logical secret name."""
        try:
            return self._mounted[name]
        except KeyError:
            raise MissingSecretError(
                f"Secret '{name}' is not mounted for {self.descriptor.id}",
                details={"secret": name},
            ) from None

    def read_secret(self, name: str) -> SecretValue:
        return SecretValue(self.secret_path(name).read_text(encoding="utf-8"))

    def secret_values(self) -> list[str]:
        return list(self._values)

    def mounted_paths(self) -> dict[str, str]:
        return {name: str(path) for name, path in self._mounted.items()}

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
            self._http = None


@contextmanager
def open_sandbox(
    descriptor: CapabilityDescriptor,
    invocation: CapabilityInvocation,
    refs: Mapping[str, str],
    resolver: SecretsResolver,
    *,
    root: Path | None = None,
    http_timeout: float = 30.0,
    transport: httpx.BaseTransport | None = None,
) -> Iterator[Sandbox]:
    """Create a sandbox, mount ``refs`` through ``resolver``, always clean up."""
    if root is not None:
        root.mkdir(parents=True, exist_ok=True)
    workdir = Path(tempfile.mkdtemp(prefix=f"{descriptor.id}-", dir=root))
    sandbox = Sandbox(descriptor, invocation, workdir, http_timeout=http_timeout, transport=transport)
    try:
        for name, ref in refs.items():
            try:
                value = resolver.resolve(ref)
            except SecretResolutionError as exc:
                raise MissingSecretError(
                    f"Secret '{name}' could not be resolved from ref {ref}",
                    details={"secret": name, "ref": ref},
                    cause=exc,
                ) from exc
            sandbox.mount_secret(name, value)
        yield sandbox
    finally:
        sandbox.close()
        shutil.rmtree(workdir, ignore_errors=True)


__all__ = ["Sandbox", "open_sandbox"]
