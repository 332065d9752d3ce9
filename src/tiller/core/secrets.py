"""Secret reference resolution.

Capabilities never see raw secrets in their invocation context; they see
*refs*.  The execution runtime resolves each ref through a
:class:`SecretsResolver` at mount time and writes the value into the
invocation sandbox.

Ref syntax:

    ``secret:env:PROM_TOKEN``         environment variable
    ``secret:file:/run/secrets/tok``  file contents
    ``secret:<name>:<key>``           registered backend by name
    ``/apps/web/prometheus-token``    OpenBao KV v2 path (when configured)
    ``prometheus_token``              try every backend in order

Guardrails:
    - Values are wrapped in :class:`SecretValue` so accidental ``str()`` or
      ``repr()`` yields ``[REDACTED]``
    - Error messages name the ref and the backends tried, never a value

Tags:
    secrets, credentials, security, openbao, tiller
"""

from __future__ import annotations

import os
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import httpx

from tiller.core.errors import ErrorCategory, MissingSecretError, TillerError
from tiller.core.logging import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SecretResolutionError(TillerError):
    """Raised when a secret reference is malformed or names an unknown backend."""

    default_category = ErrorCategory.CONFIG


def secret_not_found(ref: str, tried: list[str]) -> MissingSecretError:
    msg = f"Secret not found: {ref}"
    if tried:
        msg += f" (tried: {', '.join(tried)})"
    return MissingSecretError(msg, details={"ref": ref, "tried": tried})


# ---------------------------------------------------------------------------
# SecretValue wrapper
# ---------------------------------------------------------------------------


class SecretValue:
    """Wrapper for secret values that prevents accidental logging.

    Example:
        >>> secret = SecretValue("hunter2")
        >>> str(secret)
        '[REDACTED]'
        >>> secret.get_secret()
        'hunter2'
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def get_secret(self) -> str:
        return self._value

    def __str__(self) -> str:
        return "[REDACTED]"

    def __repr__(self) -> str:
        return "SecretValue('[REDACTED]')"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretValue):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)

    def __bool__(self) -> bool:
        return bool(self._value)


# ---------------------------------------------------------------------------
# Secret backends
# ---------------------------------------------------------------------------


class SecretBackend(ABC):
    """Abstract base for secret backends."""

    name: str = "backend"

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the secret for ``key`` or None if this backend lacks it."""
        ...


class EnvSecretBackend(SecretBackend):
    """Resolve secrets from environment variables.

    Tries ``{KEY}`` then ``TILLER_SECRET_{KEY}``.
    """

    name = "env"

    def get(self, key: str) -> str | None:
        for candidate in (key, key.upper(), f"TILLER_SECRET_{key.upper()}"):
            value = os.environ.get(candidate)
            if value is not None:
                return value
        return None


class FileSecretBackend(SecretBackend):
    """Resolve secrets from files under a directory, or from absolute paths.

    Designed for container-mounted secrets.  Contents are stripped and
    cached after the first read.
    """

    name = "file"

    def __init__(self, secrets_dir: str | Path = "/run/secrets"):
        self.secrets_dir = Path(secrets_dir)
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        path = Path(key) if os.path.isabs(key) else self.secrets_dir / key
        if not path.is_file():
            return None

        content = path.read_text(encoding="utf-8").strip()
        with self._lock:
            self._cache[key] = content
        return content

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()


class DictSecretBackend(SecretBackend):
    """In-memory secret backend for tests and local runs."""

    name = "dict"

    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = dict(secrets) if secrets else {}

    def get(self, key: str) -> str | None:
        return self._secrets.get(key)

    def set(self, key: str, value: str) -> None:
        self._secrets[key] = value


class OpenBaoSecretBackend(SecretBackend):
    """Resolve path-style refs from an OpenBao (Vault-compatible) KV v2 mount.

    ``/apps/web/token`` reads ``GET {addr}/v1/{mount}/data/apps/web/token``
    and returns ``data.data.value``, or the only string field when the
    secret holds exactly one.
    """

    name = "openbao"

    def __init__(
        self,
        addr: str,
        token: SecretValue,
        *,
        mount: str = "secret",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        self.addr = addr.rstrip("/")
        self.mount = mount.strip("/")
        self._token = token
        self._client = client or httpx.Client(timeout=timeout)

    def get(self, key: str) -> str | None:
        path = key.lstrip("/")
        url = f"{self.addr}/v1/{self.mount}/data/{path}"
        response = self._client.get(url, headers={"X-Vault-Token": self._token.get_secret()})
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise SecretResolutionError(
                f"OpenBao read failed for {key}: HTTP {response.status_code}"
            ).with_context(http_status=response.status_code)

        data = (response.json().get("data") or {}).get("data") or {}
        if isinstance(data.get("value"), str):
            return data["value"]
        strings = [v for v in data.values() if isinstance(v, str)]
        if len(strings) == 1:
            return strings[0]
        return None


# ---------------------------------------------------------------------------
# SecretsResolver
# ---------------------------------------------------------------------------

# Full reference: secret:backend:key
_FULL_REFERENCE_RE = re.compile(r"^secret:(\w+):(.+)$")


class SecretsResolver:
    """Multi-backend secret resolver.

    Backends are tried in order for plain keys.  Named refs go straight to
    the named backend; ``env`` and ``file`` are always available.
    """

    def __init__(self, backends: list[SecretBackend] | None = None):
        self._backends: list[SecretBackend] = list(backends) if backends is not None else []

    def add_backend(self, backend: SecretBackend, priority: int = -1) -> None:
        if priority < 0:
            self._backends.append(backend)
        else:
            self._backends.insert(priority, backend)

    def resolve(self, ref: str) -> SecretValue:
        """Resolve a ref to a :class:`SecretValue`.

        Raises:
            MissingSecretError: no backend holds the ref
            SecretResolutionError: malformed ref or unknown backend
        """
        full_match = _FULL_REFERENCE_RE.match(ref)
        if full_match:
            return SecretValue(self._resolve_with_backend(full_match.group(1), full_match.group(2), ref))

        if ref.startswith("secret:"):
            raise SecretResolutionError(
                f"Invalid secret reference format: '{ref}'. Expected 'secret:<backend>:<key>'."
            )

        if ref.startswith("/"):
            openbao = self._backend_named("openbao")
            if openbao is not None:
                return SecretValue(self._resolve_with_backend("openbao", ref, ref))

        tried: list[str] = []
        for backend in self._backends:
            tried.append(backend.name)
            value = backend.get(ref)
            if value is not None:
                return SecretValue(value)
        raise secret_not_found(ref, tried)

    def _backend_named(self, name: str) -> SecretBackend | None:
        for backend in self._backends:
            if backend.name == name:
                return backend
        return None

    def _resolve_with_backend(self, backend_name: str, key: str, ref: str) -> str:
        backend = self._backend_named(backend_name)
        if backend is None:
            if backend_name == "env":
                backend = EnvSecretBackend()
            elif backend_name == "file":
                backend = FileSecretBackend()
            else:
                raise SecretResolutionError(
                    f"Invalid secret reference: unknown backend '{backend_name}'"
                )

        value = backend.get(key)
        if value is None:
            raise secret_not_found(ref, [backend_name])
        logger.debug("secrets.resolved", ref=ref, backend=backend_name)
        return value


def build_resolver(settings: Any) -> SecretsResolver:
    """Build the default resolver chain from :class:`TillerSettings`.

    Order: env, files under ``secrets_file_dir``, then OpenBao when
    ``openbao_addr`` is set.  The OpenBao token is itself a ref.
    """
    resolver = SecretsResolver([EnvSecretBackend(), FileSecretBackend(settings.secrets_file_dir)])
    if settings.openbao_addr:
        token = resolver.resolve(settings.openbao_token_ref)
        resolver.add_backend(
            OpenBaoSecretBackend(
                settings.openbao_addr,
                token,
                mount=settings.openbao_mount,
                timeout=settings.http_timeout_seconds,
            )
        )
    return resolver


__all__ = [
    "SecretResolutionError",
    "SecretValue",
    "SecretBackend",
    "EnvSecretBackend",
    "FileSecretBackend",
    "DictSecretBackend",
    "OpenBaoSecretBackend",
    "SecretsResolver",
    "build_resolver",
]
