"""
Egress allowlist - default-deny outbound network policy per capability.

Manifesto:
    A capability may only talk to the hosts its descriptor declares in
    ``security.allow_outbound``.  The check happens *before* a request is
    built, so a denied host sees zero connection attempts.  Denial is an
    error, not a log line.

Pattern rules (case-insensitive):

    ``*``               any host
    ``api.github.com``  exact match
    ``*.example.com``   any host ending in ``.example.com`` that is strictly
                        longer than the suffix (``example.com`` itself does
                        not match)
    ``prometheus:9090`` a pattern with a port is compared against
                        ``host:port``; a bare pattern against the hostname

Examples:
    >>> host_allowed("api.example.com", ["*.example.com"])
    True
    >>> host_allowed("example.com", ["*.example.com"])
    False

Tags:
    egress, allowlist, network-policy, security, tiller
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any
from urllib.parse import urlsplit

import httpx

from tiller.core.errors import OutboundHostNotAllowedError
from tiller.core.logging import get_logger

logger = get_logger(__name__)


def host_allowed(host: str, patterns: Iterable[str]) -> bool:
    """Return True if ``host`` matches any allowlist pattern."""
    patterns = [p.strip().lower() for p in patterns if p and p.strip()]
    if "*" in patterns:
        return True
    host = host.strip().lower()
    if not host:
        return False
    for pattern in patterns:
        if pattern == host:
            return True
        if pattern.startswith("*."):
            suffix = pattern[1:]
            if host.endswith(suffix) and len(host) > len(suffix):
                return True
    return False


def extract_host(url: str | httpx.URL) -> tuple[str, int | None]:
    """Split a URL into ``(hostname, explicit_port)``."""
    parts = urlsplit(str(url))
    hostname = (parts.hostname or "").lower()
    try:
        port = parts.port
    except ValueError:
        port = None
    return hostname, port


class EgressGate:
    """Allowlist check bound to one capability invocation."""

    def __init__(self, allow_outbound: Iterable[str], *, capability_id: str = ""):
        self.allow_outbound = tuple(allow_outbound)
        self.capability_id = capability_id
        self.denied: list[str] = []

    def check_host(self, hostname: str, port: int | None = None) -> str:
        """Raise :class:`OutboundHostNotAllowedError` unless the host is allowed."""
        candidates = [hostname]
        if port is not None:
            candidates.insert(0, f"{hostname}:{port}")
        if any(host_allowed(c, self.allow_outbound) for c in candidates):
            return candidates[0]

        target = candidates[0] or "<empty>"
        self.denied.append(target)
        logger.warning(
            "egress.denied",
            capability_id=self.capability_id,
            host=target,
            allow_outbound=list(self.allow_outbound),
        )
        raise OutboundHostNotAllowedError(target, allowed=self.allow_outbound).with_context(
            capability_id=self.capability_id
        )

    def check(self, url: str | httpx.URL) -> str:
        hostname, port = extract_host(url)
        return self.check_host(hostname, port)


class EgressClient:
    """httpx client that consults an :class:`EgressGate` before every request."""

    def __init__(
        self,
        gate: EgressGate,
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.gate = gate
        self._client = httpx.Client(timeout=timeout, transport=transport, headers=headers)

    def request(self, method: str, url: str | httpx.URL, **kwargs: Any) -> httpx.Response:
        self.gate.check(url)
        return self._client.request(method, url, **kwargs)

    def get(self, url: str | httpx.URL, **kwargs: Any) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str | httpx.URL, **kwargs: Any) -> httpx.Response:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> EgressClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


__all__ = ["host_allowed", "extract_host", "EgressGate", "EgressClient"]
