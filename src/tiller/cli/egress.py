"""
CLI: ``tiller egress`` - dry-run the outbound allowlist.
"""

from __future__ import annotations

import typer

from tiller.capabilities.catalog import default_registry
from tiller.cli.utils import console, fail
from tiller.core.errors import CapabilityNotFoundError, OutboundHostNotAllowedError
from tiller.execution.egress import EgressGate

app = typer.Typer(no_args_is_help=True)


def _split_host(target: str) -> tuple[str, int | None]:
    host, sep, port = target.rpartition(":")
    if sep and port.isdigit():
        return host.lower(), int(port)
    return target.lower(), None


@app.command("check")
def check(
    host: str = typer.Argument(..., help="Hostname, optionally host:port"),
    pattern: list[str] = typer.Option([], "--pattern", "-p", help="Allowlist pattern (repeatable)"),
    capability: str | None = typer.Option(None, "--capability", "-c", help="Use a capability's allowlist"),
) -> None:
    """Report whether HOST would be allowed; exits 1 when denied."""
    patterns = list(pattern)
    if capability:
        try:
            patterns.extend(default_registry().get(capability).descriptor.security.allow_outbound)
        except CapabilityNotFoundError as exc:
            fail(exc.message)

    hostname, port = _split_host(host)
    gate = EgressGate(patterns, capability_id=capability or "cli")
    try:
        matched = gate.check_host(hostname, port)
    except OutboundHostNotAllowedError:
        console.print(f"[bold red]DENIED[/bold red] {host}")
        raise typer.Exit(code=1) from None
    console.print(f"[bold green]ALLOWED[/bold green] {matched}")
