"""
CLI: ``tiller capabilities`` - inspect the capability catalog.
"""

from __future__ import annotations

import typer

from tiller.capabilities.catalog import default_registry
from tiller.cli.utils import apply_plugins, console, fail, output_json, print_table
from tiller.core.errors import CapabilityNotFoundError

app = typer.Typer(no_args_is_help=True)


@app.command("list")
def list_capabilities(
    plugin: list[str] = typer.Option([], "--plugin", "-p", help="module:function that binds handlers"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List registered capabilities and whether a handler is bound."""
    registry = apply_plugins(default_registry(), plugin)
    rows = []
    for entry in registry:
        descriptor = entry.descriptor
        policy = descriptor.operations.retry_policy
        rows.append(
            {
                "id": descriptor.id,
                "version": descriptor.version,
                "bound": entry.bound,
                "idempotent": descriptor.operations.is_idempotent,
                "retry": f"{policy.max_attempts}x {policy.initial_interval_seconds}s *{policy.backoff_coefficient}",
                "allow_outbound": ", ".join(descriptor.security.allow_outbound) or "-",
            }
        )
    rows.sort(key=lambda r: (r["id"], r["version"]))
    if json_out:
        output_json(rows)
        return
    print_table(rows, title="Capabilities")


@app.command("show")
def show_capability(
    cap_id: str = typer.Argument(..., help="Capability id"),
    version: str | None = typer.Option(None, "--version", "-v"),
) -> None:
    """Show a capability's contract, including its JSON Schemas."""
    try:
        entry = default_registry().get(cap_id, version)
    except CapabilityNotFoundError as exc:
        fail(exc.message)
    console.print_json(data=entry.descriptor.describe())
