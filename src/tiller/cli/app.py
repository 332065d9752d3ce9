"""
Root Typer application for the tiller CLI.

Sub-commands inspect the catalog and the run journal; ``tiller run``
executes a blueprint against a JSONL journal so a crashed run can be
resumed by starting it again with the same ``--run-id``.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from typer import Typer

from tiller import __version__

app = Typer(
    name="tiller",
    help="tiller - capability runtime and release sagas.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("tiller-core")
        except PackageNotFoundError:
            v = __version__
        typer.echo(f"tiller-core {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """tiller CLI - inspect capabilities, run blueprints, read run journals."""


# ── Run command ──────────────────────────────────────────────────────────


@app.command("run")
def run_blueprint(
    blueprint_id: str = typer.Argument(..., help="Blueprint id"),
    input_file: Path = typer.Option(..., "--input", "-i", exists=True, dir_okay=False, help="JSON input file"),
    plugin: list[str] = typer.Option([], "--plugin", "-p", help="module:function that binds handlers"),
    secret: list[str] = typer.Option([], "--secret", "-s", help="name=ref secret reference (repeatable)"),
    run_id: str | None = typer.Option(None, "--run-id", help="Resume or replay this run"),
    journal_dir: Path | None = typer.Option(None, "--journal-dir", "-j"),
    app_id: str = typer.Option("tiller-cli", "--app-id"),
    environment: str = typer.Option("dev", "--env"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Execute a blueprint and print its output."""
    from tiller.blueprints import default_blueprints
    from tiller.capabilities.catalog import default_registry
    from tiller.capabilities.descriptor import ExecutionContext
    from tiller.cli.utils import apply_plugins, console, err_console, output_json, parse_pairs, print_dict, setup_logging
    from tiller.core.config import get_settings
    from tiller.core.errors import TillerError
    from tiller.orchestration.runner import BlueprintRunner
    from tiller.orchestration.substrate import JsonlJournal, Substrate

    settings = get_settings()
    setup_logging(settings)

    try:
        data = json.loads(input_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        err_console.print(f"[bold red]Error[/bold red]: {input_file} is not valid JSON: {exc}")
        raise typer.Exit(code=1) from None

    capabilities = apply_plugins(default_registry(), plugin)
    context = ExecutionContext(
        app_id=app_id,
        environment=environment,
        initiator_id="cli",
        secret_refs=parse_pairs(secret, option="--secret"),
    )
    substrate = Substrate(journal=JsonlJournal(journal_dir or settings.journal_dir))

    with BlueprintRunner(capabilities, default_blueprints(), substrate=substrate, settings=settings, max_workers=1) as runner:
        try:
            handle = runner.start_run(blueprint_id, data, context, run_id)
            output = handle.result()
        except TillerError as exc:
            err_console.print(f"[bold red]Error[/bold red] ({type(exc).__name__}): {exc.message}")
            if exc.saga_history is not None:
                names = [c.name for c in exc.saga_history.compensations_run]
                err_console.print(f"  compensations_run: {names}")
            raise typer.Exit(code=1) from None

    if json_out:
        output_json({"run_id": handle.run_id, "output": output.model_dump(mode="json", by_alias=True)})
        return
    console.print(f"[bold green]COMPLETED[/bold green] run {handle.run_id}")
    print_dict(output.model_dump(mode="json", by_alias=True), title="Output")


# ── Sub-command registration ─────────────────────────────────────────────

from tiller.cli.blueprints import app as blueprints_app  # noqa: E402
from tiller.cli.capabilities import app as capabilities_app  # noqa: E402
from tiller.cli.egress import app as egress_app  # noqa: E402
from tiller.cli.runs import app as runs_app  # noqa: E402

app.add_typer(capabilities_app, name="capabilities", help="Capability catalog.")
app.add_typer(blueprints_app, name="blueprints", help="Blueprint catalog.")
app.add_typer(runs_app, name="runs", help="Run journal inspection.")
app.add_typer(egress_app, name="egress", help="Outbound allowlist checks.")


if __name__ == "__main__":
    app()
