"""
CLI: ``tiller runs`` - inspect runs recorded in a JSONL journal.
"""

from __future__ import annotations

from pathlib import Path

import typer

from tiller.cli.utils import console, fail, output_json, print_dict, print_table
from tiller.core.config import get_settings
from tiller.orchestration.substrate import JsonlJournal

app = typer.Typer(no_args_is_help=True)


def _journal(journal_dir: Path | None) -> JsonlJournal:
    return JsonlJournal(journal_dir or get_settings().journal_dir)


@app.command("list")
def list_runs(
    journal_dir: Path | None = typer.Option(None, "--journal-dir", "-j"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List recorded runs, oldest first."""
    records = _journal(journal_dir).runs()
    rows = [{"run_id": r.run_id, "blueprint_id": r.blueprint_id, "status": r.status} for r in records]
    if json_out:
        output_json(rows)
        return
    print_table(rows, title="Runs")


@app.command("show")
def show_run(
    run_id: str = typer.Argument(..., help="Run ID"),
    journal_dir: Path | None = typer.Option(None, "--journal-dir", "-j"),
    steps: bool = typer.Option(False, "--steps", help="Include the step log"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show a run's status, output or error, and history."""
    journal = _journal(journal_dir)
    record = journal.get_run(run_id)
    if record is None:
        fail(f"Run not found: {run_id}")

    step_rows = [
        {"key": s.key, "kind": s.kind.value, "name": s.name, "status": s.status.value}
        for s in journal.steps(run_id)
    ]
    if json_out:
        payload = record.to_dict()
        if steps:
            payload["steps"] = step_rows
        output_json(payload)
        return

    print_dict(
        {
            "blueprint_id": record.blueprint_id,
            "status": record.status,
            "output": record.output,
            "error": record.error,
        },
        title=f"Run: {run_id}",
    )
    if record.history:
        compensations = record.history.get("compensations_run") or []
        console.print(f"  [cyan]compensations_run[/cyan]: {[c['name'] for c in compensations]}")
    if steps:
        print_table(step_rows, title="Steps")
