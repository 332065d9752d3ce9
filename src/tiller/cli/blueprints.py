"""
CLI: ``tiller blueprints`` - list the available sagas.
"""

from __future__ import annotations

import typer

from tiller.blueprints import default_blueprints
from tiller.cli.utils import console, fail, output_json, print_table
from tiller.core.errors import BlueprintNotFoundError

app = typer.Typer(no_args_is_help=True)


@app.command("list")
def list_blueprints(json_out: bool = typer.Option(False, "--json")) -> None:
    """List registered blueprints."""
    rows = [
        {
            "id": bp.metadata.id,
            "version": bp.metadata.version,
            "tags": ", ".join(bp.metadata.tags),
            "description": bp.metadata.description,
        }
        for bp in default_blueprints().list()
    ]
    if json_out:
        output_json(rows)
        return
    print_table(rows, title="Blueprints")


@app.command("show")
def show_blueprint(blueprint_id: str = typer.Argument(..., help="Blueprint id")) -> None:
    """Show a blueprint's input and output schemas."""
    try:
        blueprint = default_blueprints().get(blueprint_id)
    except BlueprintNotFoundError as exc:
        fail(exc.message)
    console.print_json(data=blueprint.describe())
