"""
CLI utility helpers - output formatting, plugin loading and logging setup.
"""

from __future__ import annotations

import importlib
import json
from dataclasses import asdict
from typing import Any, Callable

import typer
from rich.console import Console
from rich.table import Table

from tiller.capabilities.registry import CapabilityRegistry
from tiller.core.config import TillerSettings
from tiller.core.logging import configure_logging

console = Console()
err_console = Console(stderr=True)


# ── Setup helpers ────────────────────────────────────────────────────────


def setup_logging(settings: TillerSettings) -> None:
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json", service="tiller-cli")


def load_plugin(spec: str) -> Callable[[CapabilityRegistry], Any]:
    """Resolve ``module:function``; the function binds handlers on a registry."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        fail(f"Plugin must look like module:function, got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        fail(f"Cannot import plugin module {module_name!r}: {exc}")
    hook = getattr(module, attr, None)
    if not callable(hook):
        fail(f"Plugin {spec!r} is not callable")
    return hook


def apply_plugins(registry: CapabilityRegistry, specs: list[str]) -> CapabilityRegistry:
    for spec in specs:
        load_plugin(spec)(registry)
    return registry


def parse_pairs(values: list[str], *, option: str) -> dict[str, str]:
    """Parse repeated ``name=value`` options."""
    pairs: dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name:
            fail(f"{option} expects name=value, got {item!r}")
        pairs[name.strip()] = value.strip()
    return pairs


def fail(message: str, code: int = 1) -> None:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=code)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / pydantic model / dict to plain dict."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json", by_alias=True)
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output_json(data: Any) -> None:
    payload = [_to_dict(d) for d in data] if isinstance(data, (list, tuple)) else _to_dict(data)
    console.print_json(json.dumps(payload, default=str))


def print_table(rows: list[dict[str, Any]], *, title: str = "") -> None:
    """Render a list of dicts as a Rich table."""
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*(str(v) for v in row.values()))
    console.print(table)


def print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
